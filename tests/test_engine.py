"""Tests for dagmesh.engine: lifecycle, scheduling, retries, failure strategies."""

import asyncio

import pytest

from dagmesh.engine import WorkflowEngine
from dagmesh.errors import LifecycleError
from dagmesh.models import (
    DAGSpec,
    DAGStatus,
    Edge,
    EdgeType,
    ExecutionPolicy,
    FailureHandling,
    FailureStrategy,
    Node,
    NodeStatus,
    NodeType,
    RetryPolicy,
)
from dagmesh.observability.metrics import MetricsCollector
from dagmesh.scheduler import TaskScheduler


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _ok(dag_id, node):
    await asyncio.sleep(0)
    return f"{node.id}-done"


def _failing_on(*node_ids):
    async def handler(dag_id, node):
        await asyncio.sleep(0)
        if node.id in node_ids:
            raise RuntimeError(f"{node.id} broke")
        return node.id

    return handler


def _gated(gate: asyncio.Event):
    async def handler(dag_id, node):
        await gate.wait()
        return node.id

    return handler


def _strategy_dag(strategy, deps, threshold=0, **handling):
    return DAGSpec(
        id="fh",
        nodes=[Node(id=nid, dependencies=d) for nid, d in deps.items()],
        execution_policy=ExecutionPolicy(failure_threshold=threshold),
        failure_handling=FailureHandling(strategy=strategy, **handling),
    )


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_single_node_dag(self, dag_factory):
        engine = WorkflowEngine()
        engine.register_handler("task", _ok)
        await engine.create_dag(dag_factory("single", {"n1": []}, max_concurrency=1, retry_attempts=3))

        result = await engine.start_workflow("single")
        assert result.success is True
        assert result.workflow_id == "single"

        status = await engine.wait_for_workflow("single", timeout=2)
        assert status.status == "completed"
        assert status.nodes["n1"].output == "n1-done"
        assert status.progress == 100.0

    @pytest.mark.asyncio
    async def test_validate_moves_to_validated(self, dag_factory):
        engine = WorkflowEngine()
        await engine.create_dag(dag_factory("v"))
        assert engine.validate_workflow("v").result is True
        assert engine.get_dag("v").status == DAGStatus.VALIDATED

    @pytest.mark.asyncio
    async def test_invalid_dag_fails_to_start(self, dag_factory):
        engine = WorkflowEngine()
        await engine.create_dag(dag_factory("cyc", {"a": ["b"], "b": ["a"]}))
        result = await engine.start_workflow("cyc")
        assert result.success is False
        assert "circular" in result.error
        assert engine.get_workflow_status("cyc").status == "failed"

    @pytest.mark.asyncio
    async def test_unknown_ids(self):
        engine = WorkflowEngine()
        assert (await engine.start_workflow("nope")).success is False
        assert await engine.pause_workflow("nope") is False
        assert await engine.resume_workflow("nope") is False
        assert await engine.cancel_workflow("nope") is False
        assert engine.get_workflow_status("nope").status == "unknown"
        assert engine.get_task_status("nope").status == "unknown"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, dag_factory):
        gate = asyncio.Event()
        engine = WorkflowEngine()
        engine.register_handler("task", _gated(gate))
        await engine.create_dag(dag_factory("pr", {"a": [], "b": ["a"]}))
        await engine.start_workflow("pr")
        await asyncio.sleep(0.01)

        assert await engine.pause_workflow("pr") is True
        assert await engine.pause_workflow("pr") is False
        assert engine.get_workflow_status("pr").status == "paused"

        # In-flight node finishes while paused; its dependent is not dispatched.
        gate.set()
        await asyncio.sleep(0.02)
        status = engine.get_workflow_status("pr")
        assert status.nodes["a"].status == NodeStatus.SUCCEEDED
        assert status.nodes["b"].status == NodeStatus.PENDING

        assert await engine.resume_workflow("pr") is True
        final = await engine.wait_for_workflow("pr", timeout=2)
        assert final.status == "completed"

    @pytest.mark.asyncio
    async def test_cancel_discards_inflight(self, dag_factory):
        gate = asyncio.Event()
        engine = WorkflowEngine()
        engine.register_handler("task", _gated(gate))
        await engine.create_dag(dag_factory("c", {"a": [], "b": ["a"]}))
        await engine.start_workflow("c")
        await asyncio.sleep(0.01)

        assert await engine.cancel_workflow("c") is True
        assert await engine.cancel_workflow("c") is False
        gate.set()
        status = await engine.wait_for_workflow("c", timeout=2)
        assert status.status == "cancelled"
        assert status.nodes["a"].status == NodeStatus.SKIPPED
        assert status.nodes["b"].status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_duplicate_active_dag_rejected(self, dag_factory):
        engine = WorkflowEngine()
        await engine.create_dag(dag_factory("dup"))
        with pytest.raises(LifecycleError):
            await engine.create_dag(dag_factory("dup"))

    @pytest.mark.asyncio
    async def test_terminal_dag_can_be_replaced(self, dag_factory):
        engine = WorkflowEngine()
        engine.register_handler("task", _ok)
        first = await engine.run_dag(dag_factory("again"))
        assert first.status == "completed"
        instance = await engine.create_dag(dag_factory("again"))
        assert instance.status == DAGStatus.CREATED

    @pytest.mark.asyncio
    async def test_update_dag_before_start(self, dag_factory):
        engine = WorkflowEngine()
        await engine.create_dag(dag_factory("u"))
        assert engine.update_dag("u", nodes=[Node(id="x"), Node(id="y", dependencies=["x"])]) is True
        assert set(engine.get_dag("u").nodes) == {"x", "y"}
        assert engine.update_dag("u", nodes=[Node(id="x", dependencies=["x"])]) is False
        assert engine.update_dag("missing", name="n") is False


# ── Scheduling ───────────────────────────────────────────────────────────────


class TestScheduling:
    @pytest.mark.asyncio
    async def test_dependencies_run_first(self, dag_factory):
        order = []

        async def record(dag_id, node):
            order.append(node.id)

        engine = WorkflowEngine(dispatcher=record)
        status = await engine.run_dag(
            dag_factory("order", {"load": ["transform"], "transform": ["extract"], "extract": []}),
            timeout=2,
        )
        assert status.status == "completed"
        assert order == ["extract", "transform", "load"]

    @pytest.mark.asyncio
    async def test_max_concurrency_is_respected(self, dag_factory):
        running = 0
        peak = 0

        async def track(dag_id, node):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        engine = WorkflowEngine(dispatcher=track)
        deps = {f"n{i}": [] for i in range(6)}
        status = await engine.run_dag(dag_factory("conc", deps, max_concurrency=2), timeout=2)
        assert status.status == "completed"
        assert peak == 2

    @pytest.mark.asyncio
    async def test_retry_attempts_without_policy(self, dag_factory):
        calls = {"n": 0}

        async def flaky(dag_id, node):
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("transient")
            return "ok"

        engine = WorkflowEngine(dispatcher=flaky)
        status = await engine.run_dag(dag_factory("retry", retry_attempts=2), timeout=2)
        assert status.status == "completed"
        assert status.nodes["n1"].attempts == 3

    @pytest.mark.asyncio
    async def test_node_retry_policy_exhausted(self):
        engine = WorkflowEngine(dispatcher=_failing_on("n1"))
        spec = DAGSpec(
            id="rp",
            nodes=[Node(id="n1", retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.001))],
        )
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "failed"
        assert status.nodes["n1"].attempts == 2
        assert "n1 broke" in status.nodes["n1"].last_error

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self):
        async def slow(dag_id, node):
            await asyncio.sleep(1.0)

        engine = WorkflowEngine(dispatcher=slow)
        spec = DAGSpec(id="to", nodes=[Node(id="n1", timeout=0.02)])
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "failed"
        assert "timed out" in status.nodes["n1"].last_error

    @pytest.mark.asyncio
    async def test_missing_handler_fails_node(self, dag_factory):
        engine = WorkflowEngine()
        status = await engine.run_dag(dag_factory("nohandler"), timeout=2)
        assert status.status == "failed"
        assert "No handler" in status.nodes["n1"].last_error

    @pytest.mark.asyncio
    async def test_empty_dag_completes(self):
        engine = WorkflowEngine()
        status = await engine.run_dag(DAGSpec(id="empty"), timeout=2)
        assert status.status == "completed"


# ── Failure strategies ───────────────────────────────────────────────────────


class TestFailureStrategies:
    @pytest.mark.asyncio
    async def test_stop_skips_the_rest(self):
        engine = WorkflowEngine(dispatcher=_failing_on("a"))
        spec = _strategy_dag(FailureStrategy.STOP, {"a": [], "c": ["a"]})
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "failed"
        assert status.failure_count == 1
        assert status.nodes["c"].status == NodeStatus.SKIPPED
        assert status.nodes["c"].blocked_by == "a"

    @pytest.mark.asyncio
    async def test_continue_runs_independent_branches(self):
        engine = WorkflowEngine(dispatcher=_failing_on("a"))
        spec = _strategy_dag(FailureStrategy.CONTINUE, {"a": [], "b": [], "c": ["a"], "d": ["b"]})
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "failed"
        assert status.nodes["b"].status == NodeStatus.SUCCEEDED
        assert status.nodes["d"].status == NodeStatus.SUCCEEDED
        assert status.nodes["c"].status == NodeStatus.SKIPPED
        assert "a" in status.nodes["c"].skip_reason

    @pytest.mark.asyncio
    async def test_failures_within_threshold_complete(self):
        engine = WorkflowEngine(dispatcher=_failing_on("a"))
        spec = _strategy_dag(FailureStrategy.CONTINUE, {"a": [], "b": []}, threshold=1)
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "completed"
        assert status.failure_count == 1

    @pytest.mark.asyncio
    async def test_compensate_enqueues_tasks_once(self):
        scheduler = TaskScheduler()
        engine = WorkflowEngine(dispatcher=_failing_on("a", "b"), scheduler=scheduler)
        spec = _strategy_dag(
            FailureStrategy.COMPENSATE, {"a": [], "b": []}, compensation_tasks=["rollback"]
        )
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "failed"

        compensation = engine.get_dag("fh").compensation_tasks
        assert len(compensation) == 1
        record = scheduler.get_task(compensation[0])
        assert record.task.type == "rollback"
        assert record.task.parameters["workflow_id"] == "fh"

    @pytest.mark.asyncio
    async def test_failure_notifies_channels(self):
        notified = []

        async def notifier(channel, payload):
            notified.append((channel, payload["status"]))

        engine = WorkflowEngine(dispatcher=_failing_on("a"), notifier=notifier)
        spec = _strategy_dag(FailureStrategy.STOP, {"a": []}, notification_channels=["ops", "audit"])
        await engine.run_dag(spec, timeout=2)
        assert notified == [("ops", "failed"), ("audit", "failed")]

    @pytest.mark.asyncio
    async def test_decision_branch_skips_untaken_path(self):
        async def decide(dag_id, node):
            return {"branch": "yes"}

        engine = WorkflowEngine(dispatcher=_ok)
        engine.register_handler("decision", decide)
        spec = DAGSpec(
            id="branch",
            nodes=[
                Node(id="check", type=NodeType.DECISION),
                Node(id="yes_path", dependencies=["check"]),
                Node(id="no_path", dependencies=["check"]),
                Node(id="after_no", dependencies=["no_path"]),
            ],
            edges=[
                Edge(id="e1", source="check", target="yes_path", type=EdgeType.CONDITIONAL, metadata={"condition": "yes"}),
                Edge(id="e2", source="check", target="no_path", type=EdgeType.CONDITIONAL, metadata={"condition": "no"}),
            ],
            failure_handling=FailureHandling(strategy=FailureStrategy.CONTINUE),
        )
        status = await engine.run_dag(spec, timeout=2)
        assert status.status == "completed"
        assert status.nodes["yes_path"].status == NodeStatus.SUCCEEDED
        assert status.nodes["no_path"].status == NodeStatus.SKIPPED
        assert status.nodes["no_path"].blocked_by is None
        # A branch skip is not a failure, so dependents still run under "continue".
        assert status.nodes["after_no"].status == NodeStatus.SUCCEEDED


# ── State export, retention, metrics ─────────────────────────────────────────


class TestStateAndMetrics:
    @pytest.mark.asyncio
    async def test_imported_running_dag_resumes(self, dag_factory):
        gate = asyncio.Event()
        source = WorkflowEngine()
        source.register_handler("task", _gated(gate))
        await source.create_dag(dag_factory("mv", {"a": [], "b": ["a"]}))
        await source.start_workflow("mv")
        await asyncio.sleep(0.01)

        states = source.export_state()
        target = WorkflowEngine(dispatcher=_ok)
        target.import_state(target.prepare_state(states))

        status = target.get_workflow_status("mv")
        assert status.status == "paused"
        assert status.nodes["a"].status == NodeStatus.PENDING

        assert await target.resume_workflow("mv") is True
        final = await target.wait_for_workflow("mv", timeout=2)
        assert final.status == "completed"

        gate.set()
        await source.wait_for_workflow("mv", timeout=2)

    @pytest.mark.asyncio
    async def test_default_policy_fills_omitted_execution_policy(self):
        engine = WorkflowEngine(dispatcher=_ok, default_policy=ExecutionPolicy(max_concurrency=2, retry_attempts=1))
        await engine.create_dag(DAGSpec(id="bare", nodes=[Node(id="a")]))
        await engine.create_dag(
            DAGSpec(id="explicit", nodes=[Node(id="a")], execution_policy=ExecutionPolicy(max_concurrency=5))
        )

        assert engine.get_dag("bare").spec.execution_policy.max_concurrency == 2
        assert engine.get_dag("bare").spec.execution_policy.retry_attempts == 1
        assert engine.get_dag("explicit").spec.execution_policy.max_concurrency == 5

    @pytest.mark.asyncio
    async def test_purge_terminal(self, dag_factory):
        engine = WorkflowEngine(dispatcher=_ok)
        await engine.run_dag(dag_factory("old"), timeout=2)
        await engine.create_dag(dag_factory("new"))
        assert engine.purge_terminal() == 1
        assert engine.list_workflows() == ["new"]

    @pytest.mark.asyncio
    async def test_system_metrics_and_task_status(self, dag_factory):
        metrics = MetricsCollector()
        engine = WorkflowEngine(dispatcher=_failing_on("b"), metrics=metrics)
        spec = _strategy_dag(FailureStrategy.CONTINUE, {"a": [], "b": []})
        await engine.run_dag(spec, timeout=2)

        summary = engine.get_system_metrics()
        assert summary.total_workflows == 1
        assert summary.failed_workflows == 1
        assert summary.total_nodes_executed == 2
        assert summary.success_rate == pytest.approx(50.0)

        assert engine.get_task_status("a").status == "succeeded"
        assert engine.get_task_status("b", dag_id="fh").status == "failed"
        assert await metrics.count("node_duration_seconds") == 2
        assert await metrics.count("workflow_duration_seconds", status="failed") == 1
