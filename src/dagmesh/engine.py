"""
dagmesh Workflow Engine
=======================

Owns DAG instances and runs one scheduler loop per running DAG.

Architecture:
- State machine per DAG: created -> validating -> validated -> running
  <-> paused, ending in completed / cancelled / failed.
- The scheduler loop is a background asyncio task. Each round it skips nodes
  that can no longer run, dispatches eligible nodes (ascending id) up to
  ``execution_policy.max_concurrency``, then waits for the first in-flight
  node to finish or for a control change (pause/resume/cancel).
- Node dispatch races the handler against the node deadline and retries
  through tenacity. A timeout is an ordinary failure.
- Failures past ``failure_threshold`` apply the DAG's failure strategy
  (stop / continue / compensate).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

import networkx as nx
from tenacity import AsyncRetrying, retry_if_exception_type

from dagmesh.errors import ExecutionError, ExecutionTimeout, LifecycleError
from dagmesh.graph import build_dependency_graph, topological_order, validate_dag
from dagmesh.models import (
    DAGInstance,
    DAGSpec,
    DAGStatus,
    EdgeType,
    EngineMetrics,
    ExecutionPolicy,
    FailureStrategy,
    Node,
    NodeRecord,
    NodeStatus,
    NodeType,
    Task,
    TaskStatusView,
    ValidationResult,
    WorkflowStartResult,
    WorkflowStatus,
)
from dagmesh.observability.metrics import MetricsCollector

if TYPE_CHECKING:
    from dagmesh.scheduler import TaskScheduler

logger = logging.getLogger("dagmesh.engine")

NodeHandler = Callable[[str, Node], Awaitable[Any]]
Notifier = Callable[[str, Dict[str, Any]], Awaitable[Any]]

_STARTABLE = (DAGStatus.CREATED, DAGStatus.VALIDATED)
_ACTIVE = (DAGStatus.RUNNING, DAGStatus.PAUSED)


@dataclass
class _DagRun:
    """Loop-private state for one running DAG."""

    instance: DAGInstance
    graph: nx.DiGraph
    order: List[str]
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    inflight: Dict[asyncio.Task, str] = field(default_factory=dict)
    loop_task: Optional[asyncio.Task] = None
    stale: bool = False   # set when engine state is replaced under a live loop


def _discard_result(task: asyncio.Task) -> None:
    # Results of abandoned dispatches are ignored; retrieve the exception so
    # asyncio does not log it as never retrieved.
    if not task.cancelled():
        task.exception()


class WorkflowEngine:
    """DAG workflow engine with bounded concurrency, retries and failure policies.

    Handlers are looked up by ``node.task_type``, then by ``node.type``; the
    optional ``dispatcher`` handles everything else. Every handler is called
    as ``await handler(dag_id, node)``. Specs that do not set an
    ``execution_policy`` run under ``default_policy`` when one is given.

    Usage:
        engine = WorkflowEngine()
        engine.register_handler("extract", extract_fn)
        await engine.create_dag(spec)
        await engine.start_workflow(spec.id)
        status = await engine.wait_for_workflow(spec.id)
    """

    def __init__(
        self,
        dispatcher: Optional[NodeHandler] = None,
        scheduler: Optional["TaskScheduler"] = None,
        notifier: Optional[Notifier] = None,
        metrics: Optional[MetricsCollector] = None,
        retention_seconds: Optional[float] = None,
        default_policy: Optional[ExecutionPolicy] = None,
    ):
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._notifier = notifier
        self._metrics = metrics
        self._retention_seconds = retention_seconds
        self.default_policy = default_policy
        self._handlers: Dict[str, NodeHandler] = {}
        self._dags: Dict[str, DAGInstance] = {}
        self._runs: Dict[str, _DagRun] = {}

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_handler(self, task_type: str, handler: NodeHandler) -> None:
        self._handlers[task_type] = handler

    def set_dispatcher(self, dispatcher: Optional[NodeHandler]) -> None:
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # DAG lifecycle
    # ------------------------------------------------------------------

    async def create_dag(self, spec: DAGSpec) -> DAGInstance:
        """Register a DAG in the ``created`` state.

        Raises:
            LifecycleError: If a non-terminal DAG with the same id exists.
        """
        self._purge_expired()
        existing = self._dags.get(spec.id)
        if existing is not None and not existing.status.is_terminal:
            raise LifecycleError(f"DAG '{spec.id}' already exists in state {existing.status.value}")

        if self.default_policy is not None and "execution_policy" not in spec.model_fields_set:
            spec = spec.model_copy(update={"execution_policy": self.default_policy})

        instance = DAGInstance(
            id=spec.id,
            spec=spec.model_copy(deep=True),
            nodes={node.id: NodeRecord(node_id=node.id) for node in spec.nodes},
        )
        self._dags[spec.id] = instance
        self._runs.pop(spec.id, None)
        logger.info(f"DAG {spec.id} created ({len(spec.nodes)} nodes, {len(spec.edges)} edges)")
        return instance

    def update_dag(self, dag_id: str, **changes: Any) -> bool:
        """Replace fields of a DAG spec before it starts. The id cannot change."""
        instance = self._dags.get(dag_id)
        if instance is None or instance.status not in _STARTABLE:
            return False

        changes.pop("id", None)
        try:
            updated = DAGSpec.model_validate({**instance.spec.model_dump(), **changes, "id": dag_id})
        except ValueError as e:
            logger.warning(f"DAG {dag_id} update rejected: {e}")
            return False

        validation = validate_dag(updated)
        if not validation.result:
            logger.warning(f"DAG {dag_id} update rejected: {validation.reason}")
            return False

        instance.spec = updated
        instance.nodes = {node.id: NodeRecord(node_id=node.id) for node in updated.nodes}
        instance.status = DAGStatus.CREATED
        logger.info(f"DAG {dag_id} updated")
        return True

    def validate_workflow(self, dag_id: str) -> ValidationResult:
        """Run the validating step: created/validated -> validated, or -> failed."""
        instance = self._dags.get(dag_id)
        if instance is None:
            return ValidationResult.fail(f"Workflow not found: {dag_id}", type="unknown_workflow")
        if instance.status not in _STARTABLE:
            return ValidationResult.fail(
                f"Workflow {dag_id} cannot be validated in state {instance.status.value}",
                type="invalid_state",
            )

        instance.status = DAGStatus.VALIDATING
        result = validate_dag(instance.spec)
        if result.result:
            instance.status = DAGStatus.VALIDATED
        else:
            instance.status = DAGStatus.FAILED
            instance.error = result.reason
            instance.finished_at = time.time()
            logger.warning(f"DAG {dag_id} failed validation: {result.reason}")
        return result

    async def start_workflow(self, dag_id: str) -> WorkflowStartResult:
        """Validate (if needed) and start the scheduler loop in the background."""
        instance = self._dags.get(dag_id)
        if instance is None:
            return WorkflowStartResult(
                success=False, workflow_id=dag_id, error=f"Workflow not found: {dag_id}"
            )
        if instance.status not in _STARTABLE:
            return WorkflowStartResult(
                success=False,
                workflow_id=dag_id,
                execution_id=instance.execution_id,
                status=instance.status.value,
                error=f"Workflow {dag_id} cannot start from state {instance.status.value}",
            )

        if instance.status == DAGStatus.CREATED:
            validation = self.validate_workflow(dag_id)
            if not validation.result:
                return WorkflowStartResult(
                    success=False,
                    workflow_id=dag_id,
                    execution_id=instance.execution_id,
                    status=instance.status.value,
                    error=validation.reason,
                )

        instance.status = DAGStatus.RUNNING
        instance.started_at = time.time()
        self._launch(instance)
        logger.info(f"DAG {dag_id} started (execution {instance.execution_id})")
        return WorkflowStartResult(
            success=True,
            workflow_id=dag_id,
            execution_id=instance.execution_id,
            status=instance.status.value,
        )

    async def pause_workflow(self, dag_id: str) -> bool:
        instance = self._dags.get(dag_id)
        if instance is None or instance.status != DAGStatus.RUNNING:
            return False
        instance.status = DAGStatus.PAUSED
        self._wake(dag_id)
        logger.info(f"DAG {dag_id} paused")
        return True

    async def resume_workflow(self, dag_id: str) -> bool:
        instance = self._dags.get(dag_id)
        if instance is None or instance.status != DAGStatus.PAUSED:
            return False
        instance.status = DAGStatus.RUNNING
        run = self._runs.get(dag_id)
        if run is None or run.loop_task is None or run.loop_task.done():
            self._launch(instance)
        else:
            run.wake.set()
        logger.info(f"DAG {dag_id} resumed")
        return True

    async def cancel_workflow(self, dag_id: str) -> bool:
        instance = self._dags.get(dag_id)
        if instance is None or instance.status not in _ACTIVE:
            return False
        run = self._runs.get(dag_id)
        if run is not None:
            await self._terminate(run, DAGStatus.CANCELLED, notify=False)
        else:
            self._close(instance, DAGStatus.CANCELLED)
        logger.info(f"DAG {dag_id} cancelled")
        return True

    async def wait_for_workflow(self, dag_id: str, timeout: Optional[float] = None) -> WorkflowStatus:
        """Wait for the DAG's scheduler loop to finish.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first. The DAG keeps running.
        """
        run = self._runs.get(dag_id)
        if run is not None and run.loop_task is not None and not run.loop_task.done():
            await asyncio.wait_for(asyncio.shield(run.loop_task), timeout)
        return self.get_workflow_status(dag_id)

    async def run_dag(self, spec: DAGSpec, timeout: Optional[float] = None) -> WorkflowStatus:
        """Create, start and wait for a DAG."""
        await self.create_dag(spec)
        started = await self.start_workflow(spec.id)
        if not started.success:
            return self.get_workflow_status(spec.id)
        return await self.wait_for_workflow(spec.id, timeout)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_dag(self, dag_id: str) -> Optional[DAGInstance]:
        return self._dags.get(dag_id)

    def list_workflows(self) -> List[str]:
        return list(self._dags)

    def active_workflows(self) -> List[str]:
        return [dag_id for dag_id, inst in self._dags.items() if inst.status in _ACTIVE]

    def get_workflow_status(self, dag_id: str) -> WorkflowStatus:
        instance = self._dags.get(dag_id)
        if instance is None:
            return WorkflowStatus(workflow_id=dag_id)

        records = instance.nodes.values()
        total = len(instance.nodes)
        succeeded = sum(1 for r in records if r.status == NodeStatus.SUCCEEDED)
        terminal = sum(1 for r in records if r.status.is_terminal)
        return WorkflowStatus(
            workflow_id=dag_id,
            status=instance.status.value,
            execution_id=instance.execution_id,
            progress=(terminal / total * 100.0) if total else 100.0 * instance.status.is_terminal,
            total_nodes=total,
            succeeded_nodes=succeeded,
            failed_nodes=sum(1 for r in records if r.status == NodeStatus.FAILED),
            skipped_nodes=sum(1 for r in records if r.status == NodeStatus.SKIPPED),
            failure_count=instance.failure_count,
            started_at=instance.started_at,
            finished_at=instance.finished_at,
            error=instance.error,
            nodes={k: v.model_copy(deep=True) for k, v in instance.nodes.items()},
        )

    def get_task_status(self, task_id: str, dag_id: Optional[str] = None) -> TaskStatusView:
        """Status of a scheduled task or a DAG node; ``status="unknown"`` if absent."""
        if dag_id is None and self._scheduler is not None:
            record = self._scheduler.get_task(task_id)
            if record is not None:
                return TaskStatusView(
                    task_id=task_id,
                    status=record.status.value,
                    attempts=record.attempts,
                    error=record.error,
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                )

        candidates = [self._dags[dag_id]] if dag_id in self._dags else (
            [] if dag_id is not None else sorted(self._dags.values(), key=lambda d: -d.created_at)
        )
        for instance in candidates:
            node_record = instance.nodes.get(task_id)
            if node_record is not None:
                return TaskStatusView(
                    task_id=task_id,
                    status=node_record.status.value,
                    workflow_id=instance.id,
                    attempts=node_record.attempts,
                    error=node_record.last_error,
                    started_at=node_record.started_at,
                    finished_at=node_record.finished_at,
                )
        return TaskStatusView(task_id=task_id, workflow_id=dag_id)

    def get_system_metrics(self) -> EngineMetrics:
        statuses = [inst.status for inst in self._dags.values()]
        executed = [
            rec for inst in self._dags.values() for rec in inst.nodes.values()
            if rec.status in (NodeStatus.SUCCEEDED, NodeStatus.FAILED)
        ]
        succeeded = sum(1 for rec in executed if rec.status == NodeStatus.SUCCEEDED)
        durations = [rec.duration for rec in executed if rec.duration is not None]
        return EngineMetrics(
            total_workflows=len(statuses),
            active_workflows=sum(1 for s in statuses if s in _ACTIVE),
            completed_workflows=statuses.count(DAGStatus.COMPLETED),
            failed_workflows=statuses.count(DAGStatus.FAILED),
            cancelled_workflows=statuses.count(DAGStatus.CANCELLED),
            total_nodes_executed=len(executed),
            success_rate=(succeeded / len(executed) * 100.0) if executed else 0.0,
            average_node_duration=(sum(durations) / len(durations)) if durations else 0.0,
        )

    # ------------------------------------------------------------------
    # Snapshot support and retention
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, DAGInstance]:
        """Deep copy of every DAG runtime record."""
        return {dag_id: inst.model_copy(deep=True) for dag_id, inst in self._dags.items()}

    def prepare_state(self, states: Dict[str, DAGInstance]) -> Dict[str, DAGInstance]:
        """Copy snapshot records into a form a fresh engine can hold.

        Running DAGs come back paused with their running nodes pending, since
        the dispatches they were waiting on belong to the old loop.
        """
        prepared: Dict[str, DAGInstance] = {}
        for dag_id, state in states.items():
            inst = state.model_copy(deep=True)
            if inst.status == DAGStatus.RUNNING:
                inst.status = DAGStatus.PAUSED
            elif inst.status == DAGStatus.VALIDATING:
                inst.status = DAGStatus.CREATED
            for record in inst.nodes.values():
                if record.status == NodeStatus.RUNNING:
                    record.status = NodeStatus.PENDING
                    record.started_at = None
            prepared[dag_id] = inst
        return prepared

    def import_state(self, prepared: Dict[str, DAGInstance]) -> None:
        """Replace all DAG state. Live loops are detached and their results dropped."""
        for run in self._runs.values():
            run.stale = True
            self._abandon_inflight(run)
            run.wake.set()
        self._runs = {}
        self._dags = dict(prepared)
        logger.info(f"Engine state replaced ({len(prepared)} DAGs)")

    def purge_terminal(self, max_age: Optional[float] = None) -> int:
        """Drop terminal DAGs that finished more than ``max_age`` seconds ago (all if None)."""
        now = time.time()
        doomed = [
            dag_id for dag_id, inst in self._dags.items()
            if inst.status.is_terminal
            and (max_age is None or (inst.finished_at or now) <= now - max_age)
        ]
        for dag_id in doomed:
            self._dags.pop(dag_id, None)
            self._runs.pop(dag_id, None)
        if doomed:
            logger.info(f"Purged {len(doomed)} finished DAGs")
        return len(doomed)

    def _purge_expired(self) -> None:
        if self._retention_seconds is not None:
            self.purge_terminal(self._retention_seconds)

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    def _launch(self, instance: DAGInstance) -> None:
        graph = build_dependency_graph(instance.spec)
        run = _DagRun(instance=instance, graph=graph, order=topological_order(graph))
        run.loop_task = asyncio.create_task(self._run_loop(run), name=f"dag-{instance.id}")
        self._runs[instance.id] = run

    def _wake(self, dag_id: str) -> None:
        run = self._runs.get(dag_id)
        if run is not None:
            run.wake.set()

    async def _run_loop(self, run: _DagRun) -> None:
        instance = run.instance
        policy = instance.spec.execution_policy
        nodes = instance.spec.node_map()

        try:
            while not run.stale and not instance.status.is_terminal:
                if instance.status == DAGStatus.RUNNING:
                    for node_id in self._collect_eligible(run, nodes):
                        if len(run.inflight) >= policy.max_concurrency:
                            break
                        self._dispatch(run, nodes[node_id])

                if not run.inflight:
                    if instance.status == DAGStatus.PAUSED:
                        await run.wake.wait()
                        run.wake.clear()
                        continue
                    if instance.status == DAGStatus.RUNNING:
                        await self._finalize(run)
                    break

                waiter = asyncio.ensure_future(run.wake.wait())
                try:
                    done, _ = await asyncio.wait(
                        {*run.inflight, waiter}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    waiter.cancel()
                run.wake.clear()

                for task in sorted(done, key=lambda t: run.inflight.get(t, "")):
                    node_id = run.inflight.pop(task, None)
                    if node_id is not None:
                        await self._on_node_done(run, nodes[node_id], task)

        except asyncio.CancelledError:
            self._abandon_inflight(run)
            raise
        except Exception as e:
            logger.error(f"Scheduler loop for DAG {instance.id} crashed: {e}", exc_info=True)
            if not run.stale and not instance.status.is_terminal:
                await self._terminate(run, DAGStatus.FAILED, error=f"scheduler error: {e}")

    def _collect_eligible(self, run: _DagRun, nodes: Dict[str, Node]) -> List[str]:
        """Skip pending nodes that can no longer run; return the ready ones.

        Walks nodes in topological order so a skip cascades to every
        dependent in a single pass.
        """
        records = run.instance.nodes
        lenient = run.instance.spec.failure_handling.strategy in (
            FailureStrategy.CONTINUE,
            FailureStrategy.COMPENSATE,
        )
        eligible = []
        for node_id in run.order:
            record = records[node_id]
            if record.status != NodeStatus.PENDING:
                continue
            waiting = False
            blocker: Optional[NodeRecord] = None
            for dep in nodes[node_id].dependencies:
                dep_record = records[dep]
                if dep_record.status == NodeStatus.SUCCEEDED:
                    continue
                if dep_record.status == NodeStatus.SKIPPED and lenient and dep_record.blocked_by is None:
                    continue
                if dep_record.status in (NodeStatus.FAILED, NodeStatus.SKIPPED):
                    blocker = dep_record
                    break
                waiting = True

            if blocker is not None:
                if blocker.status == NodeStatus.FAILED:
                    blocked_by = blocker.node_id
                else:
                    blocked_by = blocker.blocked_by
                self._skip(record, f"dependency '{blocker.node_id}' {blocker.status.value}", blocked_by)
            elif not waiting:
                eligible.append(node_id)
        return sorted(eligible)

    def _dispatch(self, run: _DagRun, node: Node) -> None:
        record = run.instance.nodes[node.id]
        record.status = NodeStatus.RUNNING
        record.started_at = time.time()
        task = asyncio.create_task(
            self._execute_node(run, node), name=f"dag-{run.instance.id}-{node.id}"
        )
        run.inflight[task] = node.id
        logger.debug(f"DAG {run.instance.id}: dispatched {node.id}")

    async def _execute_node(self, run: _DagRun, node: Node) -> Any:
        policy = run.instance.spec.execution_policy
        retry_policy = node.retry_policy
        max_attempts = retry_policy.max_attempts if retry_policy else policy.retry_attempts + 1
        timeout = node.timeout if node.timeout is not None else policy.timeout
        record = run.instance.nodes[node.id]

        def stop(retry_state) -> bool:
            return (
                retry_state.attempt_number >= max_attempts
                or run.stale
                or run.instance.status.is_terminal
            )

        def wait(retry_state) -> float:
            return retry_policy.calculate_delay(retry_state.attempt_number) if retry_policy else 0.0

        def before_sleep(retry_state) -> None:
            logger.warning(
                f"DAG {run.instance.id}: node {node.id} attempt {retry_state.attempt_number}/"
                f"{max_attempts} failed: {retry_state.outcome.exception()}"
            )

        output = None
        async for attempt in AsyncRetrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type(ExecutionError),
            before_sleep=before_sleep,
            reraise=True,
        ):
            with attempt:
                record.attempts += 1
                output = await self._invoke(run.instance.id, node, timeout)
        return output

    async def _invoke(self, dag_id: str, node: Node, timeout: Optional[float]) -> Any:
        handler = (
            (self._handlers.get(node.task_type) if node.task_type else None)
            or self._handlers.get(node.type.value)
            or self._dispatcher
        )
        if handler is None:
            raise ExecutionError(
                f"No handler for node '{node.id}' (task_type={node.task_type or node.type.value})"
            )
        try:
            if timeout:
                return await asyncio.wait_for(handler(dag_id, node), timeout)
            return await handler(dag_id, node)
        except asyncio.TimeoutError as e:
            raise ExecutionTimeout(f"Node '{node.id}' timed out after {timeout}s") from e
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{type(e).__name__}: {e}") from e

    async def _on_node_done(self, run: _DagRun, node: Node, task: asyncio.Task) -> None:
        instance = run.instance
        if run.stale or instance.status.is_terminal:
            return

        record = instance.nodes[node.id]
        record.finished_at = time.time()
        exc = None if not task.cancelled() else ExecutionError("dispatch cancelled")
        if exc is None:
            exc = task.exception()

        if exc is None:
            record.status = NodeStatus.SUCCEEDED
            record.output = task.result()
            record.last_error = None
            if node.type == NodeType.DECISION:
                self._apply_branch(run, node, record.output)
            logger.info(f"DAG {instance.id}: node {node.id} succeeded ({record.attempts} attempt(s))")
        else:
            record.status = NodeStatus.FAILED
            record.last_error = str(exc)
            instance.failure_count += 1
            logger.warning(
                f"DAG {instance.id}: node {node.id} failed after {record.attempts} attempt(s): {exc}"
            )

        if self._metrics is not None:
            await self._metrics.record(
                "node_duration_seconds",
                record.duration or 0.0,
                dag=instance.id,
                node=node.id,
                status=record.status.value,
            )

        threshold = instance.spec.execution_policy.failure_threshold
        if record.status == NodeStatus.FAILED and instance.failure_count > threshold:
            await self._on_threshold_breach(run)

    def _apply_branch(self, run: _DagRun, node: Node, output: Any) -> None:
        """Skip targets of conditional edges whose condition the decision did not pick."""
        if not isinstance(output, dict) or "branch" not in output:
            return
        branch = output["branch"]
        for edge in run.instance.spec.edges:
            if edge.source != node.id or edge.type != EdgeType.CONDITIONAL:
                continue
            if edge.metadata.get("condition") == branch:
                continue
            target = run.instance.nodes.get(edge.target)
            if target is not None and target.status == NodeStatus.PENDING:
                self._skip(target, f"branch '{branch}' of {node.id} not taken", blocked_by=None)

    async def _on_threshold_breach(self, run: _DagRun) -> None:
        instance = run.instance
        policy = instance.spec.execution_policy
        strategy = instance.spec.failure_handling.strategy
        first_breach = not instance.threshold_breached
        instance.threshold_breached = True
        reason = f"failure threshold exceeded ({instance.failure_count} > {policy.failure_threshold})"

        if strategy == FailureStrategy.STOP:
            logger.error(f"DAG {instance.id}: {reason}; stopping")
            await self._terminate(run, DAGStatus.FAILED, error=reason)
            return

        if first_breach:
            logger.error(f"DAG {instance.id}: {reason}; strategy={strategy.value}")
            instance.error = reason
            if strategy == FailureStrategy.COMPENSATE:
                self._enqueue_compensation(instance)

    def _enqueue_compensation(self, instance: DAGInstance) -> None:
        failed = [r.node_id for r in instance.nodes.values() if r.status == NodeStatus.FAILED]
        for task_type in instance.spec.failure_handling.compensation_tasks:
            if self._scheduler is None:
                logger.warning(
                    f"DAG {instance.id}: no scheduler, dropping compensation task {task_type}"
                )
                continue
            task_id = self._scheduler.schedule_task(
                Task(
                    name=f"compensate:{task_type}",
                    type=task_type,
                    parameters={"workflow_id": instance.id, "failed_nodes": failed},
                    metadata={"compensates": instance.id},
                )
            )
            instance.compensation_tasks.append(task_id)
        if instance.compensation_tasks:
            logger.info(
                f"DAG {instance.id}: enqueued {len(instance.compensation_tasks)} compensation task(s)"
            )

    async def _finalize(self, run: _DagRun) -> None:
        instance = run.instance
        for record in instance.nodes.values():
            if record.status == NodeStatus.PENDING:
                self._skip(record, "unreachable", blocked_by=None)
        status = DAGStatus.FAILED if instance.threshold_breached else DAGStatus.COMPLETED
        await self._terminate(run, status, error=instance.error)

    async def _terminate(
        self,
        run: _DagRun,
        status: DAGStatus,
        error: Optional[str] = None,
        notify: bool = True,
    ) -> None:
        instance = run.instance
        self._abandon_inflight(run)
        self._collect_eligible(run, instance.spec.node_map())   # marks dependents of failed nodes
        self._close(instance, status, error)
        run.wake.set()
        logger.info(
            f"DAG {instance.id} {status.value} "
            f"(failures={instance.failure_count}, execution {instance.execution_id})"
        )

        if self._metrics is not None and instance.started_at is not None:
            await self._metrics.record(
                "workflow_duration_seconds",
                (instance.finished_at or time.time()) - instance.started_at,
                workflow=instance.id,
                status=status.value,
            )
        if notify and status == DAGStatus.FAILED:
            await self._notify(instance)

    def _close(self, instance: DAGInstance, status: DAGStatus, error: Optional[str] = None) -> None:
        for record in instance.nodes.values():
            if not record.status.is_terminal:
                self._skip(record, f"workflow {status.value}", blocked_by=None)
        instance.status = status
        instance.finished_at = time.time()
        if error:
            instance.error = error

    def _abandon_inflight(self, run: _DagRun) -> None:
        for task in run.inflight:
            task.add_done_callback(_discard_result)
        run.inflight.clear()

    async def _notify(self, instance: DAGInstance) -> None:
        channels = instance.spec.failure_handling.notification_channels
        if not channels:
            return
        payload = {
            "workflow_id": instance.id,
            "execution_id": instance.execution_id,
            "status": instance.status.value,
            "error": instance.error,
            "failed_nodes": [
                r.node_id for r in instance.nodes.values() if r.status == NodeStatus.FAILED
            ],
        }
        for channel in channels:
            if self._notifier is None:
                logger.warning(f"DAG {instance.id} failed; no notifier for channel {channel}")
                continue
            try:
                await self._notifier(channel, payload)
            except Exception as e:
                logger.warning(f"Notification to {channel} for DAG {instance.id} failed: {e}")

    @staticmethod
    def _skip(record: NodeRecord, reason: str, blocked_by: Optional[str]) -> None:
        record.status = NodeStatus.SKIPPED
        record.skip_reason = reason
        record.blocked_by = blocked_by
        if record.finished_at is None:
            record.finished_at = time.time()
