"""Tests for dagmesh.scheduler."""

import asyncio

import pytest

from dagmesh.models import FailureAction, RetryPolicy, Task, TaskState
from dagmesh.scheduler import TaskScheduler


async def _echo(task):
    await asyncio.sleep(0)
    return task.parameters.get("value")


async def _boom(task):
    raise RuntimeError("boom")


class TestQueue:
    def test_schedule_assigns_id_and_pending(self):
        scheduler = TaskScheduler()
        task_id = scheduler.schedule_task(Task(name="t"))
        assert task_id.startswith("task-")
        assert scheduler.get_task(task_id).status == TaskState.PENDING
        assert scheduler.pending_count() == 1

    def test_explicit_id_kept(self):
        scheduler = TaskScheduler()
        assert scheduler.schedule_task(Task(id="mine")) == "mine"

    def test_cancel_pending(self):
        scheduler = TaskScheduler()
        task_id = scheduler.schedule_task(Task())
        assert scheduler.cancel_task(task_id) is True
        assert scheduler.cancel_task(task_id) is False
        assert scheduler.get_task(task_id).status == TaskState.CANCELLED

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            TaskScheduler(max_concurrency=0)


class TestExecution:
    @pytest.mark.asyncio
    async def test_priority_then_fifo(self):
        order = []

        async def record(task):
            order.append(task.id)

        scheduler = TaskScheduler(max_concurrency=1, dispatcher=record)
        scheduler.schedule_task(Task(id="low-1", priority=0))
        scheduler.schedule_task(Task(id="high", priority=5))
        scheduler.schedule_task(Task(id="low-2", priority=0))

        results = await scheduler.execute_scheduled_tasks()
        assert [r.task_id for r in results] == ["high", "low-1", "low-2"]
        assert order == ["high", "low-1", "low-2"]
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_handler_by_type(self):
        scheduler = TaskScheduler()
        scheduler.register_handler("echo", _echo)
        task_id = scheduler.schedule_task(Task(type="echo", parameters={"value": 42}))
        [result] = await scheduler.execute_scheduled_tasks()
        assert result.success is True
        assert result.output == 42
        assert scheduler.get_task(task_id).status == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        running = 0
        peak = 0

        async def track(task):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        scheduler = TaskScheduler(max_concurrency=2, dispatcher=track)
        for _ in range(5):
            scheduler.schedule_task(Task())
        results = await scheduler.execute_scheduled_tasks()
        assert len(results) == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_retry_until_success(self):
        calls = {"n": 0}

        async def flaky(task):
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("transient")
            return "ok"

        scheduler = TaskScheduler(dispatcher=flaky)
        scheduler.schedule_task(
            Task(id="r", retry_policy=RetryPolicy(max_attempts=3, initial_delay=0.001))
        )
        [result] = await scheduler.execute_scheduled_tasks()
        assert result.success is True
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_fails_task(self):
        async def slow(task):
            await asyncio.sleep(1.0)

        scheduler = TaskScheduler(dispatcher=slow)
        scheduler.schedule_task(Task(id="slow", timeout=0.02))
        [result] = await scheduler.execute_scheduled_tasks()
        assert result.success is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_dependency_waits_and_blocks(self):
        order = []

        async def record(task):
            order.append(task.id)
            if task.id == "bad":
                raise RuntimeError("nope")

        scheduler = TaskScheduler(max_concurrency=4, dispatcher=record)
        scheduler.schedule_task(Task(id="second", dependencies=["first"], priority=10))
        scheduler.schedule_task(Task(id="first"))
        scheduler.schedule_task(Task(id="bad"))
        scheduler.schedule_task(Task(id="after-bad", dependencies=["bad"]))

        results = {r.task_id: r for r in await scheduler.execute_scheduled_tasks()}
        assert order.index("first") < order.index("second")
        assert results["second"].success is True
        assert results["after-bad"].success is False
        assert "bad" in results["after-bad"].error

    @pytest.mark.asyncio
    async def test_circular_tasks_fail_without_hanging(self):
        scheduler = TaskScheduler(dispatcher=_echo)
        scheduler.schedule_task(Task(id="a", dependencies=["b"]))
        scheduler.schedule_task(Task(id="b", dependencies=["a"]))
        results = await asyncio.wait_for(scheduler.execute_scheduled_tasks(), timeout=2)
        assert [r.success for r in results] == [False, False]

    @pytest.mark.asyncio
    async def test_empty_queue(self):
        assert await TaskScheduler().execute_scheduled_tasks() == []


class TestFailureHandling:
    def test_unknown_task(self):
        result = TaskScheduler().handle_task_failure("ghost", "it broke")
        assert result.success is False
        assert result.task_id == "ghost"
        assert result.error == "it broke"

    @pytest.mark.asyncio
    async def test_finished_tasks_are_not_revived(self):
        scheduler = TaskScheduler()
        scheduler.register_handler("echo", _echo)
        policy = RetryPolicy(max_attempts=5)
        done_id = scheduler.schedule_task(Task(id="done", type="echo", retry_policy=policy))
        await scheduler.execute_scheduled_tasks()
        cancelled_id = scheduler.schedule_task(Task(id="dropped", type="echo", retry_policy=policy))
        assert scheduler.cancel_task(cancelled_id) is True

        for task_id, state in ((done_id, TaskState.COMPLETED), (cancelled_id, TaskState.CANCELLED)):
            result = scheduler.handle_task_failure(task_id, "late failure")
            assert result.success is False
            assert result.task_id == task_id
            assert result.error == "late failure"
            assert scheduler.get_task(task_id).status == state
        assert scheduler.pending_count() == 0
        assert await scheduler.execute_scheduled_tasks() == []

    def test_retry_action_requeues(self):
        scheduler = TaskScheduler()
        task_id = scheduler.schedule_task(
            Task(retry_policy=RetryPolicy(max_attempts=3, backoff_strategy="linear", initial_delay=2.0))
        )
        scheduler.get_task(task_id).attempts = 2
        result = scheduler.handle_task_failure(task_id, "flaky")
        assert result.success is True
        assert result.action == FailureAction.RETRY
        assert result.retry_delay == pytest.approx(4.0)
        assert scheduler.get_task(task_id).status == TaskState.PENDING

    def test_compensate_action_schedules_tasks(self):
        scheduler = TaskScheduler()
        task_id = scheduler.schedule_task(Task(metadata={"compensation_tasks": ["undo", "notify"]}))
        result = scheduler.handle_task_failure(task_id, "fatal")
        assert result.action == FailureAction.COMPENSATE
        assert len(result.compensation_tasks) == 2
        types = [scheduler.get_task(t).task.type for t in result.compensation_tasks]
        assert types == ["undo", "notify"]
        assert scheduler.get_task(task_id).status == TaskState.FAILED

    @pytest.mark.asyncio
    async def test_fail_action_when_nothing_else(self):
        scheduler = TaskScheduler(dispatcher=_boom)
        task_id = scheduler.schedule_task(Task())
        [result] = await scheduler.execute_scheduled_tasks()
        assert result.success is False
        assert "boom" in result.error
        assert scheduler.get_task(task_id).status == TaskState.FAILED
        assert scheduler.handle_task_failure(task_id, "again").action == FailureAction.FAIL


@pytest.mark.parametrize(
    "strategy, delays",
    [
        ("linear", [1.0, 2.0, 3.0, 4.0]),
        ("exponential", [1.0, 2.0, 4.0, 5.0]),
        ("constant", [1.0, 1.0, 1.0, 1.0]),
    ],
)
def test_backoff_delays_are_capped(strategy, delays):
    policy = RetryPolicy(max_attempts=5, backoff_strategy=strategy, initial_delay=1.0, max_delay=5.0)
    assert [policy.calculate_delay(n) for n in range(1, 5)] == delays
