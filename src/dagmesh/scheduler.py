"""
dagmesh Task Scheduler
======================

Priority queue of standalone tasks with bounded concurrent execution,
per-task deadlines, retry with backoff and compensation on final failure.

Usage:
    scheduler = TaskScheduler(max_concurrency=2)
    scheduler.register_handler("email", send_email)
    scheduler.schedule_task(Task(type="email", parameters={"to": "ops"}))
    results = await scheduler.execute_scheduled_tasks()
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from dagmesh.errors import ExecutionError, ExecutionTimeout
from dagmesh.graph import resolve_dependencies
from dagmesh.models import (
    FailureAction,
    FailureHandlingResult,
    Task,
    TaskRecord,
    TaskResult,
    TaskState,
    new_id,
)
from dagmesh.observability.metrics import MetricsCollector

logger = logging.getLogger("dagmesh.scheduler")

TaskHandler = Callable[[Task], Awaitable[Any]]


class TaskScheduler:
    """Queue and run tasks by priority (higher first), then submission order.

    Handlers are looked up by ``task.type``; the optional ``dispatcher``
    handles every other type. A task's ``dependencies`` name other task ids:
    the task waits for them within the same drain and fails if any of them
    did not complete.
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        task_timeout: Optional[float] = 30.0,
        dispatcher: Optional[TaskHandler] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.task_timeout = task_timeout
        self._dispatcher = dispatcher
        self._metrics = metrics
        self._handlers: Dict[str, TaskHandler] = {}
        self._tasks: Dict[str, TaskRecord] = {}
        self._queue: List[tuple[int, int, str]] = []   # (-priority, seq, task_id)
        self._seq = itertools.count()
        self._active: set[str] = set()

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def schedule_task(self, task: Task) -> str:
        """Enqueue a task as pending and return its id. Does not execute it."""
        if not task.id:
            task = task.model_copy(update={"id": new_id("task")})
        self._tasks[task.id] = TaskRecord(task=task)
        self._push(task)
        logger.debug(f"Scheduled task {task.id} (type={task.type}, priority={task.priority})")
        return task.id

    def _push(self, task: Task) -> None:
        heapq.heappush(self._queue, (-task.priority, next(self._seq), task.id))

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        return self._tasks.get(task_id)

    def cancel_task(self, task_id: str) -> bool:
        record = self._tasks.get(task_id)
        if record is None or record.status != TaskState.PENDING or task_id in self._active:
            return False
        record.status = TaskState.CANCELLED
        record.finished_at = time.time()
        return True

    def pending_count(self) -> int:
        return sum(1 for r in self._tasks.values() if r.status == TaskState.PENDING)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_scheduled_tasks(self) -> List[TaskResult]:
        """Drain the queue; return one result per task, in dequeue order."""
        batch: List[str] = []
        while self._queue:
            _, _, task_id = heapq.heappop(self._queue)
            record = self._tasks.get(task_id)
            if record is None or record.status != TaskState.PENDING:
                continue
            if task_id in self._active or task_id in batch:
                continue
            batch.append(task_id)

        if not batch:
            return []

        in_batch = set(batch)
        resolution = resolve_dependencies(
            batch,
            dependency_map={
                tid: [d for d in self._tasks[tid].task.dependencies if d in in_batch]
                for tid in batch
            },
        )
        circular = set(resolution.circular_dependencies)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        finished = {task_id: asyncio.Event() for task_id in batch}
        logger.info(f"Executing {len(batch)} scheduled task(s)")
        results = await asyncio.gather(
            *(self._drive(task_id, semaphore, finished, task_id in circular) for task_id in batch)
        )
        return list(results)

    async def _drive(
        self,
        task_id: str,
        semaphore: asyncio.Semaphore,
        finished: Dict[str, asyncio.Event],
        circular: bool,
    ) -> TaskResult:
        record = self._tasks[task_id]
        task = record.task
        start = time.monotonic()
        self._active.add(task_id)
        try:
            blocked = "circular task dependency" if circular else await self._wait_for_dependencies(task, finished)
            if blocked:
                self._finish(record, TaskState.FAILED, error=blocked)
                logger.warning(f"Task {task_id} not run: {blocked}")
                return TaskResult(task_id=task_id, success=False, error=blocked, duration=0.0)

            while True:
                async with semaphore:
                    record.status = TaskState.RUNNING
                    record.started_at = record.started_at or time.time()
                    record.next_attempt_at = None
                    record.attempts += 1
                    try:
                        output = await self._invoke(task)
                    except ExecutionError as e:
                        error = str(e)
                    else:
                        record.output = output
                        self._finish(record, TaskState.COMPLETED)
                        return TaskResult(
                            task_id=task_id,
                            success=True,
                            output=output,
                            attempts=record.attempts,
                            duration=time.monotonic() - start,
                        )

                outcome = self.handle_task_failure(task_id, error)
                if outcome.action != FailureAction.RETRY:
                    return TaskResult(
                        task_id=task_id,
                        success=False,
                        error=error,
                        attempts=record.attempts,
                        duration=time.monotonic() - start,
                    )
                await asyncio.sleep(outcome.retry_delay)
        finally:
            self._active.discard(task_id)
            finished[task_id].set()
            if self._metrics is not None:
                await self._metrics.record(
                    "task_duration_seconds",
                    time.monotonic() - start,
                    task_type=task.type,
                    status=record.status.value,
                )

    async def _wait_for_dependencies(self, task: Task, finished: Dict[str, asyncio.Event]) -> Optional[str]:
        for dep in task.dependencies:
            if dep in finished:
                await finished[dep].wait()
            dep_record = self._tasks.get(dep)
            if dep_record is None:
                return f"unknown dependency '{dep}'"
            if dep_record.status != TaskState.COMPLETED:
                return f"dependency '{dep}' is {dep_record.status.value}"
        return None

    async def _invoke(self, task: Task) -> Any:
        handler = self._handlers.get(task.type) or self._dispatcher
        if handler is None:
            raise ExecutionError(f"No handler for task type '{task.type}'")
        timeout = task.timeout if task.timeout is not None else self.task_timeout
        try:
            if timeout:
                return await asyncio.wait_for(handler(task), timeout)
            return await handler(task)
        except asyncio.TimeoutError as e:
            raise ExecutionTimeout(f"Task '{task.id}' timed out after {timeout}s") from e
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def handle_task_failure(self, task_id: str, error: str) -> FailureHandlingResult:
        """Record a failure and decide what happens next: retry, compensate or fail.

        Retry is chosen while the task's retry policy has attempts left; the
        task goes back to pending (and back on the queue unless it is being
        executed right now). Otherwise the task fails, and any task types
        listed in ``metadata["compensation_tasks"]`` are scheduled. Completed
        and cancelled tasks are left alone (``success=False``).
        """
        record = self._tasks.get(task_id)
        if record is None or record.status in (TaskState.COMPLETED, TaskState.CANCELLED):
            return FailureHandlingResult(success=False, task_id=task_id, error=error)

        record.error = error
        task = record.task
        policy = task.retry_policy
        if policy is not None and record.attempts < policy.max_attempts:
            delay = policy.calculate_delay(max(record.attempts, 1))
            record.status = TaskState.PENDING
            record.next_attempt_at = time.time() + delay
            if task_id not in self._active:
                self._push(task)
            logger.warning(
                f"Task {task_id} attempt {record.attempts}/{policy.max_attempts} failed: {error}; "
                f"retrying in {delay:.2f}s"
            )
            return FailureHandlingResult(
                success=True,
                task_id=task_id,
                error=error,
                action=FailureAction.RETRY,
                retry_delay=delay,
            )

        self._finish(record, TaskState.FAILED, error=error)
        compensation = [
            self.schedule_task(self._compensation_task(task, entry))
            for entry in task.metadata.get("compensation_tasks", [])
        ]
        if compensation:
            logger.warning(f"Task {task_id} failed: {error}; scheduled {len(compensation)} compensation task(s)")
            return FailureHandlingResult(
                success=True,
                task_id=task_id,
                error=error,
                action=FailureAction.COMPENSATE,
                compensation_tasks=compensation,
            )

        logger.warning(f"Task {task_id} failed: {error}")
        return FailureHandlingResult(success=True, task_id=task_id, error=error, action=FailureAction.FAIL)

    @staticmethod
    def _compensation_task(failed: Task, entry: Any) -> Task:
        if isinstance(entry, dict):
            return Task.model_validate({**entry, "metadata": {**entry.get("metadata", {}), "compensates": failed.id}})
        return Task(
            name=f"compensate:{entry}",
            type=str(entry),
            parameters={"task_id": failed.id, "parameters": failed.parameters},
            metadata={"compensates": failed.id},
        )

    @staticmethod
    def _finish(record: TaskRecord, status: TaskState, error: Optional[str] = None) -> None:
        record.status = status
        record.finished_at = time.time()
        record.next_attempt_at = None
        if error is not None:
            record.error = error
        elif status == TaskState.COMPLETED:
            record.error = None
