"""
dagmesh Mesh Orchestrator
=========================

Runs cross-agent workflows. Each ``MeshWorkflow`` is checked up front
(agents registered, prerequisite workflows completed, step dependencies
resolvable), then compiled into a DAG whose nodes are routed to their agents
through the event router and executed by the workflow engine.

Step semantics:
- The step's ``action`` is the event type; the payload is
  ``{"workflow_id", "step_id", "parameters"}``.
- A routing failure (unknown agent, handler error, delivery timeout) is a
  step failure and is retried under the step's or workflow's retry policy.
- One failed step fails the workflow; independent steps still run and
  dependents of the failed step are skipped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from dagmesh.engine import WorkflowEngine
from dagmesh.errors import RoutingError
from dagmesh.graph import resolve_dependencies
from dagmesh.messaging.router import EventRouter
from dagmesh.models import (
    DAGSpec,
    ExecutionPolicy,
    FailureHandling,
    FailureStrategy,
    MeshWorkflow,
    RetryPolicy,
    Node,
    NodeStatus,
    OrchestrationResult,
    StepResult,
    WorkflowStatus,
    WorkflowStep,
)
from dagmesh.registry import AgentRegistry

logger = logging.getLogger("dagmesh.orchestrator")

STEP_TASK_TYPE = "mesh.step"


class MeshOrchestrator:
    """Compile mesh workflows to DAGs and run them on a shared WorkflowEngine.

    Usage:
        orchestrator = MeshOrchestrator(registry, router, engine)
        result = await orchestrator.orchestrate_workflow(workflow)
        if not result.success:
            print(result.errors)
    """

    def __init__(
        self,
        registry: AgentRegistry,
        router: EventRouter,
        engine: WorkflowEngine,
        max_concurrency: int = 10,
        default_timeout: Optional[float] = None,
        retry_attempts: int = 0,
        source_id: str = "orchestrator",
        on_finished: Optional[Callable[[OrchestrationResult], None]] = None,
    ):
        self.registry = registry
        self.router = router
        self.engine = engine
        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.retry_attempts = retry_attempts
        self.source_id = source_id
        self._on_finished = on_finished
        self._executions: Dict[str, OrchestrationResult] = {}
        engine.register_handler(STEP_TASK_TYPE, self._dispatch_step)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def preflight(self, workflow: MeshWorkflow) -> List[str]:
        """Problems that prevent the workflow from starting (empty when none)."""
        errors: List[str] = []

        wanted = list(dict.fromkeys([*workflow.agents, *(s.agent_id for s in workflow.steps)]))
        for agent_id in wanted:
            if agent_id not in self.registry:
                errors.append(f"Agent not found: {agent_id}")

        for prerequisite in workflow.dependencies:
            previous = self._executions.get(prerequisite)
            if previous is None or previous.status != "completed":
                errors.append(f"Prerequisite workflow not completed: {prerequisite}")

        step_ids = [s.id for s in workflow.steps]
        duplicates = sorted(sid for sid, n in Counter(step_ids).items() if n > 1)
        if duplicates:
            errors.append(f"Duplicate step ids: {', '.join(duplicates)}")
            return errors

        resolution = resolve_dependencies(
            step_ids,
            dependency_map={s.id: s.dependencies for s in workflow.steps},
            known_ids=step_ids,
        )
        for missing in resolution.unresolved_dependencies:
            errors.append(f"Unknown step dependency: {missing}")
        for looped in resolution.circular_dependencies:
            errors.append(f"Circular step dependency: {looped}")
        return errors

    async def orchestrate_workflow(self, workflow: MeshWorkflow) -> OrchestrationResult:
        """Run a mesh workflow to completion. Never raises for workflow failures."""
        start = time.monotonic()
        errors = self.preflight(workflow)
        if errors:
            logger.warning(f"Workflow {workflow.id} rejected: {'; '.join(errors)}")
            return self._finish(OrchestrationResult(success=False, workflow_id=workflow.id, errors=errors))

        try:
            instance = await self.engine.create_dag(self._compile(workflow))
        except ValueError as e:
            return self._finish(OrchestrationResult(success=False, workflow_id=workflow.id, errors=[str(e)]))

        started = await self.engine.start_workflow(workflow.id)
        if not started.success:
            return self._finish(
                OrchestrationResult(
                    success=False,
                    workflow_id=workflow.id,
                    execution_id=instance.execution_id,
                    errors=[started.error or "workflow failed to start"],
                    execution_time=time.monotonic() - start,
                )
            )

        timeout = workflow.timeout or self.default_timeout
        timed_out = False
        try:
            status = await self.engine.wait_for_workflow(workflow.id, timeout)
        except asyncio.TimeoutError:
            timed_out = True
            await self.engine.cancel_workflow(workflow.id)
            status = self.engine.get_workflow_status(workflow.id)
            logger.warning(f"Workflow {workflow.id} timed out after {timeout}s")

        result = self._collect(workflow, status, time.monotonic() - start)
        if timed_out:
            result.status = "failed"
            result.success = False
            result.errors.append(f"Workflow timed out after {timeout}s")
        logger.info(
            f"Workflow {workflow.id} {result.status}: {len(result.completed_steps)} completed, "
            f"{len(result.failed_steps)} failed, {len(result.skipped_steps)} skipped "
            f"({result.execution_time:.2f}s)"
        )
        return self._finish(result)

    async def cancel_workflow(self, workflow_id: str) -> bool:
        return await self.engine.cancel_workflow(workflow_id)

    def get_execution(self, workflow_id: str) -> Optional[OrchestrationResult]:
        return self._executions.get(workflow_id)

    def export_executions(self) -> Dict[str, OrchestrationResult]:
        return {k: v.model_copy(deep=True) for k, v in self._executions.items()}

    def import_executions(self, executions: Dict[str, OrchestrationResult]) -> None:
        self._executions = {k: v.model_copy(deep=True) for k, v in executions.items()}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compile(self, workflow: MeshWorkflow) -> DAGSpec:
        nodes = [
            Node(
                id=step.id,
                name=step.action,
                task_type=STEP_TASK_TYPE,
                dependencies=list(step.dependencies),
                timeout=step.timeout,
                retry_policy=self._step_retry_policy(workflow, step),
                metadata={
                    "workflow_id": workflow.id,
                    "agent_id": step.agent_id,
                    "action": step.action,
                    "parameters": step.parameters,
                },
            )
            for step in workflow.steps
        ]
        return DAGSpec(
            id=workflow.id,
            name=workflow.name,
            nodes=nodes,
            metadata={"mesh_workflow": True, **workflow.metadata},
            execution_policy=ExecutionPolicy(max_concurrency=self.max_concurrency, failure_threshold=0),
            failure_handling=FailureHandling(strategy=FailureStrategy.CONTINUE),
        )

    def _step_retry_policy(self, workflow: MeshWorkflow, step: WorkflowStep) -> RetryPolicy:
        # Step policy, then an explicit workflow policy, then the orchestrator's retry budget.
        if step.retry_policy is not None:
            return step.retry_policy
        if "retry_policy" in workflow.model_fields_set or not self.retry_attempts:
            return workflow.retry_policy
        return workflow.retry_policy.model_copy(update={"max_attempts": self.retry_attempts + 1})

    async def _dispatch_step(self, dag_id: str, node: Node) -> Any:
        meta = node.metadata
        result = await self.router.route_event(
            meta["action"],
            {
                "workflow_id": meta.get("workflow_id", dag_id),
                "step_id": node.id,
                "parameters": meta.get("parameters", {}),
            },
            meta["agent_id"],
            source_id=self.source_id,
        )
        if not result.success:
            raise RoutingError(result.error or f"Routing to {meta['agent_id']} failed")
        return result.response

    def _collect(self, workflow: MeshWorkflow, status: WorkflowStatus, elapsed: float) -> OrchestrationResult:
        result = OrchestrationResult(
            success=status.status == "completed",
            workflow_id=workflow.id,
            status=status.status,
            execution_time=elapsed,
        )
        if status.execution_id:
            result.execution_id = status.execution_id

        for step in workflow.steps:
            record = status.nodes.get(step.id)
            if record is None:
                continue
            result.steps.append(
                StepResult(
                    step_id=step.id,
                    agent_id=step.agent_id,
                    status=record.status,
                    success=record.status == NodeStatus.SUCCEEDED,
                    attempts=record.attempts,
                    output=record.output,
                    error=record.last_error or record.skip_reason,
                    duration=record.duration or 0.0,
                )
            )
            if record.status == NodeStatus.SUCCEEDED:
                result.completed_steps.append(step.id)
            elif record.status == NodeStatus.FAILED:
                result.failed_steps.append(step.id)
                result.errors.append(f"Step {step.id} failed: {record.last_error}")
            elif record.status == NodeStatus.SKIPPED:
                result.skipped_steps.append(step.id)
        return result

    def _finish(self, result: OrchestrationResult) -> OrchestrationResult:
        result.finished_at = time.time()
        self._executions[result.workflow_id] = result
        if self._on_finished is not None:
            self._on_finished(result)
        return result
