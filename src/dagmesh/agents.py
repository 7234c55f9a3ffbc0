"""
dagmesh Agent Contract & Built-in Agents
========================================

The uniform contract every mesh participant satisfies, plus two
implementations:

- ``ActionAgent`` maps event types (actions) to plain callables.
- ``EngineAgent`` exposes a WorkflowEngine and TaskScheduler as an agent so
  other agents can drive workflows through the event router.
"""

from __future__ import annotations

import inspect
import logging
import time
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from dagmesh.graph import validate_dag
from dagmesh.models import (
    AgentStatus,
    DAGSpec,
    DesignArtifact,
    Task,
    UserInteraction,
    ValidationResult,
)

if TYPE_CHECKING:
    from dagmesh.engine import WorkflowEngine
    from dagmesh.scheduler import TaskScheduler

logger = logging.getLogger("dagmesh.agents")

ActionHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

_INTERACTION_LIMIT = 1000


@runtime_checkable
class AgentContract(Protocol):
    """Capabilities every agent registered with the mesh provides."""

    id: str
    role: str
    dependencies: List[str]

    async def initialize(self) -> None: ...

    async def shutdown(self) -> None: ...

    def get_status(self) -> AgentStatus: ...

    async def handle_event(self, event_type: str, payload: Dict[str, Any]) -> Any: ...

    def validate_specification(self, spec: Any) -> ValidationResult: ...

    def generate_design_artifacts(self) -> List[DesignArtifact]: ...

    def track_user_interaction(self, interaction: UserInteraction) -> None: ...


class ActionAgent:
    """Agent that dispatches each event type to a registered callable.

    Handlers receive the event payload and may be sync or async. Unknown
    event types are ignored and answered with None. Errors raised by a
    handler propagate to the router, which records them as delivery
    failures.

    Usage:
        agent = ActionAgent("extractor", role="etl", actions={"extract": extract_fn})
        agent.on("load", load_fn)
    """

    def __init__(
        self,
        agent_id: str,
        role: str = "worker",
        actions: Optional[Dict[str, ActionHandler]] = None,
        dependencies: Optional[List[str]] = None,
    ):
        self.id = agent_id
        self.role = role
        self.dependencies = list(dependencies or [])
        self._actions: Dict[str, ActionHandler] = dict(actions or {})
        self._status = "initializing"
        self._started = time.monotonic()
        self._last_event: Optional[str] = None
        self._events_handled = 0
        self._interactions: List[UserInteraction] = []

    def on(self, event_type: str, handler: ActionHandler) -> None:
        self._actions[event_type] = handler

    @property
    def actions(self) -> List[str]:
        return sorted(self._actions)

    async def initialize(self) -> None:
        self._status = "ready"
        logger.debug(f"Agent {self.id} initialized")

    async def shutdown(self) -> None:
        # status stays "ready" so the agent remains queryable
        logger.debug(f"Agent {self.id} shut down")

    def get_status(self) -> AgentStatus:
        return AgentStatus(
            status=self._status,
            uptime=time.monotonic() - self._started,
            last_event=self._last_event,
            details={"events_handled": self._events_handled, "actions": self.actions},
        )

    async def handle_event(self, event_type: str, payload: Dict[str, Any]) -> Any:
        self._last_event = event_type
        handler = self._actions.get(event_type)
        if handler is None:
            logger.debug(f"Agent {self.id} ignoring event {event_type}")
            return None
        self._events_handled += 1
        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    def validate_specification(self, spec: Any) -> ValidationResult:
        """Check that this agent offers every capability the spec requires.

        ``spec`` is a mapping (or object) with an optional
        ``required_capabilities`` list of event types.
        """
        required = _field(spec, "required_capabilities") or []
        missing = sorted(set(required) - set(self._actions))
        if missing:
            return ValidationResult.fail(
                f"Agent {self.id} lacks capabilities: {', '.join(missing)}",
                agent=self.id,
                missing=missing,
            )
        return ValidationResult.ok(f"Agent {self.id} satisfies the specification", agent=self.id)

    def generate_design_artifacts(self) -> List[DesignArtifact]:
        return [
            DesignArtifact(
                id=f"{self.id}-capabilities",
                type="capabilities",
                content={
                    "agent": self.id,
                    "role": self.role,
                    "actions": self.actions,
                    "dependencies": list(self.dependencies),
                },
                validated_by=[self.id],
            )
        ]

    def track_user_interaction(self, interaction: UserInteraction) -> None:
        self._interactions.append(interaction)
        if len(self._interactions) > _INTERACTION_LIMIT:
            self._interactions = self._interactions[-_INTERACTION_LIMIT:]

    def get_user_interactions(self) -> List[UserInteraction]:
        return list(self._interactions)


class EngineAgent(ActionAgent):
    """Agent front end for a WorkflowEngine and TaskScheduler.

    Events:
        workflow.create   {"spec": {...}}                -> DAG id
        workflow.start    {"workflow_id"}                -> WorkflowStartResult
        workflow.pause    {"workflow_id"}                -> bool
        workflow.resume   {"workflow_id"}                -> bool
        workflow.cancel   {"workflow_id"}                -> bool
        workflow.status   {"workflow_id"}                -> WorkflowStatus
        task.schedule     {"task": {...}}                -> task id
        task.execute      {}                             -> list[TaskResult]
        task.fail         {"task_id", "error"}           -> FailureHandlingResult
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        scheduler: "TaskScheduler",
        agent_id: str = "workflow-engine",
        role: str = "DAG Orchestrator",
    ):
        super().__init__(agent_id, role=role)
        self.engine = engine
        self.scheduler = scheduler
        self._actions.update({
            "workflow.create": self._create,
            "workflow.start": lambda p: self.engine.start_workflow(p["workflow_id"]),
            "workflow.pause": lambda p: self.engine.pause_workflow(p["workflow_id"]),
            "workflow.resume": lambda p: self.engine.resume_workflow(p["workflow_id"]),
            "workflow.cancel": lambda p: self.engine.cancel_workflow(p["workflow_id"]),
            "workflow.status": lambda p: self.engine.get_workflow_status(p["workflow_id"]),
            "task.schedule": lambda p: self.scheduler.schedule_task(Task.model_validate(p["task"])),
            "task.execute": lambda p: self.scheduler.execute_scheduled_tasks(),
            "task.fail": lambda p: self.scheduler.handle_task_failure(p["task_id"], p.get("error", "")),
        })

    async def _create(self, payload: Dict[str, Any]) -> str:
        instance = await self.engine.create_dag(DAGSpec.model_validate(payload["spec"]))
        return instance.id

    def validate_specification(self, spec: Any) -> ValidationResult:
        """Validate a DAG spec (model or mapping) without registering it."""
        try:
            dag = spec if isinstance(spec, DAGSpec) else DAGSpec.model_validate(spec)
        except ValueError as e:
            return ValidationResult.fail(f"Invalid DAG specification: {e}", type="schema")
        return validate_dag(dag)

    def get_status(self) -> AgentStatus:
        status = super().get_status()
        metrics = self.engine.get_system_metrics()
        status.details.update({
            "active_workflows": metrics.active_workflows,
            "pending_tasks": self.scheduler.pending_count(),
        })
        return status


def _field(spec: Any, name: str) -> Any:
    if isinstance(spec, dict):
        return spec.get(name)
    return getattr(spec, name, None)
