"""
dagmesh Data Models
===================

Pydantic v2 data structures for DAG workflows, scheduled tasks, mesh
workflows, agents and snapshots.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, PrivateAttr


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class NodeType(str, Enum):
    TASK = "task"
    DECISION = "decision"
    MERGE = "merge"


class EdgeType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CONDITIONAL = "conditional"


class FailureStrategy(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"
    COMPENSATE = "compensate"


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    CONSTANT = "constant"


class DAGStatus(str, Enum):
    CREATED = "created"
    VALIDATING = "validating"
    VALIDATED = "validated"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DAGStatus.COMPLETED, DAGStatus.CANCELLED, DAGStatus.FAILED)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureAction(str, Enum):
    RETRY = "retry"
    COMPENSATE = "compensate"
    FAIL = "fail"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Policies
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RetryPolicy(BaseModel):
    """Attempt budget plus backoff between attempts (seconds)."""
    max_attempts: int = Field(default=1, ge=1)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=0.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the next attempt, given the 1-based failed attempt number."""
        attempt = max(1, attempt)
        if self.backoff_strategy == BackoffStrategy.LINEAR:
            delay = self.initial_delay * attempt
        elif self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = self.initial_delay * (2 ** (attempt - 1))
        else:
            delay = self.initial_delay
        return min(delay, self.max_delay)


class ExecutionPolicy(BaseModel):
    max_concurrency: int = Field(default=4, ge=1)
    timeout: Optional[float] = None   # per-node deadline, seconds
    retry_attempts: int = Field(default=0, ge=0)
    failure_threshold: int = Field(default=0, ge=0)


class FailureHandling(BaseModel):
    strategy: FailureStrategy = FailureStrategy.STOP
    compensation_tasks: list[str] = Field(default_factory=list)
    notification_channels: list[str] = Field(default_factory=list)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Graph model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Node(BaseModel):
    id: str
    name: str = ""
    type: NodeType = NodeType.TASK
    task_type: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    timeout: Optional[float] = None
    retry_policy: Optional[RetryPolicy] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Edge(BaseModel):
    id: str
    source: str
    target: str
    type: EdgeType = EdgeType.SUCCESS
    metadata: dict[str, Any] = Field(default_factory=dict)


class DAGSpec(BaseModel):
    id: str
    name: str = ""
    version: str = "1.0.0"
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    execution_policy: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    failure_handling: FailureHandling = Field(default_factory=FailureHandling)

    def node_map(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}


class NodeRecord(BaseModel):
    """Per-node execution record inside a running DAG."""
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    output: Any = None
    skip_reason: Optional[str] = None
    blocked_by: Optional[str] = None   # failed upstream node, if skipped because of one
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class DAGInstance(BaseModel):
    id: str
    spec: DAGSpec
    status: DAGStatus = DAGStatus.CREATED
    execution_id: str = Field(default_factory=lambda: new_id("exec"))
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    failure_count: int = 0
    threshold_breached: bool = False
    compensation_tasks: list[str] = Field(default_factory=list)   # scheduler task ids
    error: Optional[str] = None
    nodes: dict[str, NodeRecord] = Field(default_factory=dict)


class WorkflowStatus(BaseModel):
    """Read view of a DAG; status is "unknown" for ids the engine does not hold."""
    workflow_id: str
    status: str = "unknown"
    execution_id: Optional[str] = None
    progress: float = 0.0
    total_nodes: int = 0
    succeeded_nodes: int = 0
    failed_nodes: int = 0
    skipped_nodes: int = 0
    failure_count: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    nodes: dict[str, NodeRecord] = Field(default_factory=dict)


class TaskStatusView(BaseModel):
    task_id: str
    status: str = "unknown"
    workflow_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class WorkflowStartResult(BaseModel):
    success: bool
    workflow_id: str
    execution_id: Optional[str] = None
    status: str = "unknown"
    error: Optional[str] = None


class EngineMetrics(BaseModel):
    total_workflows: int = 0
    active_workflows: int = 0
    completed_workflows: int = 0
    failed_workflows: int = 0
    cancelled_workflows: int = 0
    total_nodes_executed: int = 0
    success_rate: float = 0.0
    average_node_duration: float = 0.0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Resolver / validation results
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ValidationResult(BaseModel):
    result: bool
    consensus: bool = True
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, reason: str = "validation passed", **details: Any) -> "ValidationResult":
        return cls(result=True, consensus=True, reason=reason, details=details)

    @classmethod
    def fail(cls, reason: str, **details: Any) -> "ValidationResult":
        return cls(result=False, consensus=False, reason=reason, details=details)


class DependencyResolution(BaseModel):
    success: bool
    resolved_dependencies: list[str] = Field(default_factory=list)
    unresolved_dependencies: list[str] = Field(default_factory=list)
    circular_dependencies: list[str] = Field(default_factory=list)
    execution_order: list[str] = Field(default_factory=list)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Scheduler
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Task(BaseModel):
    id: str = ""
    name: str = ""
    type: str = "default"
    parameters: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    timeout: Optional[float] = None
    priority: int = 0   # higher runs first
    retry_policy: Optional[RetryPolicy] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskRecord(BaseModel):
    task: Task
    status: TaskState = TaskState.PENDING
    attempts: int = 0
    error: Optional[str] = None
    output: Any = None
    next_attempt_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class TaskResult(BaseModel):
    task_id: str
    success: bool
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0
    duration: float = 0.0


class FailureHandlingResult(BaseModel):
    success: bool
    task_id: str
    error: str
    action: FailureAction = FailureAction.FAIL
    retry_delay: float = 0.0
    compensation_tasks: list[str] = Field(default_factory=list)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Agents, routing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AgentStatus(BaseModel):
    status: str = "initializing"   # initializing | ready | error | shutting-down
    uptime: float = 0.0
    last_event: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class DesignArtifact(BaseModel):
    id: str
    type: str = "specification"
    content: dict[str, Any] = Field(default_factory=dict)
    version: str = "1.0.0"
    created_at: float = Field(default_factory=time.time)
    validated_by: list[str] = Field(default_factory=list)


class UserInteraction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("interaction"))
    user_id: str = ""
    session_id: str = ""
    action: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    outcome: str = "success"
    feedback: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class RoutingResult(BaseModel):
    success: bool
    routed_to: list[str] = Field(default_factory=list)
    routing_path: list[str] = Field(default_factory=list)
    failed_routes: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    response: Any = None
    timestamp: float = Field(default_factory=time.time)


class BroadcastResult(BaseModel):
    success: bool
    broadcast_to: list[str] = Field(default_factory=list)
    failed_broadcasts: list[str] = Field(default_factory=list)
    filtered: list[str] = Field(default_factory=list)   # skipped by subscription
    timestamp: float = Field(default_factory=time.time)


class AgentInteraction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("interaction"))
    source_agent: Optional[str] = None
    target_agent: str
    event_type: str
    success: bool
    duration: float = 0.0
    error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class TraceEvent(BaseModel):
    event_type: str
    source: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Mesh workflows
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class WorkflowStep(BaseModel):
    id: str
    agent_id: str
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    timeout: Optional[float] = None
    retry_policy: Optional[RetryPolicy] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MeshWorkflow(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    agents: list[str] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)   # workflows that must have completed
    timeout: Optional[float] = None
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepResult(BaseModel):
    step_id: str
    agent_id: str
    status: NodeStatus
    success: bool
    attempts: int = 0
    output: Any = None
    error: Optional[str] = None
    duration: float = 0.0


class OrchestrationResult(BaseModel):
    success: bool
    workflow_id: str
    execution_id: str = Field(default_factory=lambda: new_id("exec"))
    status: str = "failed"   # completed | failed | cancelled
    completed_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    steps: list[StepResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    execution_time: float = 0.0
    finished_at: float = Field(default_factory=time.time)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Snapshots, mesh reporting
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AgentSummary(BaseModel):
    agent_id: str
    role: str
    status: AgentStatus = Field(default_factory=AgentStatus)
    registered_at: float = 0.0


class Snapshot(BaseModel):
    """Point-in-time copy of mesh state. Live agent handles are never serialized."""
    id: str = Field(default_factory=lambda: new_id("snapshot"))
    timestamp: float = Field(default_factory=time.time)
    agents: list[AgentSummary] = Field(default_factory=list)
    dags: dict[str, DAGInstance] = Field(default_factory=dict)
    executions: dict[str, OrchestrationResult] = Field(default_factory=dict)
    subscriptions: dict[str, list[str]] = Field(default_factory=dict)
    integrity_hash: str = ""

    _handles: dict[str, Any] = PrivateAttr(default_factory=dict)

    @property
    def handles(self) -> dict[str, Any]:
        return self._handles


class RestoreResult(BaseModel):
    success: bool
    snapshot_id: str
    restored_agents: list[str] = Field(default_factory=list)
    restored_workflows: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class MeshStatus(BaseModel):
    status: str = "initializing"   # initializing | ready | shutting-down | error
    uptime: float = 0.0
    agent_count: int = 0
    active_workflows: int = 0
    last_event: str = "none"
    errors: list[str] = Field(default_factory=list)


class MeshMetrics(BaseModel):
    total_agents: int = 0
    active_agents: int = 0
    total_workflows: int = 0
    active_workflows: int = 0
    completed_workflows: int = 0
    failed_workflows: int = 0
    average_workflow_duration: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    engine: EngineMetrics = Field(default_factory=EngineMetrics)
