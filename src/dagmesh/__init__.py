"""
dagmesh: DAG Workflow Engine and Agent Mesh
===========================================

Validates and runs directed graphs of dependent steps under concurrency,
retry and failure policies, and coordinates agents that exchange typed
events through a shared router.

Core modules:
- models: Pydantic v2 data structures (DAGSpec, Node, Task, MeshWorkflow, Snapshot, etc.)
- config: YAML configuration loader with defaults and validation
- graph: Validation, cycle detection, topological order, dependency resolution
- engine: DAG state machine and per-DAG scheduler loop
- scheduler: Priority task queue with retry and compensation
- registry: Agent id -> handle map
- agents: Agent contract, ActionAgent, EngineAgent
- orchestrator: Cross-agent workflows compiled to DAGs
- checkpoint: Snapshot store with integrity hashes and atomic JSON files
- mesh: AgentMesh owning all of the above
- audit: JSONL event logging

Sub-packages:
- messaging: Event routing between registered agents
- observability: Metrics collection
"""

from dagmesh.errors import (
    DagMeshError,
    ExecutionError,
    ExecutionTimeout,
    GraphValidationError,
    LifecycleError,
    RoutingError,
)
from dagmesh.models import (
    AgentStatus,
    BackoffStrategy,
    BroadcastResult,
    DAGInstance,
    DAGSpec,
    DAGStatus,
    DependencyResolution,
    Edge,
    EdgeType,
    ExecutionPolicy,
    FailureAction,
    FailureHandling,
    FailureStrategy,
    MeshWorkflow,
    Node,
    NodeStatus,
    NodeType,
    OrchestrationResult,
    RestoreResult,
    RetryPolicy,
    RoutingResult,
    Snapshot,
    Task,
    TaskState,
    ValidationResult,
    WorkflowStep,
)
from dagmesh.config import load_config, validate_configuration
from dagmesh.graph import (
    compute_execution_order,
    get_execution_tiers,
    resolve_dependencies,
    validate_dag,
)
from dagmesh.agents import ActionAgent, AgentContract, EngineAgent
from dagmesh.registry import AgentRegistry
from dagmesh.messaging import EventRouter
from dagmesh.engine import WorkflowEngine
from dagmesh.scheduler import TaskScheduler
from dagmesh.orchestrator import MeshOrchestrator
from dagmesh.checkpoint import SnapshotManager
from dagmesh.audit import MeshAuditLog
from dagmesh.mesh import AgentMesh
from dagmesh.observability import MetricsCollector

__all__ = [
    # Errors
    "DagMeshError",
    "ExecutionError",
    "ExecutionTimeout",
    "GraphValidationError",
    "LifecycleError",
    "RoutingError",
    # Models
    "AgentStatus",
    "BackoffStrategy",
    "BroadcastResult",
    "DAGInstance",
    "DAGSpec",
    "DAGStatus",
    "DependencyResolution",
    "Edge",
    "EdgeType",
    "ExecutionPolicy",
    "FailureAction",
    "FailureHandling",
    "FailureStrategy",
    "MeshWorkflow",
    "Node",
    "NodeStatus",
    "NodeType",
    "OrchestrationResult",
    "RestoreResult",
    "RetryPolicy",
    "RoutingResult",
    "Snapshot",
    "Task",
    "TaskState",
    "ValidationResult",
    "WorkflowStep",
    # Config
    "load_config",
    "validate_configuration",
    # Graph
    "compute_execution_order",
    "get_execution_tiers",
    "resolve_dependencies",
    "validate_dag",
    # Components
    "ActionAgent",
    "AgentContract",
    "AgentMesh",
    "AgentRegistry",
    "EngineAgent",
    "EventRouter",
    "MeshAuditLog",
    "MeshOrchestrator",
    "MetricsCollector",
    "SnapshotManager",
    "TaskScheduler",
    "WorkflowEngine",
]
