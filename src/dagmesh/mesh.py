"""
dagmesh Agent Mesh
==================

``AgentMesh`` owns one of each component and is itself an agent: it can be
registered in an outer mesh, and events sent to it are broadcast to its
members.

Components:
- AgentRegistry     id -> live agent handle
- EventRouter       unicast / broadcast delivery with interest sets
- TaskScheduler     standalone tasks and compensation tasks
- WorkflowEngine    DAG execution
- MeshOrchestrator  cross-agent workflows on top of the engine
- SnapshotManager   point-in-time copies for recovery

Usage:
    mesh = AgentMesh(load_config())
    await mesh.initialize()
    await mesh.register_agent(ActionAgent("extractor", actions={"extract": extract}))
    result = await mesh.orchestrate_workflow(workflow)
    snapshot = mesh.create_system_snapshot()
    await mesh.shutdown()
"""

from __future__ import annotations

import copy
import logging
import statistics
import time
from typing import Any, Dict, List, Optional

from dagmesh.audit import MeshAuditLog
from dagmesh.checkpoint import SnapshotManager, verify_integrity
from dagmesh.config import merge_config, validate_configuration
from dagmesh.engine import WorkflowEngine
from dagmesh.errors import RoutingError
from dagmesh.graph import validate_dag
from dagmesh.messaging.router import EventRouter
from dagmesh.models import (
    AgentInteraction,
    AgentStatus,
    AgentSummary,
    BroadcastResult,
    DAGSpec,
    DesignArtifact,
    ExecutionPolicy,
    MeshMetrics,
    MeshStatus,
    MeshWorkflow,
    Node,
    OrchestrationResult,
    RestoreResult,
    RoutingResult,
    Snapshot,
    TraceEvent,
    UserInteraction,
    ValidationResult,
)
from dagmesh.observability.metrics import MetricsCollector
from dagmesh.orchestrator import MeshOrchestrator
from dagmesh.registry import AgentRegistry, AgentRegistryEntry
from dagmesh.scheduler import TaskScheduler

logger = logging.getLogger("dagmesh.mesh")


class AgentMesh:
    """Coordinator for a set of agents, their DAG workflows and snapshots."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, mesh_id: Optional[str] = None):
        self.config = merge_config(config)
        validation = validate_configuration(self.config)
        if not validation.result:
            raise ValueError(f"Invalid mesh configuration: {validation.reason}")

        mesh_cfg = self.config["mesh"]
        self.id = mesh_id or mesh_cfg["id"]
        self.role = "Agent Mesh Coordinator"
        self.dependencies: List[str] = []

        self.metrics = MetricsCollector()
        self.registry = AgentRegistry()
        self.router = EventRouter(
            self.registry,
            event_timeout=self.config["router"]["event_timeout"],
            interaction_limit=self.config["router"]["interaction_limit"],
            metrics=self.metrics,
        )
        self.scheduler = TaskScheduler(
            max_concurrency=self.config["scheduler"]["max_concurrency"],
            task_timeout=self.config["scheduler"]["task_timeout"],
            metrics=self.metrics,
        )
        self.engine = WorkflowEngine(
            dispatcher=self._dispatch_node,
            scheduler=self.scheduler,
            notifier=self._notify_channel,
            metrics=self.metrics,
            retention_seconds=self.config["engine"]["retention_seconds"],
            default_policy=ExecutionPolicy(max_concurrency=self.config["engine"]["max_concurrency"]),
        )
        self.orchestrator = MeshOrchestrator(
            self.registry,
            self.router,
            self.engine,
            max_concurrency=mesh_cfg["max_concurrency"],
            default_timeout=mesh_cfg["workflow_timeout"],
            retry_attempts=mesh_cfg["retry_attempts"],
            source_id=self.id,
            on_finished=self._on_workflow_finished,
        )
        self.snapshots = SnapshotManager(
            max_snapshots=self.config["snapshots"]["max_snapshots"],
            snapshot_dir=self.config["snapshots"]["snapshot_dir"],
        )
        audit_dir = self.config["logging"]["audit_dir"]
        self.audit = MeshAuditLog(self.id, audit_dir) if audit_dir else None

        self._status = "initializing"
        self._started = time.monotonic()
        self._last_event: Optional[str] = None
        self._errors: List[str] = []
        self._closed = False
        self._event_history: List[TraceEvent] = []
        self._user_interactions: List[UserInteraction] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        level = str(self.config["logging"].get("level") or "info").upper()
        logging.getLogger("dagmesh").setLevel(level)

        for agent_id, agent in self.registry.get_all_agents().items():
            await self._initialize_agent(agent_id, agent)
        self._status = "ready"
        self._closed = False
        self._trace("mesh.initialized", {"agents": len(self.registry)})
        logger.info(f"Mesh {self.id} initialized with {len(self.registry)} agents")

    async def shutdown(self) -> None:
        """Cancel active workflows and shut agents down. Safe to call repeatedly."""
        if self._closed:
            return
        self._status = "shutting-down"
        for dag_id in self.engine.active_workflows():
            await self.engine.cancel_workflow(dag_id)
        for agent_id, agent in self.registry.get_all_agents().items():
            try:
                await agent.shutdown()
            except Exception as e:
                self._record_error(f"Agent {agent_id} shutdown failed: {e}")
        self._trace("mesh.shutdown", {})
        if self.audit is not None:
            self.audit.close()
        self._closed = True
        self._status = "ready"
        logger.info(f"Mesh {self.id} shut down")

    async def _initialize_agent(self, agent_id: str, agent: Any) -> None:
        try:
            await agent.initialize()
        except Exception as e:
            self._record_error(f"Agent {agent_id} failed to initialize: {e}")

    # ------------------------------------------------------------------
    # Agent contract
    # ------------------------------------------------------------------

    def get_status(self) -> AgentStatus:
        mesh_status = self.get_mesh_status()
        return AgentStatus(
            status=mesh_status.status,
            uptime=mesh_status.uptime,
            last_event=self._last_event,
            details=mesh_status.model_dump(exclude={"status", "uptime"}),
        )

    def get_mesh_status(self) -> MeshStatus:
        return MeshStatus(
            status=self._status,
            uptime=time.monotonic() - self._started,
            agent_count=len(self.registry),
            active_workflows=len(self.engine.active_workflows()),
            last_event=self._last_event or "none",
            errors=list(self._errors[-10:]),
        )

    async def handle_event(self, event_type: str, payload: Dict[str, Any]) -> BroadcastResult:
        """Events addressed to the mesh are broadcast to its members."""
        self._last_event = event_type
        return await self.broadcast_event(event_type, payload, source_id=self.id)

    def validate_specification(self, spec: Any) -> ValidationResult:
        """Validate a MeshWorkflow against the current mesh, or a DAG spec on its own."""
        if isinstance(spec, MeshWorkflow):
            errors = self.orchestrator.preflight(spec)
            if errors:
                return ValidationResult.fail(errors[0], type="mesh_workflow", errors=errors)
            return ValidationResult.ok("workflow can run on this mesh", type="mesh_workflow")
        try:
            dag = spec if isinstance(spec, DAGSpec) else DAGSpec.model_validate(spec)
        except ValueError as e:
            return ValidationResult.fail(f"Invalid DAG specification: {e}", type="schema")
        return validate_dag(dag)

    def generate_design_artifacts(self) -> List[DesignArtifact]:
        topology = {
            "mesh": self.id,
            "agents": {e.id: e.role_label for e in self.registry.entries()},
            "subscriptions": self.router.export_subscriptions(),
        }
        artifacts = [DesignArtifact(id=f"{self.id}-topology", type="topology", content=topology)]
        for agent in self.registry.get_all_agents().values():
            try:
                artifacts.extend(agent.generate_design_artifacts())
            except Exception as e:
                self._record_error(f"Agent {agent.id} failed to generate artifacts: {e}")
        return artifacts

    def track_user_interaction(self, interaction: UserInteraction) -> None:
        self._user_interactions.append(interaction)
        limit = self.config["mesh"]["history_limit"]
        if len(self._user_interactions) > limit:
            self._user_interactions = self._user_interactions[-limit:]
        self._trace("user.interaction", {"action": interaction.action, "outcome": interaction.outcome})

    # ------------------------------------------------------------------
    # Registry and routing
    # ------------------------------------------------------------------

    async def register_agent(self, agent: Any) -> bool:
        """Register an agent; once the mesh is ready, new agents are initialized too."""
        if not self.registry.register_agent(agent):
            return False
        if self._status == "ready" and not self._closed:
            await self._initialize_agent(agent.id, agent)
        self._trace("agent.registered", {"agent_id": agent.id, "role": agent.role})
        return True

    async def unregister_agent(self, agent_id: str) -> bool:
        if not self.registry.unregister_agent(agent_id):
            return False
        self.router.drop_agent(agent_id)
        self._trace("agent.unregistered", {"agent_id": agent_id})
        return True

    def get_agent(self, agent_id: str) -> Optional[Any]:
        return self.registry.get_agent(agent_id)

    def get_all_agents(self) -> Dict[str, Any]:
        return self.registry.get_all_agents()

    async def route_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        target_id: str,
        source_id: Optional[str] = None,
    ) -> RoutingResult:
        result = await self.router.route_event(event_type, payload, target_id, source_id)
        self._trace(
            "event.routed",
            {"event_type": event_type, "target": target_id, "success": result.success},
            source=source_id,
        )
        return result

    async def broadcast_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        source_id: Optional[str] = None,
        exclude_source: bool = True,
    ) -> BroadcastResult:
        result = await self.router.broadcast_event(event_type, payload, source_id, exclude_source)
        self._trace(
            "event.broadcast",
            {"event_type": event_type, "delivered": len(result.broadcast_to), "failed": len(result.failed_broadcasts)},
            source=source_id,
        )
        return result

    def subscribe_to_events(self, agent_id: str, event_types: List[str]) -> bool:
        return self.router.subscribe_to_events(agent_id, event_types)

    def unsubscribe_from_events(self, agent_id: str, event_types: List[str]) -> bool:
        return self.router.unsubscribe_from_events(agent_id, event_types)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def orchestrate_workflow(self, workflow: MeshWorkflow) -> OrchestrationResult:
        self._trace("workflow.started", {"workflow_id": workflow.id, "steps": len(workflow.steps)})
        return await self.orchestrator.orchestrate_workflow(workflow)

    def _on_workflow_finished(self, result: OrchestrationResult) -> None:
        self._trace(
            "workflow.finished",
            {"workflow_id": result.workflow_id, "status": result.status, "errors": result.errors},
        )
        if self.audit is not None:
            self.audit.workflow_finished(result.workflow_id, result.status, result.execution_time, result.errors)

    async def _dispatch_node(self, dag_id: str, node: Node) -> Any:
        """Route a DAG node without a registered handler to ``metadata["agent_id"]``.

        The event type is ``node.task_type`` (else ``node.name``, else the node id).
        """
        agent_id = node.metadata.get("agent_id")
        if not agent_id:
            raise RoutingError(f"Node '{node.id}' has no handler and no agent_id")
        result = await self.router.route_event(
            node.task_type or node.name or node.id,
            {"workflow_id": dag_id, "node_id": node.id, "parameters": dict(node.metadata)},
            agent_id,
            source_id=self.id,
        )
        if not result.success:
            raise RoutingError(result.error or f"Routing node '{node.id}' to {agent_id} failed")
        return result.response

    async def _notify_channel(self, channel: str, payload: Dict[str, Any]) -> None:
        result = await self.router.route_event("workflow.failed", payload, channel, source_id=self.id)
        if not result.success:
            logger.warning(f"Failure notification to {channel} not delivered: {result.error}")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_system_snapshot(self) -> Snapshot:
        summaries = []
        handles = {}
        for entry in self.registry.entries():
            try:
                agent_status = entry.handle.get_status()
            except Exception as e:
                agent_status = AgentStatus(status="error", details={"error": str(e)})
            summaries.append(
                AgentSummary(
                    agent_id=entry.id,
                    role=entry.role_label,
                    status=agent_status,
                    registered_at=entry.registered_at,
                )
            )
            handles[entry.id] = entry.handle

        snapshot = self.snapshots.create(
            agents=summaries,
            handles=handles,
            dags=self.engine.export_state(),
            executions=self.orchestrator.export_executions(),
            subscriptions=self.router.export_subscriptions(),
        )
        self._trace("snapshot.created", {"snapshot_id": snapshot.id})
        return snapshot

    def restore_system_snapshot(self, snapshot_id: str) -> RestoreResult:
        """Replace registry, DAG state, executions and subscriptions from a snapshot.

        Everything is prepared before anything is committed; on any error the
        mesh is left untouched. Agents of a snapshot loaded from disk are
        matched by id against the agents registered now.
        """
        snapshot = self.snapshots.get(snapshot_id)
        if snapshot is None:
            return RestoreResult(success=False, snapshot_id=snapshot_id, errors=[f"Snapshot not found: {snapshot_id}"])
        if not verify_integrity(snapshot):
            return self._restore_failed(snapshot_id, [f"Snapshot {snapshot_id} failed its integrity check"])

        errors: List[str] = []
        entries = []
        for summary in snapshot.agents:
            handle = snapshot.handles.get(summary.agent_id) or self.registry.get_agent(summary.agent_id)
            if handle is None:
                errors.append(f"No live agent for {summary.agent_id}")
                continue
            entries.append(
                AgentRegistryEntry(
                    id=summary.agent_id,
                    role_label=summary.role,
                    handle=handle,
                    registered_at=summary.registered_at,
                )
            )
        try:
            dags = self.engine.prepare_state(snapshot.dags)
        except Exception as e:
            errors.append(f"DAG state could not be prepared: {e}")
            dags = {}
        if errors:
            return self._restore_failed(snapshot_id, errors)

        self.registry.replace_all(entries)
        self.engine.import_state(dags)
        self.orchestrator.import_executions(snapshot.executions)
        self.router.import_subscriptions(snapshot.subscriptions)

        result = RestoreResult(
            success=True,
            snapshot_id=snapshot_id,
            restored_agents=[e.id for e in entries],
            restored_workflows=list(dags),
        )
        self._trace("snapshot.restored", {"snapshot_id": snapshot_id})
        if self.audit is not None:
            self.audit.snapshot_restored(snapshot_id, True, [])
        logger.info(f"Restored snapshot {snapshot_id} ({len(entries)} agents, {len(dags)} DAGs)")
        return result

    def _restore_failed(self, snapshot_id: str, errors: List[str]) -> RestoreResult:
        logger.warning(f"Snapshot {snapshot_id} not restored: {'; '.join(errors)}")
        if self.audit is not None:
            self.audit.snapshot_restored(snapshot_id, False, errors)
        return RestoreResult(success=False, snapshot_id=snapshot_id, errors=errors)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def validate_system_integrity(self) -> ValidationResult:
        """Cross-check agents, subscriptions and DAGs for dangling references."""
        issues: List[str] = []
        agents = self.registry.get_all_agents()
        for agent_id, agent in agents.items():
            for dep in getattr(agent, "dependencies", []):
                if dep not in agents:
                    issues.append(f"Agent {agent_id} depends on unregistered agent {dep}")
            try:
                if agent.get_status().status == "error":
                    issues.append(f"Agent {agent_id} reports an error status")
            except Exception as e:
                issues.append(f"Agent {agent_id} status unavailable: {e}")
        for agent_id in self.router.export_subscriptions():
            if agent_id not in agents:
                issues.append(f"Subscriptions held for unregistered agent {agent_id}")
        for dag_id in self.engine.list_workflows():
            instance = self.engine.get_dag(dag_id)
            if instance is not None and not instance.status.is_terminal:
                check = validate_dag(instance.spec)
                if not check.result:
                    issues.append(f"DAG {dag_id}: {check.reason}")

        if issues:
            return ValidationResult.fail(issues[0], type="system_integrity", issues=issues)
        return ValidationResult.ok("system integrity verified", type="system_integrity", agents=len(agents))

    def get_system_metrics(self) -> MeshMetrics:
        executions = list(self.orchestrator.export_executions().values())
        completed = sum(1 for e in executions if e.status == "completed")
        failed = sum(1 for e in executions if e.status == "failed")
        active_agents = 0
        for agent in self.registry.get_all_agents().values():
            try:
                if agent.get_status().status == "ready":
                    active_agents += 1
            except Exception:
                continue
        total = len(executions)
        return MeshMetrics(
            total_agents=len(self.registry),
            active_agents=active_agents,
            total_workflows=total,
            active_workflows=len(self.engine.active_workflows()),
            completed_workflows=completed,
            failed_workflows=failed,
            average_workflow_duration=statistics.mean(e.execution_time for e in executions) if executions else 0.0,
            success_rate=(completed / total * 100.0) if total else 0.0,
            error_rate=(failed / total * 100.0) if total else 0.0,
            engine=self.engine.get_system_metrics(),
        )

    def get_event_history(self, limit: Optional[int] = None) -> List[TraceEvent]:
        history = list(self._event_history)
        return history[-limit:] if limit else history

    def get_agent_interactions(self, agent_id: Optional[str] = None) -> List[AgentInteraction]:
        return self.router.get_agent_interactions(agent_id)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_configuration(self) -> Dict[str, Any]:
        return copy.deepcopy(self.config)

    def validate_configuration(self) -> ValidationResult:
        return validate_configuration(self.config)

    def update_configuration(self, updates: Dict[str, Dict[str, Any]]) -> bool:
        """Merge section updates into the live configuration if the result is valid."""
        candidate = self.get_configuration()
        for section, values in updates.items():
            if not isinstance(values, dict):
                return False
            candidate.setdefault(section, {}).update(values)
        if not validate_configuration(candidate).result:
            logger.warning("Configuration update rejected")
            return False

        self.config = candidate
        self.router.event_timeout = candidate["router"]["event_timeout"]
        self.router.history.limit = candidate["router"]["interaction_limit"]
        self.scheduler.max_concurrency = candidate["scheduler"]["max_concurrency"]
        self.scheduler.task_timeout = candidate["scheduler"]["task_timeout"]
        self.orchestrator.max_concurrency = candidate["mesh"]["max_concurrency"]
        self.orchestrator.default_timeout = candidate["mesh"]["workflow_timeout"]
        self.orchestrator.retry_attempts = candidate["mesh"]["retry_attempts"]
        self.engine.default_policy = ExecutionPolicy(max_concurrency=candidate["engine"]["max_concurrency"])
        self.snapshots.max_snapshots = candidate["snapshots"]["max_snapshots"]
        self._trace("configuration.updated", {"sections": sorted(updates)})
        logger.info(f"Configuration updated: {sorted(updates)}")
        return True

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    def _trace(self, event_type: str, payload: Dict[str, Any], source: Optional[str] = None) -> None:
        if not self.config["mesh"].get("enable_tracing", True):
            return
        event = TraceEvent(event_type=event_type, source=source or self.id, payload=payload)
        self._event_history.append(event)
        limit = self.config["mesh"]["history_limit"]
        if len(self._event_history) > limit:
            self._event_history = self._event_history[-limit:]
        if self.audit is not None:
            self.audit.record(event)

    def _record_error(self, message: str) -> None:
        logger.warning(message)
        self._errors.append(message)
        if len(self._errors) > 100:
            self._errors = self._errors[-100:]
