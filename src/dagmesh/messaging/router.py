"""
Event Routing for dagmesh
=========================

Unicast and broadcast delivery of typed events to registered agents,
with per-agent interest sets and a bounded interaction history.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

from dagmesh.models import AgentInteraction, BroadcastResult, RoutingResult
from dagmesh.observability.metrics import MetricsCollector
from dagmesh.registry import AgentRegistry

logger = logging.getLogger("dagmesh.messaging")


class InteractionHistory:
    """Bounded store of delivery records, oldest dropped first."""

    def __init__(self, limit: int = 1000):
        self.limit = limit
        self._items: List[AgentInteraction] = []

    def add(self, interaction: AgentInteraction) -> None:
        self._items.append(interaction)
        if len(self._items) > self.limit:
            self._items = self._items[-self.limit :]

    def get(self, agent_id: Optional[str] = None) -> List[AgentInteraction]:
        """Interactions where agent_id is source or target (all if None)."""
        if agent_id is None:
            return list(self._items)
        return [
            i for i in self._items
            if i.target_agent == agent_id or i.source_agent == agent_id
        ]


class EventRouter:
    """Delivers events to agents held by an AgentRegistry.

    Ensures:
    - Unknown targets produce a failed RoutingResult, never an exception
    - Deliveries to one target run one at a time, in call order
    - Handler errors and timeouts are recorded as delivery failures
    - Broadcast honours per-agent interest sets

    Usage:
        router = EventRouter(registry, event_timeout=5.0)
        result = await router.route_event("task.execute", {"x": 1}, "worker-1")
        fanout = await router.broadcast_event("mesh.ping", {}, source_id="mesh")
    """

    def __init__(
        self,
        registry: AgentRegistry,
        event_timeout: Optional[float] = 30.0,
        interaction_limit: int = 1000,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.registry = registry
        self.event_timeout = event_timeout
        self.history = InteractionHistory(limit=interaction_limit)
        self._metrics = metrics
        self._subscriptions: Dict[str, set[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def route_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        target_id: str,
        source_id: Optional[str] = None,
    ) -> RoutingResult:
        """Deliver one event to one agent and wait for its handler."""
        agent = self.registry.get_agent(target_id)
        if agent is None:
            logger.warning(f"Cannot route {event_type}: target agent not found: {target_id}")
            return RoutingResult(
                success=False,
                failed_routes=[target_id],
                error=f"Target agent not found: {target_id}",
            )

        path = [source_id, target_id] if source_id else [target_id]
        ok, response, error = await self._deliver(agent, event_type, payload, target_id, source_id)
        if ok:
            return RoutingResult(
                success=True, routed_to=[target_id], routing_path=path, response=response
            )
        return RoutingResult(
            success=False, routing_path=path, failed_routes=[target_id], error=error
        )

    async def broadcast_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        source_id: Optional[str] = None,
        exclude_source: bool = True,
    ) -> BroadcastResult:
        """Deliver an event concurrently to every subscribed agent.

        Agents without an interest set receive every event type. ``success``
        is True when at least one delivery succeeded.
        """
        recipients: List[str] = []
        filtered: List[str] = []
        for agent_id in self.registry.get_all_agents():
            if exclude_source and agent_id == source_id:
                continue
            if self.is_subscribed(agent_id, event_type):
                recipients.append(agent_id)
            else:
                filtered.append(agent_id)

        outcomes = await asyncio.gather(
            *(self.route_event(event_type, payload, agent_id, source_id) for agent_id in recipients)
        )
        delivered = [a for a, r in zip(recipients, outcomes) if r.success]
        failed = [a for a, r in zip(recipients, outcomes) if not r.success]

        if failed:
            logger.warning(f"Broadcast {event_type}: {len(failed)}/{len(recipients)} deliveries failed")
        else:
            logger.debug(f"Broadcast {event_type} delivered to {len(delivered)} agents")

        return BroadcastResult(
            success=bool(delivered),
            broadcast_to=delivered,
            failed_broadcasts=failed,
            filtered=filtered,
        )

    async def _deliver(
        self,
        agent: Any,
        event_type: str,
        payload: Dict[str, Any],
        target_id: str,
        source_id: Optional[str],
    ) -> tuple[bool, Any, Optional[str]]:
        lock = self._locks.setdefault(target_id, asyncio.Lock())
        start = time.monotonic()
        response = None
        error: Optional[str] = None
        async with lock:
            try:
                if self.event_timeout:
                    response = await asyncio.wait_for(
                        agent.handle_event(event_type, payload), self.event_timeout
                    )
                else:
                    response = await agent.handle_event(event_type, payload)
            except asyncio.TimeoutError:
                error = f"Delivery of {event_type} to {target_id} timed out after {self.event_timeout}s"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

        duration = time.monotonic() - start
        ok = error is None
        self.history.add(
            AgentInteraction(
                source_agent=source_id,
                target_agent=target_id,
                event_type=event_type,
                success=ok,
                duration=duration,
                error=error,
            )
        )
        if not ok:
            logger.warning(f"Event {event_type} to {target_id} failed: {error}")
        if self._metrics is not None:
            await self._metrics.record(
                "event_delivery_seconds",
                duration,
                event_type=event_type,
                target=target_id,
                status="success" if ok else "failure",
            )
        return ok, response, error

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_to_events(self, agent_id: str, event_types: Iterable[str]) -> bool:
        if agent_id not in self.registry:
            return False
        self._subscriptions.setdefault(agent_id, set()).update(event_types)
        return True

    def unsubscribe_from_events(self, agent_id: str, event_types: Iterable[str]) -> bool:
        """Remove types from an agent's interest set. The (possibly empty) set stays."""
        interests = self._subscriptions.get(agent_id)
        if interests is None:
            return False
        interests.difference_update(event_types)
        return True

    def is_subscribed(self, agent_id: str, event_type: str) -> bool:
        interests = self._subscriptions.get(agent_id)
        return interests is None or event_type in interests

    def get_subscriptions(self, agent_id: str) -> Optional[List[str]]:
        """Sorted interest set, or None when the agent receives every type."""
        interests = self._subscriptions.get(agent_id)
        return sorted(interests) if interests is not None else None

    def drop_agent(self, agent_id: str) -> None:
        self._subscriptions.pop(agent_id, None)
        self._locks.pop(agent_id, None)

    def export_subscriptions(self) -> Dict[str, List[str]]:
        return {agent_id: sorted(types) for agent_id, types in self._subscriptions.items()}

    def import_subscriptions(self, subscriptions: Dict[str, List[str]]) -> None:
        self._subscriptions = {agent_id: set(types) for agent_id, types in subscriptions.items()}

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_agent_interactions(self, agent_id: Optional[str] = None) -> List[AgentInteraction]:
        return self.history.get(agent_id)
