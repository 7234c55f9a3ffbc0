"""
dagmesh Agent Registry
======================

Id -> live agent handle map. The registry is the only place that holds
handles; agents reach each other through the event router, never directly.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from dagmesh.agents import AgentContract

logger = logging.getLogger("dagmesh.registry")


@dataclass
class AgentRegistryEntry:
    id: str
    role_label: str
    handle: Any
    registered_at: float = field(default_factory=time.time)


class AgentRegistry:
    """Registered agents keyed by id, in registration order."""

    def __init__(self):
        self._entries: Dict[str, AgentRegistryEntry] = {}

    def register_agent(self, agent: Any) -> bool:
        """Register an agent. Returns False if its id is already taken.

        Raises:
            TypeError: If ``agent`` does not implement the agent contract.
        """
        if not isinstance(agent, AgentContract):
            raise TypeError(f"{type(agent).__name__} does not implement the agent contract")
        if agent.id in self._entries:
            logger.warning(f"Agent already registered: {agent.id}")
            return False
        self._entries[agent.id] = AgentRegistryEntry(id=agent.id, role_label=agent.role, handle=agent)
        logger.info(f"Registered agent {agent.id} ({agent.role})")
        return True

    def unregister_agent(self, agent_id: str) -> bool:
        if self._entries.pop(agent_id, None) is None:
            return False
        logger.info(f"Unregistered agent {agent_id}")
        return True

    def get_agent(self, agent_id: str) -> Optional[Any]:
        entry = self._entries.get(agent_id)
        return entry.handle if entry is not None else None

    def get_entry(self, agent_id: str) -> Optional[AgentRegistryEntry]:
        return self._entries.get(agent_id)

    def get_all_agents(self) -> Dict[str, Any]:
        return {agent_id: entry.handle for agent_id, entry in self._entries.items()}

    def entries(self) -> list[AgentRegistryEntry]:
        return list(self._entries.values())

    def replace_all(self, entries: Iterable[AgentRegistryEntry]) -> None:
        """Swap in a complete set of entries (snapshot restore)."""
        self._entries = {entry.id: entry for entry in entries}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._entries
