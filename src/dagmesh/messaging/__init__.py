"""dagmesh Messaging: event routing between registered agents."""

from dagmesh.messaging.router import EventRouter, InteractionHistory

__all__ = [
    "EventRouter",
    "InteractionHistory",
]
