"""Message routing between agents."""

from src.swarm.routing.router import (
    BROADCAST,
    AgentChannel,
    AgentEvent,
    AgentEventKind,
    MessageRouter,
)

__all__ = [
    "BROADCAST",
    "AgentChannel",
    "AgentEvent",
    "AgentEventKind",
    "MessageRouter",
]
