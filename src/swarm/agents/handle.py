"""Per-role agent handles.

An AgentHandle wraps one long-lived agent instance with its role
configuration and the capability state the orchestrator and the message
router maintain for it. Handles are owned by the orchestrator and reused
by every execution; the agent behind a handle is what must be safe under
concurrent calls, not the handle.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from src.swarm.agents.protocols import AgentRole, resolve


logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    """Capability state of an agent handle."""

    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class AgentConfig(BaseModel):
    """Configuration of one agent role.

    Attributes:
        concurrency_fraction: Share of the swarm's agent capacity this
            role may use for concurrent subtasks.
        strategies: Role-specific strategy names (e.g. QA test levels).
        enabled: Whether the role takes part in the swarm.
        auto_recover: Whether the router restarts the agent on error events.
    """

    concurrency_fraction: float = 1.0
    strategies: List[str] = Field(default_factory=list)
    enabled: bool = True
    auto_recover: bool = True

    @field_validator("concurrency_fraction")
    @classmethod
    def validate_concurrency_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("concurrency_fraction must be in (0, 1]")
        return v


def default_agent_configs(
    research_concurrency: float = 0.3,
    development_concurrency: float = 0.4,
    auto_recover: bool = True,
) -> Dict[AgentRole, AgentConfig]:
    """Build the standard configuration for every role."""
    return {
        AgentRole.RESEARCH: AgentConfig(
            concurrency_fraction=research_concurrency,
            auto_recover=auto_recover,
        ),
        AgentRole.SPEC: AgentConfig(auto_recover=auto_recover),
        AgentRole.DEV: AgentConfig(
            concurrency_fraction=development_concurrency,
            auto_recover=auto_recover,
        ),
        AgentRole.QA: AgentConfig(
            strategies=["unit", "integration", "e2e"],
            auto_recover=auto_recover,
        ),
        AgentRole.INTEGRATION: AgentConfig(
            strategies=["github", "webhooks"],
            auto_recover=auto_recover,
        ),
    }


@dataclass
class AgentHandle:
    """One agent role as seen by the orchestrator.

    Attributes:
        role: The role the agent fills.
        agent: The agent instance.
        config: Role configuration.
        state: Current capability state.
        in_flight: Calls currently running against the agent.
        pending_restart: Set while a restart has been requested but not done.
        error_count: Error events reported by the agent.
        last_error: Description of the most recent error event.
    """

    role: AgentRole
    agent: Any
    config: AgentConfig = field(default_factory=AgentConfig)
    state: AgentState = AgentState.IDLE
    in_flight: int = 0
    pending_restart: bool = False
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @asynccontextmanager
    async def activity(self) -> AsyncIterator[Any]:
        """Track one call against the agent, yielding the agent."""
        self.in_flight += 1
        self.state = AgentState.RUNNING
        try:
            yield self.agent
        finally:
            self.in_flight -= 1
            if self.in_flight == 0 and self.state == AgentState.RUNNING:
                self.state = AgentState.IDLE

    def record_error(self, error: Any) -> None:
        """Record an out-of-band error reported by the agent."""
        self.error_count += 1
        self.last_error = str(error)
        self.last_error_at = datetime.now(timezone.utc)

    async def restart(self) -> None:
        """Restart the agent, keeping the handle's state consistent.

        Raises:
            Exception: Whatever the agent's ``restart`` raises.
        """
        self.pending_restart = True
        previous = self.state
        self.state = AgentState.RESTARTING
        try:
            await resolve(self.agent.restart())
        except Exception:
            self.state = previous
            raise
        finally:
            self.pending_restart = False
        self.state = AgentState.RUNNING if self.in_flight else AgentState.IDLE
        logger.info("Agent restarted", extra={"agent": self.role.value})

    async def shutdown(self) -> None:
        """Shut the agent down once; later calls are no-ops."""
        if self.state == AgentState.STOPPED:
            return
        await resolve(self.agent.shutdown())
        self.state = AgentState.STOPPED

    def status(self) -> Dict[str, Any]:
        """Return the handle state merged with the agent's own status."""
        return {
            "state": self.state.value,
            "in_flight": self.in_flight,
            "pending_restart": self.pending_restart,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "agent": self.agent.get_status(),
        }
