"""Agent contracts, handles and helpers.

Agents are black boxes: the orchestrator depends only on the capability
protocol and the per-role extensions defined in ``protocols``.
"""

from src.swarm.agents.base import BaseAgent
from src.swarm.agents.handle import (
    AgentConfig,
    AgentHandle,
    AgentState,
    default_agent_configs,
)
from src.swarm.agents.protocols import (
    ROLE_PROTOCOLS,
    Agent,
    AgentRole,
    DevAgent,
    IntegrationAgent,
    QAAgent,
    ResearchAgent,
    SpecAgent,
    TaskDecomposer,
    get_field,
    resolve,
    validate_agents,
)

__all__ = [
    # Protocols
    "Agent",
    "AgentRole",
    "ResearchAgent",
    "SpecAgent",
    "DevAgent",
    "QAAgent",
    "IntegrationAgent",
    "TaskDecomposer",
    "ROLE_PROTOCOLS",
    "get_field",
    "resolve",
    "validate_agents",
    # Handles
    "AgentConfig",
    "AgentHandle",
    "AgentState",
    "default_agent_configs",
    # Helpers
    "BaseAgent",
]
