"""Agent capability contracts.

Every agent role implements one capability interface (Agent) plus a
role-specific extension. Roles are selected by the AgentRole tag, not by
class identity: the orchestrator looks up the extension protocol for a
role and checks the agent against it when the swarm is assembled.

The orchestrator treats agents as black boxes. Phase payloads and
results are plain mappings or objects; ``get_field`` reads a field from
either shape so agents are free to return dicts or pydantic models.
"""

import inspect
from enum import Enum
from typing import Any, Dict, List, Mapping, Protocol, Type, runtime_checkable

from src.swarm.errors import AgentConfigurationError


class AgentRole(str, Enum):
    """Workflow roles of the swarm."""

    RESEARCH = "research"
    SPEC = "spec"
    DEV = "dev"
    QA = "qa"
    INTEGRATION = "integration"


@runtime_checkable
class Agent(Protocol):
    """Capability interface every agent role implements.

    ``execute`` may be called concurrently by the concurrency limiter, and
    the same agent instance serves every execution, so implementations
    must be safe under concurrent calls.
    """

    async def execute(self, subtask: Any) -> Any:
        """Run one unit of work and return its result."""
        ...

    def receive_message(self, message: Any) -> Any:
        """Accept a routed message. May be sync or async."""
        ...

    async def restart(self) -> None:
        """Recover from an agent-local failure; raises if it cannot."""
        ...

    async def shutdown(self) -> None:
        """Release resources. Called once per lifecycle."""
        ...

    def get_metrics(self) -> Dict[str, Any]:
        """Return ``{tasks_completed, total_time, ...}``."""
        ...

    def get_status(self) -> Any:
        """Return an implementation-defined status snapshot."""
        ...


@runtime_checkable
class ResearchAgent(Agent, Protocol):
    async def consolidate(self, results: List[Any]) -> Any:
        """Merge individual research results into one research output."""
        ...


@runtime_checkable
class SpecAgent(Agent, Protocol):
    async def generate(self, spec_input: Mapping[str, Any]) -> Any:
        """Generate a specification from research and requirements."""
        ...

    async def validate(self, spec: Any) -> Any:
        """Return ``{valid, errors}`` for a generated specification."""
        ...


@runtime_checkable
class DevAgent(Agent, Protocol):
    async def plan_implementation(self, spec: Any) -> List[Any]:
        """Split a specification into implementation subtasks."""
        ...

    async def integrate(self, results: List[Any]) -> Any:
        """Merge partial implementations into one code artifact."""
        ...

    async def fix_failing_tests(self, test_results: Any) -> Any:
        """Attempt a fix; return ``{success, code}``."""
        ...


@runtime_checkable
class QAAgent(Agent, Protocol):
    async def prepare_test_suite(self, spec: Any) -> Any:
        """Build a test suite from the specification alone."""
        ...


@runtime_checkable
class IntegrationAgent(Agent, Protocol):
    async def process(self, artifacts: Mapping[str, Any]) -> Any:
        """Turn spec, code and tests into documentation and deployment."""
        ...


ROLE_PROTOCOLS: Dict[AgentRole, Type[Agent]] = {
    AgentRole.RESEARCH: ResearchAgent,
    AgentRole.SPEC: SpecAgent,
    AgentRole.DEV: DevAgent,
    AgentRole.QA: QAAgent,
    AgentRole.INTEGRATION: IntegrationAgent,
}


@runtime_checkable
class TaskDecomposer(Protocol):
    """Splits a task into a research plan and a requirement set."""

    async def decompose(self, task: Any) -> Any:
        """Return ``{research: [subtask, ...], requirements}``."""
        ...


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a mapping or an attribute-bearing object."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


def validate_agents(agents: Mapping[Any, Any]) -> Dict[AgentRole, Any]:
    """Check that every role is present and satisfies its extension.

    Args:
        agents: Mapping of role (AgentRole or its string value) to agent.

    Returns:
        The same agents keyed by AgentRole.

    Raises:
        AgentConfigurationError: If a role is missing, unknown, or its
            agent lacks a required method.
    """
    normalized: Dict[AgentRole, Any] = {}
    for key, agent in agents.items():
        try:
            role = AgentRole(key)
        except ValueError:
            raise AgentConfigurationError(f"Unknown agent role: {key}") from None
        normalized[role] = agent

    missing = [role.value for role in AgentRole if role not in normalized]
    if missing:
        raise AgentConfigurationError(
            f"Missing agents for roles: {', '.join(missing)}"
        )

    for role, agent in normalized.items():
        protocol = ROLE_PROTOCOLS[role]
        if not isinstance(agent, protocol):
            raise AgentConfigurationError(
                f"Agent for role '{role.value}' does not implement "
                f"{protocol.__name__}"
            )

    return normalized
