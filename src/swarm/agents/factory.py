"""Loading agents and the task decomposer from import strings.

Agent implementations live outside this package. The service is told
where to find them with ``"package.module:callable"`` strings in
SwarmSettings; the callable is invoked with the settings and must return
a mapping of role to agent (or a task decomposer).
"""

import importlib
import logging
from typing import Any, Callable, Dict

from src.swarm.agents.protocols import (
    AgentRole,
    TaskDecomposer,
    validate_agents,
)
from src.swarm.config import SwarmSettings
from src.swarm.errors import AgentConfigurationError


logger = logging.getLogger(__name__)


def import_callable(path: str) -> Callable[..., Any]:
    """Resolve ``"module:attribute"`` to a callable.

    Raises:
        AgentConfigurationError: If the path is malformed, the module
            cannot be imported, or the attribute is missing or not callable.
    """
    module_path, sep, attr_name = path.partition(":")
    if not sep or not module_path or not attr_name:
        raise AgentConfigurationError(
            f"Factory path must look like 'module:callable', got '{path}'"
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        logger.error(
            "Failed to import factory module",
            extra={"module": module_path, "error": str(e)},
        )
        raise AgentConfigurationError(
            f"Could not import module '{module_path}': {e}"
        ) from e

    target = module
    for part in attr_name.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise AgentConfigurationError(
                f"Module '{module_path}' has no attribute '{attr_name}'"
            )

    if not callable(target):
        raise AgentConfigurationError(f"'{path}' is not callable")
    return target


def load_agents(path: str, settings: SwarmSettings) -> Dict[AgentRole, Any]:
    """Build and validate the agent mapping from a factory path."""
    factory = import_callable(path)
    agents = factory(settings)
    logger.info("Loaded agents", extra={"factory": path})
    return validate_agents(agents)


def load_decomposer(path: str, settings: SwarmSettings) -> TaskDecomposer:
    """Build the task decomposer from a factory path."""
    decomposer = import_callable(path)(settings)
    if not isinstance(decomposer, TaskDecomposer):
        raise AgentConfigurationError(
            f"Object returned by '{path}' does not implement decompose()"
        )
    logger.info("Loaded task decomposer", extra={"factory": path})
    return decomposer
