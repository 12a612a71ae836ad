"""Shared plumbing for agent implementations.

BaseAgent implements the capability interface around a single abstract
``run`` method: it times every ``execute`` call, keeps the counters
returned by ``get_metrics``, and reports completions and out-of-band
faults through the channel the message router attaches. Role implementations subclass
it and add their role extension methods.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from src.swarm.agents.protocols import AgentRole


logger = logging.getLogger(__name__)


class BaseAgent(ABC):
    """Base class for swarm agents.

    Attributes:
        role: Role the agent fills.
        channel: Publishing channel attached by the message router.
        inbox: Messages delivered by the router, oldest first.
        performance_mode: Set by ``enable_performance_mode``.

    Example:
        >>> class EchoAgent(BaseAgent):
        ...     async def run(self, subtask):
        ...         return subtask
        >>> agent = EchoAgent(AgentRole.RESEARCH)
        >>> await agent.execute("topic")
        'topic'
    """

    def __init__(self, role: AgentRole):
        self.role = role
        self.channel: Optional[Any] = None
        self.inbox: List[Any] = []
        self.performance_mode = False
        self.restarts = 0
        self._tasks_completed = 0
        self._tasks_failed = 0
        self._total_time = 0.0
        self._running = 0
        self._stopped = False
        self._lock = asyncio.Lock()

    @abstractmethod
    async def run(self, subtask: Any) -> Any:
        """Perform one unit of work."""

    def attach_channel(self, channel: Any) -> None:
        """Called by the message router when the agent is registered."""
        self.channel = channel

    async def execute(self, subtask: Any) -> Any:
        """Run ``subtask`` and publish a complete event.

        Exceptions from ``run`` are counted and re-raised so the calling
        phase fails. They are not published as agent errors; ``report_error``
        is for faults outside any single call.
        """
        started = time.monotonic()
        self._running += 1
        try:
            result = await self.run(subtask)
        except Exception:
            async with self._lock:
                self._tasks_failed += 1
            raise
        finally:
            self._running -= 1

        elapsed_ms = (time.monotonic() - started) * 1000.0
        async with self._lock:
            self._tasks_completed += 1
            self._total_time += elapsed_ms
        if self.channel is not None:
            self.channel.complete(elapsed_ms, result)
        return result

    def send(self, payload: Any, target: Optional[AgentRole] = None) -> None:
        """Send a message to one agent, or publish it as-is."""
        if self.channel is None:
            logger.debug(
                "No channel attached, message not sent",
                extra={"agent": self.role.value},
            )
            return
        if target is not None:
            payload = {**payload, "target": AgentRole(target).value}
        self.channel.send(payload)

    def broadcast(self, payload: Dict[str, Any]) -> None:
        """Send a message to every other agent."""
        self.send({**payload, "type": "broadcast"})

    def report_error(self, error: Any) -> None:
        """Publish an out-of-band fault, such as a lost backend connection."""
        if self.channel is None:
            logger.warning(
                "No channel attached, error not reported",
                extra={"agent": self.role.value, "error": str(error)},
            )
            return
        self.channel.error(error)

    def receive_message(self, message: Any) -> None:
        self.inbox.append(message)

    async def restart(self) -> None:
        self.restarts += 1
        self._stopped = False

    async def shutdown(self) -> None:
        self._stopped = True

    def enable_performance_mode(self) -> None:
        self.performance_mode = True

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "tasks_completed": self._tasks_completed,
            "tasks_failed": self._tasks_failed,
            "total_time": self._total_time,
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "running": self._running,
            "stopped": self._stopped,
            "restarts": self.restarts,
            "performance_mode": self.performance_mode,
            "inbox": len(self.inbox),
        }
