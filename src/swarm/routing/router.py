"""In-process message router connecting agents to each other and to the
orchestrator.

Agents publish three kinds of events through the AgentChannel attached to
them:

- message: application payload. A payload whose ``type`` is "broadcast"
  goes to every other agent; a payload with a ``target`` role goes only to
  that agent; anything else is unroutable and dropped.
- error: agent-local failure. Recorded on the agent handle and, when
  auto-recovery is on, answered with a restart. Restart outcomes are
  emitted as events, never raised.
- complete: phase-local completion with timing. Updates per-agent
  utilization metrics. Pipeline phases never wait on these events.

All events pass through one central queue drained by a single dispatch
loop, so the delivery rules live in one place. Each agent has its own
inbox queue drained by a delivery worker that calls ``receive_message``,
so a slow agent never blocks routing to the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.swarm.agents.handle import AgentHandle
from src.swarm.agents.protocols import AgentRole, get_field, resolve
from src.swarm.events.emitter import EventEmitter, NullEventEmitter
from src.swarm.events.metrics import SwarmMetrics
from src.swarm.events.models import EventType, SwarmEvent


logger = logging.getLogger(__name__)


BROADCAST = "broadcast"


class AgentEventKind(str, Enum):
    """Kinds of events an agent can publish."""

    MESSAGE = "message"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class AgentEvent:
    """One event published by an agent.

    Attributes:
        kind: Event kind.
        source: Role of the publishing agent.
        payload: Message payload, error, or completion result.
        execution_time_ms: Reported execution time (complete events only).
    """

    kind: AgentEventKind
    source: AgentRole
    payload: Any = None
    execution_time_ms: float = 0.0


class AgentChannel:
    """Publishing endpoint the router hands to one agent.

    Publishing never blocks and never raises into the agent; events
    published after the router has closed are dropped with a log entry.
    """

    def __init__(self, role: AgentRole, router: "MessageRouter"):
        self.role = role
        self._router = router

    def send(self, payload: Any) -> None:
        """Publish an application message."""
        self._router.publish(AgentEvent(AgentEventKind.MESSAGE, self.role, payload))

    def error(self, error: Any) -> None:
        """Report an agent-local failure."""
        self._router.publish(AgentEvent(AgentEventKind.ERROR, self.role, error))

    def complete(self, execution_time_ms: float, result: Any = None) -> None:
        """Report completion of a unit of work."""
        self._router.publish(
            AgentEvent(
                AgentEventKind.COMPLETE,
                self.role,
                result,
                execution_time_ms=execution_time_ms,
            )
        )


class MessageRouter:
    """Single switch owning agent-to-agent delivery rules.

    Attributes:
        metrics: Metrics updated on complete events.
        auto_recover: Restart agents that report errors (subject to each
            handle's own ``auto_recover`` flag).

    Example:
        >>> router = MessageRouter(metrics, emitter)
        >>> channel = router.register(handle)
        >>> await router.start()
        >>> channel.send({"type": "broadcast", "body": "spec ready"})
        >>> await router.join()
        >>> await router.close()
    """

    def __init__(
        self,
        metrics: SwarmMetrics,
        event_emitter: Optional[EventEmitter] = None,
        auto_recover: bool = True,
    ):
        self.metrics = metrics
        self.auto_recover = auto_recover
        self._emitter = event_emitter or NullEventEmitter()
        self._handles: Dict[AgentRole, AgentHandle] = {}
        self._inboxes: Dict[AgentRole, asyncio.Queue] = {}
        self._events: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._closed = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, handle: AgentHandle) -> AgentChannel:
        """Register an agent and attach its publishing channel.

        The channel is handed to the agent through ``attach_channel`` when
        the agent defines it.

        Raises:
            ValueError: If the role is already registered.
        """
        if handle.role in self._handles:
            raise ValueError(f"Agent role already registered: {handle.role.value}")

        self._handles[handle.role] = handle
        self._inboxes[handle.role] = asyncio.Queue()
        channel = AgentChannel(handle.role, self)

        attach = getattr(handle.agent, "attach_channel", None)
        if callable(attach):
            attach(channel)

        if self._started:
            self._tasks.append(
                asyncio.create_task(self._delivery_worker(handle.role))
            )
        return channel

    async def start(self) -> None:
        """Start the dispatch loop and one delivery worker per agent."""
        if self._started or self._closed:
            return
        self._started = True
        self._tasks.append(asyncio.create_task(self._dispatch_loop()))
        for role in self._handles:
            self._tasks.append(asyncio.create_task(self._delivery_worker(role)))
        logger.info(
            "Message router started",
            extra={"agents": [role.value for role in self._handles]},
        )

    def publish(self, event: AgentEvent) -> None:
        """Queue an agent event for dispatch."""
        if self._closed:
            logger.warning(
                "Dropping agent event published after router close",
                extra={"agent": event.source.value, "kind": event.kind.value},
            )
            return
        self._events.put_nowait(event)

    async def join(self) -> None:
        """Wait until every queued event and delivery has been processed.

        Deliveries may publish further events, so the queues are drained
        until they are all empty at the same time.
        """
        while True:
            await self._events.join()
            for inbox in self._inboxes.values():
                await inbox.join()
            if self._events.empty() and all(
                inbox.empty() for inbox in self._inboxes.values()
            ):
                return

    async def close(self) -> None:
        """Stop the dispatch loop and delivery workers.

        Events still queued are discarded.
        """
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Message router closed")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(
                    "Failed to dispatch agent event: %s",
                    str(e),
                    extra={"agent": event.source.value, "kind": event.kind.value},
                )
            finally:
                self._events.task_done()

    async def _dispatch(self, event: AgentEvent) -> None:
        if event.kind == AgentEventKind.MESSAGE:
            await self._route_message(event.source, event.payload)
        elif event.kind == AgentEventKind.ERROR:
            await self._handle_error(event.source, event.payload)
        elif event.kind == AgentEventKind.COMPLETE:
            await self._handle_complete(event)

    def resolve_targets(
        self,
        source: AgentRole,
        message: Any,
    ) -> Tuple[List[AgentRole], Optional[str]]:
        """Apply the delivery rules to a message.

        Returns:
            The target roles and, when the message is dropped, the reason.
        """
        if get_field(message, "type") == BROADCAST:
            return [role for role in self._handles if role != source], None

        target = get_field(message, "target")
        if target is None:
            return [], "unroutable"

        try:
            role = AgentRole(target)
        except ValueError:
            return [], "unknown_target"
        if role not in self._handles:
            return [], "unknown_target"
        return [role], None

    async def _route_message(self, source: AgentRole, message: Any) -> None:
        targets, reason = self.resolve_targets(source, message)

        if reason is not None:
            logger.debug(
                "Dropping agent message",
                extra={"agent": source.value, "reason": reason},
            )
            await self._emit(
                EventType.AGENT_MESSAGE_DROPPED,
                source,
                {"reason": reason},
            )
            return

        delivered = []
        for role in targets:
            if not self._handles[role].config.enabled:
                continue
            self._inboxes[role].put_nowait((source, message))
            delivered.append(role.value)

        await self._emit(
            EventType.AGENT_MESSAGE,
            source,
            {
                "targets": delivered,
                "broadcast": get_field(message, "type") == BROADCAST,
            },
        )

    async def _delivery_worker(self, role: AgentRole) -> None:
        inbox = self._inboxes[role]
        agent = self._handles[role].agent
        while True:
            source, message = await inbox.get()
            try:
                await resolve(agent.receive_message(message))
            except Exception as e:
                logger.warning(
                    "Agent failed to accept message: %s",
                    str(e),
                    extra={"agent": role.value, "source": source.value},
                )
                await self._emit(
                    EventType.AGENT_MESSAGE_DROPPED,
                    role,
                    {
                        "reason": "delivery_failed",
                        "source": source.value,
                        "error": str(e),
                    },
                )
            finally:
                inbox.task_done()

    async def _handle_error(self, source: AgentRole, error: Any) -> None:
        handle = self._handles.get(source)
        if handle is None:
            return

        handle.record_error(error)
        logger.error(
            "Agent reported error: %s",
            str(error),
            extra={"agent": source.value, "error_count": handle.error_count},
        )
        await self._emit(
            EventType.AGENT_ERROR,
            source,
            {"error": str(error), "error_count": handle.error_count},
        )

        if not (self.auto_recover and handle.config.auto_recover):
            return

        try:
            await handle.restart()
        except Exception as e:
            await self._emit(
                EventType.AGENT_RECOVERY_FAILED,
                source,
                {"error": str(e), "error_type": type(e).__name__},
            )
        else:
            await self._emit(EventType.AGENT_RECOVERED, source, {})

    async def _handle_complete(self, event: AgentEvent) -> None:
        self.metrics.record_agent_completion(
            event.source.value,
            float(event.execution_time_ms or 0.0),
        )
        await self._emit(
            EventType.AGENT_COMPLETE,
            event.source,
            {"execution_time_ms": event.execution_time_ms},
        )

    async def _emit(
        self,
        event_type: EventType,
        agent: AgentRole,
        details: Dict[str, Any],
    ) -> None:
        try:
            await self._emitter.emit(
                SwarmEvent(event_type=event_type, agent=agent.value, details=details)
            )
        except Exception as e:
            logger.error(
                "Failed to emit %s event: %s",
                event_type.value,
                str(e),
            )
