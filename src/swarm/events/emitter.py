"""Event emitter implementations for swarm observability.

This module provides the event emission infrastructure for the swarm.
It defines an abstract EventEmitter interface and concrete implementations
for different event sinks:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

The emitter abstraction allows the orchestrator and the message router
to emit events without coupling to specific monitoring infrastructure.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.swarm.events.models import EventType, SwarmEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the swarm.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics (counters).
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for swarm event emitters.

    Implementations should be:
    - Async-safe: emit() is called from async contexts
    - Non-blocking: emit() should not block pipeline processing
    - Fault-tolerant: emit() failures should not crash the pipeline
    """

    @abstractmethod
    async def emit(self, event: SwarmEvent) -> None:
        """Emit a swarm event.

        Args:
            event: The swarm event to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Events are logged at different levels based on event type:

    - Failures (EXECUTION_FAILED, AGENT_ERROR, AGENT_RECOVERY_FAILED,
      ESCALATION_FAILED): ERROR level
    - Degradations (EXECUTION_RETRY, ESCALATION, AGENT_MESSAGE_DROPPED,
      INTEGRATION_ACTION_FAILED): WARNING level
    - High-volume agent traffic (AGENT_MESSAGE, AGENT_COMPLETE): DEBUG level
    - Everything else: INFO level

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(SwarmEvent(event_type=EventType.SHUTDOWN_START))
        # Logs: INFO - Swarm event: shutdown_start for swarm
    """

    def __init__(self, logger_name: Optional[str] = None):
        """Initialize the logging event emitter.

        Args:
            logger_name: Optional logger name. If not provided, uses
                         the module logger.
        """
        self._logger = (
            logging.getLogger(logger_name)
            if logger_name
            else logger
        )
        self._log_level_map = {
            EventType.EXECUTION_FAILED: logging.ERROR,
            EventType.AGENT_ERROR: logging.ERROR,
            EventType.AGENT_RECOVERY_FAILED: logging.ERROR,
            EventType.ESCALATION_FAILED: logging.ERROR,
            EventType.EXECUTION_RETRY: logging.WARNING,
            EventType.ESCALATION: logging.WARNING,
            EventType.AGENT_MESSAGE_DROPPED: logging.WARNING,
            EventType.INTEGRATION_ACTION_FAILED: logging.WARNING,
            EventType.AGENT_MESSAGE: logging.DEBUG,
            EventType.AGENT_COMPLETE: logging.DEBUG,
        }

    async def emit(self, event: SwarmEvent) -> None:
        """Emit event as a structured log entry."""
        log_level = self._log_level_map.get(event.event_type, logging.INFO)

        self._logger.log(
            log_level,
            "Swarm event: %s for %s",
            event.event_type.value,
            event.subject,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Failures in one emitter do not affect others - each emitter is called
    independently and errors are logged but not propagated.

    Example:
        >>> composite = CompositeEventEmitter(
        ...     [LoggingEventEmitter(), MetricsEventEmitter(metrics)]
        ... )
        >>> await composite.emit(event)  # Emits to both sinks
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        """Add a child emitter to the composite."""
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Get the list of child emitters (read-only copy)."""
        return list(self._emitters)

    async def emit(self, event: SwarmEvent) -> None:
        """Emit event to all child emitters."""
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        """Close all child emitters, logging failures."""
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: SwarmEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
    metrics=None,
) -> EventEmitter:
    """Factory function to create event emitters based on configuration.

    Args:
        sink_types: List of event sink types to enable. If None or empty,
                    returns a LoggingEventEmitter as the default.
        logger_name: Optional logger name for the LoggingEventEmitter.
        metrics: SwarmMetrics instance updated by the METRICS sink. The
                 METRICS sink is skipped when no instance is given.

    Returns:
        An EventEmitter configured for the requested sinks.

    Example:
        >>> emitter = create_event_emitter(
        ...     [EventSinkType.LOGGING, EventSinkType.METRICS],
        ...     metrics=SwarmMetrics(registry=CollectorRegistry()),
        ... )
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []

    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            if metrics is None:
                logger.warning(
                    "Metrics sink requested without a metrics instance, skipping"
                )
                continue
            # Deferred to avoid a circular import with metrics.py
            from src.swarm.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter(metrics))
        else:
            logger.warning(
                "Unknown event sink type: %s, skipping",
                sink_type,
            )

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)

    if len(emitters) == 1:
        return emitters[0]

    return CompositeEventEmitter(emitters)
