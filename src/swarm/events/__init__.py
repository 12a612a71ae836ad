"""Swarm event emission and metrics.

This module provides observability for the swarm:
- Event emission for execution, phase, escalation and agent activity
- The process-wide Metrics object with Prometheus mirrors
- Metrics snapshot persistence at shutdown

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Updates event-derived Prometheus metrics
- NullEventEmitter: Discards events

Metrics:
- SwarmMetrics: Process-wide counters plus Prometheus metrics
- get_metrics: Get or create the metrics instance
- generate_metrics_output: Generate Prometheus format output for /metrics
- write_metrics_snapshot: Persist a snapshot to the runtime directory
"""

from src.swarm.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.swarm.events.metrics import (
    AgentUtilization,
    MetricsEventEmitter,
    MetricsSnapshot,
    SwarmMetrics,
    generate_metrics_output,
    get_metrics,
    write_metrics_snapshot,
)
from src.swarm.events.models import EventType, SwarmEvent

__all__ = [
    # Event models
    "EventType",
    "SwarmEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    # Metrics
    "AgentUtilization",
    "MetricsSnapshot",
    "SwarmMetrics",
    "get_metrics",
    "generate_metrics_output",
    "write_metrics_snapshot",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
]
