"""Process-wide metrics for swarm observability.

This module owns the Metrics object shared by every execution and every
agent completion event:
- tasks_completed / tasks_failed: executions that completed or finally failed
- total_execution_time: accumulated wall-clock time of all attempts (ms)
- agent_utilization: per-agent completed tasks and accumulated time (ms)

Each counter update is atomic (guarded by a lock); no cross-field
transactional guarantee is made. The counters are mirrored into
Prometheus metrics so they can be scraped from the `/metrics` endpoint,
and are written to a JSON snapshot file at shutdown.

Prometheus Metrics Defined:
- swarm_tasks_completed_total: Counter of completed executions
- swarm_tasks_failed_total: Counter of executions that failed for good
- swarm_execution_duration_seconds: Histogram of attempt duration
- swarm_agent_tasks_completed_total: Counter of agent completions by agent
- swarm_agent_busy_seconds_total: Counter of agent busy time by agent
- swarm_execution_retries_total: Counter of whole-pipeline retries
- swarm_escalations_total: Counter of escalations by reason
- swarm_phase_failures_total: Counter of failed attempts by phase
- swarm_phase_duration_seconds: Histogram of phase duration by phase

The MetricsEventEmitter integrates with the event emission system to
update the event-derived counters (retries, escalations, phase failures
and phase durations).
"""

import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)
from pydantic import BaseModel, Field

from src.swarm.events.emitter import EventEmitter
from src.swarm.events.models import EventType, SwarmEvent


logger = logging.getLogger(__name__)


# Covers range from 1 second to 1 hour with exponential growth
DEFAULT_DURATION_BUCKETS = (
    1.0,      # 1 second
    5.0,      # 5 seconds
    10.0,     # 10 seconds
    30.0,     # 30 seconds
    60.0,     # 1 minute
    120.0,    # 2 minutes
    300.0,    # 5 minutes
    600.0,    # 10 minutes
    1800.0,   # 30 minutes
    3600.0,   # 1 hour
)


class AgentUtilization(BaseModel):
    """Utilization counters for one agent.

    Attributes:
        tasks_completed: Number of `complete` events the agent emitted.
        total_time: Accumulated execution time reported by the agent (ms).
    """

    tasks_completed: int = 0
    total_time: float = 0.0


class MetricsSnapshot(BaseModel):
    """Point-in-time copy of the process-wide Metrics object."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    total_execution_time: float = 0.0
    agent_utilization: Dict[str, AgentUtilization] = Field(default_factory=dict)


class SwarmMetrics:
    """Container for the process-wide Metrics object.

    The authoritative counters live in plain Python fields guarded by a
    lock; every update is also applied to the matching Prometheus metric.
    Supports custom Prometheus registries for testing.

    Example:
        >>> metrics = SwarmMetrics(registry=CollectorRegistry())
        >>> metrics.record_execution_completed()
        >>> metrics.record_agent_completion("dev", 1250.0)
        >>> metrics.snapshot().agent_utilization["dev"].tasks_completed
        1
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize swarm metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY
        self._lock = threading.Lock()

        self._tasks_completed = 0
        self._tasks_failed = 0
        self._total_execution_time = 0.0
        self._agent_utilization: Dict[str, AgentUtilization] = {}

        self.tasks_completed_total = Counter(
            "swarm_tasks_completed_total",
            "Total number of executions that completed successfully",
            registry=self.registry,
        )

        self.tasks_failed_total = Counter(
            "swarm_tasks_failed_total",
            "Total number of executions that failed after all retries",
            registry=self.registry,
        )

        self.execution_duration_seconds = Histogram(
            "swarm_execution_duration_seconds",
            "Wall-clock duration of pipeline attempts in seconds",
            labelnames=["result"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.agent_tasks_completed_total = Counter(
            "swarm_agent_tasks_completed_total",
            "Total number of completion events emitted by each agent",
            labelnames=["agent"],
            registry=self.registry,
        )

        self.agent_busy_seconds_total = Counter(
            "swarm_agent_busy_seconds_total",
            "Accumulated execution time reported by each agent in seconds",
            labelnames=["agent"],
            registry=self.registry,
        )

        self.execution_retries_total = Counter(
            "swarm_execution_retries_total",
            "Total number of whole-pipeline retries",
            registry=self.registry,
        )

        self.escalations_total = Counter(
            "swarm_escalations_total",
            "Total number of escalations to a human",
            labelnames=["reason"],
            registry=self.registry,
        )

        self.phase_failures_total = Counter(
            "swarm_phase_failures_total",
            "Total number of failed pipeline attempts by phase",
            labelnames=["phase"],
            registry=self.registry,
        )

        self.phase_duration_seconds = Histogram(
            "swarm_phase_duration_seconds",
            "Duration of pipeline phases in seconds",
            labelnames=["phase"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

    # ------------------------------------------------------------------
    # Process-wide counters
    # ------------------------------------------------------------------

    def record_execution_completed(self) -> None:
        """Record that an execution completed successfully."""
        with self._lock:
            self._tasks_completed += 1
        self.tasks_completed_total.inc()

    def record_execution_failed(self) -> None:
        """Record that an execution failed after exhausting retries."""
        with self._lock:
            self._tasks_failed += 1
        self.tasks_failed_total.inc()

    def record_execution_time(self, duration_ms: float, success: bool) -> None:
        """Accumulate the wall-clock time of one pipeline attempt.

        Args:
            duration_ms: Attempt duration in milliseconds.
            success: Whether the attempt completed.
        """
        with self._lock:
            self._total_execution_time += duration_ms
        self.execution_duration_seconds.labels(
            result="success" if success else "failure",
        ).observe(duration_ms / 1000.0)

    def record_agent_completion(self, agent: str, execution_time_ms: float) -> None:
        """Record one `complete` event emitted by an agent.

        Args:
            agent: Agent role.
            execution_time_ms: Execution time reported with the event.
        """
        with self._lock:
            utilization = self._agent_utilization.setdefault(
                agent, AgentUtilization()
            )
            utilization.tasks_completed += 1
            utilization.total_time += execution_time_ms
        self.agent_tasks_completed_total.labels(agent=agent).inc()
        self.agent_busy_seconds_total.labels(agent=agent).inc(
            max(0.0, execution_time_ms) / 1000.0
        )

    # ------------------------------------------------------------------
    # Event-derived counters
    # ------------------------------------------------------------------

    def record_retry(self) -> None:
        """Record a whole-pipeline retry."""
        self.execution_retries_total.inc()

    def record_escalation(self, reason: str) -> None:
        """Record an escalation to a human."""
        self.escalations_total.labels(reason=reason).inc()

    def record_phase_failure(self, phase: str) -> None:
        """Record a failed attempt at the given phase."""
        self.phase_failures_total.labels(phase=phase).inc()

    def record_phase_duration(self, phase: str, duration_ms: float) -> None:
        """Record the duration of a completed phase."""
        self.phase_duration_seconds.labels(phase=phase).observe(
            duration_ms / 1000.0
        )

    def snapshot(self) -> MetricsSnapshot:
        """Return a deep copy of the current counters."""
        with self._lock:
            return MetricsSnapshot(
                tasks_completed=self._tasks_completed,
                tasks_failed=self._tasks_failed,
                total_execution_time=self._total_execution_time,
                agent_utilization={
                    agent: utilization.model_copy()
                    for agent, utilization in self._agent_utilization.items()
                },
            )


# Global metrics instance for the default registry
_default_metrics: Optional[SwarmMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> SwarmMetrics:
    """Get or create the swarm metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.

    Returns:
        SwarmMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return SwarmMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = SwarmMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


def write_metrics_snapshot(
    snapshot: MetricsSnapshot,
    runtime_dir: Union[str, Path],
) -> Path:
    """Persist a metrics snapshot as ``metrics_<epoch-ms>.json``.

    The timestamp is bumped until the name is unused, so two snapshots
    written in the same millisecond never overwrite each other.

    Args:
        snapshot: The snapshot to write.
        runtime_dir: Directory to write to; created if missing.

    Returns:
        Path of the written file.
    """
    directory = Path(runtime_dir)
    directory.mkdir(parents=True, exist_ok=True)

    stamp = int(time.time() * 1000)
    path = directory / f"metrics_{stamp}.json"
    while path.exists():
        stamp += 1
        path = directory / f"metrics_{stamp}.json"

    record = {
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "metrics": snapshot.model_dump(mode="json"),
    }
    path.write_text(json.dumps(record, indent=2), encoding="utf-8")

    logger.info(
        "Metrics snapshot written",
        extra={"path": str(path)},
    )
    return path


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates event-derived Prometheus metrics.

    Handles:
    - EXECUTION_RETRY: Increments swarm_execution_retries_total
    - ESCALATION: Increments swarm_escalations_total by reason
    - EXECUTION_FAILED: Increments swarm_phase_failures_total by phase
    - PHASE_COMPLETE: Observes swarm_phase_duration_seconds by phase

    Attributes:
        metrics: The SwarmMetrics instance to update.
    """

    def __init__(self, metrics: SwarmMetrics):
        self._metrics = metrics

    @property
    def metrics(self) -> SwarmMetrics:
        """Get the metrics instance."""
        return self._metrics

    async def emit(self, event: SwarmEvent) -> None:
        """Update metrics based on the swarm event."""
        try:
            if event.event_type == EventType.EXECUTION_RETRY:
                self._metrics.record_retry()
            elif event.event_type == EventType.ESCALATION:
                self._metrics.record_escalation(
                    str(event.details.get("reason", "unknown"))
                )
            elif event.event_type == EventType.EXECUTION_FAILED:
                self._metrics.record_phase_failure(
                    str(event.details.get("phase", "unknown"))
                )
            elif event.event_type == EventType.PHASE_COMPLETE:
                duration = event.details.get("duration_ms")
                if duration is not None:
                    self._metrics.record_phase_duration(
                        str(event.details.get("phase", "unknown")),
                        float(duration),
                    )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "error": str(e),
                },
            )
