"""Swarm event models for observability.

This module defines the data models for swarm events, including:
- EventType: Enum of all event types emitted by the orchestrator and router
- SwarmEvent: Structured event with all required metadata

Events are emitted for monitoring, alerting, and debugging purposes.
They never gate pipeline progress: phase completion is driven by the
awaited phase result, not by the event stream.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the swarm.

    Event Categories:
        Execution lifecycle: EXECUTION_START, EXECUTION_COMPLETE,
            EXECUTION_FAILED, EXECUTION_RETRY, STATE_TRANSITION.

        Phase lifecycle: PHASE_START, PHASE_COMPLETE, plus
            INTEGRATION_ACTION_FAILED for best-effort integration pushes.

        Escalation: ESCALATION, ISSUE_CREATED, ESCALATION_FAILED.

        Agents (emitted by the message router): AGENT_MESSAGE,
            AGENT_MESSAGE_DROPPED, AGENT_ERROR, AGENT_RECOVERED,
            AGENT_RECOVERY_FAILED, AGENT_COMPLETE.

        Process: SHUTDOWN_START, SHUTDOWN_COMPLETE.
    """

    EXECUTION_START = "execution_start"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_RETRY = "execution_retry"
    STATE_TRANSITION = "state_transition"
    PHASE_START = "phase_start"
    PHASE_COMPLETE = "phase_complete"
    INTEGRATION_ACTION_FAILED = "integration_action_failed"
    ESCALATION = "escalation"
    ISSUE_CREATED = "issue_created"
    ESCALATION_FAILED = "escalation_failed"
    AGENT_MESSAGE = "agent_message"
    AGENT_MESSAGE_DROPPED = "agent_message_dropped"
    AGENT_ERROR = "agent_error"
    AGENT_RECOVERED = "agent_recovered"
    AGENT_RECOVERY_FAILED = "agent_recovery_failed"
    AGENT_COMPLETE = "agent_complete"
    SHUTDOWN_START = "shutdown_start"
    SHUTDOWN_COMPLETE = "shutdown_complete"


class SwarmEvent(BaseModel):
    """Structured event emitted by the swarm.

    Attributes:
        event_type: The category of event.
        execution_id: Execution the event belongs to, if any.
        agent: Agent role the event belongs to, if any.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = SwarmEvent(
        ...     event_type=EventType.PHASE_COMPLETE,
        ...     execution_id="exec_1718000000000_k3j9x0a2b",
        ...     details={"phase": "research", "duration_ms": 1250.0},
        ... )

    Details Field Conventions:
        For PHASE_START / PHASE_COMPLETE events:
            - phase: Phase name
            - duration_ms: Phase duration (PHASE_COMPLETE only)

        For EXECUTION_FAILED events:
            - phase: Phase where the attempt failed
            - error_message: Human-readable error description
            - error_type: Exception class name
            - attempt: 1-based attempt number

        For EXECUTION_RETRY events:
            - attempt: Retry number
            - delay_ms: Backoff delay before the retry

        For ESCALATION / ESCALATION_FAILED events:
            - reason: Escalation reason (e.g. "QA Failed")
            - channel: "issue" or "webhook" (ESCALATION_FAILED only)
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    execution_id: Optional[str] = Field(
        default=None,
        description="Execution the event belongs to",
    )

    agent: Optional[str] = Field(
        default=None,
        description="Agent role the event belongs to",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary suitable for structured logging.

        Detail keys are prefixed with ``detail_`` so they cannot collide
        with reserved LogRecord attributes such as ``message``.
        """
        log_dict: Dict[str, Any] = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.execution_id is not None:
            log_dict["execution_id"] = self.execution_id
        if self.agent is not None:
            log_dict["agent"] = self.agent
        for key, value in self.details.items():
            log_dict[f"detail_{key}"] = value
        return log_dict

    @property
    def subject(self) -> str:
        """Execution id or agent role the event is about."""
        return self.execution_id or self.agent or "swarm"
