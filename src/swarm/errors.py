"""Exception hierarchy for the swarm orchestrator.

Phase failures propagate to the whole-pipeline retry mechanism and, once
retries are exhausted, reach the caller of ``Orchestrator.execute``
unwrapped. Only failures the orchestrator raises itself (for example a
specification that fails validation) use the types defined here; errors
raised by agents keep their original type.

Escalation failures are contained: they are logged and emitted as events
but never raised into the pipeline.
"""

from typing import List, Optional


class SwarmError(Exception):
    """Base class for all swarm orchestrator errors."""


class PipelineError(SwarmError):
    """Raised when a pipeline phase fails.

    Attributes:
        phase: Name of the phase that failed.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        phase: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.phase = phase
        self.cause = cause
        self.message = message
        super().__init__(message)


class PhaseError(PipelineError):
    """Raised when a phase's own contract is violated."""


class SpecificationValidationError(PhaseError):
    """Raised when the spec agent reports an invalid specification.

    Attributes:
        errors: Validation errors reported by the spec agent.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            phase="specification",
            message=(
                "Specification validation failed: " + ", ".join(self.errors)
            ),
        )


class AgentConfigurationError(SwarmError):
    """Raised when an agent role is missing or lacks its role extension."""


class EscalationFailure(SwarmError):
    """Raised by escalation channels when a notification cannot be delivered.

    The escalation adapter catches this and reports it as an event.

    Attributes:
        channel: The escalation channel that failed ("issue" or "webhook").
    """

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(message)
