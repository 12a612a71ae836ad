"""Whole-pipeline retry with exponential backoff.

A failed pipeline attempt is retried while ``retries < max_retries``.
Before each retry the execution's retry counter is incremented and the
controller sleeps for ``min(base * 2**retries, max)`` milliseconds, where
``retries`` is the already-incremented count:

    retry 1 → 2000 ms, retry 2 → 4000 ms, retry 3 → 8000 ms, ...,
    retry 5 and later → 30000 ms (with the default base and cap)

The retried attempt restarts the pipeline from scratch; that reset is
done by the state machine when the orchestrator starts the next attempt.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from src.swarm.events.emitter import EventEmitter, NullEventEmitter
from src.swarm.events.models import EventType, SwarmEvent
from src.swarm.state.machine import ExecutionStateMachine
from src.swarm.state.models import Execution


logger = logging.getLogger(__name__)


SleepFunc = Callable[[float], Awaitable[None]]


class RetryPolicy(BaseModel):
    """Retry limits and backoff parameters.

    Attributes:
        max_retries: Maximum whole-pipeline retries per execution.
        base_delay_ms: Delay multiplied by 2**retries.
        max_delay_ms: Upper bound on any single delay.
    """

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)

    def should_retry(self, retries: int) -> bool:
        """Whether another retry is allowed after ``retries`` retries."""
        return retries < self.max_retries

    def compute_delay_ms(self, retries: int) -> int:
        """Backoff before retry number ``retries`` (1-based).

        Example:
            >>> RetryPolicy().compute_delay_ms(1)
            2000
            >>> RetryPolicy().compute_delay_ms(7)
            30000
        """
        return min(self.base_delay_ms * (2 ** retries), self.max_delay_ms)


class RetryController:
    """Decides whether a failed execution is retried and waits the backoff.

    Attributes:
        policy: Retry limits and backoff parameters.
        enabled: When False no execution is ever retried.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        state_machine: ExecutionStateMachine,
        event_emitter: Optional[EventEmitter] = None,
        sleep: Optional[SleepFunc] = None,
        enabled: bool = True,
    ):
        self.policy = policy
        self.enabled = enabled
        self._state_machine = state_machine
        self._emitter = event_emitter or NullEventEmitter()
        self._sleep = sleep or asyncio.sleep

    def should_retry(self, execution: Execution) -> bool:
        """Whether the failed execution gets another attempt."""
        return self.enabled and self.policy.should_retry(execution.retries)

    async def backoff(self, execution_id: str) -> int:
        """Count the retry, announce it, and sleep for its delay.

        Returns:
            The delay waited, in milliseconds.
        """
        execution = await self._state_machine.increment_retries(execution_id)
        delay_ms = self.policy.compute_delay_ms(execution.retries)

        logger.warning(
            "Retrying execution after backoff",
            extra={
                "execution_id": execution_id,
                "attempt": execution.retries,
                "max_retries": self.policy.max_retries,
                "delay_ms": delay_ms,
            },
        )

        try:
            await self._emitter.emit(
                SwarmEvent(
                    event_type=EventType.EXECUTION_RETRY,
                    execution_id=execution_id,
                    details={"attempt": execution.retries, "delay_ms": delay_ms},
                )
            )
        except Exception as e:
            logger.error("Failed to emit retry event: %s", str(e))

        await self._sleep(delay_ms / 1000.0)
        return delay_ms
