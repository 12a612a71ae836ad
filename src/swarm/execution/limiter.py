"""Bounded-parallel task runner.

The ConcurrencyLimiter runs a sequence of subtasks against one agent
with at most ``max_concurrent`` of them in flight. Admission follows
input order; ``run`` appends results in completion order, so the result
list is unordered relative to submission. ``gather`` applies the same
bound but returns results in input order, for phases whose consolidation
step expects that.

A failing subtask fails the whole run: the subtasks still in flight are
cancelled and the original exception propagates.
"""

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Iterable, List, Set


logger = logging.getLogger(__name__)


def compute_max_concurrent(fraction: float, capacity: int) -> int:
    """Share of ``capacity`` a limiter may use, floored, at least 1.

    Example:
        >>> compute_max_concurrent(0.4, 7)
        2
        >>> compute_max_concurrent(0.1, 3)
        1
    """
    return max(1, math.floor(fraction * capacity))


async def _cancel_all(tasks: Iterable[asyncio.Task]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class ConcurrencyLimiter:
    """Sliding-window runner with a hard in-flight cap.

    Attributes:
        max_concurrent: Maximum subtasks in flight at any instant.
        peak_in_flight: Highest in-flight count observed by this limiter.

    Example:
        >>> limiter = ConcurrencyLimiter(2)
        >>> results = await limiter.run(subtasks, agent.execute)
        >>> len(results) == len(subtasks)
        True
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.peak_in_flight = 0

    def _admitted(self, in_flight: Set[asyncio.Task]) -> None:
        self.peak_in_flight = max(self.peak_in_flight, len(in_flight))

    async def run(
        self,
        tasks: Iterable[Any],
        execute: Callable[[Any], Awaitable[Any]],
    ) -> List[Any]:
        """Run every task, returning results in completion order.

        Args:
            tasks: Subtasks, admitted in iteration order.
            execute: Coroutine function run once per subtask.

        Returns:
            One result per subtask, in completion order.

        Raises:
            Exception: The first subtask failure, after the remaining
                in-flight subtasks have been cancelled.
        """
        results: List[Any] = []
        in_flight: Set[asyncio.Task] = set()
        admitted = 0

        try:
            for task in tasks:
                # Wait for a free slot before admitting the next subtask
                while len(in_flight) >= self.max_concurrent:
                    done, in_flight = await asyncio.wait(
                        in_flight,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    results.extend(finished.result() for finished in done)

                in_flight.add(asyncio.ensure_future(execute(task)))
                admitted += 1
                self._admitted(in_flight)

            while in_flight:
                done, in_flight = await asyncio.wait(
                    in_flight,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                results.extend(finished.result() for finished in done)
        except BaseException:
            logger.warning(
                "Concurrent subtask failed, cancelling remaining subtasks",
                extra={"admitted": admitted, "in_flight": len(in_flight)},
            )
            await _cancel_all(in_flight)
            raise

        logger.debug(
            "Concurrent subtasks complete",
            extra={
                "subtasks": admitted,
                "max_concurrent": self.max_concurrent,
                "peak_in_flight": self.peak_in_flight,
            },
        )
        return results

    async def gather(
        self,
        tasks: Iterable[Any],
        execute: Callable[[Any], Awaitable[Any]],
    ) -> List[Any]:
        """Run every task under the same cap, returning results in input order."""
        semaphore = asyncio.Semaphore(self.max_concurrent)
        in_flight: Set[asyncio.Task] = set()

        async def bounded(task: Any) -> Any:
            async with semaphore:
                in_flight.add(asyncio.current_task())
                self._admitted(in_flight)
                try:
                    return await execute(task)
                finally:
                    in_flight.discard(asyncio.current_task())

        pending = [asyncio.ensure_future(bounded(task)) for task in tasks]
        try:
            return list(await asyncio.gather(*pending))
        except BaseException:
            await _cancel_all(pending)
            raise
