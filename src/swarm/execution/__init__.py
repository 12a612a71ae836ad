"""Bounded parallelism and whole-pipeline retry."""

from src.swarm.execution.limiter import ConcurrencyLimiter, compute_max_concurrent
from src.swarm.execution.retry import RetryController, RetryPolicy

__all__ = [
    "ConcurrencyLimiter",
    "compute_max_concurrent",
    "RetryController",
    "RetryPolicy",
]
