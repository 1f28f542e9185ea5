"""
Bounded retry with exponential backoff for control-plane calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from rollout_manager.errors import ClusterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a retryable cluster error is retried."""

    max_retries: int = 3
    backoff: float = 1.0
    max_backoff: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return min(self.backoff * (2**attempt), self.max_backoff)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation``, retrying retryable ``ClusterError``s.

    Connectivity and conflict errors are retried up to ``policy.max_retries``
    times; not-found errors and anything that is not a ``ClusterError``
    propagate immediately.

    Args:
        operation: Zero-argument coroutine factory
        policy: Retry bounds
        description: What is being attempted, for log lines
        sleep: Sleep function, replaceable in tests

    Returns:
        The operation's result

    Raises:
        ClusterError: the last error once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except ClusterError as e:
            if not e.retryable or attempt >= policy.max_retries:
                if e.retryable:
                    logger.error(
                        f"{description} failed after {attempt + 1} attempts: {e}"
                    )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed ({type(e).__name__}: {e}), "
                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{policy.max_retries})"
            )
            attempt += 1
            await sleep(delay)
