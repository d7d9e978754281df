"""
Bounded retry with exponential backoff
Used by the orchestrator; components themselves never retry
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one pipeline step.

    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows attempt number `attempt` (0-indexed)"""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    step: str,
    **log_context
) -> T:
    """
    Run `operation` until it succeeds, raises a non-retryable error,
    or exhausts `policy.max_attempts`. The last error is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            attempt += 1
            if attempt >= policy.max_attempts:
                logger.error(f"{step}_retries_exhausted", attempts=attempt, error=str(e), **log_context)
                raise
            delay = policy.calculate_delay(attempt - 1)
            logger.warning(
                f"{step}_retry",
                attempt=attempt,
                delay=delay,
                error_type=type(e).__name__,
                error=str(e),
                **log_context
            )
            await asyncio.sleep(delay)
