# apiforge/core/retry.py
"""Bounded retry with exponential backoff, parameterized per external call."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from apiforge.core.config import (
    GENERATION_MAX_ATTEMPTS,
    GENERATION_RETRY_INITIAL_SECONDS,
    SANDBOX_MAX_ATTEMPTS,
    SANDBOX_RETRY_INITIAL_SECONDS,
)
from apiforge.core.errors import is_transient

logger = logging.getLogger("apiforge.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    maximum_attempts: int = 3
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1`` (attempt is 1-based)."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)


GENERATION_RETRY = RetryPolicy(
    maximum_attempts=GENERATION_MAX_ATTEMPTS,
    initial_interval=GENERATION_RETRY_INITIAL_SECONDS,
)

SANDBOX_RETRY = RetryPolicy(
    maximum_attempts=SANDBOX_MAX_ATTEMPTS,
    initial_interval=SANDBOX_RETRY_INITIAL_SECONDS,
)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    retry_if: Callable[[BaseException], bool] = is_transient,
    on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
) -> T:
    """
    Run ``fn`` until it succeeds or the policy is exhausted.
    Errors rejected by ``retry_if`` propagate immediately; the last error
    propagates once attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= policy.maximum_attempts or not retry_if(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %s/%s): %s - retrying in %.1fs",
                label, attempt, policy.maximum_attempts, e, delay,
            )
            if on_retry is not None:
                await on_retry(attempt, e)
            await asyncio.sleep(delay)
            attempt += 1
