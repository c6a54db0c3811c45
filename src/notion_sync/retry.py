"""Retry policy shared by every call site that backs off on rate limits."""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RateLimited

logger = logging.getLogger("notion-sync")

T = TypeVar("T")


def is_rate_limited(error: BaseException) -> bool:
    """Return True if an error is a rate-limit signal.

    Recognizes the typed RateLimited error as well as foreign errors that only
    carry the API's ``rate_limited`` code or a "rate limited" message.
    """
    if isinstance(error, RateLimited):
        return True
    if getattr(error, "code", None) == "rate_limited":
        return True
    return "rate limited" in str(error).lower()


@dataclass
class RetryPolicy:
    """Exponential backoff with a capped delay and a capped number of retries.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        retryable: Predicate selecting errors eligible for retry.
        jitter: Max random seconds added to each delay.
        sleep: Coroutine used to wait (injectable for tests).
    """
    max_retries: int = 6
    base_delay: float = 1.0
    max_delay: float = 15.0
    retryable: Callable[[BaseException], bool] = is_rate_limited
    jitter: float = 0.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Compute the wait before retry number ``attempt`` (0-indexed)."""
        delay = self.base_delay * (2 ** attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    async def call(self, fn: Callable[[], Awaitable[T]], label: str = "request") -> T:
        """Await ``fn()`` until it succeeds, a non-retryable error occurs,
        or the retry ceiling is exceeded (the last error is re-raised).
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except Exception as e:
                if not self.retryable(e) or attempt >= self.max_retries:
                    raise
                delay = self.delay_for(attempt, getattr(e, "retry_after", None))
                logger.warning(
                    f"Rate limited on {label}, backing off {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await self.sleep(delay)
                attempt += 1
