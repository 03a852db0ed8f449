from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    Attempt 0 runs immediately; attempt n >= 1 waits base_delay * 2**(n-1) plus up to
    `jitter_ratio` of that value.
    """

    max_attempts: int = 4
    base_delay_sec: float = 1.0
    jitter_ratio: float = 0.3
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    @classmethod
    def from_retries(cls, retries: int, retry_delay_ms: int, **kwargs: Any) -> "RetryPolicy":
        return cls(max_attempts=max(0, int(retries)) + 1, base_delay_sec=max(0, int(retry_delay_ms)) / 1000.0, **kwargs)

    def backoff(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return self.base_delay_sec * (2 ** (attempt - 1))

    def delay_for(self, attempt: int) -> float:
        base = self.backoff(attempt)
        return base + self.rng() * self.jitter_ratio * base


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried operation: either `value` or the last `error`."""

    value: Optional[T] = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


# PUBLIC_INTERFACE
async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_failure: Optional[Callable[[int, Exception], None]] = None,
    label: str = "operation",
) -> RetryOutcome[T]:
    """
    Run `operation(attempt)` up to policy.max_attempts times.

    Never raises for failures of `operation`; the last exception is returned in the outcome.
    """
    last_error: Optional[Exception] = None
    attempts = max(1, int(policy.max_attempts))

    for attempt in range(attempts):
        if attempt > 0:
            delay = policy.delay_for(attempt)
            logger.info("Retry %s/%s for %s after %.0fms", attempt, attempts - 1, label, delay * 1000)
            await sleep(delay)

        try:
            value = await operation(attempt)
            return RetryOutcome(value=value, attempts=attempt + 1)
        except Exception as e:
            last_error = e
            if on_failure is not None:
                on_failure(attempt, e)

    return RetryOutcome(error=last_error, attempts=attempts)
