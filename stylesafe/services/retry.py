"""
Retry/backoff wrapper for generation provider calls.

Provider failures are classified into transient (rate-limited, temporarily
unavailable) and permanent (malformed request, authorization failure).
Transient failures are retried with exponential backoff plus random jitter,
bounded to `max_retries` additional attempts; everything else propagates on
the first failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from stylesafe.services.errors import TransientProviderError


logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def classify_status(status_code: int) -> str:
    """Return "transient", "permanent", or "ok" for an HTTP status code."""
    if status_code < 400:
        return "ok"
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return "transient"
    return "permanent"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def delay_for(self, retry_number: int, rand: Callable[[], float] = random.random) -> float:
        """
        Delay before retry `retry_number` (0-based): exponential, capped,
        then stretched by up to `jitter` of itself.
        """
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** retry_number))
        return delay * (1.0 + self.jitter * rand())


async def call_with_retries(
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """
    Await `func()` and retry transient failures according to `policy`.

    Raises the last TransientProviderError with `exhausted=True` once
    `policy.max_retries` retries have failed.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except TransientProviderError as exc:
            if attempt > policy.max_retries:
                logger.error("%s failed after %d attempts: %s", operation, attempt, exc.detail)
                raise TransientProviderError(
                    f"{operation} failed after {attempt} attempts: {exc.detail}",
                    status_code=exc.status_code,
                    retry_after=exc.retry_after,
                    attempts=attempt,
                    exhausted=True,
                ) from exc

            delay = policy.delay_for(attempt - 1, rand)
            if exc.retry_after is not None:
                delay = max(delay, min(exc.retry_after, policy.max_delay))
            logger.warning(
                "%s transient failure (%s); retrying in %.2fs (attempt %d/%d)",
                operation,
                exc.detail,
                delay,
                attempt,
                policy.max_retries + 1,
            )
            await sleep(delay)
