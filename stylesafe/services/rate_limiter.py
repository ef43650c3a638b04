"""
Shared rate limiter for generation provider calls.

Every outbound provider request passes through one limiter so that
concurrent chunks and jobs stay under the provider's request rate:
- Token bucket with a small burst capacity
- Minimum interval between consecutive requests
- Exponential cool-down after 429 responses
- Gradual capacity recovery on success
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ProviderRateLimiter:
    """
    Thread-safe token-bucket limiter.

    `clock` and `sleep` default to the real time functions and can be
    replaced for deterministic tests.
    """

    def __init__(
        self,
        max_requests_per_minute: int = 60,
        burst_capacity: int = 5,
        min_interval_seconds: float = 0.5,
        base_cooldown_seconds: float = 30.0,
        max_cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests_per_minute = max_requests_per_minute
        self.burst_capacity = burst_capacity
        self.min_interval_seconds = min_interval_seconds
        self.base_cooldown_seconds = base_cooldown_seconds
        self.max_cooldown_seconds = max_cooldown_seconds
        self._clock = clock
        self._sleep = sleep

        # Token bucket state
        self.tokens = float(burst_capacity)
        self.max_tokens = float(burst_capacity)
        self.refill_rate = max_requests_per_minute / 60.0
        self.last_refill = self._clock()

        self.request_times: deque = deque(maxlen=max(1, max_requests_per_minute))
        self.last_request_time: Optional[float] = None

        # Cool-down state after 429s
        self.cooldown_until: Optional[float] = None
        self.consecutive_429s = 0
        self.capacity_factor = 1.0

        self.lock = threading.RLock()

        logger.info(
            "Provider rate limiter initialized: %d req/min, burst %d, min interval %.2fs",
            max_requests_per_minute,
            burst_capacity,
            min_interval_seconds,
        )

    def _refill_tokens(self, now: float) -> None:
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def _cooling_down(self, now: float) -> bool:
        if self.cooldown_until is None:
            return False
        if now < self.cooldown_until:
            return True
        self.cooldown_until = None
        logger.info("Rate limit cool-down expired, resuming normal operation")
        return False

    def cooldown_for(self, consecutive_429s: int) -> float:
        """Cool-down after the n-th consecutive 429: 30s, 60s, 120s, ... capped."""
        return min(self.base_cooldown_seconds * 2 ** (consecutive_429s - 1), self.max_cooldown_seconds)

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a request may be sent.

        Returns False if `timeout` seconds pass first.
        """
        started = self._clock()

        while True:
            with self.lock:
                now = self._clock()
                if timeout is not None and now - started >= timeout:
                    logger.error("Rate limiter timeout reached after %.1fs", timeout)
                    return False

                if self._cooling_down(now):
                    wait = min(1.0, self.cooldown_until - now)
                else:
                    self._refill_tokens(now)
                    if self.tokens >= 1.0:
                        if self.last_request_time is not None:
                            gap = now - self.last_request_time
                            if gap < self.min_interval_seconds:
                                self._sleep(self.min_interval_seconds - gap)
                                now = self._clock()
                        self.tokens -= 1.0
                        self.last_request_time = now
                        self.request_times.append(now)
                        logger.debug("Rate limiter token acquired (%.1f/%.1f left)", self.tokens, self.max_tokens)
                        return True
                    wait = min(1.0, (1.0 - self.tokens) / self.refill_rate) if self.refill_rate else 1.0

            self._sleep(max(wait, 0.01))

    def report_429(self, retry_after: Optional[float] = None) -> float:
        """
        Record a 429 response and start a cool-down.

        A provider-supplied `retry_after` extends the cool-down but never
        shortens it. Returns the cool-down length in seconds.
        """
        with self.lock:
            self.consecutive_429s += 1
            cooldown = self.cooldown_for(self.consecutive_429s)
            if retry_after is not None:
                cooldown = max(cooldown, retry_after)
            self.cooldown_until = self._clock() + cooldown

            self.capacity_factor = max(0.5, self.capacity_factor * 0.8)
            self.max_tokens = self.burst_capacity * self.capacity_factor
            self.tokens = min(self.tokens, self.max_tokens)

            logger.error(
                "Provider 429 (consecutive: %d). Cooling down for %.1fs, burst capacity %.1f",
                self.consecutive_429s,
                cooldown,
                self.max_tokens,
            )
            return cooldown

    def report_success(self) -> None:
        with self.lock:
            if self.consecutive_429s > 0:
                self.capacity_factor = min(1.0, self.capacity_factor * 1.1)
                self.max_tokens = self.burst_capacity * self.capacity_factor
                self.consecutive_429s -= 1
                logger.info("Request succeeded, 429 counter now %d", self.consecutive_429s)

    def get_stats(self) -> dict:
        with self.lock:
            now = self._clock()
            recent = sum(1 for t in self.request_times if t > now - 60.0)
            remaining = None
            if self.cooldown_until is not None and now < self.cooldown_until:
                remaining = self.cooldown_until - now
            return {
                "tokens_available": self.tokens,
                "max_tokens": self.max_tokens,
                "requests_last_minute": recent,
                "max_requests_per_minute": self.max_requests_per_minute,
                "is_rate_limited": remaining is not None,
                "cooldown_remaining_seconds": remaining,
                "consecutive_429s": self.consecutive_429s,
                "capacity_factor": self.capacity_factor,
                "checked_at": datetime.now().isoformat(),
            }


_rate_limiter: Optional[ProviderRateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> ProviderRateLimiter:
    """Get or create the global provider rate limiter."""
    global _rate_limiter

    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                _rate_limiter = ProviderRateLimiter()

    return _rate_limiter
