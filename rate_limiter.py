"""
Rate Limiter Module
Token bucket shared by every outbound ledger API call.

Features:
- Lazy refill proportional to elapsed time, capped at capacity
- Waits exactly until the next token is due (never busy-polls)
- Shrinks effective capacity when upstream reports a nearly exhausted quota
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Mapping, Optional

from cancellation import CancellationToken, sleep_with_token
from constants import (
    DEFAULT_QUOTA_RESET_SECONDS,
    HEADER_RATELIMIT_LIMIT,
    HEADER_RATELIMIT_REMAINING,
    HEADER_RATELIMIT_RESET,
    LOW_QUOTA_THRESHOLD,
)
from metrics_sink import RATE_LIMIT_WAIT_MS, MetricsSink, NullMetricsSink
from utils import validate_positive

logger = logging.getLogger("CorridorScope.rate_limiter")


def _header_number(headers: Dict[str, str], name: str) -> Optional[float]:
    raw = headers.get(name.lower())
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable {name} header: {raw!r}")
        return None


class TokenBucketRateLimiter:
    """Token bucket rate limiter"""

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        low_quota_threshold: int = LOW_QUOTA_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsSink] = None
    ):
        """
        Args:
            capacity: Maximum burst size
            refill_rate: Tokens added per second
            low_quota_threshold: Remaining upstream quota at or below which
                capacity is reduced until the reported reset
        """
        self.capacity = float(validate_positive(capacity, "capacity"))
        self.refill_rate = validate_positive(refill_rate, "refill_rate")
        self.low_quota_threshold = low_quota_threshold
        self._clock = clock
        self.metrics = metrics or NullMetricsSink()

        self.tokens = self.capacity
        self.last_refill = clock()
        self._reduced_capacity: Optional[float] = None
        self._reduced_until: Optional[float] = None
        self._paused_until: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def effective_capacity(self) -> float:
        now = self._clock()
        if self._reduced_until is not None and now >= self._reduced_until:
            logger.info("Upstream quota window reset. Restoring full capacity.")
            self._reduced_capacity = None
            self._reduced_until = None
        if self._reduced_capacity is not None:
            return min(self.capacity, self._reduced_capacity)
        return self.capacity

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.effective_capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, cancel_token: Optional[CancellationToken] = None) -> float:
        """
        Take one token, suspending until one is available.

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            waited = 0.0

            now = self._clock()
            if self._paused_until is not None:
                if now < self._paused_until:
                    pause = self._paused_until - now
                    await sleep_with_token(pause, cancel_token)
                    waited += pause
                self._paused_until = None

            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
            else:
                wait_time = (1 - self.tokens) / self.refill_rate
                await sleep_with_token(wait_time, cancel_token)
                waited += wait_time
                self._refill()
                self.tokens = max(0.0, self.tokens - 1)

        if waited > 0:
            self.metrics.observe(RATE_LIMIT_WAIT_MS, waited * 1000)
        return waited

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """
        Apply X-Ratelimit-* response headers.

        When the remaining quota is at or below the threshold, capacity drops
        to the remaining quota (at least one) until the reported reset. An
        exhausted quota also pauses acquisition until the reset.
        """
        normalized = {str(k).lower(): v for k, v in headers.items()}
        remaining = _header_number(normalized, HEADER_RATELIMIT_REMAINING)
        if remaining is None:
            return

        limit = _header_number(normalized, HEADER_RATELIMIT_LIMIT)
        reset_in = _header_number(normalized, HEADER_RATELIMIT_RESET)
        if reset_in is None or reset_in < 0:
            reset_in = DEFAULT_QUOTA_RESET_SECONDS

        if remaining > self.low_quota_threshold:
            return

        now = self._clock()
        self._reduced_capacity = max(1.0, remaining)
        self._reduced_until = now + reset_in
        self.tokens = min(self.tokens, self._reduced_capacity)
        if remaining <= 0:
            self._paused_until = now + reset_in

        logger.warning(
            f"Upstream quota low ({remaining:.0f}/{limit:.0f} remaining). "
            f"Capacity reduced to {self._reduced_capacity:.0f} for {reset_in:.1f}s"
            if limit is not None else
            f"Upstream quota low ({remaining:.0f} remaining). "
            f"Capacity reduced to {self._reduced_capacity:.0f} for {reset_in:.1f}s"
        )

    def get_stats(self) -> Dict:
        return {
            "capacity": self.capacity,
            "effective_capacity": self.effective_capacity,
            "refill_rate": self.refill_rate,
            "tokens": round(self.tokens, 3),
            "paused": self._paused_until is not None and self._clock() < self._paused_until,
        }
