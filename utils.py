"""
Utility Functions Module
Common utilities for backoff math, timing statistics, validation, and time helpers
"""

import random
from collections import deque
from datetime import date, datetime, time as dt_time, timezone
from typing import List

from constants import BACKOFF_JITTER_FRACTION


def calculate_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Seconds to wait before retry number attempt (0-indexed).

    Grows by exponential_base per attempt up to max_delay; jitter adds up to
    BACKOFF_JITTER_FRACTION on top without passing the cap.
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter:
        jitter_amount = delay * BACKOFF_JITTER_FRACTION * random.random()
        delay = min(delay + jitter_amount, max_delay)

    return delay


def validate_positive(value: float, name: str) -> float:
    if value <= 0:
        raise ValueError(f"{name} must be > 0 (got {value})")
    return value


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """numerator / denominator, or default when the denominator is zero"""
    return default if denominator == 0 else numerator / denominator


def parse_iso_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the trailing 'Z' Horizon emits. Naive values are taken as UTC.
    Raises ValueError on anything unparseable.
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_day(moment: datetime) -> date:
    """UTC calendar day of a timestamp"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date()


def utc_day_start(day: date) -> datetime:
    """Midnight UTC at the start of a day"""
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


class TimingStats:
    """Bounded window of duration samples (milliseconds) with summary statistics"""

    def __init__(self, max_samples: int = 1000):
        self._window: deque = deque(maxlen=max_samples)

    def record(self, duration_ms: float) -> None:
        self._window.append(float(duration_ms))

    def merge(self, other: "TimingStats") -> None:
        for sample in other.samples:
            self.record(sample)

    @property
    def count(self) -> int:
        return len(self._window)

    @property
    def samples(self) -> List[float]:
        return list(self._window)

    @property
    def avg_ms(self) -> float:
        return safe_divide(sum(self._window), len(self._window))

    @property
    def min_ms(self) -> float:
        return min(self._window, default=0.0)

    @property
    def max_ms(self) -> float:
        return max(self._window, default=0.0)

    def percentile(self, q: float) -> float:
        """Nearest-rank percentile over the window, 0.0 when empty"""
        if not self._window:
            return 0.0
        ordered = sorted(self._window)
        rank = int(len(ordered) * q / 100)
        return ordered[min(rank, len(ordered) - 1)]

    @property
    def p50_ms(self) -> float:
        return self.percentile(50)

    @property
    def p95_ms(self) -> float:
        return self.percentile(95)

    def to_dict(self) -> dict:
        summary = {"count": self.count}
        for label, value in (
            ("avg_ms", self.avg_ms), ("min_ms", self.min_ms), ("max_ms", self.max_ms),
            ("p50_ms", self.p50_ms), ("p95_ms", self.p95_ms),
        ):
            summary[label] = round(value, 3)
        return summary

    def reset(self) -> None:
        self._window.clear()
