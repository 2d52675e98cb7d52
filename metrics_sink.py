"""
Metrics Sink Module
Named counters and histograms emitted by the pipeline. The sink is constructed
by the caller and passed into each component; nothing here is process-global.
"""

import logging
from collections import defaultdict
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from utils import TimingStats

logger = logging.getLogger("CorridorScope.metrics")

# Event names
FETCH_ATTEMPT = "fetch.attempt"
FETCH_SUCCESS = "fetch.success"
FETCH_FAILURE = "fetch.failure"
FETCH_RETRY = "fetch.retry"
FETCH_PAGES = "fetch.pages"
CIRCUIT_TRANSITION = "circuit_breaker.transition"
CIRCUIT_REJECTED = "circuit_breaker.rejected"
CACHE_HIT = "cache.hit"
CACHE_MISS = "cache.miss"
CACHE_COALESCED = "cache.coalesced"
CACHE_STALE_SERVED = "cache.stale_served"
CACHE_EVICTED = "cache.evicted"
AGGREGATION_DURATION_MS = "aggregation.duration_ms"
AGGREGATION_UNATTRIBUTABLE = "aggregation.unattributable"
PARSER_DROPPED = "parser.dropped"
RATE_LIMIT_WAIT_MS = "rate_limiter.wait_ms"

Tags = Optional[Dict[str, str]]


@runtime_checkable
class MetricsSink(Protocol):
    """Capability consumed by every component that emits events"""

    def increment(self, name: str, value: int = 1, tags: Tags = None) -> None:
        ...

    def observe(self, name: str, value: float, tags: Tags = None) -> None:
        ...


class NullMetricsSink:
    """Discards everything"""

    def increment(self, name: str, value: int = 1, tags: Tags = None) -> None:
        pass

    def observe(self, name: str, value: float, tags: Tags = None) -> None:
        pass


def _series_key(name: str, tags: Tags) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return name, tuple(sorted((tags or {}).items()))


class InMemoryMetricsSink:
    """
    Keeps counters and bounded histograms in process.

    Counters are keyed by (name, sorted tags); ``counter(name)`` sums a name
    across all tag combinations unless tags are given.
    """

    def __init__(self, max_samples: int = 1000):
        self._counters: Dict[Tuple, int] = defaultdict(int)
        self._histograms: Dict[Tuple, TimingStats] = {}
        self._max_samples = max_samples

    def increment(self, name: str, value: int = 1, tags: Tags = None) -> None:
        self._counters[_series_key(name, tags)] += value
        logger.debug(f"{name} += {value} {tags or ''}")

    def observe(self, name: str, value: float, tags: Tags = None) -> None:
        key = _series_key(name, tags)
        if key not in self._histograms:
            self._histograms[key] = TimingStats(max_samples=self._max_samples)
        self._histograms[key].record(value)

    def counter(self, name: str, tags: Tags = None) -> int:
        if tags is not None:
            return self._counters.get(_series_key(name, tags), 0)
        return sum(v for (n, _), v in self._counters.items() if n == name)

    def histogram(self, name: str, tags: Tags = None) -> TimingStats:
        """Samples for name, merged across tag combinations unless tags are given"""
        if tags is not None:
            return self._histograms.get(_series_key(name, tags), TimingStats(self._max_samples))
        merged = TimingStats(self._max_samples)
        for (n, _), stats in self._histograms.items():
            if n == name:
                merged.merge(stats)
        return merged

    def to_dict(self) -> Dict:
        counters: Dict[str, int] = defaultdict(int)
        for (name, _), value in self._counters.items():
            counters[name] += value
        return {
            "counters": dict(counters),
            "histograms": {
                name: self.histogram(name).to_dict()
                for name in sorted({n for n, _ in self._histograms})
            }
        }

    def reset(self) -> None:
        self._counters.clear()
        self._histograms.clear()
