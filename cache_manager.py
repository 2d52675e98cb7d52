"""
Cache Manager Module
Per-key TTL cache with single-flight computation and pattern invalidation.

Features:
- Single-flight: concurrent callers for the same key share one computation
- Strict expiry by expires_at, lazily on access and by a background sweep
- Point and glob-pattern invalidation, effective immediately
- Optional stale reads within a grace window when recomputation fails
"""

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple, Type

from constants import DEFAULT_STALE_GRACE, DEFAULT_SWEEP_INTERVAL
from exceptions import AggregationError, LedgerAPIError
from metrics_sink import (
    CACHE_COALESCED,
    CACHE_EVICTED,
    CACHE_HIT,
    CACHE_MISS,
    CACHE_STALE_SERVED,
    MetricsSink,
    NullMetricsSink,
)

logger = logging.getLogger("CorridorScope.cache")

# Errors after which an expired entry may be served instead
STALE_ELIGIBLE_ERRORS: Tuple[Type[BaseException], ...] = (LedgerAPIError, AggregationError)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float
    computing: bool = False

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class CacheStorage(Protocol):
    """The only contract a backing store has to meet"""

    async def get(self, key: str) -> Optional[CacheEntry]:
        ...

    async def set_with_ttl(self, key: str, value: Any, ttl: float) -> CacheEntry:
        ...

    async def invalidate(self, key: str) -> bool:
        ...

    async def invalidate_pattern(self, pattern: str) -> List[str]:
        ...

    async def sweep(self, retain_seconds: float = 0.0) -> int:
        ...


class InMemoryCacheStorage:
    """
    In-process storage.

    Expired entries are kept (and returned by get) until they are older than
    the sweep's retain window, so the manager can decide about stale reads.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def set_with_ttl(self, key: str, value: Any, ttl: float) -> CacheEntry:
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        self._entries[key] = entry
        return entry

    async def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def invalidate_pattern(self, pattern: str) -> List[str]:
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return matched

    async def sweep(self, retain_seconds: float = 0.0) -> int:
        """Drop entries expired for longer than retain_seconds"""
        cutoff = self._clock() - retain_seconds
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class _Flight:
    """One in-progress computation and the number of callers awaiting it"""
    task: asyncio.Task
    waiters: int = 0


def _retrieve_outcome(task: asyncio.Task) -> None:
    # Waiters may all have detached; mark the outcome as consumed
    if not task.cancelled():
        task.exception()


class CacheManager:
    """
    Usage:
        cache = CacheManager(InMemoryCacheStorage())
        value = await cache.get_or_compute("corridor:abc", 300, compute)
        await cache.invalidate_pattern("corridor:*")
    """

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        stale_grace_seconds: float = DEFAULT_STALE_GRACE,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsSink] = None
    ):
        self._clock = clock
        self.storage = storage if storage is not None else InMemoryCacheStorage(clock)
        self.stale_grace_seconds = stale_grace_seconds
        self.metrics = metrics or NullMetricsSink()

        self._inflight: Dict[str, _Flight] = {}
        self._invalidated_inflight: Set[str] = set()
        self._sweep_task: Optional[asyncio.Task] = None

        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        """Fresh value for key, or None. Expired entries are removed."""
        entry = await self.storage.get(key)
        if entry is None:
            return None
        if entry.is_fresh(self._clock()):
            return entry.value
        if self.stale_grace_seconds <= 0:
            await self.storage.invalidate(key)
        return None

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Synchronous view of in-flight state; value is not loaded"""
        if key in self._inflight:
            return CacheEntry(key=key, value=None, expires_at=0.0, computing=True)
        return None

    async def get_or_compute(
        self,
        key: str,
        ttl: float,
        compute_fn: Callable[[], Awaitable[Any]],
        serve_stale_on_error: bool = False
    ) -> Any:
        """
        Return the cached value for key or compute, store and return it.

        The computation runs in a task owned by the manager. Concurrent callers
        for a key that is already computing await that task instead of starting
        another. A cancelled caller only stops waiting; the computation is
        cancelled once no caller is left waiting for it. A failed or cancelled
        computation stores nothing.

        Args:
            key: Cache key
            ttl: Seconds the computed value stays fresh
            compute_fn: Zero-argument coroutine factory
            serve_stale_on_error: On an upstream failure, return an expired
                (but not invalidated) value still inside the grace window
        """
        entry = await self.storage.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self.hits += 1
            self.metrics.increment(CACHE_HIT)
            logger.debug(f"Cache hit: {key}")
            return entry.value

        flight = self._inflight.get(key)
        if flight is not None:
            self.metrics.increment(CACHE_COALESCED)
            logger.debug(f"Cache miss coalesced onto in-flight computation: {key}")
        else:
            self.misses += 1
            self.metrics.increment(CACHE_MISS)
            logger.debug(f"Cache miss: {key}")
            self._invalidated_inflight.discard(key)
            task = asyncio.create_task(self._compute_and_store(key, ttl, compute_fn))
            task.add_done_callback(_retrieve_outcome)
            flight = _Flight(task)
            self._inflight[key] = flight

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            # Last waiter gone: nobody needs the result any more
            if flight.waiters == 1 and not flight.task.done():
                self._release(key, flight.task)
                flight.task.cancel()
            raise
        except STALE_ELIGIBLE_ERRORS:
            stale = await self._stale_value(key) if serve_stale_on_error else None
            if stale is not None:
                return stale[0]
            raise
        finally:
            flight.waiters -= 1

    async def _compute_and_store(self, key: str, ttl: float, compute_fn: Callable[[], Awaitable[Any]]) -> Any:
        task = asyncio.current_task()
        try:
            value = await compute_fn()
            await self.storage.set_with_ttl(key, value, ttl)
            if key in self._invalidated_inflight and self._owns(key, task):
                await self.storage.invalidate(key)
                self.metrics.increment(CACHE_EVICTED)
                logger.debug(f"Evicted {key}: invalidated while computing")
            return value
        finally:
            self._release(key, task)

    def _owns(self, key: str, task: Optional[asyncio.Task]) -> bool:
        flight = self._inflight.get(key)
        return flight is not None and flight.task is task

    def _release(self, key: str, task: Optional[asyncio.Task]) -> None:
        if self._owns(key, task):
            del self._inflight[key]
            self._invalidated_inflight.discard(key)

    async def _stale_value(self, key: str) -> Optional[Tuple[Any]]:
        # Re-read: an invalidation during the computation removes the entry
        entry = await self.storage.get(key)
        now = self._clock()
        if entry is None or now >= entry.expires_at + self.stale_grace_seconds:
            return None
        self.metrics.increment(CACHE_STALE_SERVED)
        logger.warning(
            f"Serving stale value for {entry.key} "
            f"({now - entry.expires_at:.1f}s past expiry) after upstream failure"
        )
        return (entry.value,)

    async def invalidate(self, key: str) -> bool:
        """Remove one key; an in-flight computation for it is evicted on completion"""
        if key in self._inflight:
            self._invalidated_inflight.add(key)
        removed = await self.storage.invalidate(key)
        if removed:
            self.metrics.increment(CACHE_EVICTED)
        return removed

    async def invalidate_pattern(self, pattern: str) -> List[str]:
        """Remove every key matching a glob pattern such as 'corridor:*'"""
        for key in self._inflight:
            if fnmatch.fnmatchcase(key, pattern):
                self._invalidated_inflight.add(key)
        removed = await self.storage.invalidate_pattern(pattern)
        if removed:
            self.metrics.increment(CACHE_EVICTED, len(removed))
            logger.info(f"Invalidated {len(removed)} key(s) matching {pattern!r}")
        return removed

    async def sweep(self) -> int:
        """Remove entries past expiry plus the stale grace window"""
        removed = await self.storage.sweep(retain_seconds=self.stale_grace_seconds)
        if removed:
            self.metrics.increment(CACHE_EVICTED, removed)
            logger.debug(f"Swept {removed} expired cache entr{'y' if removed == 1 else 'ies'}")
        return removed

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}")

    def start_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    @property
    def inflight_keys(self) -> List[str]:
        return sorted(self._inflight)

    def get_stats(self) -> Dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "inflight": len(self._inflight),
            "sweeper_running": self._sweep_task is not None and not self._sweep_task.done(),
        }
