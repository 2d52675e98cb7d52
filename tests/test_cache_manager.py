"""
Tests for the single-flight TTL cache.
"""

import pytest
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cache_manager import CacheManager, InMemoryCacheStorage
from exceptions import APIConnectionError, OperationCancelledError
from metrics_sink import CACHE_COALESCED, CACHE_HIT, CACHE_MISS, CACHE_STALE_SERVED, InMemoryMetricsSink
from fakes import FakeClock


class Computation:
    """Counts invocations; optionally waits on a gate or fails"""

    def __init__(self, value="value", error=None, gate=None):
        self.value = value
        self.error = error
        self.gate = gate
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return f"{self.value}-{self.calls}"


class FailingWriteStorage(InMemoryCacheStorage):
    """Storage whose writes always fail"""

    async def set_with_ttl(self, key, value, ttl):
        raise ConnectionError("cache store unavailable")


def make_cache(stale_grace=0.0, metrics=None):
    clock = FakeClock()
    cache = CacheManager(
        InMemoryCacheStorage(clock),
        stale_grace_seconds=stale_grace,
        clock=clock,
        metrics=metrics,
    )
    return cache, clock


class TestGetOrCompute:
    """Tests for hits, misses and expiry"""

    @pytest.mark.asyncio
    async def test_second_call_within_ttl_is_cached(self):
        """The identical value is returned without recomputing"""
        metrics = InMemoryMetricsSink()
        cache, _ = make_cache(metrics=metrics)
        compute = Computation()

        first = await cache.get_or_compute("corridor:a", 60, compute)
        second = await cache.get_or_compute("corridor:a", 60, compute)

        assert first == second == "value-1"
        assert compute.calls == 1
        assert metrics.counter(CACHE_MISS) == 1
        assert metrics.counter(CACHE_HIT) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_recomputed(self):
        """Entries expire strictly at expires_at"""
        cache, clock = make_cache()
        compute = Computation()
        await cache.get_or_compute("k", 60, compute)

        clock.advance(60)
        assert await cache.get_or_compute("k", 60, compute) == "value-2"

    @pytest.mark.asyncio
    async def test_failed_computation_not_stored(self):
        """An exception leaves nothing behind"""
        cache, _ = make_cache()
        with pytest.raises(APIConnectionError):
            await cache.get_or_compute("k", 60, Computation(error=APIConnectionError("down")))
        assert await cache.get("k") is None
        assert cache.inflight_keys == []

    @pytest.mark.asyncio
    async def test_get_removes_expired(self):
        """Lazy expiry on access"""
        cache, clock = make_cache()
        await cache.get_or_compute("k", 10, Computation())
        assert await cache.get("k") == "value-1"
        clock.advance(11)
        assert await cache.get("k") is None
        assert len(cache.storage) == 0


class TestSingleFlight:
    """Tests for request coalescing"""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self):
        """Only one computation runs per key"""
        metrics = InMemoryMetricsSink()
        cache, _ = make_cache(metrics=metrics)
        gate = asyncio.Event()
        compute = Computation(gate=gate)

        tasks = [asyncio.create_task(cache.get_or_compute("k", 60, compute)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.peek("k").computing is True
        gate.set()
        results = await asyncio.gather(*tasks)

        assert results == ["value-1"] * 5
        assert compute.calls == 1
        assert metrics.counter(CACHE_COALESCED) == 4
        assert cache.peek("k") is None

    @pytest.mark.asyncio
    async def test_waiters_see_the_failure(self):
        """Coalesced callers get the same exception; nothing is stored"""
        cache, _ = make_cache()
        gate = asyncio.Event()
        compute = Computation(error=APIConnectionError("down"), gate=gate)

        tasks = [asyncio.create_task(cache.get_or_compute("k", 60, compute)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, APIConnectionError) for r in results)
        assert compute.calls == 1
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_different_keys_compute_independently(self):
        """Single-flight is per key, not global"""
        cache, _ = make_cache()
        gate = asyncio.Event()
        slow = Computation("slow", gate=gate)
        fast = Computation("fast")

        slow_task = asyncio.create_task(cache.get_or_compute("a", 60, slow))
        await asyncio.sleep(0)
        assert await cache.get_or_compute("b", 60, fast) == "fast-1"
        gate.set()
        assert await slow_task == "slow-1"

    @pytest.mark.asyncio
    async def test_cancellation_leaves_no_entry(self):
        """A cancelled computation stores nothing"""
        cache, _ = make_cache()
        compute = Computation(error=OperationCancelledError("deadline exceeded"))
        with pytest.raises(OperationCancelledError):
            await cache.get_or_compute("k", 60, compute)
        assert await cache.get("k") is None
        assert cache.peek("k") is None

    @pytest.mark.asyncio
    async def test_storage_write_failure_reaches_every_waiter(self):
        """A failed write still settles every coalesced caller"""
        clock = FakeClock()
        cache = CacheManager(FailingWriteStorage(clock), clock=clock)
        gate = asyncio.Event()
        compute = Computation(gate=gate)

        leader = asyncio.create_task(cache.get_or_compute("k", 60, compute))
        await asyncio.sleep(0)
        follower = asyncio.create_task(cache.get_or_compute("k", 60, compute))
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.wait_for(
            asyncio.gather(leader, follower, return_exceptions=True), timeout=1.0
        )

        assert all(isinstance(r, ConnectionError) for r in results)
        assert compute.calls == 1
        assert cache.inflight_keys == []

    @pytest.mark.asyncio
    async def test_cancelled_leader_does_not_cancel_followers(self):
        """The first caller going away leaves the shared computation running"""
        cache, _ = make_cache()
        gate = asyncio.Event()
        compute = Computation(gate=gate)

        leader = asyncio.create_task(cache.get_or_compute("k", 60, compute))
        await asyncio.sleep(0)
        follower = asyncio.create_task(cache.get_or_compute("k", 60, compute))
        await asyncio.sleep(0)
        leader.cancel()
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.wait_for(follower, timeout=1.0) == "value-1"
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert compute.calls == 1
        assert await cache.get("k") is not None

    @pytest.mark.asyncio
    async def test_sole_caller_cancelled_abandons_computation(self):
        """With no caller left waiting the computation is cancelled"""
        cache, _ = make_cache()
        gate = asyncio.Event()
        compute = Computation(gate=gate)

        caller = asyncio.create_task(cache.get_or_compute("k", 60, compute))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        gate.set()
        await asyncio.sleep(0)

        assert cache.inflight_keys == []
        assert await cache.get("k") is None
        assert await cache.get_or_compute("k", 60, Computation("fresh")) == "fresh-1"


class TestInvalidation:
    """Tests for point and pattern invalidation"""

    @pytest.mark.asyncio
    async def test_point_invalidation(self):
        """The next call recomputes"""
        cache, _ = make_cache()
        compute = Computation()
        await cache.get_or_compute("corridor:a", 60, compute)
        assert await cache.invalidate("corridor:a") is True
        assert await cache.get_or_compute("corridor:a", 60, compute) == "value-2"

    @pytest.mark.asyncio
    async def test_pattern_invalidation(self):
        """Only matching keys are removed"""
        cache, _ = make_cache()
        for key in ("corridor:a", "corridor:b", "price:xlm"):
            await cache.get_or_compute(key, 60, Computation(key))

        removed = await cache.invalidate_pattern("corridor:*")

        assert sorted(removed) == ["corridor:a", "corridor:b"]
        assert cache.storage.keys() == ["price:xlm"]

    @pytest.mark.asyncio
    async def test_invalidation_during_computation_evicts_result(self):
        """The in-flight result is returned but not kept"""
        cache, _ = make_cache()
        gate = asyncio.Event()
        compute = Computation(gate=gate)

        task = asyncio.create_task(cache.get_or_compute("corridor:a", 60, compute))
        await asyncio.sleep(0)
        await cache.invalidate_pattern("corridor:*")
        gate.set()

        assert await task == "value-1"
        assert await cache.get("corridor:a") is None
        assert await cache.get_or_compute("corridor:a", 60, compute) == "value-2"


class TestStaleServing:
    """Tests for serve_stale_on_error"""

    @pytest.mark.asyncio
    async def test_stale_value_served_on_upstream_failure(self):
        """An expired value inside the grace window replaces the error"""
        metrics = InMemoryMetricsSink()
        cache, clock = make_cache(stale_grace=300, metrics=metrics)
        await cache.get_or_compute("k", 60, Computation())
        clock.advance(120)

        failing = Computation(error=APIConnectionError("down"))
        value = await cache.get_or_compute("k", 60, failing, serve_stale_on_error=True)

        assert value == "value-1"
        assert metrics.counter(CACHE_STALE_SERVED) == 1

    @pytest.mark.asyncio
    async def test_stale_not_served_by_default(self):
        """Without opt-in the error propagates"""
        cache, clock = make_cache(stale_grace=300)
        await cache.get_or_compute("k", 60, Computation())
        clock.advance(120)
        with pytest.raises(APIConnectionError):
            await cache.get_or_compute("k", 60, Computation(error=APIConnectionError("down")))

    @pytest.mark.asyncio
    async def test_stale_not_served_past_grace(self):
        """Entries older than the grace window are not served"""
        cache, clock = make_cache(stale_grace=30)
        await cache.get_or_compute("k", 60, Computation())
        clock.advance(100)
        with pytest.raises(APIConnectionError):
            await cache.get_or_compute(
                "k", 60, Computation(error=APIConnectionError("down")), serve_stale_on_error=True
            )

    @pytest.mark.asyncio
    async def test_invalidated_key_never_served_stale(self):
        """Invalidation removes the stale fallback too"""
        cache, clock = make_cache(stale_grace=300)
        await cache.get_or_compute("k", 60, Computation())
        await cache.invalidate("k")
        with pytest.raises(APIConnectionError):
            await cache.get_or_compute(
                "k", 60, Computation(error=APIConnectionError("down")), serve_stale_on_error=True
            )

    @pytest.mark.asyncio
    async def test_programming_errors_not_masked(self):
        """Only upstream failures fall back to stale values"""
        cache, clock = make_cache(stale_grace=300)
        await cache.get_or_compute("k", 60, Computation())
        clock.advance(120)
        with pytest.raises(ValueError):
            await cache.get_or_compute(
                "k", 60, Computation(error=ValueError("bug")), serve_stale_on_error=True
            )


class TestSweeper:
    """Tests for background expiry"""

    @pytest.mark.asyncio
    async def test_sweep_respects_grace(self):
        """Sweep keeps entries still inside the stale grace window"""
        cache, clock = make_cache(stale_grace=30)
        await cache.get_or_compute("young", 60, Computation())
        await cache.get_or_compute("old", 10, Computation())
        clock.advance(50)

        assert await cache.sweep() == 1
        assert cache.storage.keys() == ["young"]

    @pytest.mark.asyncio
    async def test_sweeper_lifecycle(self):
        """start_sweeper runs a background task until stopped"""
        cache, clock = make_cache()
        await cache.get_or_compute("k", 1, Computation())
        clock.advance(5)

        cache.start_sweeper(interval=0.01)
        assert cache.get_stats()["sweeper_running"] is True
        await asyncio.sleep(0.05)
        await cache.stop_sweeper()

        assert len(cache.storage) == 0
        assert cache.get_stats()["sweeper_running"] is False
