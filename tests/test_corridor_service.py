"""
Tests for the corridor service: cache -> fetch -> aggregate composition.
"""

import pytest
import asyncio
import os
import sys
from datetime import timedelta
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import CacheConfig, CircuitBreakerConfig, LedgerAPIConfig, PipelineConfig, RetryConfig
from cancellation import CancellationToken
from corridor_service import CorridorService
from exceptions import AggregationError, CircuitOpenError, FetchFailedError, OperationCancelledError
from ledger_client import FetchFilter, RawResponse
from metrics_sink import CACHE_HIT, FETCH_ATTEMPT, InMemoryMetricsSink
from price_feed import StaticPriceFeed
from fakes import DAY_1, DAY_2, ISSUER_A, FakeTransport, balance_change_payment

USDC_XLM = f"USDC:{ISSUER_A}->XLM"


def corridor_records():
    return [
        balance_change_payment(1, [("USDC", "-10"), (None, "10")], created_at=DAY_1 + timedelta(hours=1)),
        balance_change_payment(2, [("USDC", "-20"), (None, "20")], created_at=DAY_1 + timedelta(hours=2)),
        balance_change_payment(3, [("EURC", "-5"), (None, "5")], created_at=DAY_2),
        balance_change_payment(4, [("USDC", "-1"), ("EURC", "1")], created_at=DAY_2),
    ]


def make_service(responses, price_feed=None, max_attempts=1, failure_threshold=5, metrics=None):
    config = PipelineConfig(
        ledger=LedgerAPIConfig(base_url="https://ledger.test"),
        retry=RetryConfig(max_attempts=max_attempts, base_backoff_seconds=0.001, jitter=False),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=failure_threshold),
        cache=CacheConfig(ttl_seconds=60, stale_grace_seconds=600),
    )
    transport = FakeTransport(responses)
    service = CorridorService.from_config(config, transport=transport, price_feed=price_feed, metrics=metrics)
    return service, transport


class TestGetCorridors:
    """Tests for the main read path"""

    @pytest.mark.asyncio
    async def test_fetches_aggregates_and_caches(self):
        """The second read is served from cache without upstream calls"""
        metrics = InMemoryMetricsSink()
        service, transport = make_service([corridor_records()], metrics=metrics)

        first = await service.get_corridors()
        calls_after_first = len(transport.calls)
        second = await service.get_corridors()

        assert first is second
        assert len(transport.calls) == calls_after_first == 2
        assert USDC_XLM in first
        assert first[USDC_XLM].total_volume == Decimal("30")
        assert metrics.counter(CACHE_HIT) == 1
        assert metrics.counter(FETCH_ATTEMPT) == 2

    @pytest.mark.asyncio
    async def test_concurrent_reads_fetch_once(self):
        """Concurrent identical queries trigger a single upstream fetch"""
        service, transport = make_service([corridor_records()])
        results = await asyncio.gather(*[service.get_corridors() for _ in range(5)])
        assert all(r is results[0] for r in results)
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_key_per_filter(self):
        """Different accounts are cached separately; cursors are not part of the key"""
        base = FetchFilter(account="GA")
        assert CorridorService.cache_key(base) == CorridorService.cache_key(base.with_cursor("9"))
        assert CorridorService.cache_key(base) != CorridorService.cache_key(FetchFilter(account="GB"))
        assert CorridorService.cache_key(base).startswith("corridor:")
    @pytest.mark.asyncio
    async def test_configured_cap_shares_default_entry(self):
        """Passing the configured record cap reuses the default query's entry"""
        service, transport = make_service([corridor_records()])

        first = await service.get_corridors()
        calls_after_first = len(transport.calls)
        second = await service.get_corridors(max_records=service.client.config.max_records)

        assert second is first
        assert len(transport.calls) == calls_after_first
        assert service.cache.storage.keys() == [service.cache_key(FetchFilter())]

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_coalesced_caller_served(self):
        """One caller's token stops only that caller's wait"""
        service, transport = make_service([corridor_records()])
        transport.delay = 0.05
        token = CancellationToken()

        first = asyncio.create_task(service.get_corridors(cancel_token=token))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(service.get_corridors())
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(OperationCancelledError):
            await first
        result = await asyncio.wait_for(second, timeout=2.0)
        assert USDC_XLM in result
        assert len(transport.calls) == 2


    @pytest.mark.asyncio
    async def test_get_corridor_and_related(self):
        """Single corridor lookup and related ranking"""
        service, _ = make_service([corridor_records()])
        corridor = await service.get_corridor(USDC_XLM)
        related = await service.get_related(USDC_XLM)

        assert corridor.payment_count == 2
        assert [m.key for m in related] == [
            f"EURC:{ISSUER_A}->XLM",
            f"USDC:{ISSUER_A}->EURC:{ISSUER_A}",
        ]

    @pytest.mark.asyncio
    async def test_unknown_corridor(self):
        """A corridor absent from the result raises KeyError"""
        service, _ = make_service([corridor_records()])
        with pytest.raises(KeyError):
            await service.get_corridor("NOPE->XLM")

    @pytest.mark.asyncio
    async def test_price_feed_applied(self):
        """Liquidity is converted when a feed is configured"""
        service, _ = make_service([corridor_records()], price_feed=StaticPriceFeed({"XLM": "0.5"}))
        corridor = await service.get_corridor(USDC_XLM)
        assert corridor.liquidity[0].currency == "USD"
        assert corridor.liquidity[0].total_value == Decimal("15.0")


class TestFailures:
    """Tests for error propagation and stale fallback"""

    @pytest.mark.asyncio
    async def test_total_fetch_failure_is_aggregation_error(self):
        """No data because the fetch broke is not an empty result"""
        service, _ = make_service([RawResponse(status=503)])
        with pytest.raises(AggregationError) as exc_info:
            await service.get_corridors(serve_stale=False)
        assert isinstance(exc_info.value.cause, FetchFailedError)

    @pytest.mark.asyncio
    async def test_partial_fetch_failure_surfaces_cursor(self):
        """A failure after some pages is raised with the resume cursor, never cached"""
        service, _ = make_service([corridor_records(), RawResponse(status=500)])
        with pytest.raises(FetchFailedError) as exc_info:
            await service.get_corridors(serve_stale=False)
        assert exc_info.value.cursor == "4"
        assert await service.cache.get(service.cache_key(FetchFilter())) is None

    @pytest.mark.asyncio
    async def test_open_circuit_raised_directly(self):
        """CircuitOpenError reaches the caller for its own fallback"""
        service, transport = make_service(
            [RawResponse(status=503)], failure_threshold=1
        )
        with pytest.raises(AggregationError):
            await service.get_corridors(serve_stale=False)
        with pytest.raises(CircuitOpenError):
            await service.get_corridors(serve_stale=False)
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_stale_result_served_when_upstream_fails(self):
        """An expired result is returned when recomputation fails"""
        service, transport = make_service([corridor_records()])
        clock = [1000.0]
        service.cache._clock = lambda: clock[0]
        service.cache.storage._clock = lambda: clock[0]

        fresh = await service.get_corridors()
        clock[0] += 120
        transport.responses = [RawResponse(status=503)]

        assert await service.get_corridors(serve_stale=True) is fresh


class TestInvalidation:
    """Tests for invalidate_corridors"""

    @pytest.mark.asyncio
    async def test_invalidate_all(self):
        """All corridor results are dropped and recomputed on next read"""
        service, transport = make_service([corridor_records(), [], corridor_records()])
        await service.get_corridors()
        removed = await service.invalidate_corridors()
        assert removed == [service.cache_key(FetchFilter())]

        await service.get_corridors()
        assert len(transport.calls) == 4

    @pytest.mark.asyncio
    async def test_invalidate_one_query(self):
        """Filtered invalidation leaves other queries cached"""
        service, _ = make_service([corridor_records(), [], corridor_records(), []])
        await service.get_corridors(FetchFilter(account="GA"))
        await service.get_corridors(FetchFilter(account="GB"), max_records=50)

        removed = await service.invalidate_corridors(FetchFilter(account="GB"))
        assert removed == [service.cache_key(FetchFilter(account="GB"), 50)]
        assert service.cache.storage.keys() == [service.cache_key(FetchFilter(account="GA"))]


class TestLifecycle:
    """Tests for start/close"""

    @pytest.mark.asyncio
    async def test_context_manager(self):
        """Starting runs the sweeper; closing stops it and the transport"""
        service, transport = make_service([])
        async with service:
            assert service.cache.get_stats()["sweeper_running"] is True
        assert transport.closed
        assert service.cache.get_stats()["sweeper_running"] is False
        assert "client" in service.get_stats()
