"""
Corridor Service
Entry point that composes the pipeline:

    cache.get_or_compute -> client.collect("payments") -> aggregator.aggregate
                         -> aggregator.price_liquidity (when a feed is set)

Results are cached per query under corridor:<filter fingerprint>.
"""

import logging
from typing import List, Optional

from cache_manager import CacheManager, InMemoryCacheStorage
from cancellation import CancellationToken, run_with_token
from circuit_breaker import CircuitBreakerRegistry
from config import CacheConfig, PipelineConfig
from constants import CORRIDOR_CACHE_PREFIX
from corridor_aggregator import CorridorAggregator
from exceptions import CircuitOpenError
from ledger_client import FetchFilter, LedgerAPIClient, PageTransport
from metrics_sink import MetricsSink, NullMetricsSink
from models import AggregationResult, CorridorMetrics
from price_feed import PriceFeed
from rate_limiter import TokenBucketRateLimiter
from response_parser import ResponseParser
from retry_policy import RetryPolicy

logger = logging.getLogger("CorridorScope.service")


class CorridorService:
    """
    Usage:
        service = CorridorService.from_config(get_config())
        async with service:
            result = await service.get_corridors(FetchFilter(account="G..."))
            related = await service.get_related("USDC:GA...->XLM")
    """

    def __init__(
        self,
        client: LedgerAPIClient,
        aggregator: CorridorAggregator,
        cache: CacheManager,
        price_feed: Optional[PriceFeed] = None,
        cache_config: Optional[CacheConfig] = None
    ):
        self.client = client
        self.aggregator = aggregator
        self.cache = cache
        self.price_feed = price_feed
        self.cache_config = cache_config or CacheConfig()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        transport: Optional[PageTransport] = None,
        price_feed: Optional[PriceFeed] = None,
        metrics: Optional[MetricsSink] = None
    ) -> "CorridorService":
        """Wire every component from one PipelineConfig and a shared metrics sink"""
        metrics = metrics or NullMetricsSink()

        rate_limiter = TokenBucketRateLimiter(
            capacity=config.rate_limit.capacity,
            refill_rate=config.rate_limit.refill_rate,
            low_quota_threshold=config.rate_limit.low_quota_threshold,
            metrics=metrics,
        )
        breakers = CircuitBreakerRegistry(
            failure_threshold=config.circuit_breaker.failure_threshold,
            timeout_duration=config.circuit_breaker.timeout_duration,
            success_threshold=config.circuit_breaker.success_threshold,
            half_open_max_calls=config.circuit_breaker.half_open_max_calls,
            metrics=metrics,
        )
        retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_backoff=config.retry.base_backoff_seconds,
            max_backoff=config.retry.max_backoff_seconds,
            jitter=config.retry.jitter,
            metrics=metrics,
        )
        client = LedgerAPIClient(
            config.ledger,
            rate_limiter,
            breakers,
            retry_policy,
            parser=ResponseParser(),
            transport=transport,
            metrics=metrics,
        )
        aggregator = CorridorAggregator(
            related_limit=config.aggregation.related_corridor_limit,
            latency_bounds_ms=config.aggregation.latency_bounds_ms,
            metrics=metrics,
        )
        cache = CacheManager(
            InMemoryCacheStorage(),
            stale_grace_seconds=config.cache.stale_grace_seconds,
            metrics=metrics,
        )
        return cls(client, aggregator, cache, price_feed=price_feed, cache_config=config.cache)

    async def start(self) -> None:
        if not self.client.is_connected:
            await self.client.connect()
        self.cache.start_sweeper(self.cache_config.sweep_interval_seconds)

    async def close(self) -> None:
        await self.cache.stop_sweeper()
        await self.client.disconnect()

    async def __aenter__(self) -> "CorridorService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    def cache_key(fetch_filter: FetchFilter, max_records: Optional[int] = None) -> str:
        """max_records is None for the configured cap, so both spellings share one key"""
        key = f"{CORRIDOR_CACHE_PREFIX}{fetch_filter.fingerprint()}"
        if max_records is not None:
            key = f"{key}:{max_records}"
        return key

    async def _compute(self, fetch_filter: FetchFilter, max_records: int) -> AggregationResult:
        # Shared by every coalesced caller, so it runs without any one caller's token
        fetched = await self.client.collect("payments", fetch_filter, max_records, allow_partial=True)
        error = fetched.error
        # A partial result is never cached; an open circuit goes straight to the caller
        if error is not None and (isinstance(error, CircuitOpenError) or fetched.records):
            raise error

        result = self.aggregator.aggregate(fetched.records, fetch_error=error)
        if self.price_feed is not None:
            result = await self.aggregator.price_liquidity(result, self.price_feed)
        return result

    async def get_corridors(
        self,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        serve_stale: Optional[bool] = None
    ) -> AggregationResult:
        """
        Corridor metrics for one query, computed at most once per TTL.

        Args:
            fetch_filter: Account, time range and ordering of the payments feed
            max_records: Fetch horizon; defaults to the client's configured cap
            cancel_token: Stops this caller waiting with OperationCancelledError;
                the fetch itself is aborted once no other caller shares it
            serve_stale: Return an expired result when the upstream fails.
                Defaults to CacheConfig.serve_stale_on_error.

        Raises:
            CircuitOpenError: upstream circuit is open and nothing stale is available
            FetchFailedError: a page failed after some pages were fetched
            AggregationError: the fetch failed before producing any payment
            OperationCancelledError: cancel_token fired
        """
        fetch_filter = fetch_filter or FetchFilter()
        if serve_stale is None:
            serve_stale = self.cache_config.serve_stale_on_error

        default_limit = self.client.config.max_records
        limit = default_limit if max_records is None else max_records
        lookup = self.cache.get_or_compute(
            self.cache_key(fetch_filter, None if limit == default_limit else limit),
            self.cache_config.ttl_seconds,
            lambda: self._compute(fetch_filter, limit),
            serve_stale_on_error=serve_stale,
        )
        # The token bounds this caller's wait; the shared computation is only
        # cancelled once every caller waiting on it has gone
        return await run_with_token(lookup, cancel_token)

    async def get_corridor(
        self,
        key: str,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> CorridorMetrics:
        """Raises KeyError when the query produced no corridor with that key"""
        result = await self.get_corridors(fetch_filter, max_records, cancel_token)
        return result[key]

    async def get_related(
        self,
        key: str,
        fetch_filter: Optional[FetchFilter] = None,
        limit: Optional[int] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> List[CorridorMetrics]:
        result = await self.get_corridors(fetch_filter, max_records, cancel_token)
        return self.aggregator.related_corridors(result, key, limit)

    async def invalidate_corridors(self, fetch_filter: Optional[FetchFilter] = None) -> List[str]:
        """Drop cached results for one query (every horizon), or for all queries"""
        if fetch_filter is None:
            pattern = f"{CORRIDOR_CACHE_PREFIX}*"
        else:
            pattern = f"{self.cache_key(fetch_filter)}*"
        removed = await self.cache.invalidate_pattern(pattern)
        logger.info(f"Invalidated {len(removed)} cached corridor result(s)")
        return removed

    def get_stats(self) -> dict:
        return {
            "client": self.client.get_stats(),
            "cache": self.cache.get_stats(),
            "price_feed": type(self.price_feed).__name__ if self.price_feed else None,
        }
