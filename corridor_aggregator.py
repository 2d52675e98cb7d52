"""
Corridor Aggregator Module
Detects asset corridors in normalized payments and computes per-corridor
time-bucketed metrics:

1. Success rate - successful / total payments per UTC day
2. Latency distribution - fixed half-open buckets [prev, bound), last unbounded
3. Liquidity trend - daily sum of absolute destination amounts
4. Volume - daily settled amount and count

Buckets are keyed by UTC calendar day so identical input always produces
identical boundaries and ordering.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from constants import CURRENCY_USD, DEFAULT_RELATED_CORRIDOR_LIMIT, LATENCY_BUCKET_BOUNDS_MS
from exceptions import AggregationError
from metrics_sink import AGGREGATION_DURATION_MS, AGGREGATION_UNATTRIBUTABLE, MetricsSink, NullMetricsSink
from models import (
    AggregationResult,
    Asset,
    Corridor,
    CorridorMetrics,
    LatencyBucket,
    LiquiditySnapshot,
    Payment,
    SuccessRatePoint,
    VolumePoint,
)
from price_feed import Price, PriceFeed, PriceQuote, PriceUnavailable, StalePrice
from utils import safe_divide, utc_day, utc_day_start

logger = logging.getLogger("CorridorScope.aggregator")

ZERO = Decimal("0")


@dataclass
class _DayTally:
    successful: int = 0
    total: int = 0
    amount: Decimal = ZERO


@dataclass
class _CorridorAccumulator:
    """Running totals for one corridor while payments stream in"""
    corridor: Corridor
    days: Dict[date, _DayTally] = field(default_factory=lambda: defaultdict(_DayTally))
    latencies: List[float] = field(default_factory=list)

    def add(self, payment: Payment, amount: Decimal) -> None:
        tally = self.days[utc_day(payment.created_at)]
        tally.total += 1
        if payment.successful:
            tally.successful += 1
            tally.amount += amount
        if payment.latency_ms is not None:
            self.latencies.append(payment.latency_ms)

    def build(self, latency_bounds: Sequence[float]) -> CorridorMetrics:
        ordered_days = sorted(self.days)

        success_rate = tuple(
            SuccessRatePoint(
                bucket_start=utc_day_start(day),
                rate=safe_divide(self.days[day].successful, self.days[day].total),
                successful=self.days[day].successful,
                total=self.days[day].total,
            )
            for day in ordered_days
        )
        liquidity = tuple(
            LiquiditySnapshot(day=day, total_value=self.days[day].amount, native_value=self.days[day].amount)
            for day in ordered_days
        )
        volume = tuple(
            VolumePoint(day=day, total_amount=self.days[day].amount, payment_count=self.days[day].successful)
            for day in ordered_days
        )
        latency, p50, p95 = _latency_histogram(self.latencies, latency_bounds)

        return CorridorMetrics(
            corridor=self.corridor,
            success_rate=success_rate,
            latency=latency,
            liquidity=liquidity,
            volume=volume,
            total_volume=sum((self.days[day].amount for day in ordered_days), ZERO),
            payment_count=sum(self.days[day].total for day in ordered_days),
            latency_p50_ms=p50,
            latency_p95_ms=p95,
        )


def _latency_histogram(
    latencies: Sequence[float],
    bounds: Sequence[float]
) -> Tuple[Tuple[LatencyBucket, ...], Optional[float], Optional[float]]:
    """Counts per half-open bucket plus p50/p95 (None without samples)"""
    upper_bounds = list(bounds) + [float("inf")]
    if not latencies:
        return tuple(LatencyBucket(upper_bound_ms=b, count=0) for b in upper_bounds), None, None

    samples = np.asarray(latencies, dtype=float)
    # side="right" puts a value equal to a bound into the next bucket
    indexes = np.searchsorted(np.asarray(bounds, dtype=float), samples, side="right")
    counts = np.bincount(indexes, minlength=len(upper_bounds))
    buckets = tuple(
        LatencyBucket(upper_bound_ms=bound, count=int(count))
        for bound, count in zip(upper_bounds, counts)
    )
    p50 = float(np.percentile(samples, 50))
    p95 = float(np.percentile(samples, 95))
    return buckets, round(p50, 3), round(p95, 3)


def _absolute_amount(payment: Payment) -> Optional[Decimal]:
    text = payment.destination_amount()
    if text is None:
        return None
    try:
        return abs(Decimal(text))
    except InvalidOperation:
        return None


class CorridorAggregator:
    """
    Derives corridors from payments and aggregates their metrics.

    Usage:
        aggregator = CorridorAggregator()
        result = aggregator.aggregate(payments)
        usdc_xlm = result["USDC->XLM"]
        related = aggregator.related_corridors(result, "USDC->XLM")
    """

    def __init__(
        self,
        related_limit: int = DEFAULT_RELATED_CORRIDOR_LIMIT,
        latency_bounds_ms: Sequence[float] = LATENCY_BUCKET_BOUNDS_MS,
        metrics: Optional[MetricsSink] = None,
        timer: Callable[[], float] = time.perf_counter
    ):
        self.related_limit = related_limit
        self.latency_bounds_ms = tuple(latency_bounds_ms)
        self.metrics = metrics or NullMetricsSink()
        self._timer = timer

    def aggregate(
        self,
        payments: Iterable[Payment],
        fetch_error: Optional[Exception] = None
    ) -> AggregationResult:
        """
        Aggregate payments into per-corridor metrics.

        Payments without an asset pair or amount are skipped and counted as
        unattributable. An empty input is a valid, empty result unless the
        fetch that produced it reported an error.

        Raises:
            AggregationError: no payments and fetch_error is set
        """
        started = self._timer()
        payments = list(payments)

        if not payments and fetch_error is not None:
            raise AggregationError(
                f"No payments to aggregate; fetch failed: {fetch_error}",
                cause=fetch_error
            ) from fetch_error

        accumulators: Dict[str, _CorridorAccumulator] = {}
        unattributable = 0

        for payment in payments:
            pair = payment.destination_asset_pair()
            amount = _absolute_amount(payment)
            if pair is None or amount is None:
                unattributable += 1
                continue
            corridor = Corridor(asset_from=pair[0], asset_to=pair[1])
            accumulator = accumulators.get(corridor.key)
            if accumulator is None:
                accumulator = _CorridorAccumulator(corridor)
                accumulators[corridor.key] = accumulator
            accumulator.add(payment, amount)

        corridors = {
            key: accumulators[key].build(self.latency_bounds_ms)
            for key in sorted(accumulators)
        }

        duration_ms = (self._timer() - started) * 1000
        self.metrics.observe(AGGREGATION_DURATION_MS, duration_ms)
        if unattributable:
            self.metrics.increment(AGGREGATION_UNATTRIBUTABLE, unattributable)
            logger.info(f"Skipped {unattributable} unattributable payment(s)")
        logger.debug(
            f"Aggregated {len(payments)} payment(s) into {len(corridors)} corridor(s) "
            f"in {duration_ms:.1f}ms"
        )

        return AggregationResult(
            corridors=corridors,
            unattributable=unattributable,
            payment_count=len(payments),
        )

    def related_corridors(
        self,
        result: AggregationResult,
        key: str,
        limit: Optional[int] = None
    ) -> List[CorridorMetrics]:
        """
        Corridors sharing an asset with the target, by total volume descending,
        ties broken by corridor key.

        Raises:
            KeyError: key is not in result
        """
        target = result[key].corridor
        target_assets = {target.asset_from, target.asset_to}
        limit = self.related_limit if limit is None else limit

        candidates = [
            metrics for other_key, metrics in result.items()
            if other_key != key
            and {metrics.corridor.asset_from, metrics.corridor.asset_to} & target_assets
        ]
        candidates.sort(key=lambda m: (-m.total_volume, m.key))
        return candidates[:limit]

    async def price_liquidity(self, result: AggregationResult, price_feed: PriceFeed) -> AggregationResult:
        """
        Convert liquidity snapshots to USD using the destination asset's price.

        Stale prices are used but flagged. Corridors whose price is unavailable
        keep native figures.
        """
        quotes: Dict[Asset, PriceQuote] = {}
        priced: Dict[str, CorridorMetrics] = {}

        for key, metrics in result.items():
            asset = metrics.corridor.asset_to
            if asset not in quotes:
                quotes[asset] = await self._quote(price_feed, asset)
            quote = quotes[asset]

            if isinstance(quote, (Price, StalePrice)):
                snapshots = tuple(
                    replace(
                        snapshot,
                        total_value=snapshot.total_value * quote.value,
                        currency=CURRENCY_USD,
                        native_value=snapshot.total_value,
                        price_stale=isinstance(quote, StalePrice),
                    )
                    for snapshot in metrics.liquidity
                )
                priced[key] = replace(metrics, liquidity=snapshots)
            else:
                priced[key] = metrics

        return replace(result, corridors=priced)

    @staticmethod
    async def _quote(price_feed: PriceFeed, asset: Asset) -> PriceQuote:
        try:
            return await price_feed.get_usd_price(str(asset), CURRENCY_USD)
        except Exception as e:
            logger.warning(f"Price feed failed for {asset}: {e}. Reporting native figures.")
            return PriceUnavailable(str(e))
