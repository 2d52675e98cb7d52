"""
Data Model Module
Normalized, immutable records produced by the response parser and the
aggregation results built from them.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from constants import CURRENCY_NATIVE, NATIVE_ASSET_CODE


# =============================================================================
# ASSETS
# =============================================================================

@dataclass(frozen=True)
class Asset:
    """
    A fungible unit on the ledger.

    An empty code means the native asset, which never has an issuer.
    Equality is exact (case-sensitive) on code and issuer.
    """
    code: str = ""
    issuer: Optional[str] = None

    @classmethod
    def native(cls) -> "Asset":
        return cls(code="", issuer=None)

    @classmethod
    def from_fields(
        cls,
        asset_type: Optional[str],
        code: Optional[str],
        issuer: Optional[str]
    ) -> "Asset":
        """Build from Horizon-style asset_type/asset_code/asset_issuer fields"""
        if asset_type == "native" or (not code and not issuer):
            return cls.native()
        return cls(code=code or "", issuer=issuer or None)

    @property
    def is_native(self) -> bool:
        return not self.code and self.issuer is None

    def __str__(self) -> str:
        if self.is_native:
            return NATIVE_ASSET_CODE
        if self.issuer or self.code == NATIVE_ASSET_CODE:
            # Keeps an issuer-less credit "XLM" apart from the native label
            return f"{self.code}:{self.issuer or ''}"
        return self.code


class Direction(Enum):
    """Which side of a transfer a balance change sits on"""
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class BalanceChange:
    """One leg of a payment. Amount stays a decimal string."""
    asset: Asset
    from_account: Optional[str]
    to_account: Optional[str]
    amount: str
    direction: Direction


class PaymentShape(Enum):
    """Which upstream representation a payment was parsed from"""
    LEGACY = "legacy"
    BALANCE_CHANGES = "balance_changes"


# =============================================================================
# PAYMENTS AND TRADES
# =============================================================================

@dataclass(frozen=True)
class Payment:
    """
    A single settled transfer event.

    Exactly one representation is populated, tagged by ``shape``: the legacy
    scalar fields (destination/amount/asset) or an ordered, non-empty tuple of
    balance changes. Consumers go through destination_asset_pair() and
    destination_amount() instead of reading either representation.
    """
    id: str
    paging_token: str
    transaction_hash: Optional[str]
    source_account: Optional[str]
    created_at: datetime
    shape: PaymentShape
    # Legacy representation
    destination: Optional[str] = None
    amount: Optional[str] = None
    asset: Optional[Asset] = None
    source_asset: Optional[Asset] = None
    # Balance-change representation
    balance_changes: Tuple[BalanceChange, ...] = ()
    # Upstream-supplied attributes
    successful: bool = True
    latency_ms: Optional[float] = None

    def destination_asset_pair(self) -> Optional[Tuple[Asset, Asset]]:
        """(source asset, destination asset) of the externally visible transfer"""
        if self.shape is PaymentShape.BALANCE_CHANGES:
            source_leg = self._source_leg()
            destination_leg = self._destination_leg()
            if source_leg is None or destination_leg is None:
                return None
            return source_leg.asset, destination_leg.asset

        if self.asset is None:
            return None
        return (self.source_asset or self.asset), self.asset

    def destination_amount(self) -> Optional[str]:
        """Decimal string received on the destination side"""
        if self.shape is PaymentShape.BALANCE_CHANGES:
            destination_leg = self._destination_leg()
            return destination_leg.amount if destination_leg else None
        return self.amount

    def _source_leg(self) -> Optional[BalanceChange]:
        for change in self.balance_changes:
            if change.direction is Direction.DEBIT:
                return change
        return self.balance_changes[0] if self.balance_changes else None

    def _destination_leg(self) -> Optional[BalanceChange]:
        for change in reversed(self.balance_changes):
            if change.direction is Direction.CREDIT:
                return change
        return self.balance_changes[-1] if self.balance_changes else None


@dataclass(frozen=True)
class Trade:
    """A settled trade between two assets"""
    id: str
    paging_token: str
    ledger_close_time: datetime
    base_asset: Asset
    counter_asset: Asset
    base_amount: str
    counter_amount: str
    price: Optional[str] = None
    base_is_seller: Optional[bool] = None

    @property
    def created_at(self) -> datetime:
        return self.ledger_close_time


# =============================================================================
# CORRIDORS AND METRICS
# =============================================================================

@dataclass(frozen=True)
class Corridor:
    """A directed asset pair"""
    asset_from: Asset
    asset_to: Asset

    @property
    def key(self) -> str:
        return f"{self.asset_from}->{self.asset_to}"


@dataclass(frozen=True)
class SuccessRatePoint:
    bucket_start: datetime
    rate: float
    successful: int = 0
    total: int = 0


@dataclass(frozen=True)
class LatencyBucket:
    """Count of latencies in [previous bound, upper_bound_ms); the last bound is inf"""
    upper_bound_ms: float
    count: int


@dataclass(frozen=True)
class LiquiditySnapshot:
    day: date
    total_value: Decimal
    currency: str = CURRENCY_NATIVE
    native_value: Optional[Decimal] = None
    price_stale: bool = False


@dataclass(frozen=True)
class VolumePoint:
    day: date
    total_amount: Decimal
    payment_count: int = 0


@dataclass(frozen=True)
class CorridorMetrics:
    """Time-bucketed reliability and liquidity metrics for one corridor"""
    corridor: Corridor
    success_rate: Tuple[SuccessRatePoint, ...] = ()
    latency: Tuple[LatencyBucket, ...] = ()
    liquidity: Tuple[LiquiditySnapshot, ...] = ()
    volume: Tuple[VolumePoint, ...] = ()
    total_volume: Decimal = Decimal("0")
    payment_count: int = 0
    latency_p50_ms: Optional[float] = None
    latency_p95_ms: Optional[float] = None

    @property
    def key(self) -> str:
        return self.corridor.key

    def to_dict(self) -> Dict:
        return {
            "corridor": self.key,
            "success_rate": [
                {"bucket_start": p.bucket_start.isoformat(), "rate": p.rate,
                 "successful": p.successful, "total": p.total}
                for p in self.success_rate
            ],
            "latency": [
                {"upper_bound_ms": b.upper_bound_ms, "count": b.count}
                for b in self.latency
            ],
            "liquidity": [
                {"day": s.day.isoformat(), "total_value": str(s.total_value),
                 "currency": s.currency, "price_stale": s.price_stale}
                for s in self.liquidity
            ],
            "volume": [
                {"day": v.day.isoformat(), "total_amount": str(v.total_amount),
                 "payment_count": v.payment_count}
                for v in self.volume
            ],
            "total_volume": str(self.total_volume),
            "payment_count": self.payment_count,
            "latency_p50_ms": self.latency_p50_ms,
            "latency_p95_ms": self.latency_p95_ms,
        }


@dataclass(frozen=True)
class AggregationResult(Mapping):
    """
    Read-only mapping of corridor key -> CorridorMetrics, ordered by key.

    Also reports how many payments could not be attributed to a corridor.
    """
    corridors: Dict[str, CorridorMetrics] = field(default_factory=dict)
    unattributable: int = 0
    payment_count: int = 0

    def __getitem__(self, key: str) -> CorridorMetrics:
        return self.corridors[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.corridors)

    def __len__(self) -> int:
        return len(self.corridors)

    def metrics(self) -> List[CorridorMetrics]:
        return list(self.corridors.values())
