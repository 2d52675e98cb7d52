"""
Price Feed Module
Contract for the external USD price provider consumed by the aggregator.

A provider answers get_usd_price(asset_id, currency) with one of:
- Price: a current quote
- StalePrice: the last known quote and its age
- PriceUnavailable: nothing usable; callers fall back to native figures
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

from constants import CURRENCY_USD


@dataclass(frozen=True)
class Price:
    value: Decimal


@dataclass(frozen=True)
class StalePrice:
    value: Decimal
    age_seconds: float


@dataclass(frozen=True)
class PriceUnavailable:
    reason: str = "unavailable"


PriceQuote = Union[Price, StalePrice, PriceUnavailable]


@runtime_checkable
class PriceFeed(Protocol):
    """Protocol for USD price providers"""

    async def get_usd_price(self, asset_id: str, currency: str = CURRENCY_USD) -> PriceQuote:
        """Quote for one asset, identified by str(Asset)"""
        ...


class StaticPriceFeed:
    """
    In-process price feed backed by a dict of quotes.

    Quotes older than max_age_seconds are returned as StalePrice.
    """

    def __init__(
        self,
        prices: Optional[Dict[str, Union[Decimal, str, float]]] = None,
        max_age_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self._clock = clock
        self.max_age_seconds = max_age_seconds
        self._quotes: Dict[str, Tuple[Decimal, float]] = {}
        for asset_id, value in (prices or {}).items():
            self.set_price(asset_id, value)

    def set_price(self, asset_id: str, value: Union[Decimal, str, float]) -> None:
        self._quotes[asset_id] = (Decimal(str(value)), self._clock())

    def remove_price(self, asset_id: str) -> None:
        self._quotes.pop(asset_id, None)

    async def get_usd_price(self, asset_id: str, currency: str = CURRENCY_USD) -> PriceQuote:
        if currency != CURRENCY_USD:
            return PriceUnavailable(f"unsupported currency {currency}")
        quote = self._quotes.get(asset_id)
        if quote is None:
            return PriceUnavailable(f"no quote for {asset_id}")
        value, quoted_at = quote
        age = self._clock() - quoted_at
        if age > self.max_age_seconds:
            return StalePrice(value=value, age_seconds=age)
        return Price(value=value)
