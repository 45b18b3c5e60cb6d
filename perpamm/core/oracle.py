"""
Oracle adapters and price freshness.

The engine only needs four reads from an oracle: mark price, index price
(each with its timestamp), whether the market is closed, and whether the
oracle is terminated. A terminated oracle moves its market to EMERGENCY.

`ManualOracle` is an in-memory adapter for tests, the demo and offline
replays; production adapters implement the same `Oracle` protocol.
"""

from __future__ import annotations

from typing import Protocol, Tuple

from .errors import ValidationError
from .types import PriceData


class Oracle(Protocol):
    def mark_price(self) -> Tuple[int, int]: ...

    def index_price(self) -> Tuple[int, int]: ...

    def is_market_closed(self) -> bool: ...

    def is_terminated(self) -> bool: ...


class ManualOracle:
    """Oracle whose price is pushed by the caller."""

    def __init__(self, price: int = 0, timestamp: int = 0) -> None:
        self._mark = (price, timestamp)
        self._index = (price, timestamp)
        self._closed = False
        self._terminated = False

    def set_price(self, price: int, timestamp: int, *, index_price: int | None = None) -> None:
        if self._terminated:
            raise ValidationError("oracle is terminated")
        if price <= 0:
            raise ValidationError(f"price must be positive: {price}")
        self._mark = (price, timestamp)
        self._index = (index_price if index_price is not None else price, timestamp)

    def set_market_closed(self, closed: bool) -> None:
        self._closed = closed

    def terminate(self) -> None:
        self._terminated = True

    def mark_price(self) -> Tuple[int, int]:
        return self._mark

    def index_price(self) -> Tuple[int, int]:
        return self._index

    def is_market_closed(self) -> bool:
        return self._closed

    def is_terminated(self) -> bool:
        return self._terminated


def read_prices(oracle: Oracle) -> Tuple[PriceData, PriceData]:
    """Return (mark, index) price data, rejecting non-positive prices."""
    mark = PriceData(*oracle.mark_price())
    index = PriceData(*oracle.index_price())
    if mark.price <= 0 or index.price <= 0:
        raise ValidationError("oracle returned a non-positive price")
    if mark.time < 0 or index.time < 0:
        raise ValidationError("oracle returned a negative timestamp")
    return mark, index


def is_fresh(price_timestamp: int, current_timestamp: int, max_staleness_seconds: int) -> bool:
    """True if the price is not from the future and within the staleness window.

    A zero `max_staleness_seconds` disables the staleness bound.
    """
    if current_timestamp < 0:
        raise ValueError(f"current_timestamp must be non-negative: {current_timestamp}")
    if price_timestamp > current_timestamp:
        return False
    if max_staleness_seconds <= 0:
        return True
    return (current_timestamp - price_timestamp) <= max_staleness_seconds
