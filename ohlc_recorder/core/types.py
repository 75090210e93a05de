"""Shared lightweight types to keep module interfaces explicit and typed."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class ServiceMeta:
    """Metadata describing a running service instance."""

    name: str
    version: str
    env: str


@dataclass(frozen=True, slots=True)
class Tick:
    """A single observed price for an asset at an instant."""

    asset: str
    price: Decimal
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class PriceBounds:
    """Inclusive price validity range for one asset."""

    min: Decimal
    max: Decimal

    def contains(self, price: Decimal) -> bool:
        return self.min <= price <= self.max


@dataclass(frozen=True, slots=True)
class Timeframe:
    """Named fixed-width bucketing interval."""

    label: str
    width: timedelta


@dataclass(frozen=True, slots=True)
class Candle:
    """Immutable OHLC summary of every tick applied within one bucket."""

    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal

    @classmethod
    def opened_at(cls, timestamp: datetime, price: Decimal) -> "Candle":
        """Create a fresh candle whose four prices all equal the opening price."""

        return cls(timestamp=timestamp, open=price, high=price, low=price, close=price)

    def apply(self, price: Decimal) -> "Candle":
        """Return a copy with ``price`` folded in; ``open`` is carried unchanged."""

        return Candle(
            timestamp=self.timestamp,
            open=self.open,
            high=max(self.high, price),
            low=min(self.low, price),
            close=price,
        )
