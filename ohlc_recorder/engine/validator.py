"""Per-asset price bound filtering for incoming ticks."""

import logging
from decimal import Decimal
from typing import Mapping

from ohlc_recorder.core.types import PriceBounds

logger = logging.getLogger(__name__)


class PriceValidator:
    """Drops prices outside the configured inclusive ``[min, max]`` range of an asset.

    Rejection is normal operation (venue glitches, corrupt parses) and never
    raises; it only emits a debug event.
    """

    def __init__(self, bounds: Mapping[str, PriceBounds]) -> None:
        self._bounds = dict(bounds)

    @property
    def assets(self) -> tuple[str, ...]:
        return tuple(self._bounds)

    def validate(self, asset: str, price: Decimal) -> Decimal | None:
        bounds = self._bounds.get(asset)
        if bounds is None:
            logger.debug("tick_rejected_unknown_asset", extra={"asset": asset, "price": price})
            return None

        if not price.is_finite() or not bounds.contains(price):
            logger.debug(
                "tick_rejected_out_of_bounds",
                extra={"asset": asset, "price": price, "min": bounds.min, "max": bounds.max},
            )
            return None

        return price
