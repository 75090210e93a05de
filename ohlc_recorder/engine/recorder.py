"""Recorder facade wiring validation, aggregation, persistence, recovery and shutdown."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Sequence

from ohlc_recorder.core.config import Settings
from ohlc_recorder.core.types import PriceBounds, Timeframe
from ohlc_recorder.engine.aggregator import CandleAggregator, build_asset_states
from ohlc_recorder.engine.persistence import CandleStore, PersistenceManager, build_store
from ohlc_recorder.engine.recovery import RecoveryLoader
from ohlc_recorder.engine.shutdown import ShutdownCoordinator
from ohlc_recorder.engine.validator import PriceValidator

logger = logging.getLogger(__name__)


class OhlcRecorder:
    """Owns the complete per-process candle state and its lifecycle.

    Usage::

        recorder = OhlcRecorder.from_settings(settings)
        recorder.start()
        recorder.ingest("SOL", "142.10", "2024-01-01T00:00:10Z")
        ok = recorder.shutdown()
    """

    def __init__(
        self,
        bounds: Mapping[str, PriceBounds],
        timeframes: Sequence[Timeframe],
        store: CandleStore,
        price_decimals: int = 2,
        pending_limit: int = 1000,
        persist_workers: int = 0,
    ) -> None:
        self.store = store
        self.persistence = PersistenceManager(store)
        self.aggregator = CandleAggregator(
            states=build_asset_states(list(bounds), timeframes, pending_limit=pending_limit),
            validator=PriceValidator(bounds),
            persistence=self.persistence,
            price_decimals=price_decimals,
            persist_workers=persist_workers,
        )
        self.recovery = RecoveryLoader(store)
        self.coordinator = ShutdownCoordinator(self.aggregator)
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "OhlcRecorder":
        """Build a recorder from settings.

        Raises:
            ConfigError: If assets, timeframes or store format are invalid
        """
        decimals = max(0, settings.OHLC_PRICE_DECIMALS)
        return cls(
            bounds=settings.asset_bounds(),
            timeframes=settings.timeframes(),
            store=build_store(settings.store_format(), settings.OHLC_DATA_DIR, price_decimals=decimals),
            price_decimals=decimals,
            pending_limit=settings.OHLC_PENDING_LIMIT,
            persist_workers=max(0, settings.OHLC_PERSIST_WORKERS),
        )

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> int:
        """Recover persisted state and open the aggregator; returns keys seeded."""

        if self._started:
            return 0
        seeded = self.recovery.load(self.aggregator.iter_states())
        self.aggregator.open()
        self._started = True
        logger.info("recorder_started", extra={"recovered_keys": seeded})
        return seeded

    def ingest(
        self,
        asset: str,
        price: Decimal | int | float | str,
        timestamp: datetime | str | int | float | None = None,
    ) -> bool:
        return self.aggregator.ingest(asset, price, timestamp)

    def shutdown(self) -> bool:
        """Drain every open candle; True when all of them became durable."""

        return self.coordinator.run()
