"""Multi-timeframe tick aggregation with race-free finalize and persist handoff."""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterator, Mapping, Sequence

from ohlc_recorder.core.time_utils import bucket_start, format_timestamp, parse_timestamp, utc_now
from ohlc_recorder.core.types import Candle, Tick, Timeframe
from ohlc_recorder.engine.persistence import PersistenceManager, PersistOutcome
from ohlc_recorder.engine.validator import PriceValidator

logger = logging.getLogger(__name__)

_DEFAULT_PENDING_LIMIT = 1000


@dataclass(slots=True)
class TimeframeState:
    """Mutable aggregation state for one (asset, timeframe) pair; guarded by ``lock``."""

    asset: str
    timeframe: Timeframe
    pending_limit: int = _DEFAULT_PENDING_LIMIT
    current: Candle | None = None
    last_close: Decimal | None = None
    last_finalized: datetime | None = None
    pending: deque[Candle] = field(default_factory=deque)
    sealed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def finalize(self) -> Candle | None:
        """Hand off ``current`` as a finalized candle and queue it for persistence."""

        candle = self.current
        if candle is None:
            return None

        self.current = None
        self.last_close = candle.close
        self.last_finalized = candle.timestamp
        if len(self.pending) >= self.pending_limit:
            dropped = self.pending.popleft()
            logger.warning(
                "pending_buffer_overflow",
                extra={
                    "asset": self.asset,
                    "timeframe": self.timeframe.label,
                    "dropped_timestamp": format_timestamp(dropped.timestamp),
                    "limit": self.pending_limit,
                },
            )
        self.pending.append(candle)
        logger.info(
            "candle_finalized",
            extra={
                "asset": self.asset,
                "timeframe": self.timeframe.label,
                "timestamp": format_timestamp(candle.timestamp),
                "o": candle.open,
                "h": candle.high,
                "l": candle.low,
                "c": candle.close,
            },
        )
        return candle

    def drop_persisted(self, written: Sequence[Candle]) -> None:
        """Remove the written candles from the head of the pending buffer."""

        for candle in written:
            if self.pending and self.pending[0] == candle:
                self.pending.popleft()


@dataclass(slots=True)
class AssetState:
    """All timeframe states of one configured asset."""

    asset: str
    timeframes: dict[str, TimeframeState]


def build_asset_states(
    assets: Sequence[str],
    timeframes: Sequence[Timeframe],
    pending_limit: int = _DEFAULT_PENDING_LIMIT,
) -> dict[str, AssetState]:
    """Create empty state for every asset x timeframe combination."""

    limit = max(1, pending_limit)
    return {
        asset: AssetState(
            asset=asset,
            timeframes={
                timeframe.label: TimeframeState(asset=asset, timeframe=timeframe, pending_limit=limit)
                for timeframe in timeframes
            },
        )
        for asset in assets
    }


class CandleAggregator:
    """Applies validated ticks to per-key candles and dispatches finalized ones for persistence.

    Every mutation of a ``TimeframeState`` happens under its own lock, so any
    number of tick sources may call ``ingest`` concurrently. Finalization runs
    inside that lock; flushing the pending buffer to the store runs afterwards,
    either inline (``persist_workers=0``) or on a worker pool.
    """

    def __init__(
        self,
        states: Mapping[str, AssetState],
        validator: PriceValidator,
        persistence: PersistenceManager,
        price_decimals: int = 2,
        persist_workers: int = 0,
    ) -> None:
        self.states = dict(states)
        self.validator = validator
        self.persistence = persistence
        self._quantum = Decimal(1).scaleb(-price_decimals)
        self._executor: ThreadPoolExecutor | None = None
        if persist_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=persist_workers,
                thread_name_prefix="ohlc-persist",
            )
        self._accepting = False
        self._crashed_flushes = 0
        self._counter_lock = threading.Lock()

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def crashed_flushes(self) -> int:
        with self._counter_lock:
            return self._crashed_flushes

    def open(self) -> None:
        """Start accepting ticks; called once recovered state is in place."""

        self._accepting = True
        logger.info(
            "aggregator_open",
            extra={
                "assets": list(self.states),
                "timeframes": self._labels(),
            },
        )

    def close(self) -> None:
        """Stop accepting new ticks; already running ingests finish without dispatching flushes."""

        self._accepting = False

    def iter_states(self) -> Iterator[TimeframeState]:
        for asset_state in self.states.values():
            yield from asset_state.timeframes.values()

    def ingest(
        self,
        asset: str,
        price: Decimal | int | float | str,
        timestamp: datetime | str | int | float | None = None,
    ) -> bool:
        """Apply one tick to every timeframe of ``asset``.

        Returns True when at least one timeframe accepted the tick.
        """

        if not self._accepting:
            logger.warning("tick_rejected_not_accepting", extra={"asset": asset})
            return False

        asset = asset.strip().upper()
        value = self._to_price(price)
        if value is None:
            logger.debug("tick_rejected_invalid_price", extra={"asset": asset, "price": str(price)})
            return False
        if self.validator.validate(asset, value) is None:
            return False

        asset_state = self.states.get(asset)
        if asset_state is None:
            logger.debug("tick_rejected_unknown_asset", extra={"asset": asset})
            return False

        try:
            observed_at = utc_now() if timestamp is None else parse_timestamp(timestamp)
        except (ValueError, OverflowError):
            logger.debug(
                "tick_rejected_invalid_timestamp",
                extra={"asset": asset, "timestamp": str(timestamp)},
            )
            return False

        tick = Tick(asset=asset, price=value, timestamp=observed_at)

        applied = False
        for state in asset_state.timeframes.values():
            with state.lock:
                accepted, finalized = self._apply(state, tick)
            applied = applied or accepted
            if finalized is not None:
                self._dispatch_flush(state)
        return applied

    def _apply(self, state: TimeframeState, tick: Tick) -> tuple[bool, Candle | None]:
        if state.sealed:
            logger.debug(
                "tick_dropped_sealed",
                extra={"asset": state.asset, "timeframe": state.timeframe.label},
            )
            return False, None

        bucket = bucket_start(tick.timestamp, state.timeframe.width)
        current = state.current
        if (state.last_finalized is not None and bucket <= state.last_finalized) or (
            current is not None and bucket < current.timestamp
        ):
            logger.debug(
                "tick_dropped_late",
                extra={
                    "asset": state.asset,
                    "timeframe": state.timeframe.label,
                    "bucket": format_timestamp(bucket),
                    "price": tick.price,
                },
            )
            return False, None

        finalized: Candle | None = None
        if current is None or current.timestamp != bucket:
            finalized = state.finalize()
            open_price = state.last_close if state.last_close is not None else tick.price
            state.current = Candle.opened_at(bucket, open_price)
            logger.info(
                "candle_opened",
                extra={
                    "asset": state.asset,
                    "timeframe": state.timeframe.label,
                    "timestamp": format_timestamp(bucket),
                    "o": open_price,
                },
            )

        state.current = state.current.apply(tick.price)
        return True, finalized

    def _dispatch_flush(self, state: TimeframeState) -> None:
        if not self._accepting:
            # closed for shutdown; the drain owns every pending candle from here on
            logger.debug(
                "persist_dispatch_after_shutdown",
                extra={"asset": state.asset, "timeframe": state.timeframe.label},
            )
            return
        executor = self._executor
        if executor is None:
            self.flush(state)
            return
        try:
            future = executor.submit(self.flush, state)
        except RuntimeError:
            # Pool already shut down; the shutdown drain flushes this key.
            logger.debug(
                "persist_dispatch_after_shutdown",
                extra={"asset": state.asset, "timeframe": state.timeframe.label},
            )
            return
        future.add_done_callback(self._on_flush_done)

    def _on_flush_done(self, future: Future) -> None:
        exc = future.exception()
        if exc is None:
            return
        with self._counter_lock:
            self._crashed_flushes += 1
        logger.error(
            "persist_task_crashed",
            extra={"error": str(exc)},
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    def flush(self, state: TimeframeState, wait: bool = False) -> PersistOutcome:
        """Persist the pending buffer of one key.

        Skipped and failed writes leave the candles pending; they go out with the
        next flush of the key or with the shutdown drain. With ``wait`` the flush
        queues behind a write already in flight instead of being skipped.
        """

        def snapshot() -> tuple[Candle, ...]:
            with state.lock:
                return tuple(state.pending)

        def drop_written(written: tuple[Candle, ...]) -> None:
            with state.lock:
                state.drop_persisted(written)

        outcome, _ = self.persistence.persist_snapshot(
            state.asset,
            state.timeframe.label,
            snapshot,
            on_written=drop_written,
            wait=wait,
        )
        return outcome

    def wait_for_flushes(self) -> None:
        """Block until every dispatched flush has completed."""

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _to_price(self, price: Decimal | int | float | str) -> Decimal | None:
        """Convert to a Decimal rounded to the configured precision, or None if not a finite number."""

        if isinstance(price, bool):
            return None
        try:
            value = price if isinstance(price, Decimal) else Decimal(str(price).strip())
            if not value.is_finite():
                return None
            return value.quantize(self._quantum, rounding=ROUND_HALF_UP)
        except (InvalidOperation, ValueError):
            return None

    def _labels(self) -> list[str]:
        labels: list[str] = []
        for asset_state in self.states.values():
            for label in asset_state.timeframes:
                if label not in labels:
                    labels.append(label)
        return labels
