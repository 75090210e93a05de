"""Startup recovery of the last persisted close per (asset, timeframe)."""

import logging
from typing import Iterable

from ohlc_recorder.core.time_utils import format_timestamp
from ohlc_recorder.engine.aggregator import TimeframeState
from ohlc_recorder.engine.persistence import CandleStore

logger = logging.getLogger(__name__)


class RecoveryLoader:
    """Seeds ``last_close`` and ``last_finalized`` from the durable store.

    A missing or empty store simply leaves the key cold; the next candle then
    opens at its first tick price.
    """

    def __init__(self, store: CandleStore) -> None:
        self.store = store

    def load(self, states: Iterable[TimeframeState]) -> int:
        """Seed every state from its store; return how many keys had history."""

        seeded = 0
        for state in states:
            last = self.store.read_last(state.asset, state.timeframe.label)
            if last is None:
                logger.info(
                    "recovery_no_history",
                    extra={"asset": state.asset, "timeframe": state.timeframe.label},
                )
                continue

            with state.lock:
                state.last_close = last.close
                state.last_finalized = last.timestamp
            seeded += 1
            logger.info(
                "recovery_seeded",
                extra={
                    "asset": state.asset,
                    "timeframe": state.timeframe.label,
                    "last_close": last.close,
                    "last_timestamp": format_timestamp(last.timestamp),
                },
            )
        return seeded
