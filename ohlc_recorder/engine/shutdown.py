"""Exactly-once drain of every open candle on termination."""

import logging
import threading

from ohlc_recorder.engine.aggregator import CandleAggregator
from ohlc_recorder.engine.persistence import PersistOutcome

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Finalizes and persists every in-progress candle before the process exits.

    ``run`` is safe to call from several places (signal path, fatal path,
    lifespan teardown); only the first call drains and later calls return its
    result.
    """

    def __init__(self, aggregator: CandleAggregator) -> None:
        self.aggregator = aggregator
        self._lock = threading.Lock()
        self._result: bool | None = None

    @property
    def done(self) -> bool:
        return self._result is not None

    def run(self) -> bool:
        with self._lock:
            if self._result is None:
                self._result = self._drain()
            return self._result

    def _drain(self) -> bool:
        logger.info("shutdown_drain_started")
        self.aggregator.close()

        finalized = 0
        for state in self.aggregator.iter_states():
            with state.lock:
                state.sealed = True
                if state.finalize() is not None:
                    finalized += 1

        self.aggregator.wait_for_flushes()

        failed: list[str] = []
        written = 0
        for state in self.aggregator.iter_states():
            with state.lock:
                pending = len(state.pending)
            if not pending:
                continue

            outcome = self.aggregator.flush(state, wait=True)
            with state.lock:
                remaining = len(state.pending)
            if outcome is not PersistOutcome.WRITTEN or remaining:
                failed.append(f"{state.asset}_{state.timeframe.label}")
                continue
            written += pending

        crashed = self.aggregator.crashed_flushes
        ok = not failed and crashed == 0
        log = logger.info if ok else logger.error
        log(
            "shutdown_drain_complete",
            extra={
                "finalized": finalized,
                "written": written,
                "failed_keys": failed,
                "crashed_flushes": crashed,
                "ok": ok,
            },
        )
        return ok
