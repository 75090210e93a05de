"""Shutdown drain and restart tests."""

import threading
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from ohlc_recorder.core.types import PriceBounds
from ohlc_recorder.engine.persistence import JsonlCandleStore, PersistOutcome
from ohlc_recorder.engine.recorder import OhlcRecorder
from tests.conftest import FIVE_MINUTES, ONE_MINUTE, at, candle


def test_shutdown_persists_open_candles_once(make_recorder) -> None:
    """Every in-progress candle is written exactly once, even if shutdown runs twice."""

    recorder = make_recorder(timeframes=(ONE_MINUTE, FIVE_MINUTES))
    recorder.ingest("SOL", "100", at(seconds=10))
    recorder.ingest("SOL", "104", at(seconds=20))

    assert recorder.shutdown() is True
    assert recorder.shutdown() is True

    assert recorder.store.read_all("SOL", "1m") == [candle(0, "100", "104", "100", "104")]
    assert recorder.store.read_all("SOL", "5m") == [candle(0, "100", "104", "100", "104")]
    state = recorder.aggregator.states["SOL"].timeframes["1m"]
    assert state.current is None
    assert not state.pending


def test_ticks_after_shutdown_are_dropped(make_recorder) -> None:
    """Once draining has begun no tick can reopen a candle."""

    recorder = make_recorder()
    recorder.ingest("SOL", "100", at(seconds=10))
    recorder.shutdown()

    assert recorder.ingest("SOL", "101", at(minutes=1)) is False
    assert len(recorder.store.read_all("SOL", "1m")) == 1


def test_shutdown_without_ticks_succeeds(make_recorder) -> None:
    """Draining an idle recorder writes nothing and reports success."""

    recorder = make_recorder()
    assert recorder.shutdown() is True
    assert not recorder.store.path_for("SOL", "1m").exists()


def test_shutdown_reports_failed_drain(tmp_path: Path) -> None:
    """A write failure during the drain makes shutdown unsuccessful."""

    blocker = tmp_path / "blocked"
    blocker.write_text("", encoding="utf-8")
    recorder = OhlcRecorder(
        bounds={"SOL": PriceBounds(min=Decimal("50"), max=Decimal("500"))},
        timeframes=(ONE_MINUTE,),
        store=JsonlCandleStore(blocker),
    )
    recorder.start()
    recorder.ingest("SOL", "100", at(seconds=10))

    assert recorder.shutdown() is False
    assert len(recorder.aggregator.states["SOL"].timeframes["1m"].pending) == 1


def test_failed_write_is_retried_on_next_finalize(make_recorder) -> None:
    """Candles left pending by a failed write go out with the next flush."""

    recorder = make_recorder()
    with patch.object(recorder.store, "append", side_effect=OSError("disk full")):
        recorder.ingest("SOL", "100", at(seconds=10))
        recorder.ingest("SOL", "101", at(minutes=1, seconds=10))
    assert recorder.store.read_all("SOL", "1m") == []
    assert len(recorder.aggregator.states["SOL"].timeframes["1m"].pending) == 1

    recorder.ingest("SOL", "102", at(minutes=2, seconds=10))
    assert [c.timestamp for c in recorder.store.read_all("SOL", "1m")] == [at(0), at(1)]
    assert not recorder.aggregator.states["SOL"].timeframes["1m"].pending


def test_skipped_flush_keeps_candle_pending(make_recorder) -> None:
    """An overlapping flush leaves the candle for the shutdown drain, without duplicates."""

    recorder = make_recorder()
    recorder.ingest("SOL", "100", at(seconds=10))
    state = recorder.aggregator.states["SOL"].timeframes["1m"]

    with recorder.persistence.claim("SOL", "1m"):
        recorder.ingest("SOL", "101", at(minutes=1, seconds=10))
        assert len(state.pending) == 1
        assert recorder.aggregator.flush(state) is PersistOutcome.SKIPPED

    assert recorder.shutdown() is True
    assert recorder.store.read_all("SOL", "1m") == [
        candle(0, "100", "100", "100", "100"),
        candle(1, "100", "101", "100", "101"),
    ]


def test_restart_carries_close_across_processes(tmp_path: Path) -> None:
    """A new recorder over the same directory continues from the drained close."""

    bounds = {"SOL": PriceBounds(min=Decimal("50"), max=Decimal("500"))}
    first = OhlcRecorder(bounds=bounds, timeframes=(ONE_MINUTE,), store=JsonlCandleStore(tmp_path))
    first.start()
    first.ingest("SOL", "100", at(seconds=10))
    first.ingest("SOL", "107.40", at(seconds=50))
    assert first.shutdown()

    second = OhlcRecorder(bounds=bounds, timeframes=(ONE_MINUTE,), store=JsonlCandleStore(tmp_path))
    assert second.start() == 1
    assert second.ingest("SOL", "100", at(seconds=55)) is False
    assert second.ingest("SOL", "110", at(minutes=2))
    assert second.shutdown()

    stored = second.store.read_all("SOL", "1m")
    assert stored == [
        candle(0, "100", "107.40", "100", "107.40"),
        candle(2, "107.40", "110", "107.40", "110"),
    ]


def test_pending_buffer_is_bounded(make_recorder) -> None:
    """When writes keep failing the oldest pending candles are discarded."""

    recorder = make_recorder(pending_limit=2)
    with patch.object(recorder.store, "append", side_effect=OSError("disk full")):
        for minute in range(5):
            recorder.ingest("SOL", 100 + minute, at(minutes=minute, seconds=1))

    pending = recorder.aggregator.states["SOL"].timeframes["1m"].pending
    assert [c.timestamp for c in pending] == [at(2), at(3)]


def test_worker_pool_flushes_are_drained(tmp_path: Path) -> None:
    """With background persist workers the drain still leaves every candle on disk once."""

    recorder = OhlcRecorder(
        bounds={"SOL": PriceBounds(min=Decimal("50"), max=Decimal("500"))},
        timeframes=(ONE_MINUTE, FIVE_MINUTES),
        store=JsonlCandleStore(tmp_path),
        persist_workers=2,
    )
    recorder.start()
    for minute in range(30):
        recorder.ingest("SOL", 100 + minute, at(minutes=minute, seconds=5))

    assert recorder.shutdown() is True
    assert [c.timestamp for c in recorder.store.read_all("SOL", "1m")] == [at(m) for m in range(30)]
    assert [c.timestamp for c in recorder.store.read_all("SOL", "5m")] == [at(m) for m in range(0, 30, 5)]
    assert recorder.aggregator.crashed_flushes == 0


def test_flush_right_after_a_write_does_not_duplicate(make_recorder) -> None:
    """A flush that claims the slot as soon as a write ends sees only candles not yet durable."""

    recorder = make_recorder()
    state = recorder.aggregator.states["SOL"].timeframes["1m"]
    original = recorder.persistence.persist_snapshot
    followups: list[PersistOutcome | None] = []

    def persist_then_flush_again(*args, **kwargs):
        result = original(*args, **kwargs)
        if not followups:
            followups.append(None)
            followups[0] = recorder.aggregator.flush(state)
        return result

    with patch.object(recorder.persistence, "persist_snapshot", side_effect=persist_then_flush_again):
        recorder.ingest("SOL", "100", at(seconds=10))
        recorder.ingest("SOL", "101", at(minutes=1, seconds=10))

    assert followups == [PersistOutcome.WRITTEN]
    assert recorder.store.read_all("SOL", "1m") == [candle(0, "100", "100", "100", "100")]
    assert not state.pending


def test_drain_waits_for_a_write_already_in_flight(make_recorder) -> None:
    """The drain queues behind a concurrent writer instead of reporting the key as failed."""

    recorder = make_recorder()
    recorder.ingest("SOL", "100", at(seconds=10))
    recorder.ingest("SOL", "101", at(minutes=1, seconds=10))

    held = threading.Event()
    release = threading.Event()

    def hold_slot() -> None:
        with recorder.persistence.claim("SOL", "1m"):
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_slot)
    holder.start()
    assert held.wait(timeout=5)
    timer = threading.Timer(0.2, release.set)
    timer.start()

    assert recorder.shutdown() is True
    holder.join(timeout=5)
    timer.join(timeout=5)
    assert [c.timestamp for c in recorder.store.read_all("SOL", "1m")] == [at(0), at(1)]


def test_flush_dispatched_after_close_is_left_to_the_drain(make_recorder) -> None:
    """An ingest that finalized just before shutdown closed intake does not write on its own."""

    recorder = make_recorder()
    aggregator = recorder.aggregator
    state = aggregator.states["SOL"].timeframes["1m"]
    recorder.ingest("SOL", "100", at(seconds=10))
    original_apply = aggregator._apply

    def apply_then_close(target, tick):
        result = original_apply(target, tick)
        aggregator.close()
        return result

    with patch.object(aggregator, "_apply", side_effect=apply_then_close):
        assert recorder.ingest("SOL", "101", at(minutes=1, seconds=10)) is True

    assert recorder.store.read_all("SOL", "1m") == []
    assert len(state.pending) == 1

    assert recorder.shutdown() is True
    assert [c.timestamp for c in recorder.store.read_all("SOL", "1m")] == [at(0), at(1)]
