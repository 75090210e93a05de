"""Shared test fixtures and helpers."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

import pytest

from ohlc_recorder.core.types import Candle, PriceBounds, Timeframe
from ohlc_recorder.engine.persistence import JsonlCandleStore
from ohlc_recorder.engine.recorder import OhlcRecorder

BASE_TIME = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

ONE_MINUTE = Timeframe(label="1m", width=timedelta(minutes=1))
FIVE_MINUTES = Timeframe(label="5m", width=timedelta(minutes=5))
FIFTEEN_MINUTES = Timeframe(label="15m", width=timedelta(minutes=15))


def at(minutes: int = 0, seconds: int = 0) -> datetime:
    """Return BASE_TIME shifted by the given offset."""

    return BASE_TIME + timedelta(minutes=minutes, seconds=seconds)


def candle(minute: int, o: str, h: str, l: str, c: str) -> Candle:
    """Build a candle starting ``minute`` minutes after BASE_TIME."""

    return Candle(
        timestamp=at(minutes=minute),
        open=Decimal(o),
        high=Decimal(h),
        low=Decimal(l),
        close=Decimal(c),
    )


@pytest.fixture
def store(tmp_path: Path) -> JsonlCandleStore:
    """Append-only store rooted in a temporary directory."""

    return JsonlCandleStore(tmp_path)


@pytest.fixture
def make_recorder(tmp_path: Path) -> Callable[..., OhlcRecorder]:
    """Factory for recorders that flush inline against a temporary store."""

    def factory(
        timeframes: tuple[Timeframe, ...] = (ONE_MINUTE,),
        bounds: dict[str, PriceBounds] | None = None,
        store: JsonlCandleStore | None = None,
        pending_limit: int = 1000,
        start: bool = True,
    ) -> OhlcRecorder:
        recorder = OhlcRecorder(
            bounds=bounds or {"SOL": PriceBounds(min=Decimal("50"), max=Decimal("500"))},
            timeframes=timeframes,
            store=store or JsonlCandleStore(tmp_path),
            pending_limit=pending_limit,
            persist_workers=0,
        )
        if start:
            recorder.start()
        return recorder

    return factory
