"""Durable candle storage and the per-key persistence guard.

Two interchangeable stores share one naming scheme, ``{asset}_{timeframe}_OHLC``:

* ``JsonlCandleStore`` appends one JSON object per line and fsyncs every batch.
* ``JsonArrayCandleStore`` keeps a single JSON array and rewrites it through a
  temporary file followed by an atomic rename.

Read failures never escape a store read: a missing file means no history and
malformed content is logged and skipped. An array rewrite that cannot read the
existing file fails instead of replacing it.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ohlc_recorder.core.errors import ConfigError
from ohlc_recorder.core.time_utils import ensure_utc, format_timestamp
from ohlc_recorder.core.types import Candle

logger = logging.getLogger(__name__)


class CandleRecord(BaseModel):
    """Validated on-disk candle record."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Bucket start (UTC)")
    open: Decimal = Field(..., ge=0, description="Open price")
    high: Decimal = Field(..., ge=0, description="High price")
    low: Decimal = Field(..., ge=0, description="Low price")
    close: Decimal = Field(..., ge=0, description="Close price")

    @field_validator("timestamp")
    @classmethod
    def timestamp_must_be_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def range_must_cover_open_and_close(self) -> "CandleRecord":
        """Validate that low <= min(open, close) and max(open, close) <= high."""
        if self.low > min(self.open, self.close):
            raise ValueError(f"Low ({self.low}) must be <= min(open, close)")
        if self.high < max(self.open, self.close):
            raise ValueError(f"High ({self.high}) must be >= max(open, close)")
        return self

    @classmethod
    def from_candle(cls, candle: Candle) -> "CandleRecord":
        return cls(
            timestamp=candle.timestamp,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
        )

    def to_candle(self) -> Candle:
        return Candle(
            timestamp=self.timestamp,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
        )


class CandleStore(ABC):
    """Base class for file-backed candle stores keyed by (asset, timeframe)."""

    suffix = ""

    def __init__(self, data_dir: str | Path, price_decimals: int = 2) -> None:
        self.data_dir = Path(data_dir)
        self._quantum = Decimal(1).scaleb(-price_decimals)

    def path_for(self, asset: str, timeframe: str) -> Path:
        return self.data_dir / f"{asset}_{timeframe}_OHLC{self.suffix}"

    @abstractmethod
    def append(self, asset: str, timeframe: str, candles: Sequence[Candle]) -> None:
        """Durably add ``candles`` after the existing records.

        Raises:
            OSError: If the store cannot be written
        """
        pass

    @abstractmethod
    def read_all(self, asset: str, timeframe: str) -> list[Candle]:
        """Return every valid stored candle in file order."""
        pass

    def read_last(self, asset: str, timeframe: str) -> Candle | None:
        candles = self.read_all(asset, timeframe)
        return candles[-1] if candles else None

    def _encode(self, candle: Candle) -> dict[str, Any]:
        return {
            "timestamp": format_timestamp(candle.timestamp),
            "open": self._round(candle.open),
            "high": self._round(candle.high),
            "low": self._round(candle.low),
            "close": self._round(candle.close),
        }

    def _round(self, value: Decimal) -> float:
        return float(value.quantize(self._quantum, rounding=ROUND_HALF_UP))

    def _decode(self, payload: Any, path: Path, position: int) -> Candle | None:
        if not isinstance(payload, dict):
            logger.warning(
                "candle_store_invalid_record",
                extra={"path": str(path), "position": position, "error": "not an object"},
            )
            return None
        try:
            return CandleRecord.model_validate(payload).to_candle()
        except ValidationError as exc:
            logger.warning(
                "candle_store_invalid_record",
                extra={"path": str(path), "position": position, "error": str(exc)},
            )
            return None

    def _read_text(self, path: Path, strict: bool = False) -> str | None:
        """Return the file content, or None for a missing file.

        Other read errors are logged and reported as no history unless ``strict``
        is set, in which case they propagate so a write never builds on a read
        that failed.
        """
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            logger.info("candle_store_missing", extra={"path": str(path)})
            return None
        except OSError as exc:
            logger.error("candle_store_read_failed", extra={"path": str(path), "error": str(exc)})
            if strict:
                raise
            return None


class JsonlCandleStore(CandleStore):
    """Append-only store holding one JSON candle per line."""

    suffix = ".jsonl"

    def append(self, asset: str, timeframe: str, candles: Sequence[Candle]) -> None:
        if not candles:
            return

        path = self.path_for(asset, timeframe)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = "".join(
            json.dumps(self._encode(candle), ensure_ascii=True, separators=(",", ":")) + "\n"
            for candle in candles
        ).encode("utf-8")

        with path.open("a+b") as file_obj:
            file_obj.seek(0, os.SEEK_END)
            if file_obj.tell() > 0:
                file_obj.seek(-1, os.SEEK_END)
                if file_obj.read(1) != b"\n":
                    # previous append was torn; keep the new records on their own lines
                    logger.warning("candle_store_torn_line_repaired", extra={"path": str(path)})
                    data = b"\n" + data
            file_obj.write(data)
            file_obj.flush()
            os.fsync(file_obj.fileno())

    def read_all(self, asset: str, timeframe: str) -> list[Candle]:
        path = self.path_for(asset, timeframe)
        text = self._read_text(path)
        if text is None:
            return []

        candles: list[Candle] = []
        for line_no, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line, parse_float=Decimal)
            except json.JSONDecodeError as exc:
                logger.warning(
                    "candle_store_invalid_json",
                    extra={"path": str(path), "line": line_no, "error": str(exc)},
                )
                continue
            candle = self._decode(payload, path, line_no)
            if candle is not None:
                candles.append(candle)
        return candles


class JsonArrayCandleStore(CandleStore):
    """Whole-file JSON array store rewritten via temp file and atomic rename."""

    suffix = ".json"

    def append(self, asset: str, timeframe: str, candles: Sequence[Candle]) -> None:
        if not candles:
            return

        path = self.path_for(asset, timeframe)
        path.parent.mkdir(parents=True, exist_ok=True)
        records = [self._encode(candle) for candle in self._load(path, strict=True)]
        records.extend(self._encode(candle) for candle in candles)

        temp_path = path.with_name(path.name + ".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as file_obj:
                json.dump(records, file_obj, ensure_ascii=True, indent=2)
                file_obj.flush()
                os.fsync(file_obj.fileno())
            os.replace(temp_path, path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

    def read_all(self, asset: str, timeframe: str) -> list[Candle]:
        return self._load(self.path_for(asset, timeframe))

    def _load(self, path: Path, strict: bool = False) -> list[Candle]:
        text = self._read_text(path, strict=strict)
        if text is None:
            return []
        if not text.strip():
            logger.info("candle_store_empty", extra={"path": str(path)})
            return []

        try:
            payload = json.loads(text, parse_float=Decimal)
        except json.JSONDecodeError as exc:
            logger.warning("candle_store_corrupted", extra={"path": str(path), "error": str(exc)})
            return []
        if not isinstance(payload, list):
            logger.warning("candle_store_corrupted", extra={"path": str(path), "error": "not an array"})
            return []

        candles: list[Candle] = []
        for index, item in enumerate(payload):
            candle = self._decode(item, path, index)
            if candle is not None:
                candles.append(candle)
        return candles


def build_store(store_format: str, data_dir: str | Path, price_decimals: int = 2) -> CandleStore:
    """Return the store implementing ``store_format`` (``jsonl`` or ``json``)."""

    if store_format == "jsonl":
        return JsonlCandleStore(data_dir, price_decimals=price_decimals)
    if store_format == "json":
        return JsonArrayCandleStore(data_dir, price_decimals=price_decimals)
    raise ConfigError(f"unknown store format: {store_format!r}")


class PersistOutcome(str, Enum):
    """Result of one persist request."""

    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


class PersistenceManager:
    """Writes finalized candles with at most one write in flight per (asset, timeframe).

    A request for a key that is already being written is skipped rather than
    queued; the caller decides what happens to the candles it carried. Only the
    shutdown drain asks to ``wait`` for the slot instead.
    """

    def __init__(self, store: CandleStore) -> None:
        self.store = store
        self._in_flight: set[tuple[str, str]] = set()
        self._slot_freed = threading.Condition()

    @contextmanager
    def claim(self, asset: str, timeframe: str, wait: bool = False) -> Iterator[bool]:
        """Hold the write slot of a key, yielding False when another writer has it.

        With ``wait`` the call blocks until the current writer releases the slot.
        """

        key = (asset, timeframe)
        with self._slot_freed:
            if wait:
                self._slot_freed.wait_for(lambda: key not in self._in_flight)
            acquired = key not in self._in_flight
            if acquired:
                self._in_flight.add(key)
        try:
            yield acquired
        finally:
            if acquired:
                with self._slot_freed:
                    self._in_flight.discard(key)
                    self._slot_freed.notify_all()

    def is_in_flight(self, asset: str, timeframe: str) -> bool:
        with self._slot_freed:
            return (asset, timeframe) in self._in_flight

    def persist(self, asset: str, timeframe: str, candles: Sequence[Candle]) -> PersistOutcome:
        outcome, _ = self.persist_snapshot(asset, timeframe, lambda: candles)
        return outcome

    def persist_snapshot(
        self,
        asset: str,
        timeframe: str,
        snapshot: Callable[[], Sequence[Candle]],
        on_written: Callable[[tuple[Candle, ...]], None] | None = None,
        wait: bool = False,
    ) -> tuple[PersistOutcome, tuple[Candle, ...]]:
        """Claim the key, then write whatever ``snapshot`` returns at that moment.

        Both the snapshot and ``on_written`` run while the slot is held, so the
        next writer of the key only sees candles that are not yet durable.
        """

        with self.claim(asset, timeframe, wait=wait) as claimed:
            if not claimed:
                logger.info("persist_skipped_in_flight", extra={"asset": asset, "timeframe": timeframe})
                return PersistOutcome.SKIPPED, ()

            candles = tuple(snapshot())
            if not candles:
                return PersistOutcome.WRITTEN, candles

            try:
                self.store.append(asset, timeframe, candles)
            except OSError as exc:
                logger.error(
                    "candle_persist_failed",
                    extra={
                        "asset": asset,
                        "timeframe": timeframe,
                        "count": len(candles),
                        "path": str(self.store.path_for(asset, timeframe)),
                        "error": str(exc),
                    },
                )
                return PersistOutcome.FAILED, candles

            if on_written is not None:
                on_written(candles)
            logger.info(
                "candle_persisted",
                extra={
                    "asset": asset,
                    "timeframe": timeframe,
                    "count": len(candles),
                    "last_timestamp": format_timestamp(candles[-1].timestamp),
                    "path": str(self.store.path_for(asset, timeframe)),
                },
            )
            return PersistOutcome.WRITTEN, candles
