"""Time helpers for consistent UTC timestamps and interval bucketing."""

import re
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_TIMEFRAME_PATTERN = re.compile(r"^(\d+)([smhd])$")
_TIMEFRAME_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def utc_now() -> datetime:
    """Return current UTC datetime with timezone attached."""

    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bucket_start(timestamp: datetime, width: timedelta) -> datetime:
    """Return the start of the fixed-width interval containing ``timestamp``.

    Buckets are left-aligned on the Unix epoch, so ``floor(t / w) * w`` is
    computed with exact timedelta arithmetic at microsecond resolution.
    """

    if width <= timedelta(0):
        raise ValueError(f"interval width must be positive, got {width}")
    elapsed = ensure_utc(timestamp) - EPOCH
    return EPOCH + (elapsed // width) * width


def parse_timeframe(label: str) -> timedelta:
    """Convert a label such as ``1m``, ``15m`` or ``4h`` into its interval width."""

    match = _TIMEFRAME_PATTERN.match(label.strip().lower())
    if match is None:
        raise ValueError(f"invalid timeframe label: {label!r}")
    count = int(match.group(1))
    if count <= 0:
        raise ValueError(f"timeframe must be positive: {label!r}")
    return count * _TIMEFRAME_UNITS[match.group(2)]


def parse_timestamp(value: datetime | str | int | float) -> datetime:
    """Normalize an ISO-8601 string, epoch milliseconds or datetime to aware UTC."""

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return EPOCH + timedelta(milliseconds=value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as ISO-8601 UTC with millisecond precision, e.g. ``2024-01-01T00:01:00.000Z``."""

    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
