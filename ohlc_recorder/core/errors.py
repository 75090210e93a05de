"""Exceptions raised by the candle recording engine."""


class RecorderError(Exception):
    """Base exception for recorder errors."""

    pass


class ConfigError(RecorderError):
    """Raised when asset, timeframe or storage settings cannot be parsed."""

    pass


class FatalIngestError(RecorderError):
    """Raised by tick sources when ingestion fails unexpectedly.

    Triggers a best-effort drain of every open candle followed by a non-zero exit.
    """

    pass
