"""Environment-driven settings shared by the recorder services."""

from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Callable

from pydantic_settings import BaseSettings, SettingsConfigDict

from ohlc_recorder.core.errors import ConfigError
from ohlc_recorder.core.time_utils import parse_timeframe
from ohlc_recorder.core.types import PriceBounds, Timeframe

STORE_FORMATS = ("jsonl", "json")


class Settings(BaseSettings):
    """Recorder settings loaded from environment variables or a local .env file."""

    APP_NAME: str = "OHLC Recorder"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    OHLC_ASSETS: str = "SOL:50:500"
    OHLC_TIMEFRAMES: str = "1m,5m,15m"
    OHLC_DATA_DIR: str = "/app/data/ohlc"
    OHLC_STORE_FORMAT: str = "jsonl"
    OHLC_PRICE_DECIMALS: int = 2
    OHLC_PENDING_LIMIT: int = 1000
    OHLC_PERSIST_WORKERS: int = 2
    TICK_SOURCE_URLS: str = ""
    TICK_SUBSCRIBE_MESSAGE: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def asset_bounds(self) -> dict[str, PriceBounds]:
        """Return per-asset price bounds parsed from ``ASSET:MIN:MAX`` entries."""

        bounds: dict[str, PriceBounds] = {}
        for entry in self._split_csv(self.OHLC_ASSETS, transform=str.strip):
            parts = entry.split(":")
            if len(parts) != 3 or not parts[0].strip():
                raise ConfigError(f"asset entry must look like ASSET:MIN:MAX, got {entry!r}")

            asset = parts[0].strip().upper()
            try:
                low = Decimal(parts[1].strip())
                high = Decimal(parts[2].strip())
            except InvalidOperation as exc:
                raise ConfigError(f"asset bounds must be numeric, got {entry!r}") from exc
            if not (low.is_finite() and high.is_finite()) or low > high:
                raise ConfigError(f"asset bounds must satisfy MIN <= MAX, got {entry!r}")
            if asset in bounds:
                continue
            bounds[asset] = PriceBounds(min=low, max=high)

        if not bounds:
            raise ConfigError("no assets configured; set OHLC_ASSETS")
        return bounds

    def timeframes(self) -> tuple[Timeframe, ...]:
        """Return configured timeframes ordered as listed in OHLC_TIMEFRAMES."""

        timeframes: list[Timeframe] = []
        for label in self._split_csv(self.OHLC_TIMEFRAMES, transform=str.lower):
            try:
                width = parse_timeframe(label)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            timeframes.append(Timeframe(label=label, width=width))

        if not timeframes:
            raise ConfigError("no timeframes configured; set OHLC_TIMEFRAMES")
        return tuple(timeframes)

    def store_format(self) -> str:
        """Return the validated persistence strategy name."""

        store_format = self.OHLC_STORE_FORMAT.strip().lower()
        if store_format not in STORE_FORMATS:
            raise ConfigError(
                f"OHLC_STORE_FORMAT must be one of {', '.join(STORE_FORMATS)}, got {store_format!r}"
            )
        return store_format

    def tick_source_urls(self) -> tuple[str, ...]:
        """Return normalized websocket tick feed URLs."""

        return self._split_csv(self.TICK_SOURCE_URLS, transform=str.strip)

    @staticmethod
    def _split_csv(value: str, transform: Callable[[str], str]) -> tuple[str, ...]:
        """Split comma-separated values while removing empty entries and duplicates."""

        items: list[str] = []
        seen: set[str] = set()

        for raw in value.split(","):
            item = transform(raw.strip())
            if not item or item in seen:
                continue
            seen.add(item)
            items.append(item)

        return tuple(items)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""

    return Settings()
