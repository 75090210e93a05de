"""Structured JSON logging helpers for container-friendly stdout logs."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())
_CONFIGURED_FLAG = "_ohlc_recorder_configured"


class JsonFormatter(logging.Formatter):
    """Serialize log records as compact JSON lines tagged with the emitting service.

    Event context passed through ``extra`` often carries Decimal prices and bucket
    datetimes; those are rendered with ``str`` so a log call never raises.
    """

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.service:
            payload["service"] = self.service

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if context:
            payload["context"] = context

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_logging(
    level: str = "INFO",
    service: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure process-wide JSON logging once; later calls are ignored."""

    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    root.handlers.clear()
    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter(service=service))

    root.addHandler(handler)
    root.setLevel(level.upper())
    setattr(root, _CONFIGURED_FLAG, True)
