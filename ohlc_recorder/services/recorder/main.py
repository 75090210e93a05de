"""Websocket tick recorder that aggregates JSON ticks into persisted OHLC candles."""

import asyncio
import inspect
import json
import logging
import signal
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from ohlc_recorder.core.config import Settings, get_settings
from ohlc_recorder.core.errors import ConfigError, FatalIngestError
from ohlc_recorder.core.logging import configure_logging
from ohlc_recorder.engine.recorder import OhlcRecorder

_SERVICE = "recorder"
_RECONNECT_INITIAL_BACKOFF_S = 1.0
_RECONNECT_MAX_BACKOFF_S = 30.0
_WS_PING_INTERVAL_S = 30
_WS_RECV_TIMEOUT_S = 1.0


def _websocket_connect_kwargs() -> dict[str, Any]:
    kwargs: dict[str, Any] = {"ping_interval": _WS_PING_INTERVAL_S}
    if "proxy" in inspect.signature(websockets.connect).parameters:
        kwargs["proxy"] = None
    return kwargs


def _build_tick(payload: dict[str, Any]) -> tuple[str, Any, Any] | None:
    """Extract ``(asset, price, timestamp)`` from a generic tick message.

    The message may be wrapped in ``{"data": {...}}``; a missing timestamp means
    the tick is stamped on arrival.
    """

    if "data" in payload and isinstance(payload["data"], dict):
        payload = payload["data"]

    asset = payload.get("asset")
    price = payload.get("price")
    if not isinstance(asset, str) or not asset.strip():
        return None
    if price is None or isinstance(price, (bool, dict, list)):
        return None

    timestamp = payload.get("timestamp")
    if isinstance(timestamp, (bool, dict, list)):
        return None
    return asset, price, timestamp


def _request_shutdown(
    shutdown_event: asyncio.Event, logger: logging.Logger, signal_name: str
) -> None:
    if shutdown_event.is_set():
        return
    logger.info("recorder_shutdown_signal", extra={"signal": signal_name})
    shutdown_event.set()


def _install_signal_handlers(shutdown_event: asyncio.Event, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig,
                _request_shutdown,
                shutdown_event,
                logger,
                sig.name,
            )
        except NotImplementedError:
            signal_name = sig.name
            signal.signal(
                sig,
                lambda *_, signal_name=signal_name: _request_shutdown(
                    shutdown_event, logger, signal_name
                ),
            )


def _ingest(recorder: OhlcRecorder, tick: tuple[str, Any, Any]) -> bool:
    asset, price, timestamp = tick
    try:
        return recorder.ingest(asset, price, timestamp)
    except Exception as exc:  # noqa: BLE001
        raise FatalIngestError(f"ingest failed for {asset}: {exc}") from exc


async def _consume_source(
    url: str,
    settings: Settings,
    recorder: OhlcRecorder,
    logger: logging.Logger,
    shutdown_event: asyncio.Event,
) -> None:
    async with websockets.connect(url, **_websocket_connect_kwargs()) as ws:
        logger.info("recorder_source_connected", extra={"url": url})

        subscribe_message = settings.TICK_SUBSCRIBE_MESSAGE.strip()
        if subscribe_message:
            await ws.send(subscribe_message)
            logger.info("recorder_source_subscribed", extra={"url": url})

        while not shutdown_event.is_set():
            try:
                raw_message = await asyncio.wait_for(ws.recv(), timeout=_WS_RECV_TIMEOUT_S)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed:
                raise

            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                logger.warning("recorder_invalid_json_message", extra={"url": url})
                continue

            if not isinstance(payload, dict):
                continue

            tick = _build_tick(payload)
            if tick is None:
                continue

            _ingest(recorder, tick)


async def _run_source(
    url: str,
    settings: Settings,
    recorder: OhlcRecorder,
    logger: logging.Logger,
    shutdown_event: asyncio.Event,
) -> None:
    backoff_s = _RECONNECT_INITIAL_BACKOFF_S
    while not shutdown_event.is_set():
        try:
            await _consume_source(
                url=url,
                settings=settings,
                recorder=recorder,
                logger=logger,
                shutdown_event=shutdown_event,
            )
            backoff_s = _RECONNECT_INITIAL_BACKOFF_S
        except (asyncio.CancelledError, FatalIngestError):
            raise
        except Exception as exc:  # noqa: BLE001
            if shutdown_event.is_set():
                break
            logger.warning(
                "recorder_source_connection_lost",
                extra={"url": url, "error": str(exc), "reconnect_in_s": backoff_s},
            )
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=backoff_s)
            except asyncio.TimeoutError:
                pass
            backoff_s = min(backoff_s * 2, _RECONNECT_MAX_BACKOFF_S)


async def _run() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, service=_SERVICE)
    logger = logging.getLogger(__name__)
    shutdown_event = asyncio.Event()

    urls = settings.tick_source_urls()
    if not urls:
        logger.error("recorder_invalid_sources")
        return 1

    try:
        recorder = OhlcRecorder.from_settings(settings)
    except ConfigError as exc:
        logger.error("recorder_invalid_config", extra={"error": str(exc)})
        return 1

    _install_signal_handlers(shutdown_event, logger)
    recorder.start()
    logger.info(
        "recorder_startup",
        extra={
            "assets": list(settings.asset_bounds()),
            "timeframes": [timeframe.label for timeframe in settings.timeframes()],
            "data_dir": settings.OHLC_DATA_DIR,
            "store_format": settings.store_format(),
            "sources": list(urls),
        },
    )

    fatal = False
    tasks = [
        asyncio.create_task(_run_source(url, settings, recorder, logger, shutdown_event))
        for url in urls
    ]
    try:
        for finished in asyncio.as_completed(tasks):
            try:
                await finished
            except FatalIngestError:
                logger.exception("recorder_fatal_ingest_error")
                fatal = True
                shutdown_event.set()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        drained = await asyncio.to_thread(recorder.shutdown)

    logger.info("recorder_shutdown", extra={"drained": drained, "fatal": fatal})
    return 0 if drained and not fatal else 1


def main() -> int:
    """Run the recorder process until interrupted."""

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
