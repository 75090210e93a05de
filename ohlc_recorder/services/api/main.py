"""FastAPI tick source exposing health, version and tick ingestion endpoints."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ohlc_recorder.core.config import Settings, get_settings
from ohlc_recorder.core.logging import configure_logging
from ohlc_recorder.core.types import ServiceMeta
from ohlc_recorder.engine.recorder import OhlcRecorder

logger = logging.getLogger(__name__)


class TickIn(BaseModel):
    """Tick pushed by an HTTP client; a missing timestamp means arrival time."""

    asset: str = Field(..., min_length=1, description="Asset identifier (e.g., SOL)")
    price: Decimal = Field(..., description="Observed price")
    timestamp: datetime | int | None = Field(
        default=None, description="ISO-8601 instant or epoch milliseconds"
    )


def create_app(settings: Settings, recorder: OhlcRecorder | None = None) -> FastAPI:
    """Build the API around a recorder that is started and drained by the app lifespan."""

    recorder = recorder or OhlcRecorder.from_settings(settings)
    meta = ServiceMeta(name=settings.APP_NAME, version=settings.VERSION, env=settings.ENV)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        """Recover persisted state on startup and drain open candles on shutdown."""

        recorder.start()
        logger.info(
            "api_startup",
            extra={"app_name": meta.name, "env": meta.env, "version": meta.version},
        )
        try:
            yield
        finally:
            drained = await asyncio.to_thread(recorder.shutdown)
            app.state.drained = drained
            log = logger.info if drained else logger.error
            log("api_shutdown", extra={"drained": drained, "fatal": app.state.fatal})

    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.recorder = recorder
    app.state.drained = None
    app.state.fatal = False
    app.state.server = None

    @app.get("/health")
    def health() -> dict[str, str]:
        """Return process liveness status."""

        return {"status": "ok"}

    @app.get("/version")
    def version() -> dict[str, str]:
        """Return application metadata from shared settings."""

        return asdict(meta)

    @app.post("/ticks")
    def ingest_tick(tick: TickIn) -> dict[str, bool]:
        """Apply one tick; ``accepted`` is False for rejected or late ticks."""

        if not recorder.started or not recorder.aggregator.accepting:
            raise HTTPException(status_code=503, detail="recorder is not accepting ticks")
        try:
            accepted = recorder.ingest(tick.asset, tick.price, tick.timestamp)
        except Exception as exc:  # noqa: BLE001
            _fail(app, tick.asset, exc)
            raise HTTPException(status_code=500, detail="tick ingestion failed; shutting down") from exc
        return {"accepted": accepted}

    return app


def _fail(app: FastAPI, asset: str, exc: Exception) -> None:
    """Stop intake and ask the server to exit; the lifespan then drains the recorder."""

    logger.error(
        "api_fatal_ingest_error",
        extra={"asset": asset, "error": str(exc)},
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    app.state.fatal = True
    app.state.recorder.aggregator.close()
    server = app.state.server
    if server is not None:
        server.should_exit = True


settings = get_settings()
configure_logging(settings.LOG_LEVEL, service="api")
app = create_app(settings)
