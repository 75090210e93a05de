"""Module entrypoint for running the HTTP tick source with shared settings."""

import uvicorn

from ohlc_recorder.services.api.main import app, settings


def main() -> int:
    """Run the API service; non-zero when the drain failed or ingestion hit a fatal error."""

    server = uvicorn.Server(uvicorn.Config(app, host=settings.HOST, port=settings.PORT, workers=1))
    app.state.server = server
    server.run()
    return 0 if app.state.drained is True and not app.state.fatal else 1


if __name__ == "__main__":
    raise SystemExit(main())
