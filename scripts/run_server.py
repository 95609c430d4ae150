"""Launcher for the jobworker API using uvicorn."""

from __future__ import annotations

import logging
import os
from typing import Optional

import typer
import uvicorn

app = typer.Typer(help="Run the jobworker FastAPI app with uvicorn.", add_completion=False)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_str(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"{key} must be an integer") from exc


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str) -> None:
    """Route ``jobworker.*`` loggers through one root handler at ``level``."""

    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)
    logging.getLogger("jobworker").setLevel(level.upper())


@app.callback(invoke_without_command=True)
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    app_path: Optional[str] = typer.Option(
        None, "--app", help="ASGI import path (default jobworker.main:app)."
    ),
    reload: Optional[bool] = typer.Option(None, "--reload/--no-reload", help="Enable auto-reload."),
    workers: Optional[int] = typer.Option(None, "--workers", help="Worker processes."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level."),
) -> None:
    """Launch the FastAPI app."""

    host = host or _env_str("HOST", "127.0.0.1")
    port = port or _env_int("PORT", 3000)
    app_path = app_path or _env_str("APP_MODULE", "jobworker.main:app")
    if reload is None:
        reload = _env_bool("JOBWORKER_RELOAD", False)
    workers = workers or _env_int("JOBWORKER_WORKERS", 1)
    log_level = (log_level or _env_str("JOBWORKER_LOG_LEVEL", "info")).lower()

    configure_logging(log_level)
    uvicorn.run(
        app_path,
        host=host,
        port=port,
        reload=reload,
        workers=max(1, workers),
        log_level=log_level,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
