from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from pilot_core import logging as core_logging
from pilot_core.config import PreviewConfig, load_launcher_config
from pilot_core.environment import DATA_DIR_ENV, HOSTNAME_ENV, LOOPBACK_HOST, PORT_ENV, SUPERVISED_ENV
from pilot_core.errors import ConfigError, TypedLauncherError, typed_error_payload
from pilot_desktop.api import register_routes


LOGGER = logging.getLogger("pilot_desktop.server")

DEFAULT_PORT = 3000


def core_error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        status_by_code = {
            "CONFIG_ERROR": 400,
            "SANDBOX_VIOLATION": 403,
            "SUPERVISOR_STATE_ERROR": 409,
        }
        status = status_by_code.get(str(typed_payload.get("error_code") or ""), 500)
        return status, typed_payload
    return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}


_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "UNPROCESSABLE_ENTITY",
}


def http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status in _HTTP_ERROR_CODES:
        return _HTTP_ERROR_CODES[status]
    if status >= 500:
        return "INTERNAL_ERROR"
    return f"HTTP_{status}"


def create_app(
    *,
    preview_config: PreviewConfig | None = None,
    home_dir: str | None = None,
    data_dir: Path | None = None,
) -> FastAPI:
    resolved_home = home_dir if home_dir is not None else os.path.realpath(Path.home())
    app = FastAPI(title="Pilot Desktop server")
    app.state.data_dir = data_dir

    @app.exception_handler(TypedLauncherError)
    async def typed_error_handler(request: Request, exc: TypedLauncherError) -> JSONResponse:
        status, payload = core_error_payload(exc)
        LOGGER.info(
            "Rejected %s %s: %s",
            request.method,
            request.url.path,
            exc,
            extra={"component": "api", "operation": request.url.path, "result": "rejected", "error_class": exc.error_code},
        )
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def http_error_handler(_request: Request, exc: HTTPException) -> JSONResponse:
        status = int(exc.status_code or 500)
        return JSONResponse(
            status_code=status,
            content={"error_code": http_error_code(status), "detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    register_routes(
        app,
        preview_config=preview_config or PreviewConfig(),
        home_dir=resolved_home,
        logger=LOGGER,
    )
    return app


def _uvicorn_log_level(level: str) -> str:
    normalized = core_logging.normalize_log_level(level)
    if normalized == "debug":
        return "info"
    return normalized


def _resolve_bind_host(host: str | None) -> str:
    if host:
        return host
    # HOSTNAME is often the machine name in an interactive shell; only trust it under supervision.
    if os.environ.get(SUPERVISED_ENV) == "1":
        return os.environ.get(HOSTNAME_ENV) or LOOPBACK_HOST
    return LOOPBACK_HOST


@click.command(help="Run the Pilot Desktop backing server.")
@click.option("--host", default=None, show_default="127.0.0.1 (or $HOSTNAME when supervised)")
@click.option("--port", envvar=PORT_ENV, default=DEFAULT_PORT, show_default=True, type=int)
@click.option(
    "--data-dir",
    envvar=DATA_DIR_ENV,
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Application data directory.",
)
@click.option(
    "--config-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Launcher config file; the server reads its [preview] and [logging] sections.",
)
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
)
def main(host: str | None, port: int, data_dir: Path | None, config_file: Path | None, log_level: str | None) -> None:
    try:
        config = load_launcher_config(config_file)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    normalized_level = core_logging.normalize_log_level(log_level or config.logging.values.get("level"))
    core_logging.configure_structured_logger(LOGGER, level=normalized_level)
    bind_host = _resolve_bind_host(host)
    if data_dir is not None:
        data_dir.mkdir(parents=True, exist_ok=True)
    LOGGER.info(
        "Starting server host=%s port=%s",
        bind_host,
        port,
        extra={"component": "startup", "operation": "server_start", "result": "started", "port": port},
    )
    app = create_app(preview_config=config.preview, data_dir=data_dir)
    uvicorn.run(app, host=bind_host, port=port, log_level=_uvicorn_log_level(normalized_level))


if __name__ == "__main__":
    main()
