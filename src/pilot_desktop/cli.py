from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import click

from pilot_core import logging as core_logging
from pilot_core.config import LauncherConfig, load_launcher_config
from pilot_core.errors import ConfigError, StartupCancelledError, TypedLauncherError, is_fatal_error
from pilot_desktop.app import DesktopApp, runtime_paths_for
from pilot_desktop.window import FATAL_STARTUP_TITLE, fatal_startup_message


LOGGER = logging.getLogger("pilot_desktop")


def _resolve_log_level(log_level: str | None, config: LauncherConfig) -> str:
    cli_value = str(log_level or "").strip()
    if cli_value:
        return core_logging.normalize_log_level(cli_value)
    config_value = str(config.logging.values.get("level") or "").strip()
    if config_value:
        return core_logging.normalize_log_level(config_value)
    return "info"


def _configure_logging(level: str, config: LauncherConfig) -> None:
    core_logging.configure_structured_logger(LOGGER, level=level)
    core_logging.configure_domain_log_levels(
        domains=config.logging.values.get("domains"),
        logger_prefix="pilot_desktop",
    )


def _apply_overrides(config: LauncherConfig, *, startup_timeout: float | None) -> LauncherConfig:
    if startup_timeout is None:
        return config
    if startup_timeout <= 0:
        raise click.BadParameter("must be greater than zero", param_hint="--startup-timeout")
    server = dataclasses.replace(config.server, startup_timeout_seconds=float(startup_timeout))
    return dataclasses.replace(config, server=server)


@click.command(help="Launch the Pilot Desktop server and open its UI.")
@click.option(
    "--config-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Optional TOML config file.",
)
@click.option(
    "--data-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    show_default="config paths.data_dir or the platform default",
    help="Application data directory handed to the server.",
)
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
)
@click.option(
    "--attach-port",
    default=None,
    type=click.IntRange(1, 65535),
    help="Connect to a server already listening on this port instead of spawning one.",
)
@click.option("--startup-timeout", default=None, type=float, help="Seconds to wait for the server health check.")
@click.option("--window/--no-window", default=True, show_default=True, help="Open the UI once the server is ready.")
def main(
    config_file: Path | None,
    data_dir: Path | None,
    log_level: str | None,
    attach_port: int | None,
    startup_timeout: float | None,
    window: bool,
) -> None:
    try:
        config = load_launcher_config(config_file)
    except ConfigError as exc:
        click.echo(
            json.dumps(
                {
                    "event": "pilot_desktop_config_load_error",
                    "config_path": str(config_file),
                    "error": str(exc),
                },
                sort_keys=True,
            ),
            err=True,
        )
        raise click.ClickException(str(exc)) from exc
    config = _apply_overrides(config, startup_timeout=startup_timeout)

    normalized_level = _resolve_log_level(log_level, config)
    _configure_logging(normalized_level, config)

    app = DesktopApp(
        config,
        paths=runtime_paths_for(config, data_dir=data_dir),
        config_file=config_file,
        attach_port=attach_port,
        open_window=window,
    )
    LOGGER.info(
        "Starting Pilot Desktop data_dir=%s log_level=%s",
        app.paths.data_dir,
        normalized_level,
        extra={"component": "startup", "operation": "launch", "result": "started"},
    )
    exit_code = run_app(app)
    if exit_code:
        raise SystemExit(exit_code)


def run_app(app: DesktopApp) -> int:
    """Run ``app`` to completion; returns a process exit code."""
    try:
        asyncio.run(app.run_until_shutdown())
    except StartupCancelledError:
        LOGGER.info("Startup cancelled", extra={"component": "startup", "operation": "launch", "result": "cancelled"})
        return 0
    except TypedLauncherError as exc:
        if not is_fatal_error(exc):
            raise
        extra: dict[str, Any] = {
            "component": "startup",
            "operation": "launch",
            "result": "failed",
            "error_class": exc.error_code,
        }
        LOGGER.error("Failed to start: %s", exc, extra=extra)
        app.window.show_error(FATAL_STARTUP_TITLE, fatal_startup_message(str(exc)))
        return 1
    return 0


if __name__ == "__main__":
    main()
