from __future__ import annotations

import logging
import webbrowser
from typing import Any, Callable

import click


LOGGER = logging.getLogger("pilot_desktop.window")

FATAL_STARTUP_TITLE = "Pilot - Failed to Start"


def fatal_startup_message(detail: str) -> str:
    return (
        "The internal server could not start.\n\n"
        f"{detail}\n\n"
        "Please try restarting the application."
    )


class WindowManager:
    """Points a UI surface at the local server once it is ready."""

    def __init__(self, *, opener: Callable[[str], Any] = webbrowser.open) -> None:
        self._opener = opener
        self._url: str | None = None

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._url is not None

    def open(self, url: str) -> None:
        LOGGER.info("Opening UI at %s", url, extra={"component": "window", "operation": "open", "result": "ok"})
        self._opener(url)
        self._url = url

    def close(self) -> None:
        if self._url is None:
            return
        LOGGER.debug("Closing UI at %s", self._url, extra={"component": "window", "operation": "close", "result": "ok"})
        self._url = None

    def show_error(self, title: str, message: str) -> None:
        LOGGER.error(
            "%s: %s",
            title,
            message,
            extra={"component": "window", "operation": "error_dialog", "result": "shown"},
        )
        click.echo(f"{title}\n\n{message}", err=True)
