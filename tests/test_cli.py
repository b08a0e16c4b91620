from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from pilot_core.errors import SandboxViolationError, StartupCancelledError, StartupCrashError
from pilot_desktop import cli as pilot_cli
from pilot_desktop.window import FATAL_STARTUP_TITLE


class _RecordingWindow:
    def __init__(self) -> None:
        self.errors: list[tuple[str, str]] = []

    def show_error(self, title: str, message: str) -> None:
        self.errors.append((title, message))


class _FailingApp:
    def __init__(self, exc: BaseException) -> None:
        self._exc = exc
        self.window = _RecordingWindow()

    async def run_until_shutdown(self) -> None:
        raise self._exc


def test_run_app_shows_error_dialog_for_fatal_startup_errors() -> None:
    app = _FailingApp(StartupCrashError("Server process exited with code 1.\n\nboom"))

    assert pilot_cli.run_app(app) == 1  # type: ignore[arg-type]
    assert len(app.window.errors) == 1
    title, message = app.window.errors[0]
    assert title == FATAL_STARTUP_TITLE
    assert "Server process exited with code 1." in message
    assert "boom" in message


def test_run_app_treats_cancelled_startup_as_clean_exit() -> None:
    app = _FailingApp(StartupCancelledError("cancelled"))

    assert pilot_cli.run_app(app) == 0  # type: ignore[arg-type]
    assert app.window.errors == []


def test_run_app_propagates_non_fatal_typed_errors() -> None:
    app = _FailingApp(SandboxViolationError("outside"))

    with pytest.raises(SandboxViolationError):
        pilot_cli.run_app(app)  # type: ignore[arg-type]


def test_cli_reports_invalid_config(tmp_path: Path) -> None:
    config_path = tmp_path / "pilot.toml"
    config_path.write_text("[server]\ncommand = \"node server.js\"\n", encoding="utf-8")

    result = CliRunner().invoke(pilot_cli.main, ["--config-file", str(config_path)])

    assert result.exit_code != 0
    event_line = next(line for line in result.output.splitlines() if line.startswith("{"))
    event = json.loads(event_line)
    assert event["event"] == "pilot_desktop_config_load_error"
    assert event["error"] == "server.command must be a list of strings."


def test_cli_builds_app_from_options(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_run_app(app: Any) -> int:
        captured["app"] = app
        return 0

    monkeypatch.setattr(pilot_cli, "run_app", fake_run_app)
    data_dir = tmp_path / "data"

    result = CliRunner().invoke(
        pilot_cli.main,
        ["--data-dir", str(data_dir), "--attach-port", "3000", "--startup-timeout", "12", "--no-window"],
    )

    assert result.exit_code == 0, result.output
    app = captured["app"]
    assert app.paths.data_dir == data_dir.resolve()
    assert app.config.server.startup_timeout_seconds == 12.0
    assert app._attach_port == 3000
    assert app._open_window_enabled is False


def test_cli_exits_non_zero_when_startup_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pilot_cli, "run_app", lambda app: 1)

    result = CliRunner().invoke(pilot_cli.main, ["--no-window"])

    assert result.exit_code == 1


def test_cli_rejects_non_positive_startup_timeout() -> None:
    result = CliRunner().invoke(pilot_cli.main, ["--startup-timeout", "0"])

    assert result.exit_code == 2
    assert "--startup-timeout" in result.output
