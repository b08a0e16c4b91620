from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from typing import Any, Callable

from pilot_core.environment import EnvironmentSnapshot
from pilot_core.errors import EnvironmentCaptureError


LOGGER = logging.getLogger("pilot_desktop.environment")

DEFAULT_CAPTURE_TIMEOUT_SECONDS = 5.0
SHELL_ENV_COMMAND = "env"


def default_login_shell(environ: dict[str, str] | None = None) -> str:
    source = os.environ if environ is None else environ
    configured = str(source.get("SHELL") or "").strip()
    if configured:
        return configured
    if sys.platform == "darwin":
        return "/bin/zsh"
    return "/bin/bash"


def parse_env_output(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines; only the first ``=`` separates key from value."""
    env: dict[str, str] = {}
    for line in str(text or "").splitlines():
        key, sep, value = line.partition("=")
        if not sep or not key:
            continue
        env[key] = value
    return env


def _run_login_shell(
    shell: str,
    *,
    timeout_seconds: float,
    runner: Callable[..., subprocess.CompletedProcess[str]],
) -> str:
    try:
        result = runner(
            [shell, "-ilc", SHELL_ENV_COMMAND],
            check=True,
            text=True,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        raise EnvironmentCaptureError(f"Login shell {shell} timed out after {timeout_seconds:g}s") from exc
    except subprocess.CalledProcessError as exc:
        raise EnvironmentCaptureError(f"Login shell {shell} exited with code {exc.returncode}") from exc
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        raise EnvironmentCaptureError(f"Unable to run login shell {shell}: {exc}") from exc
    return str(result.stdout or "")


def capture_shell_environment(
    shell: str | None = None,
    *,
    timeout_seconds: float = DEFAULT_CAPTURE_TIMEOUT_SECONDS,
    runner: Callable[..., Any] = subprocess.run,
) -> EnvironmentSnapshot:
    """Harvest the user's interactive login-shell environment.

    A process launched from a desktop session only sees a minimal
    environment; variables exported from ``.zshrc``/``.bashrc`` (API keys,
    tool directories on ``PATH``) are missing. Running the login shell once
    with ``-ilc env`` recovers them.

    Failures never propagate: the caller gets an empty snapshot and a
    warning is logged.
    """
    if os.name == "nt":
        LOGGER.debug(
            "Skipping login shell capture on Windows.",
            extra={"component": "environment", "operation": "capture", "result": "skipped"},
        )
        return EnvironmentSnapshot()

    resolved_shell = str(shell or "").strip() or default_login_shell()
    start_time = time.monotonic()
    try:
        output = _run_login_shell(resolved_shell, timeout_seconds=timeout_seconds, runner=runner)
        variables = parse_env_output(output)
    except EnvironmentCaptureError as exc:
        LOGGER.warning(
            "Failed to load user shell env: %s",
            exc,
            extra={
                "component": "environment",
                "operation": "capture",
                "result": "failed",
                "error_class": exc.error_code,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return EnvironmentSnapshot()

    LOGGER.info(
        "Loaded %s env vars from user shell %s",
        len(variables),
        resolved_shell,
        extra={
            "component": "environment",
            "operation": "capture",
            "result": "ok",
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        },
    )
    return EnvironmentSnapshot(variables)
