from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, TypeVar

import httpx

from pilot_core.config import (
    DEFAULT_DIAGNOSTIC_TAIL_LINES,
    DEFAULT_PROBE_INTERVAL_SECONDS,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_STARTUP_TIMEOUT_SECONDS,
)
from pilot_core.environment import LOOPBACK_HOST
from pilot_core.errors import (
    HealthCheckTimeoutError,
    StartupCancelledError,
    StartupCrashError,
    SupervisorStateError,
)


LOGGER = logging.getLogger("pilot_desktop.health")

HEALTH_PATH = "/api/health"
NO_OUTPUT_MESSAGE = "No server output captured."

T = TypeVar("T")


class ProbeOutcome(str, Enum):
    OK = "ok"
    HTTP_STATUS = "http_status"
    NETWORK = "network"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeResult:
    outcome: ProbeOutcome
    status_code: int | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == ProbeOutcome.OK


def health_url(port: int, *, host: str = LOOPBACK_HOST, path: str = HEALTH_PATH) -> str:
    return f"http://{host}:{int(port)}{path}"


def format_output_tail(lines: list[str]) -> str:
    if not lines:
        return NO_OUTPUT_MESSAGE
    return "Server output:\n" + "\n".join(lines)


class HealthCheckPoller:
    """Polls the server's health endpoint until it answers 200.

    The poller only reads from the supervisor. It gives up as soon as the
    process it was started for exits, when ``cancel()`` is called, or when
    the overall deadline passes.
    """

    def __init__(
        self,
        supervisor: Any,
        *,
        port: int,
        timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS,
        interval_seconds: float = DEFAULT_PROBE_INTERVAL_SECONDS,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        tail_lines: int = DEFAULT_DIAGNOSTIC_TAIL_LINES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._supervisor = supervisor
        self.port = int(port)
        self.url = health_url(self.port)
        self._timeout_seconds = float(timeout_seconds)
        self._interval_seconds = float(interval_seconds)
        self._probe_timeout_seconds = float(probe_timeout_seconds)
        self._tail_lines = int(tail_lines)
        self._transport = transport
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def probe(self, client: httpx.AsyncClient) -> ProbeResult:
        try:
            response = await asyncio.wait_for(client.get(self.url), timeout=self._probe_timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            return ProbeResult(ProbeOutcome.TIMEOUT, detail=str(exc) or "timeout")
        except httpx.HTTPError as exc:
            return ProbeResult(ProbeOutcome.NETWORK, detail=str(exc) or type(exc).__name__)
        if response.status_code == 200:
            return ProbeResult(ProbeOutcome.OK, status_code=200)
        return ProbeResult(
            ProbeOutcome.HTTP_STATUS,
            status_code=response.status_code,
            detail=f"Status {response.status_code}",
        )

    def _crash_error(self, exit_code: int | None) -> StartupCrashError:
        tail = self._supervisor.diagnostics(self._tail_lines)
        output = "\n".join(tail) if tail else NO_OUTPUT_MESSAGE
        return StartupCrashError(f"Server process exited with code {exit_code}.\n\n{output}")

    def _timeout_error(self) -> HealthCheckTimeoutError:
        tail = self._supervisor.diagnostics(self._tail_lines)
        return HealthCheckTimeoutError(
            f"Server startup timeout after {self._timeout_seconds:g}s.\n\n{format_output_tail(tail)}"
        )

    def _raise_if_interrupted(self, handle: Any) -> None:
        if self._cancelled.is_set():
            raise StartupCancelledError("Health check cancelled before the server became ready.")
        if handle.exited.is_set():
            raise self._crash_error(handle.exit_code)

    async def _race(self, awaitable: Awaitable[T], handle: Any) -> T:
        """Await ``awaitable`` unless the process exits or polling is cancelled first."""
        work = asyncio.ensure_future(awaitable)
        cancel_waiter = asyncio.ensure_future(self._cancelled.wait())
        exit_waiter = asyncio.ensure_future(handle.exited.wait())
        try:
            await asyncio.wait({work, cancel_waiter, exit_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (work, cancel_waiter, exit_waiter) if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._raise_if_interrupted(handle)
        return work.result()

    async def wait_until_ready(self) -> int:
        """Block until a probe succeeds; returns the number of probes sent."""
        handle = self._supervisor.handle
        if handle is None:
            if self._cancelled.is_set():
                raise StartupCancelledError("Health check cancelled before the server became ready.")
            if self._supervisor.state == "crashed":
                raise self._crash_error(self._supervisor.last_exit_code)
            raise SupervisorStateError("No server process is running to health-check.")

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        deadline = loop.time() + self._timeout_seconds
        attempts = 0
        async with httpx.AsyncClient(transport=self._transport, timeout=self._probe_timeout_seconds) as client:
            while True:
                self._raise_if_interrupted(handle)
                attempts += 1
                result = await self._race(self.probe(client), handle)
                if result.ok:
                    LOGGER.info(
                        "Health check passed after %s probe(s)",
                        attempts,
                        extra={
                            "component": "health",
                            "operation": "wait_ready",
                            "result": "ok",
                            "port": self.port,
                            "duration_ms": int((time.monotonic() - started) * 1000),
                        },
                    )
                    return attempts
                LOGGER.debug(
                    "Health probe %s failed: %s %s",
                    attempts,
                    result.outcome.value,
                    result.detail,
                    extra={"component": "health", "operation": "probe", "result": result.outcome.value, "port": self.port},
                )
                remaining = deadline - loop.time()
                if remaining <= 0:
                    LOGGER.error(
                        "Health check timed out after %s probe(s)",
                        attempts,
                        extra={
                            "component": "health",
                            "operation": "wait_ready",
                            "result": "timeout",
                            "port": self.port,
                            "duration_ms": int((time.monotonic() - started) * 1000),
                        },
                    )
                    raise self._timeout_error()
                await self._race(asyncio.sleep(min(self._interval_seconds, remaining)), handle)
