from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence

from pilot_core.config import DEFAULT_DIAGNOSTIC_BUFFER_LINES, DEFAULT_STOP_GRACE_SECONDS
from pilot_core.environment import LOOPBACK_HOST, build_child_environment
from pilot_core.errors import SpawnError, SupervisorStateError
from pilot_core.paths import RuntimePaths


LOGGER = logging.getLogger("pilot_desktop.supervisor")
CHILD_LOGGER = logging.getLogger("pilot_desktop.child")

STREAM_LIMIT_BYTES = 1024 * 1024
EXIT_POLL_SECONDS = 0.05
OUTPUT_DRAIN_SECONDS = 0.5


class ServerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


LIVE_STATES = frozenset(
    {ServerState.STARTING, ServerState.HEALTH_CHECKING, ServerState.READY, ServerState.STOPPING}
)

_ALLOWED_TRANSITIONS: dict[ServerState, frozenset[ServerState]] = {
    ServerState.IDLE: frozenset({ServerState.STARTING}),
    ServerState.STARTING: frozenset(
        {ServerState.HEALTH_CHECKING, ServerState.STOPPING, ServerState.STOPPED, ServerState.CRASHED}
    ),
    ServerState.HEALTH_CHECKING: frozenset(
        {ServerState.READY, ServerState.STOPPING, ServerState.STOPPED, ServerState.CRASHED}
    ),
    ServerState.READY: frozenset({ServerState.STOPPING, ServerState.STOPPED, ServerState.CRASHED}),
    ServerState.STOPPING: frozenset({ServerState.STOPPED}),
    ServerState.STOPPED: frozenset({ServerState.STARTING}),
    ServerState.CRASHED: frozenset({ServerState.STARTING, ServerState.STOPPED}),
}


@dataclass
class ServerHandle:
    """One supervised server process. Discarded once the process is gone."""

    pid: int
    port: int
    process: asyncio.subprocess.Process
    output: deque[str]
    started_at: float = field(default_factory=time.monotonic)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: int | None = None
    stop_requested: bool = False

    @property
    def url(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.port}"


def _signal_process(process: asyncio.subprocess.Process, *, force: bool) -> None:
    if process.returncode is not None:
        return
    if os.name == "nt":
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        pgid = os.getpgid(process.pid)
    except (ProcessLookupError, OSError):
        pgid = None

    try:
        # The child runs in its own session; never signal our own group.
        if pgid and pgid == process.pid:
            os.killpg(pgid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        return
    except (PermissionError, OSError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            return


class ServerProcessSupervisor:
    def __init__(
        self,
        *,
        command: Sequence[str],
        paths: RuntimePaths,
        snapshot: Mapping[str, str],
        inherited_env: Mapping[str, str] | None = None,
        extra_path: Sequence[str] = (),
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
        diagnostic_buffer_lines: int = DEFAULT_DIAGNOSTIC_BUFFER_LINES,
    ) -> None:
        if not command:
            raise ValueError("Server command must not be empty.")
        self._command = [str(part) for part in command]
        self._paths = paths
        self._snapshot = snapshot
        self._inherited_env = inherited_env
        self._extra_path = tuple(extra_path)
        self._stop_grace_seconds = float(stop_grace_seconds)
        self._diagnostic_buffer_lines = max(1, int(diagnostic_buffer_lines))
        self._state = ServerState.IDLE
        self._handle: ServerHandle | None = None
        self._output: deque[str] = deque(maxlen=self._diagnostic_buffer_lines)
        self._last_exit_code: int | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def handle(self) -> ServerHandle | None:
        return self._handle

    @property
    def last_exit_code(self) -> int | None:
        return self._last_exit_code

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    def diagnostics(self, limit: int | None = None) -> list[str]:
        lines = list(self._output)
        if limit is not None:
            if limit <= 0:
                return []
            return lines[-int(limit) :]
        return lines

    def build_environment(self, port: int) -> dict[str, str]:
        return build_child_environment(
            snapshot=self._snapshot,
            inherited=self._inherited_env,
            port=port,
            home=self._paths.home,
            data_dir=self._paths.data_dir,
            extra_path=self._extra_path,
        )

    def _transition(self, target: ServerState) -> None:
        current = self._state
        if current == target:
            return
        if target not in _ALLOWED_TRANSITIONS[current]:
            raise SupervisorStateError(f"Invalid server state transition: {current.value} -> {target.value}")
        self._state = target
        LOGGER.debug(
            "Server state %s -> %s",
            current.value,
            target.value,
            extra={"component": "supervisor", "operation": "transition", "result": target.value},
        )

    def mark_health_checking(self) -> bool:
        if self._state != ServerState.STARTING:
            return False
        self._transition(ServerState.HEALTH_CHECKING)
        return True

    def mark_ready(self) -> None:
        self._transition(ServerState.READY)
        handle = self._handle
        LOGGER.info(
            "Server is ready at %s",
            handle.url if handle else "",
            extra={
                "component": "supervisor",
                "operation": "ready",
                "result": "ok",
                "pid": handle.pid if handle else "",
                "port": handle.port if handle else "",
                "duration_ms": int((time.monotonic() - handle.started_at) * 1000) if handle else 0,
            },
        )

    async def start(self, port: int) -> ServerHandle:
        if self._handle is not None or self._state in LIVE_STATES:
            raise SupervisorStateError(
                f"Server is already {self._state.value}; stop it before starting another instance."
            )
        self._transition(ServerState.STARTING)
        self._output = deque(maxlen=self._diagnostic_buffer_lines)
        self._last_exit_code = None

        cwd = self._paths.server_dir
        env = self.build_environment(port)
        LOGGER.info(
            "Starting server on port %s: command=%s cwd=%s",
            port,
            " ".join(self._command),
            cwd,
            extra={"component": "supervisor", "operation": "spawn", "result": "started", "port": port},
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
                start_new_session=os.name != "nt",
            )
        except (OSError, ValueError) as exc:
            if self._state == ServerState.STARTING:
                self._transition(ServerState.CRASHED)
            LOGGER.error(
                "Failed to spawn server: %s",
                exc,
                extra={
                    "component": "supervisor",
                    "operation": "spawn",
                    "result": "failed",
                    "error_class": type(exc).__name__,
                    "port": port,
                },
            )
            raise SpawnError(f"Failed to launch server command {self._command[0]!r}: {exc}") from exc

        handle = ServerHandle(pid=process.pid, port=int(port), process=process, output=self._output)
        self._handle = handle
        self._watch_task = asyncio.create_task(self._watch(handle))

        if self._state != ServerState.STARTING:
            # stop() ran while the process was being created.
            await self._stop_handle(handle)
            return handle

        LOGGER.info(
            "Server process spawned pid=%s",
            handle.pid,
            extra={
                "component": "supervisor",
                "operation": "spawn",
                "result": "ok",
                "pid": handle.pid,
                "port": handle.port,
            },
        )
        return handle

    async def _pump(self, handle: ServerHandle, stream: asyncio.StreamReader | None, *, is_stderr: bool) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Overlong line; the reader already discarded it.
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            handle.output.append(line)
            extra = {"component": "child", "operation": "output", "pid": handle.pid, "port": handle.port}
            if is_stderr:
                CHILD_LOGGER.warning("[server:err] %s", line, extra=extra)
            else:
                CHILD_LOGGER.info("[server] %s", line, extra=extra)

    async def _wait_for_exit(self, process: asyncio.subprocess.Process) -> int:
        # Process.wait() stays pending while any descendant keeps the output
        # pipes open; returncode is set as soon as the child itself is reaped.
        waiter = asyncio.ensure_future(process.wait())
        try:
            while process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=EXIT_POLL_SECONDS)
            if process.returncode is not None:
                return process.returncode
            return waiter.result()
        finally:
            if not waiter.done():
                waiter.cancel()

    def _signal_leftover_group(self, handle: ServerHandle) -> None:
        if os.name == "nt":
            return
        try:
            os.killpg(handle.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        LOGGER.warning(
            "Server exited but left processes holding its output open; sent SIGTERM to group %s",
            handle.pid,
            extra={
                "component": "supervisor",
                "operation": "exit",
                "result": "orphans_terminated",
                "pid": handle.pid,
                "port": handle.port,
            },
        )

    async def _watch(self, handle: ServerHandle) -> None:
        process = handle.process
        pumps = [
            asyncio.create_task(self._pump(handle, process.stdout, is_stderr=False)),
            asyncio.create_task(self._pump(handle, process.stderr, is_stderr=True)),
        ]
        try:
            code = await self._wait_for_exit(process)
            # Short drain so the crash tail includes the last lines written.
            _, pending = await asyncio.wait(pumps, timeout=OUTPUT_DRAIN_SECONDS)
        except asyncio.CancelledError:
            for task in pumps:
                task.cancel()
            raise
        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._signal_leftover_group(handle)
        self.on_exit(handle, code)

    def on_exit(self, handle: ServerHandle, code: int | None) -> None:
        """Record the exit of ``handle``; runs once per handle."""
        if handle.exited.is_set():
            return
        handle.exit_code = code
        self._last_exit_code = code
        if self._handle is handle:
            self._handle = None
        if handle.stop_requested:
            self._transition(ServerState.STOPPED)
            LOGGER.info(
                "Server process exited with code %s",
                code,
                extra={
                    "component": "supervisor",
                    "operation": "exit",
                    "result": "stopped",
                    "pid": handle.pid,
                    "port": handle.port,
                },
            )
        else:
            self._transition(ServerState.CRASHED)
            LOGGER.warning(
                "Server process exited unexpectedly with code %s",
                code,
                extra={
                    "component": "supervisor",
                    "operation": "exit",
                    "result": "crashed",
                    "pid": handle.pid,
                    "port": handle.port,
                },
            )
        handle.exited.set()

    async def _terminate(self, handle: ServerHandle) -> None:
        process = handle.process
        if process.returncode is not None:
            return
        _signal_process(process, force=False)
        try:
            await asyncio.wait_for(self._wait_for_exit(process), timeout=self._stop_grace_seconds)
            return
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Server did not exit within %ss; killing it.",
                self._stop_grace_seconds,
                extra={
                    "component": "supervisor",
                    "operation": "stop",
                    "result": "force_kill",
                    "pid": handle.pid,
                    "port": handle.port,
                },
            )
        _signal_process(process, force=True)
        await self._wait_for_exit(process)

    async def _stop_handle(self, handle: ServerHandle) -> None:
        handle.stop_requested = True
        await self._terminate(handle)
        try:
            await asyncio.wait_for(asyncio.shield(handle.exited.wait()), timeout=self._stop_grace_seconds)
        except asyncio.TimeoutError:
            # Output pipes held open by a grandchild; stop reading them.
            if self._watch_task is not None and not self._watch_task.done():
                self._watch_task.cancel()
            self.on_exit(handle, handle.process.returncode)
        if self._handle is handle:
            self._handle = None

    async def stop(self) -> None:
        """Terminate the server if one is running. Safe to call repeatedly."""
        handle = self._handle
        if handle is None:
            if self._state in (ServerState.STARTING, ServerState.HEALTH_CHECKING, ServerState.READY):
                self._transition(ServerState.STOPPED)
            return
        handle.stop_requested = True
        self._transition(ServerState.STOPPING)
        LOGGER.info(
            "Stopping server pid=%s",
            handle.pid,
            extra={
                "component": "supervisor",
                "operation": "stop",
                "result": "started",
                "pid": handle.pid,
                "port": handle.port,
            },
        )
        await self._stop_handle(handle)
        self._transition(ServerState.STOPPED)

    async def restart(self, port: int) -> ServerHandle:
        await self.stop()
        return await self.start(port)
