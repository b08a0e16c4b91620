from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable

import httpx

from pilot_core.config import LauncherConfig
from pilot_core.environment import LOOPBACK_HOST, EnvironmentSnapshot
from pilot_core.errors import StartupCrashError
from pilot_core.paths import RuntimePaths, default_server_dir, resolve_data_dir
from pilot_core.ports import allocate_loopback_port
from pilot_core.shell_env import capture_shell_environment
from pilot_desktop.health import NO_OUTPUT_MESSAGE, HealthCheckPoller
from pilot_desktop.supervisor import ServerProcessSupervisor, ServerState
from pilot_desktop.window import WindowManager


LOGGER = logging.getLogger("pilot_desktop.app")

SERVER_MODULE = "pilot_desktop.server"


def runtime_paths_for(config: LauncherConfig, *, data_dir: Path | None = None, home: Path | None = None) -> RuntimePaths:
    resolved_home = (home or Path.home()).expanduser()
    resolved_data_dir = (
        Path(data_dir).expanduser().resolve()
        if data_dir is not None
        else resolve_data_dir(config.paths.values, home=resolved_home)
    )
    server_dir = Path(config.server.cwd).expanduser() if config.server.cwd else default_server_dir()
    return RuntimePaths(home=resolved_home, data_dir=resolved_data_dir, server_dir=server_dir)


class DesktopApp:
    """Application context: owns the captured environment, the server and the window.

    ``launch()`` runs the startup sequence once; ``ensure_running()`` brings
    the server back after it went away; ``shutdown()`` tears everything down.
    While ``run_until_shutdown()`` is active a server that exits on its own is
    restarted on a fresh port, up to ``server.max_restarts`` times.
    """

    def __init__(
        self,
        config: LauncherConfig,
        *,
        paths: RuntimePaths | None = None,
        window: WindowManager | None = None,
        config_file: Path | None = None,
        attach_port: int | None = None,
        open_window: bool = True,
        capture_environment: Callable[..., EnvironmentSnapshot] = capture_shell_environment,
        allocate_port: Callable[[], int] = allocate_loopback_port,
        probe_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.paths = paths or runtime_paths_for(config)
        self.window = window or WindowManager()
        self._config_file = config_file
        self._attach_port = attach_port
        self._open_window_enabled = bool(open_window)
        self._capture_environment = capture_environment
        self._allocate_port = allocate_port
        self._probe_transport = probe_transport
        self.snapshot: EnvironmentSnapshot | None = None
        self.supervisor: ServerProcessSupervisor | None = None
        self.port: int | None = None
        self._poller: HealthCheckPoller | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._shutdown_done = False
        self.restarts = 0

    @property
    def url(self) -> str | None:
        if self.port is None:
            return None
        return f"http://{LOOPBACK_HOST}:{self.port}"

    def server_command(self) -> list[str]:
        if self.config.server.command:
            return list(self.config.server.command)
        command = [sys.executable, "-m", SERVER_MODULE]
        if self._config_file is not None:
            command.extend(["--config-file", str(self._config_file)])
        return command

    def capture_environment(self) -> EnvironmentSnapshot:
        # Blocking on purpose: runs once, before the port is reserved.
        if self.snapshot is None:
            self.snapshot = self._capture_environment(
                self.config.environment.shell,
                timeout_seconds=self.config.environment.capture_timeout_seconds,
            )
        return self.snapshot

    def _ensure_supervisor(self) -> ServerProcessSupervisor:
        if self.supervisor is None:
            server = self.config.server
            self.supervisor = ServerProcessSupervisor(
                command=self.server_command(),
                paths=self.paths,
                snapshot=self.capture_environment(),
                extra_path=self.config.environment.extra_path,
                stop_grace_seconds=server.stop_grace_seconds,
                diagnostic_buffer_lines=server.diagnostic_buffer_lines,
            )
        return self.supervisor

    async def _start_server(self) -> None:
        supervisor = self._ensure_supervisor()
        port = self._allocate_port()
        self.paths.data_dir.mkdir(parents=True, exist_ok=True)
        await supervisor.start(port)
        self.port = port

        server = self.config.server
        poller = HealthCheckPoller(
            supervisor,
            port=port,
            timeout_seconds=server.startup_timeout_seconds,
            interval_seconds=server.probe_interval_seconds,
            probe_timeout_seconds=server.probe_timeout_seconds,
            tail_lines=server.diagnostic_tail_lines,
            transport=self._probe_transport,
        )
        self._poller = poller
        try:
            if self._shutdown_event is not None and self._shutdown_event.is_set():
                poller.cancel()
            supervisor.mark_health_checking()
            await poller.wait_until_ready()
            supervisor.mark_ready()
        except BaseException:
            await supervisor.stop()
            raise
        finally:
            self._poller = None

    def _open_window(self) -> None:
        url = self.url
        if url is None:
            return
        if not self._open_window_enabled:
            LOGGER.info("Server available at %s", url, extra={"component": "window", "operation": "open", "result": "skipped"})
            return
        self.window.open(url)

    async def launch(self) -> str:
        self.capture_environment()
        if self._attach_port is not None:
            self.port = int(self._attach_port)
            LOGGER.info(
                "Attach mode: connecting to %s",
                self.url,
                extra={"component": "app", "operation": "launch", "result": "attached", "port": self.port},
            )
        else:
            await self._start_server()
        self._open_window()
        return str(self.url)

    async def ensure_running(self) -> str:
        """Re-activation: restart the server if it is gone and show the window again."""
        if self._attach_port is None:
            supervisor = self._ensure_supervisor()
            if not supervisor.is_running:
                LOGGER.info(
                    "Server is not running (state=%s); starting a new instance",
                    supervisor.state.value,
                    extra={"component": "app", "operation": "ensure_running", "result": "restarting"},
                )
                await self._start_server()
        if not self.window.is_open:
            self._open_window()
        return str(self.url)

    def request_shutdown(self) -> None:
        LOGGER.info("Shutdown requested", extra={"component": "app", "operation": "shutdown", "result": "requested"})
        if self._poller is not None:
            self._poller.cancel()
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def shutdown(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
        if self.supervisor is not None:
            await self.supervisor.stop()
        self.window.close()
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if not self._shutdown_done:
            self._shutdown_done = True
            LOGGER.info("Shutdown complete", extra={"component": "app", "operation": "shutdown", "result": "ok"})

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[Any]:
        installed: list[Any] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)
        return installed

    async def _wait_for_shutdown_or_exit(self, shutdown: asyncio.Event, exited: asyncio.Event) -> None:
        waiters = [asyncio.ensure_future(shutdown.wait()), asyncio.ensure_future(exited.wait())]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in waiters if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _restart_after_crash(self, supervisor: ServerProcessSupervisor) -> None:
        code = supervisor.last_exit_code
        if self.restarts >= self.config.server.max_restarts:
            tail = supervisor.diagnostics(self.config.server.diagnostic_tail_lines)
            output = "\n".join(tail) if tail else NO_OUTPUT_MESSAGE
            LOGGER.error(
                "Server exited with code %s after %s restart(s); giving up",
                code,
                self.restarts,
                extra={"component": "app", "operation": "restart", "result": "exhausted", "port": self.port or ""},
            )
            raise StartupCrashError(f"Server process exited with code {code}.\n\n{output}")
        self.restarts += 1
        LOGGER.warning(
            "Server exited with code %s; restarting (%s/%s)",
            code,
            self.restarts,
            self.config.server.max_restarts,
            extra={"component": "app", "operation": "restart", "result": "restarting", "port": self.port or ""},
        )
        await self._start_server()
        # New port, so point the window at the new URL.
        self._open_window()

    async def _supervise(self, shutdown: asyncio.Event) -> None:
        """Wait for a shutdown request, restarting the server if it exits on its own."""
        while not shutdown.is_set():
            supervisor = self.supervisor
            if supervisor is None:
                # Attach mode: nothing to watch.
                await shutdown.wait()
                return
            handle = supervisor.handle
            if handle is not None:
                await self._wait_for_shutdown_or_exit(shutdown, handle.exited)
                continue
            if supervisor.state != ServerState.CRASHED:
                await shutdown.wait()
                return
            await self._restart_after_crash(supervisor)

    async def run_until_shutdown(self) -> None:
        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        installed = self._install_signal_handlers(loop)
        try:
            await self.launch()
            await self._supervise(self._shutdown_event)
        finally:
            await self.shutdown()
            for sig in installed:
                loop.remove_signal_handler(sig)


__all__ = ["DesktopApp", "runtime_paths_for"]
