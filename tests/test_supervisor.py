from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import httpx
import pytest

from pilot_core.environment import EnvironmentSnapshot
from pilot_core.errors import SpawnError, StartupCrashError, SupervisorStateError
from pilot_core.paths import RuntimePaths
from pilot_desktop.health import HealthCheckPoller
from pilot_desktop.supervisor import ServerProcessSupervisor, ServerState


SLEEPER = "import sys, time; print('listening', flush=True); time.sleep(60)"


def _paths(tmp_path: Path) -> RuntimePaths:
    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    return RuntimePaths(home=tmp_path, data_dir=data_dir, server_dir=tmp_path)


def _supervisor(tmp_path: Path, script: str, **kwargs: object) -> ServerProcessSupervisor:
    return ServerProcessSupervisor(
        command=[sys.executable, "-c", script],
        paths=_paths(tmp_path),
        snapshot=EnvironmentSnapshot({"PILOT_FROM_SHELL": "yes"}),
        inherited_env=dict(os.environ),
        **kwargs,
    )


async def _wait_for_output(supervisor: ServerProcessSupervisor, needle: str, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not any(needle in line for line in supervisor.diagnostics()):
        if loop.time() > deadline:
            raise AssertionError(f"Timed out waiting for {needle!r}; output={supervisor.diagnostics()!r}")
        await asyncio.sleep(0.02)


def test_supervisor_rejects_empty_command(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ServerProcessSupervisor(command=[], paths=_paths(tmp_path), snapshot=EnvironmentSnapshot())


def test_start_then_stop_transitions_and_is_idempotent(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, SLEEPER, stop_grace_seconds=2.0)

    async def scenario() -> None:
        assert supervisor.state == ServerState.IDLE
        handle = await supervisor.start(45001)
        assert supervisor.state == ServerState.STARTING
        assert supervisor.is_running
        assert handle.url == "http://127.0.0.1:45001"
        await _wait_for_output(supervisor, "listening")

        await supervisor.stop()
        assert supervisor.state == ServerState.STOPPED
        assert supervisor.handle is None
        assert handle.exited.is_set()
        assert handle.process.returncode is not None

        await supervisor.stop()
        assert supervisor.state == ServerState.STOPPED

    asyncio.run(scenario())


def test_second_start_is_rejected_while_server_is_live(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, SLEEPER)

    async def scenario() -> None:
        first = await supervisor.start(45002)
        try:
            with pytest.raises(SupervisorStateError):
                await supervisor.start(45003)
            assert supervisor.mark_health_checking() is True
            with pytest.raises(SupervisorStateError):
                await supervisor.start(45014)
            assert supervisor.state == ServerState.HEALTH_CHECKING
            supervisor.mark_ready()
            assert supervisor.state == ServerState.READY
            with pytest.raises(SupervisorStateError):
                await supervisor.start(45004)
            assert supervisor.handle is first
        finally:
            await supervisor.stop()

    asyncio.run(scenario())


def test_mark_health_checking_only_from_starting(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, SLEEPER)

    assert supervisor.mark_health_checking() is False
    assert supervisor.state == ServerState.IDLE


def test_unexpected_exit_marks_crashed_and_keeps_output(tmp_path: Path) -> None:
    script = (
        "import sys; print('booting', flush=True); "
        "print(\"Error: Cannot find module 'next'\", file=sys.stderr, flush=True); sys.exit(3)"
    )
    supervisor = _supervisor(tmp_path, script)

    async def scenario() -> None:
        handle = await supervisor.start(45005)
        await asyncio.wait_for(handle.exited.wait(), timeout=10)

        assert supervisor.state == ServerState.CRASHED
        assert supervisor.handle is None
        assert supervisor.last_exit_code == 3
        assert handle.exit_code == 3
        assert "booting" in supervisor.diagnostics()
        assert "Error: Cannot find module 'next'" in supervisor.diagnostics()

    asyncio.run(scenario())


def test_start_is_allowed_again_after_crash(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, "import sys; sys.exit(1)")

    async def scenario() -> None:
        handle = await supervisor.start(45006)
        await asyncio.wait_for(handle.exited.wait(), timeout=10)
        assert supervisor.state == ServerState.CRASHED

        second = await supervisor.start(45007)
        assert second is not handle
        assert supervisor.state in {ServerState.STARTING, ServerState.CRASHED}
        await asyncio.wait_for(second.exited.wait(), timeout=10)
        await supervisor.stop()

    asyncio.run(scenario())


def test_child_receives_port_and_shell_environment(tmp_path: Path) -> None:
    script = (
        "import os, time; "
        "print('env', os.environ['PORT'], os.environ['HOSTNAME'], os.environ['PILOT_SUPERVISED'], "
        "os.environ['PILOT_FROM_SHELL'], flush=True); time.sleep(60)"
    )
    supervisor = _supervisor(tmp_path, script)

    async def scenario() -> None:
        await supervisor.start(45008)
        try:
            await _wait_for_output(supervisor, "env ")
        finally:
            await supervisor.stop()
        assert "env 45008 127.0.0.1 1 yes" in supervisor.diagnostics()

    asyncio.run(scenario())


def test_restart_replaces_the_running_process(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, SLEEPER)

    async def scenario() -> None:
        first = await supervisor.start(45009)
        second = await supervisor.restart(45010)
        try:
            assert first.exited.is_set()
            assert second is not first
            assert second.port == 45010
            assert supervisor.state == ServerState.STARTING
        finally:
            await supervisor.stop()

    asyncio.run(scenario())


def test_spawn_failure_raises_spawn_error(tmp_path: Path) -> None:
    supervisor = ServerProcessSupervisor(
        command=[str(tmp_path / "missing-server-binary")],
        paths=_paths(tmp_path),
        snapshot=EnvironmentSnapshot(),
        inherited_env={},
    )

    async def scenario() -> None:
        with pytest.raises(SpawnError):
            await supervisor.start(45011)
        assert supervisor.state == ServerState.CRASHED
        assert supervisor.handle is None

    asyncio.run(scenario())


@pytest.mark.skipif(os.name == "nt", reason="SIGTERM handling is POSIX-only")
def test_stop_escalates_to_kill_when_term_is_ignored(tmp_path: Path) -> None:
    script = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ignoring', flush=True); time.sleep(60)"
    )
    supervisor = _supervisor(tmp_path, script, stop_grace_seconds=0.3)

    async def scenario() -> None:
        handle = await supervisor.start(45012)
        await _wait_for_output(supervisor, "ignoring")
        await asyncio.wait_for(supervisor.stop(), timeout=10)
        assert supervisor.state == ServerState.STOPPED
        assert handle.process.returncode is not None
        assert handle.process.returncode < 0

    asyncio.run(scenario())


def test_diagnostics_limit_returns_most_recent_lines(tmp_path: Path) -> None:
    script = "import sys\nfor i in range(30): print(f'line-{i:02d}', flush=True)\nsys.exit(0)"
    supervisor = _supervisor(tmp_path, script, diagnostic_buffer_lines=20)

    async def scenario() -> None:
        handle = await supervisor.start(45013)
        await asyncio.wait_for(handle.exited.wait(), timeout=10)

    asyncio.run(scenario())

    assert len(supervisor.diagnostics()) == 20
    assert supervisor.diagnostics(3) == ["line-27", "line-28", "line-29"]
    assert supervisor.diagnostics(0) == []


# The helper inherits stdout/stderr, so the pipes stay open after the server exits.
LEAVES_HELPER_BEHIND = (
    "import subprocess, sys\n"
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print('spawned helper', flush=True)\n"
    "print('fatal: config missing', file=sys.stderr, flush=True)\n"
    "sys.exit(3)\n"
)


@pytest.mark.skipif(os.name == "nt", reason="process groups are POSIX-only")
def test_exit_is_reported_while_helper_still_holds_output_pipes(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, LEAVES_HELPER_BEHIND)

    async def scenario() -> None:
        handle = await supervisor.start(45015)
        await asyncio.wait_for(handle.exited.wait(), timeout=5)

        assert supervisor.state == ServerState.CRASHED
        assert handle.exit_code == 3
        assert "spawned helper" in supervisor.diagnostics()
        assert "fatal: config missing" in supervisor.diagnostics()

    asyncio.run(scenario())


@pytest.mark.skipif(os.name == "nt", reason="process groups are POSIX-only")
def test_health_poller_reports_crash_while_helper_still_holds_output_pipes(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, LEAVES_HELPER_BEHIND)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    async def scenario() -> None:
        await supervisor.start(45016)
        poller = HealthCheckPoller(
            supervisor,
            port=45016,
            timeout_seconds=20.0,
            interval_seconds=0.02,
            probe_timeout_seconds=0.5,
            transport=httpx.MockTransport(refused),
        )
        try:
            with pytest.raises(StartupCrashError, match="exited with code 3"):
                await asyncio.wait_for(poller.wait_until_ready(), timeout=10)
        finally:
            await supervisor.stop()
        assert supervisor.state == ServerState.CRASHED

    asyncio.run(scenario())
