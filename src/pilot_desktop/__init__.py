"""Pilot Desktop launcher: supervises the local server and opens its UI."""

from pilot_desktop.app import DesktopApp
from pilot_desktop.health import HealthCheckPoller, ProbeOutcome, ProbeResult
from pilot_desktop.supervisor import ServerHandle, ServerProcessSupervisor, ServerState
from pilot_desktop.window import WindowManager

__all__ = [
    "DesktopApp",
    "HealthCheckPoller",
    "ProbeOutcome",
    "ProbeResult",
    "ServerHandle",
    "ServerProcessSupervisor",
    "ServerState",
    "WindowManager",
]
