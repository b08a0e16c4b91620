from __future__ import annotations

import socket

from pilot_core.environment import LOOPBACK_HOST
from pilot_core.errors import PortAllocationError


def allocate_loopback_port(host: str = LOOPBACK_HOST) -> int:
    """Return a port the OS just handed out on ``host``.

    The listening socket is closed before returning so the server child can
    bind the same port. Another process could grab it in between; that race
    is accepted.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            port = int(sock.getsockname()[1])
    except OSError as exc:
        raise PortAllocationError(f"Failed to get a free port on {host}: {exc}") from exc
    if port <= 0:
        raise PortAllocationError(f"Failed to get a free port on {host}")
    return port
