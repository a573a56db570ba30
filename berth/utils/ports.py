"""Host port allocation."""

from __future__ import annotations

import errno
import socket
from typing import Iterable

import structlog

logger = structlog.get_logger()

_MAX_ATTEMPTS = 20


def get_free_port(host: str = "0.0.0.0", *, exclude: Iterable[int] = ()) -> int:
    """Ask the OS for a free TCP port.

    The test socket is released before returning, so the port is free "at
    the moment of asking" only. Ports in ``exclude`` are never returned.
    """
    excluded = set(exclude)
    for _ in range(_MAX_ATTEMPTS):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, 0))
            port = s.getsockname()[1]
        if port not in excluded:
            return port
        logger.debug("ports.excluded_port_skipped", port=port)
    raise RuntimeError("Could not allocate a free port")


def check_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """Check whether ``port`` can be bound right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                return False
            raise
    return True
