"""Ephemeral port allocation."""

from __future__ import annotations

import socket

from .exceptions import BindError

LOOPBACK_HOST = "127.0.0.1"


def allocate_free_port(host: str = LOOPBACK_HOST) -> int:
    """Ask the kernel for a free TCP port on ``host``.

    A probe socket is bound to port 0, the assigned port is read back and the
    probe is closed again. Another process may claim the port between the
    probe closing and the caller binding it; the window is short and this is a
    local tool, so that race is accepted.

    Raises:
        BindError: If the socket cannot be created or the address resolved.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind((host, 0))
            return probe.getsockname()[1]
    except OSError as exc:
        raise BindError(f"failed to find free port: {exc}") from exc
