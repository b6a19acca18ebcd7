"""Listening socket acquisition.

The tunnel runs either interactively, binding its own loopback socket, or
under a process supervisor that pre-opens the socket and hands it over as an
inherited descriptor (socket activation). Past this module the two are
indistinguishable except for the label used in log lines.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from .exceptions import ActivationError, BindError
from .ports import LOOPBACK_HOST

logger = logging.getLogger("tlstunnel")

# Environment marker set by the supervisor to the pid it activated.
LISTEN_PID_ENV = "LISTEN_PID"
# First descriptor passed by a supervisor.
LISTEN_FDS_START = 3
ACTIVATED_LABEL = "activated"
DEFAULT_BACKLOG = 128


@dataclass(frozen=True)
class Activated:
    """Listener inherited from a supervising process."""

    fd: int = LISTEN_FDS_START

    @property
    def label(self) -> str:
        return ACTIVATED_LABEL


@dataclass(frozen=True)
class Manual:
    """Listener bound by this process on a loopback port."""

    port: int

    @property
    def label(self) -> str:
        return str(self.port)


ListenerSource = Union[Activated, Manual]


def is_activated(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return True when the activation marker names the current process."""
    if environ is None:
        environ = os.environ
    return environ.get(LISTEN_PID_ENV) == str(os.getpid())


def detect_listener_source(
    port: int,
    environ: Optional[Mapping[str, str]] = None,
    activation_fd: int = LISTEN_FDS_START,
) -> ListenerSource:
    """Decide where the listener comes from without touching any socket."""
    if is_activated(environ):
        return Activated(fd=activation_fd)
    return Manual(port=port)


def _adopt_descriptor(fd: int) -> socket.socket:
    try:
        sock = socket.socket(fileno=fd)
    except OSError as exc:
        raise ActivationError(
            f"descriptor {fd} is not a usable socket: {exc}"
        ) from exc

    try:
        if sock.type != socket.SOCK_STREAM:
            raise ActivationError(f"descriptor {fd} is not a stream socket")
        if not sock.getsockopt(socket.SOL_SOCKET, socket.SO_ACCEPTCONN):
            raise ActivationError(f"descriptor {fd} is not a listening socket")
    except ActivationError:
        sock.close()
        raise
    except OSError as exc:
        sock.close()
        raise ActivationError(
            f"descriptor {fd} could not be inspected: {exc}"
        ) from exc
    return sock


def _bind_manual(host: str, port: int, backlog: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError as exc:
        sock.close()
        raise BindError(f"failed to listen on {host}:{port}: {exc}") from exc
    return sock


def open_listener(
    source: ListenerSource,
    *,
    host: str = LOOPBACK_HOST,
    backlog: int = DEFAULT_BACKLOG,
) -> socket.socket:
    """Materialise the listening socket described by ``source``."""
    if isinstance(source, Activated):
        logger.debug("Adopting inherited listener on descriptor %d", source.fd)
        return _adopt_descriptor(source.fd)
    return _bind_manual(host, source.port, backlog)


def acquire_listener(
    port: int,
    *,
    host: str = LOOPBACK_HOST,
    backlog: int = DEFAULT_BACKLOG,
    activation_fd: int = LISTEN_FDS_START,
    environ: Optional[Mapping[str, str]] = None,
) -> tuple[socket.socket, str]:
    """Return a ready-to-accept listener and its diagnostic label.

    Raises:
        ActivationError: The activation marker is present but the inherited
            descriptor is not a listening stream socket.
        BindError: The manual bind failed.
    """
    source = detect_listener_source(port, environ, activation_fd)
    return open_listener(source, host=host, backlog=backlog), source.label
