"""Per-operation idle timeout for relay connections."""

from __future__ import annotations

import socket
from typing import Any, Optional

from .exceptions import IdleTimeoutError


class IdleTimeoutConn:
    """Wrap a socket so each read or write must make progress within ``timeout``.

    The timeout is re-armed before every operation, so any activity resets the
    clock. A stalled operation raises :class:`IdleTimeoutError`; every other
    socket error propagates unchanged. The wrapper adds no buffering and
    closing it closes the wrapped socket.
    """

    def __init__(self, conn: socket.socket, timeout: float) -> None:
        if timeout <= 0:
            raise ValueError("idle timeout must be positive")
        self.conn = conn
        self.timeout = timeout

    def _arm(self) -> None:
        self.conn.settimeout(self.timeout)

    def _timed_out(self, operation: str) -> IdleTimeoutError:
        return IdleTimeoutError(
            f"{operation} made no progress within {self.timeout:g}s"
        )

    def recv(self, bufsize: int) -> bytes:
        self._arm()
        try:
            return self.conn.recv(bufsize)
        except socket.timeout as exc:
            raise self._timed_out("read") from exc

    def recv_into(self, buffer: Any, nbytes: Optional[int] = None) -> int:
        self._arm()
        try:
            if nbytes is None:
                return self.conn.recv_into(buffer)
            return self.conn.recv_into(buffer, nbytes)
        except socket.timeout as exc:
            raise self._timed_out("read") from exc

    def send(self, data: Any) -> int:
        self._arm()
        try:
            return self.conn.send(data)
        except socket.timeout as exc:
            raise self._timed_out("write") from exc

    def sendall(self, data: Any) -> None:
        self._arm()
        try:
            self.conn.sendall(data)
        except socket.timeout as exc:
            raise self._timed_out("write") from exc

    def shutdown(self, how: int) -> None:
        self.conn.shutdown(how)

    def close(self) -> None:
        self.conn.close()

    def fileno(self) -> int:
        return self.conn.fileno()

    def getpeername(self) -> Any:
        return self.conn.getpeername()

    def getsockname(self) -> Any:
        return self.conn.getsockname()

    def gettimeout(self) -> Optional[float]:
        return self.conn.gettimeout()

    def __enter__(self) -> "IdleTimeoutConn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"IdleTimeoutConn({self.conn!r}, timeout={self.timeout!r})"
