"""Bidirectional byte pump between a downstream and an upstream connection."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Optional

from .buffer_pool import BufferPool, get_buffer_pool
from .exceptions import RelayIOError
from .idle_timeout import IdleTimeoutConn

logger = logging.getLogger("tlstunnel")

UPSTREAM = "upstream"
DOWNSTREAM = "downstream"


def format_address(addr: Any) -> str:
    """Render a socket address the way log lines show it."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr)


def peer_address(conn: Any) -> str:
    try:
        return format_address(conn.getpeername())
    except OSError:
        return "unknown"


def _unwrap(conn: Any) -> Any:
    if isinstance(conn, IdleTimeoutConn):
        return conn.conn
    return conn


def _shutdown_and_close(conn: Any) -> None:
    sock = _unwrap(conn)
    try:
        if isinstance(sock, socket.socket):
            # SSLSocket.shutdown drops its TLS object, which races with the
            # reader still blocked on the other direction. Shut the descriptor;
            # the TLS peer therefore sees a transport close, not close_notify.
            socket.socket.shutdown(sock, socket.SHUT_RDWR)
        else:
            sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


class RelayPair:
    """One proxied session: a downstream and an upstream connection.

    Both connections must already be open. ``run`` copies bytes in both
    directions until either side reaches EOF or fails. Whichever direction
    finishes first tears the session down: it logs the error (if any), closes
    both connections and logs the disconnect. The other direction's
    completion is discarded, so each pair produces exactly one teardown.
    """

    def __init__(
        self,
        downstream: Any,
        upstream: Any,
        *,
        pool: Optional[BufferPool] = None,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self.downstream_addr = peer_address(downstream)
        self.upstream_addr = peer_address(upstream)
        if idle_timeout:
            downstream = IdleTimeoutConn(downstream, idle_timeout)
            upstream = IdleTimeoutConn(upstream, idle_timeout)
        self.downstream = downstream
        self.upstream = upstream
        self.pool = pool if pool is not None else get_buffer_pool()
        self.idle_timeout = idle_timeout

        self.bytes_sent = 0
        self.bytes_received = 0
        self.error: Optional[RelayIOError] = None
        self.teardowns = 0

        self._teardown_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self) -> None:
        """Relay until both directions have terminated."""
        reverse = threading.Thread(
            target=self._copy,
            args=(self.upstream, self.downstream, DOWNSTREAM),
            daemon=True,
        )
        reverse.start()
        self._copy(self.downstream, self.upstream, UPSTREAM)
        reverse.join()

    def _copy(self, src: Any, dst: Any, direction: str) -> None:
        total = 0
        error: Optional[RelayIOError] = None
        try:
            with self.pool.borrow() as buf, memoryview(buf) as view:
                while True:
                    n = src.recv_into(buf)
                    if not n:
                        break
                    dst.sendall(view[:n])
                    total += n
        except RelayIOError as exc:
            if exc.direction is None:
                exc.direction = direction
            error = exc
        except (OSError, ValueError) as exc:
            error = RelayIOError(f"{direction}: {exc}", direction=direction)
        finally:
            if direction == UPSTREAM:
                self.bytes_sent = total
            else:
                self.bytes_received = total
        self._finish(direction, error)

    def _finish(self, direction: str, error: Optional[RelayIOError]) -> None:
        with self._teardown_lock:
            if self._closed:
                return
            self._closed = True
            self.teardowns += 1

        if error is not None:
            self.error = error
            if error.timeout:
                logger.warning("conn/%s: idle timeout: %s", self.downstream_addr, error)
            else:
                logger.warning("conn/%s: %s", self.downstream_addr, error)

        _shutdown_and_close(self.downstream)
        _shutdown_and_close(self.upstream)
        logger.info("conn/%s: disconnected %s", self.downstream_addr, self.upstream_addr)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "conn/%s: %s finished first (sent=%d bytes, received=%d bytes so far)",
                self.downstream_addr,
                direction,
                self.bytes_sent,
                self.bytes_received,
            )


def relay(
    downstream: Any,
    upstream: Any,
    *,
    pool: Optional[BufferPool] = None,
    idle_timeout: Optional[float] = None,
) -> RelayPair:
    """Run a relay between ``downstream`` and ``upstream`` to completion."""
    pair = RelayPair(downstream, upstream, pool=pool, idle_timeout=idle_timeout)
    pair.run()
    return pair
