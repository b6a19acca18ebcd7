"""Accept loop: pairs each downstream connection with a fresh upstream."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Callable, Optional

from .buffer_pool import BufferPool
from .exceptions import AcceptError, DialError
from .relay import RelayPair, format_address

logger = logging.getLogger("tlstunnel")

DEFAULT_ACCEPT_TIMEOUT = 1.0


def _set_nodelay(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError:
        pass


def _close_quietly(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError:
        pass


class AcceptLoop:
    """Own the listener and spawn one relay per accepted connection.

    ``dial`` is called once per accepted connection and must return a
    connected upstream socket or raise :class:`DialError`. A failed dial halts
    the whole loop unless ``halt_on_dial_error`` is False. Accept failures are
    logged and the loop keeps going. Stopping the loop does not interrupt
    relays that are already running.
    """

    def __init__(
        self,
        listener: socket.socket,
        dial: Callable[[], Any],
        *,
        idle_timeout: Optional[float] = None,
        halt_on_dial_error: bool = True,
        accept_timeout: float = DEFAULT_ACCEPT_TIMEOUT,
        pool: Optional[BufferPool] = None,
    ) -> None:
        self.listener = listener
        self.dial = dial
        self.idle_timeout = idle_timeout
        self.halt_on_dial_error = halt_on_dial_error
        self.accept_timeout = accept_timeout
        self.pool = pool

        self.accepted = 0
        self.dial_failures = 0
        self._stop_event = threading.Event()
        self._relay_threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()

    # ------------------------------------------------------------------

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def active_relays(self) -> int:
        with self._threads_lock:
            return sum(1 for thread in self._relay_threads if thread.is_alive())

    # ------------------------------------------------------------------

    def accept_once(self) -> Optional[tuple[socket.socket, Any]]:
        """Accept one connection, or return None if the wait timed out.

        Raises:
            AcceptError: The accept call failed.
        """
        try:
            conn, addr = self.listener.accept()
        except socket.timeout:
            return None
        except OSError as exc:
            raise AcceptError(str(exc)) from exc
        conn.settimeout(None)
        _set_nodelay(conn)
        return conn, addr

    def dial_upstream(self) -> Any:
        try:
            return self.dial()
        except DialError:
            raise
        except (OSError, ValueError) as exc:
            raise DialError(str(exc)) from exc

    def run(self, stop_event: Optional[threading.Event] = None) -> bool:
        """Accept until cancelled or halted.

        Returns True when the loop ended because it was asked to stop and
        False when a dial failure halted it.
        """
        if stop_event is not None:
            self._stop_event = stop_event
        self.listener.settimeout(self.accept_timeout)

        while not self._stop_event.is_set():
            try:
                accepted = self.accept_once()
            except AcceptError as exc:
                if self._stop_event.is_set() or self.listener.fileno() < 0:
                    break
                logger.error("error/accept: %s", exc)
                continue
            if accepted is None:
                continue

            downstream, addr = accepted
            self.accepted += 1
            peer = format_address(addr)
            logger.info("conn: %s", peer)

            try:
                upstream = self.dial_upstream()
            except DialError as exc:
                self.dial_failures += 1
                logger.error("conn/%s: %s", peer, exc)
                _close_quietly(downstream)
                if self.halt_on_dial_error:
                    logger.error("Accept loop halted after dial failure")
                    return False
                continue

            self._spawn_relay(downstream, upstream)

        logger.info("Accept loop stopped")
        return True

    def _spawn_relay(self, downstream: socket.socket, upstream: Any) -> None:
        pair = RelayPair(
            downstream,
            upstream,
            pool=self.pool,
            idle_timeout=self.idle_timeout,
        )
        thread = threading.Thread(target=pair.run, daemon=True)
        with self._threads_lock:
            self._relay_threads = [t for t in self._relay_threads if t.is_alive()]
            self._relay_threads.append(thread)
        thread.start()

    def wait_for_relays(self, timeout: Optional[float] = None) -> bool:
        """Join in-flight relays. Returns True if none are left running."""
        with self._threads_lock:
            threads = list(self._relay_threads)
        for thread in threads:
            thread.join(timeout=timeout)
        return not any(thread.is_alive() for thread in threads)
