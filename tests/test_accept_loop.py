"""End-to-end tests for the accept loop."""

import socket
import threading

import pytest

from conftest import disconnect_records, recv_exactly, unused_port
from tlstunnel.config import TunnelConfig
from tlstunnel.core import (
    AcceptLoop,
    DialError,
    UpstreamDialer,
    acquire_listener,
    allocate_free_port,
)


class LoopRunner:
    """Run an AcceptLoop on a background thread and keep its result."""

    def __init__(self, loop: AcceptLoop) -> None:
        self.loop = loop
        self.result = None
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        self.result = self.loop.run()

    def __enter__(self) -> "LoopRunner":
        self.thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.loop.stop()
        self.thread.join(timeout=5)
        self.loop.listener.close()


def _listen():
    port = allocate_free_port()
    listener, label = acquire_listener(port, environ={})
    return listener, port, label


def _connect(port: int) -> socket.socket:
    return socket.create_connection(("127.0.0.1", port), timeout=5)


def test_roundtrip_through_tls_upstream(tls_upstream, certificates, tunnel_logs):
    listener, port, label = _listen()
    assert label == str(port)
    dialer = UpstreamDialer(
        "127.0.0.1", tls_upstream.port, timeout=5, ssl_context=certificates.client_context()
    )
    loop = AcceptLoop(listener, dialer, accept_timeout=0.05)

    with LoopRunner(loop):
        client = _connect(port)
        client.sendall(b"ping")
        assert recv_exactly(client, 4) == b"ping"
        client.close()

        assert tls_upstream.wait_for_closed(1, timeout=5)

    assert loop.wait_for_relays(timeout=5)
    assert bytes(tls_upstream.received) == b"ping"
    messages = [r.getMessage() for r in tunnel_logs.records]
    assert any(m.startswith("conn: 127.0.0.1:") for m in messages)
    assert len(disconnect_records(tunnel_logs)) == 1


def test_serves_concurrent_clients(tls_upstream, certificates):
    listener, port, _label = _listen()
    dialer = UpstreamDialer(
        "127.0.0.1", tls_upstream.port, timeout=5, ssl_context=certificates.client_context()
    )
    loop = AcceptLoop(listener, dialer, accept_timeout=0.05)
    payloads = [f"client-{i}-".encode() * 512 for i in range(4)]
    responses = [b""] * len(payloads)

    def talk(index: int) -> None:
        client = _connect(port)
        client.sendall(payloads[index])
        responses[index] = recv_exactly(client, len(payloads[index]))
        client.close()

    with LoopRunner(loop):
        workers = [threading.Thread(target=talk, args=(i,)) for i in range(len(payloads))]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=10)
        assert tls_upstream.wait_for_closed(len(payloads), timeout=5)

    assert responses == payloads
    assert loop.accepted == len(payloads)
    assert tls_upstream.connections == len(payloads)


def test_dial_failure_halts_the_loop(tunnel_logs):
    listener, port, _label = _listen()
    dialer = UpstreamDialer("127.0.0.1", unused_port(), timeout=2)
    loop = AcceptLoop(listener, dialer, accept_timeout=0.05)

    with LoopRunner(loop) as runner:
        first = _connect(port)
        runner.thread.join(timeout=5)
        assert not runner.thread.is_alive()
        assert runner.result is False

        first.settimeout(5)
        assert first.recv(1) == b""
        first.close()

        # The kernel may still queue the connection, but nobody accepts it.
        second = _connect(port)
        second.close()
        assert loop.accepted == 1
        assert loop.dial_failures == 1

    errors = [r.getMessage() for r in tunnel_logs.records if r.levelname == "ERROR"]
    assert any("Connection refused" in m or "dial 127.0.0.1" in m for m in errors)
    assert any("halted" in m for m in errors)


def test_unencodable_remote_host_halts_the_loop(tunnel_logs):
    listener, port, _label = _listen()
    dialer = UpstreamDialer.from_config(TunnelConfig(remote="bad..host:443", dial_timeout=2))
    loop = AcceptLoop(listener, dialer, accept_timeout=0.05)

    with LoopRunner(loop) as runner:
        client = _connect(port)
        runner.thread.join(timeout=5)
        assert not runner.thread.is_alive()
        assert runner.result is False

        client.settimeout(5)
        assert client.recv(1) == b""
        client.close()

    assert loop.dial_failures == 1
    errors = [r.getMessage() for r in tunnel_logs.records if r.levelname == "ERROR"]
    assert any(m.startswith("conn/127.0.0.1:") and "bad..host:443" in m for m in errors)


def test_dial_value_error_is_wrapped():
    def bad_host():
        raise UnicodeError("label empty or too long")

    listener, _port, _label = _listen()
    loop = AcceptLoop(listener, bad_host)
    with pytest.raises(DialError, match="label empty"):
        loop.dial_upstream()
    listener.close()


def test_keeps_accepting_when_configured(tunnel_logs):
    listener, port, _label = _listen()
    dialer = UpstreamDialer("127.0.0.1", unused_port(), timeout=2)
    loop = AcceptLoop(listener, dialer, accept_timeout=0.05, halt_on_dial_error=False)

    with LoopRunner(loop) as runner:
        for _ in range(2):
            client = _connect(port)
            client.settimeout(5)
            assert client.recv(1) == b""
            client.close()
        assert runner.thread.is_alive()

    assert runner.result is True
    assert loop.accepted == 2
    assert loop.dial_failures == 2


def test_dial_os_error_is_wrapped():
    def refuse():
        raise ConnectionRefusedError("refused")

    listener, _port, _label = _listen()
    loop = AcceptLoop(listener, refuse)
    with pytest.raises(DialError, match="refused"):
        loop.dial_upstream()
    listener.close()


def test_stop_ends_loop_without_connections():
    listener, _port, _label = _listen()
    loop = AcceptLoop(listener, lambda: None, accept_timeout=0.05)
    stop_event = threading.Event()
    result = []
    thread = threading.Thread(target=lambda: result.append(loop.run(stop_event)))
    thread.start()
    stop_event.set()
    thread.join(timeout=5)
    listener.close()
    assert result == [True]


def test_stop_does_not_abort_running_relays(tls_upstream, certificates):
    listener, port, _label = _listen()
    dialer = UpstreamDialer(
        "127.0.0.1", tls_upstream.port, timeout=5, ssl_context=certificates.client_context()
    )
    loop = AcceptLoop(listener, dialer, accept_timeout=0.05)

    with LoopRunner(loop):
        client = _connect(port)
        client.sendall(b"before")
        assert recv_exactly(client, 6) == b"before"

    assert loop.active_relays == 1
    client.sendall(b"after")
    assert recv_exactly(client, 5) == b"after"
    client.close()
    assert loop.wait_for_relays(timeout=5)
    assert loop.active_relays == 0


class FlakyListener:
    """Listener stand-in whose first accept fails."""

    def __init__(self, real: socket.socket) -> None:
        self.real = real
        self.calls = 0

    def settimeout(self, timeout):
        self.real.settimeout(timeout)

    def fileno(self):
        return self.real.fileno()

    def accept(self):
        self.calls += 1
        if self.calls == 1:
            raise OSError(24, "Too many open files")
        return self.real.accept()

    def close(self):
        self.real.close()


def test_accept_error_is_logged_and_loop_continues(tls_upstream, certificates, tunnel_logs):
    real, port, _label = _listen()
    dialer = UpstreamDialer(
        "127.0.0.1", tls_upstream.port, timeout=5, ssl_context=certificates.client_context()
    )
    loop = AcceptLoop(FlakyListener(real), dialer, accept_timeout=0.05)

    with LoopRunner(loop) as runner:
        client = _connect(port)
        client.sendall(b"still up")
        assert recv_exactly(client, 8) == b"still up"
        client.close()
        assert runner.thread.is_alive()

    assert any(
        r.getMessage().startswith("error/accept:") and "Too many open files" in r.getMessage()
        for r in tunnel_logs.records
    )
