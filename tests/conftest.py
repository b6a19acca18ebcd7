"""Pytest configuration and fixtures for testing."""

from __future__ import annotations

import logging
import socket
import sys
import threading
from pathlib import Path
from typing import Any, Generator

import pytest

# Make the package importable from a plain checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from tlstunnel.core import reset_buffer_pool
from tlstunnel.testing import EchoUpstream, TestCertificates, generate_test_certificates


@pytest.fixture(autouse=True)
def fresh_buffer_pool() -> Generator[None, None, None]:
    """Give every test its own process-wide buffer pool."""
    reset_buffer_pool()
    yield
    reset_buffer_pool()


@pytest.fixture
def tunnel_logs(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    """Capture everything the tunnel logger emits."""
    caplog.set_level(logging.DEBUG, logger="tlstunnel")
    return caplog


# =============================================================================
# TLS fixtures
# =============================================================================


@pytest.fixture(scope="session")
def certificates(tmp_path_factory: pytest.TempPathFactory) -> TestCertificates:
    return generate_test_certificates(tmp_path_factory.mktemp("certs"))


@pytest.fixture
def tls_upstream(certificates: TestCertificates) -> Generator[EchoUpstream, None, None]:
    with EchoUpstream(ssl_context=certificates.server_context()) as upstream:
        yield upstream


@pytest.fixture
def plain_upstream() -> Generator[EchoUpstream, None, None]:
    with EchoUpstream() as upstream:
        yield upstream


# =============================================================================
# Socket helpers
# =============================================================================


def unused_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def recv_exactly(sock: socket.socket, size: int, timeout: float = 5.0) -> bytes:
    sock.settimeout(timeout)
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


def start_thread(target: Any, *args: Any) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def disconnect_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [r for r in caplog.records if "disconnected" in r.getMessage()]
