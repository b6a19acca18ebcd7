"""TLS dialing of the fixed upstream."""

from __future__ import annotations

import logging
import socket
import ssl
from typing import TYPE_CHECKING, Optional

from .exceptions import ConfigurationError, DialError

if TYPE_CHECKING:
    from ..config import TunnelConfig

logger = logging.getLogger("tlstunnel")

TLS_VERSIONS = {
    "TLSv1_2": ssl.TLSVersion.TLSv1_2,
    "TLSv1_3": ssl.TLSVersion.TLSv1_3,
}
DEFAULT_MIN_TLS_VERSION = "TLSv1_2"


def parse_tls_version(value: str) -> ssl.TLSVersion:
    """Map a config string such as ``TLSv1_2`` or ``1.3`` to a TLSVersion."""
    digits = str(value).strip().upper().replace(".", "_")
    digits = digits.replace("TLSV", "").replace("TLS", "")
    normalized = f"TLSv{digits}"
    if normalized not in TLS_VERSIONS:
        raise ConfigurationError(
            f"unsupported minimum TLS version {value!r}; "
            f"expected one of {', '.join(TLS_VERSIONS)}"
        )
    return TLS_VERSIONS[normalized]


def build_client_context(min_version: ssl.TLSVersion) -> ssl.SSLContext:
    """Default-trust client context with a protocol floor."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    context.minimum_version = min_version
    return context


class UpstreamDialer:
    """Open a fresh TLS connection to the upstream for every call."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        min_tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2,
        timeout: Optional[float] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        if ssl_context is None:
            ssl_context = build_client_context(min_tls_version)
        elif ssl_context.minimum_version < min_tls_version:
            ssl_context.minimum_version = min_tls_version
        self.ssl_context = ssl_context

    @classmethod
    def from_config(
        cls,
        config: "TunnelConfig",
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> "UpstreamDialer":
        return cls(
            config.remote_host,
            config.remote_port,
            min_tls_version=parse_tls_version(config.min_tls_version),
            timeout=config.dial_timeout,
            ssl_context=ssl_context,
        )

    @property
    def remote(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def dial(self) -> ssl.SSLSocket:
        """Connect and complete the TLS handshake.

        Raises:
            DialError: The upstream is unreachable or the handshake failed.
        """
        try:
            raw = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except (OSError, ValueError) as exc:
            raise DialError(f"dial {self.remote}: {exc}", remote=self.remote) from exc

        try:
            raw.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

        try:
            conn = self.ssl_context.wrap_socket(raw, server_hostname=self.host)
        except (OSError, ValueError) as exc:
            raw.close()
            raise DialError(
                f"tls handshake with {self.remote}: {exc}", remote=self.remote
            ) from exc

        # The handshake is bounded by the dial timeout; relaying is not.
        conn.settimeout(None)
        logger.debug(
            "Upstream %s connected using %s", self.remote, conn.version()
        )
        return conn

    __call__ = dial
