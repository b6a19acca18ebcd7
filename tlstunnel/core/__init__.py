"""Core module initialization."""

from .accept_loop import AcceptLoop
from .buffer_pool import BUFFER_SIZE, BufferPool, get_buffer_pool, reset_buffer_pool
from .dialer import UpstreamDialer, build_client_context, parse_tls_version
from .exceptions import (
    AcceptError,
    ActivationError,
    BindError,
    ConfigurationError,
    DialError,
    IdleTimeoutError,
    RelayIOError,
    TunnelError,
)
from .idle_timeout import IdleTimeoutConn
from .listener import (
    Activated,
    ListenerSource,
    Manual,
    acquire_listener,
    detect_listener_source,
)
from .ports import allocate_free_port
from .relay import RelayPair, relay

__all__ = [
    "AcceptError",
    "AcceptLoop",
    "Activated",
    "ActivationError",
    "BUFFER_SIZE",
    "BindError",
    "BufferPool",
    "ConfigurationError",
    "DialError",
    "IdleTimeoutConn",
    "IdleTimeoutError",
    "ListenerSource",
    "Manual",
    "RelayIOError",
    "RelayPair",
    "TunnelError",
    "UpstreamDialer",
    "acquire_listener",
    "allocate_free_port",
    "build_client_context",
    "detect_listener_source",
    "get_buffer_pool",
    "parse_tls_version",
    "relay",
    "reset_buffer_pool",
]
