"""Local plaintext TCP to TLS tunnel."""

__version__ = "0.1.0"

from .config import TunnelConfig, build_config
from .core import AcceptLoop, RelayPair, UpstreamDialer, acquire_listener, relay

__all__ = [
    "AcceptLoop",
    "RelayPair",
    "TunnelConfig",
    "UpstreamDialer",
    "acquire_listener",
    "build_config",
    "relay",
]
