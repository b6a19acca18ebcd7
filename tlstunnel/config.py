"""Immutable runtime configuration for the tunnel.

Values are merged from, lowest to highest precedence: built-in defaults, the
``tunnel`` section of the YAML config file, ``TLSTUNNEL_*`` environment
variables and command-line flags. The result is built once at startup and
passed explicitly to the listener, dialer and accept loop.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from .core.accept_loop import DEFAULT_ACCEPT_TIMEOUT
from .core.dialer import DEFAULT_MIN_TLS_VERSION, parse_tls_version
from .core.exceptions import ConfigurationError

DEFAULT_DIAL_TIMEOUT = 30.0

ENV_OVERRIDES = {
    "listen_port": "TLSTUNNEL_LISTEN_PORT",
    "remote": "TLSTUNNEL_REMOTE",
    "idle_timeout": "TLSTUNNEL_IDLE_TIMEOUT",
    "min_tls_version": "TLSTUNNEL_MIN_TLS_VERSION",
    "dial_timeout": "TLSTUNNEL_DIAL_TIMEOUT",
    "log_level": "TLSTUNNEL_LOG_LEVEL",
}

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def split_host_port(remote: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6addr]:port``) into its parts."""
    remote = remote.strip()
    host, sep, port_str = remote.rpartition(":")
    if not sep or not host:
        raise ConfigurationError(f"remote address {remote!r} must be host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_str)
    except ValueError as exc:
        raise ConfigurationError(f"invalid port in remote address {remote!r}") from exc
    if not 0 < port < 65536:
        raise ConfigurationError(f"port out of range in remote address {remote!r}")
    return host, port


def _normalize_timeout(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number of seconds, got {value!r}") from exc
    if timeout < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return timeout or None


def _normalize_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class TunnelConfig:
    """Startup configuration; never mutated once built."""

    remote: str
    listen_port: int = 0
    idle_timeout: Optional[float] = None
    min_tls_version: str = DEFAULT_MIN_TLS_VERSION
    dial_timeout: Optional[float] = DEFAULT_DIAL_TIMEOUT
    accept_timeout: float = DEFAULT_ACCEPT_TIMEOUT
    halt_on_dial_error: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.remote:
            raise ConfigurationError("missing tcp socket to connect")
        split_host_port(self.remote)
        if not 0 <= self.listen_port < 65536:
            raise ConfigurationError(f"listen port {self.listen_port} out of range")
        parse_tls_version(self.min_tls_version)
        if self.accept_timeout <= 0:
            raise ConfigurationError("accept_timeout must be positive")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError(f"unknown log level {self.log_level!r}")

    @property
    def remote_host(self) -> str:
        return split_host_port(self.remote)[0]

    @property
    def remote_port(self) -> int:
        return split_host_port(self.remote)[1]

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "TunnelConfig":
        """Build a config from loosely typed values (YAML, env, CLI)."""
        try:
            listen_port = int(values.get("listen_port") or 0)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"listen_port must be an integer, got {values.get('listen_port')!r}"
            ) from exc

        dial_timeout = values.get("dial_timeout", DEFAULT_DIAL_TIMEOUT)
        accept_timeout = _normalize_timeout(
            values.get("accept_timeout", DEFAULT_ACCEPT_TIMEOUT), "accept_timeout"
        )
        return cls(
            remote=str(values.get("remote") or ""),
            listen_port=listen_port,
            idle_timeout=_normalize_timeout(values.get("idle_timeout"), "idle_timeout"),
            min_tls_version=str(values.get("min_tls_version") or DEFAULT_MIN_TLS_VERSION),
            dial_timeout=_normalize_timeout(dial_timeout, "dial_timeout"),
            accept_timeout=accept_timeout or DEFAULT_ACCEPT_TIMEOUT,
            halt_on_dial_error=_normalize_bool(
                values.get("halt_on_dial_error", True), "halt_on_dial_error"
            ),
            log_level=str(values.get("log_level") or "INFO").upper(),
        )

    def with_listen_port(self, port: int) -> "TunnelConfig":
        """Copy of this config bound to a concrete port."""
        return replace(self, listen_port=port)


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Collect ``TLSTUNNEL_*`` overrides that are set and non-empty."""
    if environ is None:
        environ = os.environ
    overrides: dict[str, str] = {}
    for key, env_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            overrides[key] = value
    return overrides


def build_config(
    file_config: Optional[Mapping[str, Any]] = None,
    cli_overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> TunnelConfig:
    """Merge every configuration source into a TunnelConfig."""
    merged: dict[str, Any] = {}
    section = (file_config or {}).get("tunnel") or {}
    if not isinstance(section, Mapping):
        raise ConfigurationError("'tunnel' section of the config file must be a mapping")
    merged.update(section)
    merged.update(env_overrides(environ))
    merged.update(
        {key: value for key, value in (cli_overrides or {}).items() if value is not None}
    )
    logging.getLogger("tlstunnel").debug(
        "Effective settings: %s",
        {key: merged[key] for key in sorted(merged)},
    )
    return TunnelConfig.from_mapping(merged)
