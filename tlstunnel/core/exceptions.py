"""Core exceptions for the tunnel."""

from typing import Optional


class TunnelError(Exception):
    """Base exception for tunnel errors."""

    timeout = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(TunnelError):
    """Raised when there's an issue with the configuration."""
    pass


class BindError(TunnelError):
    """Raised when a listening socket cannot be created."""
    pass


class ActivationError(TunnelError):
    """Raised when the inherited listening descriptor is unusable."""
    pass


class AcceptError(TunnelError):
    """Raised when a single accept attempt fails."""
    pass


class DialError(TunnelError):
    """Raised when the upstream cannot be reached or the handshake fails."""

    def __init__(self, message: str, remote: Optional[str] = None) -> None:
        super().__init__(message)
        self.remote = remote


class RelayIOError(TunnelError):
    """Raised when copying fails in one direction of a relay."""

    def __init__(self, message: str, direction: Optional[str] = None) -> None:
        super().__init__(message)
        self.direction = direction


class IdleTimeoutError(RelayIOError):
    """Raised when a wrapped connection makes no progress within its idle timeout."""

    timeout = True
