"""Logging module for the tunnel."""

from .setup import LOGGER_NAME, setup_logging

__all__ = [
    "LOGGER_NAME",
    "setup_logging",
]
