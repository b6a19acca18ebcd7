"""Logging configuration for the tunnel."""

import logging
import sys

LOGGER_NAME = "tlstunnel"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Set up logging with proper handlers and formatters."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    # Clear any existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level.upper())

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Records still reach the root logger (pytest's caplog hooks in there)
    logger.propagate = True

    return logger
