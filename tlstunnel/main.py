"""Command-line entry point for the TLS tunnel.

Usage:
  tlstunnel -t backend.example.com:443 [-l 7000] [--idle-timeout 300]

Accepts plaintext TCP on 127.0.0.1 (or a socket handed over by a supervisor)
and relays each connection to the remote over TLS.
"""

from __future__ import annotations

import argparse
import signal
import threading
from typing import Optional, Sequence

from .config import build_config
from .config_loader import load_config
from .core import (
    AcceptLoop,
    ActivationError,
    BindError,
    ConfigurationError,
    Manual,
    UpstreamDialer,
    acquire_listener,
    allocate_free_port,
    detect_listener_source,
)
from .logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tlstunnel",
        description="Relay local plaintext TCP connections to a TLS upstream",
    )
    parser.add_argument(
        "-l",
        "--listen-port",
        type=int,
        default=None,
        help="Raw TCP port to listen on (default: auto-allocate)",
    )
    parser.add_argument(
        "-t",
        "--remote",
        default=None,
        help="Which TCP socket, that can be a TLS socket, to proxy (host:port)",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Close a session when a read or write makes no progress for N seconds",
    )
    parser.add_argument(
        "--min-tls",
        dest="min_tls_version",
        default=None,
        help="Minimum TLS version for the upstream (TLSv1_2 or TLSv1_3)",
    )
    parser.add_argument(
        "--dial-timeout",
        type=float,
        default=None,
        help="Seconds allowed for connecting and handshaking with the upstream",
    )
    parser.add_argument(
        "--accept-timeout",
        type=float,
        default=None,
        help="Server accept timeout in seconds (default: 1.0)",
    )
    parser.add_argument(
        "--keep-accepting",
        dest="halt_on_dial_error",
        action="store_false",
        default=None,
        help="Keep accepting connections after an upstream dial failure",
    )
    parser.add_argument("--log-level", default=None)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logger = setup_logging()

    try:
        config = build_config(
            load_config(args.config),
            cli_overrides={
                "listen_port": args.listen_port,
                "remote": args.remote,
                "idle_timeout": args.idle_timeout,
                "min_tls_version": args.min_tls_version,
                "dial_timeout": args.dial_timeout,
                "accept_timeout": args.accept_timeout,
                "halt_on_dial_error": args.halt_on_dial_error,
                "log_level": args.log_level,
            },
        )
    except ConfigurationError as exc:
        logger.critical("%s", exc.message)
        return 1

    logger = setup_logging(config.log_level)

    source = detect_listener_source(config.listen_port)
    try:
        if isinstance(source, Manual) and config.listen_port == 0:
            config = config.with_listen_port(allocate_free_port())
            source = Manual(port=config.listen_port)
        listener, label = acquire_listener(config.listen_port)
    except (ActivationError, BindError) as exc:
        logger.critical("failed to listen socket %s: %s", source.label, exc.message)
        return 1

    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame) -> None:
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.info("Shutdown requested (signal=%s)", signum)
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _handle_signal)
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("listening on port %s", label)
    logger.info("Forwarding to %s over TLS", config.remote)

    loop = AcceptLoop(
        listener,
        UpstreamDialer.from_config(config),
        idle_timeout=config.idle_timeout,
        halt_on_dial_error=config.halt_on_dial_error,
        accept_timeout=config.accept_timeout,
    )

    try:
        with listener:
            stopped = loop.run(stop_event)
        if not stopped:
            return 1
        if loop.active_relays:
            logger.info("Waiting for %d in-flight connections", loop.active_relays)
        loop.wait_for_relays()
    except KeyboardInterrupt:
        logger.warning("Forced shutdown, abandoning in-flight connections")
        return 1
    finally:
        logger.info("Tunnel stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
