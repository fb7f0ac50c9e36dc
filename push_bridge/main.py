"""
Bridge entry point.

Loads configuration, configures logging, and starts the bridge.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .bridge import PushBridge
from .config import load_config
from .push import generate_vapid_keys


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def print_vapid_keys() -> None:
    public, private = generate_vapid_keys()
    print("Add these to the bridge environment:\n")
    print(f"VAPID_PUBLIC_KEY={public}")
    print(f"VAPID_PRIVATE_KEY={private}")
    print("\nThe public key is served to clients; keep the private key secret.")


def run() -> None:
    """CLI entry point for the bridge."""
    parser = argparse.ArgumentParser(description="Relay → Web Push notification bridge")
    parser.add_argument(
        "-c", "--config",
        default="push-bridge.yaml",
        help="Path to configuration file (default: push-bridge.yaml)",
    )
    parser.add_argument(
        "--generate-vapid",
        action="store_true",
        help="Print a new VAPID key pair and exit",
    )
    args = parser.parse_args()

    if args.generate_vapid:
        print_vapid_keys()
        return

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info(
        "bridge.config_loaded",
        config_path=args.config,
        port=config.server.port,
        dedup_retention=config.dedup.retention_seconds,
    )

    bridge = PushBridge(config)
    try:
        asyncio.run(bridge.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
