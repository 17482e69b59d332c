"""Command-line entry point of the relay."""

from __future__ import annotations

import argparse
import logging
import sys
import time

from chatrelay.bridgemap import BridgeMap
from chatrelay.config import Config, ConfigError
from chatrelay.gateway import GatewayError
from chatrelay.router import Router
from chatrelay.version import GIT_HASH, RELEASE, is_development_release

# Protocol bridgers register themselves here.
FULL_MAP = BridgeMap()

_FORMAT = "[%(asctime)s] %(levelname)-7s %(name)13s: %(message)s"
_DEBUG_FORMAT = _FORMAT + " [%(funcName)s:%(filename)s:%(lineno)d]"


def setup_logging(debug: bool = False) -> logging.Logger:
    """Configure the package logger to write to standard output."""
    root = logging.getLogger("chatrelay")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(_DEBUG_FORMAT if debug else _FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    )
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False
    if debug:
        root.getChild("main").info("Enabling debug logging.")
    return root


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay", description="Relay messages between chat services."
    )
    parser.add_argument("-conf", "--conf", default="chatrelay.toml", help="config file")
    parser.add_argument("-debug", "--debug", action="store_true", help="enable debug")
    parser.add_argument("-version", "--version", action="store_true", help="show version")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the relay; return the process exit status."""
    import os

    args = _parser().parse_args(argv)
    if args.version:
        print(f"version: {RELEASE} {GIT_HASH}")
        return 0

    logger = setup_logging(args.debug or os.environ.get("DEBUG") == "1").getChild("main")
    logger.info("Running version %s %s", RELEASE, GIT_HASH)
    if is_development_release():
        logger.warning("WARNING: THIS IS A DEVELOPMENT VERSION. Things may break.")

    try:
        config = Config.from_file(args.conf)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    config.general.debug = args.debug

    try:
        router = Router(config, FULL_MAP)
        router.start()
    except (GatewayError, ConfigError) as exc:
        logger.error("Starting gateway failed: %s", exc)
        return 1
    logger.info("Gateway(s) started successfully. Now relaying messages")

    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        router.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())