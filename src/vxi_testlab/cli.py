"""Command-line front end: port discovery and a link smoke test."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .client import Vxi11Client
from .config import LOG_LEVELS, ClientSettings, ConfigurationError, load_config
from .errors import Vxi11Error
from .portmapper import find_ports

LOGGER = logging.getLogger(__name__)

PROG_NAME = "vxi-testlab"


def show_ports(host: str, settings: ClientSettings) -> None:
    pmap = settings.portmapper
    ports = find_ports(host, pmap_port=pmap.port, timeout=pmap.timeout)
    print(f"Core: {ports.core}, Abort: {ports.abort}, IRQ: {ports.irq}")


def run_link_test(host: str, settings: ClientSettings) -> None:
    """Open a client, create and destroy one link, then close."""

    link_cfg = settings.link
    client = Vxi11Client(host, settings).open()
    try:
        link = client.create_link(
            link_cfg.device,
            link_cfg.client_id,
            link_cfg.lock_device,
            link_cfg.lock_timeout,
        )
        link.destroy()
    finally:
        client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="A utility for remote control of test and measurement equipment",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        type=str.upper,
        default=None,
        help="Override the configured log level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    showports = subparsers.add_parser("showports", help="Show VXI-11 ports for given host")
    showports.add_argument("host")

    test = subparsers.add_parser("test", help="Create and destroy a link (development check)")
    test.add_argument("host")
    test.add_argument("--device", default=None, help="Device name, e.g. inst0")
    test.add_argument("--client-id", type=int, default=None, help="Client identifier")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_config(args.config) if args.config else ClientSettings()
    except ConfigurationError as exc:
        print(f"{PROG_NAME}: {exc}", file=sys.stderr)
        return 1

    level = args.log_level or settings.logging.level
    logging.basicConfig(level=getattr(logging, level), format="[%(asctime)s] %(levelname)s %(message)s")

    if args.command == "test":
        if args.device is not None:
            settings.link.device = args.device
        if args.client_id is not None:
            settings.link.client_id = args.client_id

    try:
        if args.command == "showports":
            show_ports(args.host, settings)
        else:
            run_link_test(args.host, settings)
    except (Vxi11Error, ValueError) as exc:
        LOGGER.debug("Command %s failed", args.command, exc_info=True)
        print(f"{PROG_NAME}: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
