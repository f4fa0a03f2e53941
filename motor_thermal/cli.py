"""Command-line interface for motor-thermal."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import MotorThermalApp, Role
from .config import load_config

LOGGER = logging.getLogger(__name__)

ROLE_COMMANDS = {
    "simulate": Role.SIMULATOR,
    "relay": Role.RELAY,
    "run": Role.ALL,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Simulated induction motor thermal monitor and telemetry relay",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("simulate", help="Run the thermal process simulator")
    subparsers.add_parser("relay", help="Run the observer relay")
    subparsers.add_parser("run", help="Run the simulator and relay together")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    role = ROLE_COMMANDS.get(args.command)
    if role is not None:
        MotorThermalApp.start(config, role=role)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}")
        if config.env_overrides:
            print(f"Environment overrides: {', '.join(config.env_overrides)}")
        print()
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "password":
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
