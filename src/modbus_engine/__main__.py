"""Command-line entry point for the Modbus server."""

from __future__ import annotations

import argparse
from pathlib import Path

from .config import ConfigurationError
from .server import run_from_cli


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a Modbus RTU/TCP server from a YAML file")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("server.yaml"),
        help="Path to the server configuration file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level (frame dumps need 'debug: true' in the file)",
    )
    args = parser.parse_args()
    try:
        run_from_cli(args.config, verbose=args.verbose)
    except ConfigurationError as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    main()
