"""CLI entry point for cardart.cli.

Usage:
    python -m cardart.cli worker
    python -m cardart.cli reprocess [OPTIONS]
    python -m cardart.cli queue-status [--pause | --resume] [--clean HOURS] [--clear]
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

from cardart.cli import queue_status, reprocess, run_worker


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="python -m cardart.cli",
        description="Card image pipeline operations",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_worker.register(subparsers)
    reprocess.register(subparsers)
    queue_status.register(subparsers)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry point for CLI."""
    args = parse_args(argv)
    sys.exit(asyncio.run(args.handler(args)))


if __name__ == "__main__":
    main()
