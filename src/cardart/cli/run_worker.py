"""CLI command running the image worker until SIGINT/SIGTERM.

Usage:
    python -m cardart.cli worker [--concurrency N] [--shutdown-timeout SECONDS]

Exit codes: 0 after a clean shutdown, 1 if in-flight jobs had to be cancelled.
"""

import asyncio
import signal
from argparse import Namespace

import structlog

from cardart.core import timezone  # noqa: F401
from cardart.core.config import Settings, configure_logging
from cardart.workers.image_worker import ImageWorker, open_worker_context

logger = structlog.get_logger()


def register(subparsers) -> None:
    parser = subparsers.add_parser("worker", help="Run the image worker")
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Number of concurrent consumers (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        help="Seconds to wait for in-flight jobs on shutdown (default: SHUTDOWN_TIMEOUT_SECONDS)",
    )
    parser.set_defaults(handler=async_main)


async def async_main(args: Namespace) -> int:
    """Run the worker until a termination signal arrives.

    Returns:
        Exit code: 0 (clean shutdown), 1 (forced shutdown or startup error)
    """
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    if args.concurrency:
        settings.worker_concurrency = args.concurrency
    if args.shutdown_timeout is not None:
        settings.shutdown_timeout_seconds = args.shutdown_timeout
    configure_logging(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        context = await open_worker_context(settings)
        worker = ImageWorker(context)
        await worker.start()
    except Exception as e:
        logger.error("cli.worker_start_failed", error=str(e), error_type=type(e).__name__)
        return 1

    await stop.wait()
    logger.info("cli.worker_stopping", signal_received=True)

    clean = await worker.shutdown(settings.shutdown_timeout_seconds)
    return 0 if clean else 1
