"""CLI command showing and administering the image queue.

Usage:
    python -m cardart.cli queue-status [--pause | --resume] [--clean HOURS] [--clear] [--failed N]

Examples:
    # Counts per state
    python -m cardart.cli queue-status

    # Stop handing out jobs (workers stay up)
    python -m cardart.cli queue-status --pause

    # Drop finished jobs older than 24 hours
    python -m cardart.cli queue-status --clean 24

    # Show the 5 most recent failed jobs
    python -m cardart.cli queue-status --failed 5
"""

import sys
from argparse import Namespace
from datetime import timedelta

import structlog

from cardart.core import timezone  # noqa: F401
from cardart.core.config import Settings, configure_logging
from cardart.core.database import setup_db_session
from cardart.core.timezone import utc_now
from cardart.models.image_job import JobStatus
from cardart.uow import create_uow_factory
from cardart.workers.image_worker import is_queue_healthy

logger = structlog.get_logger()


def register(subparsers) -> None:
    parser = subparsers.add_parser("queue-status", help="Show or administer the image queue")
    toggle = parser.add_mutually_exclusive_group()
    toggle.add_argument("--pause", action="store_true", help="Pause job delivery")
    toggle.add_argument("--resume", action="store_true", help="Resume job delivery")
    parser.add_argument(
        "--clean",
        type=float,
        metavar="HOURS",
        help="Delete completed and failed jobs finished more than HOURS ago",
    )
    parser.add_argument("--clear", action="store_true", help="Delete every job in the queue")
    parser.add_argument(
        "--failed", type=int, default=0, metavar="N", help="List the N most recent failed jobs"
    )
    parser.set_defaults(handler=async_main)


async def async_main(args: Namespace) -> int:
    """Apply the requested admin actions, then print queue counts.

    Returns:
        Exit code: 0 (healthy), 1 (error), 2 (queue unhealthy)
    """
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        async with await uow_factory() as uow:
            if args.pause or args.resume:
                await uow.system_state.set_queue_paused(args.pause)
                logger.info("cli.queue_paused" if args.pause else "cli.queue_resumed")
            if args.clean is not None:
                removed = await uow.jobs.clean(utc_now() - timedelta(hours=args.clean))
                print(f"Removed {removed} finished jobs older than {args.clean}h")
            if args.clear:
                removed = await uow.jobs.clear()
                logger.warning("cli.queue_cleared", removed=removed)
                print(f"Removed {removed} jobs")

        async with await uow_factory() as uow:
            counts = await uow.jobs.counts()
            paused = await uow.system_state.is_queue_paused()
            failed_jobs = (
                await uow.jobs.list_by_status(JobStatus.FAILED, limit=args.failed)
                if args.failed
                else []
            )

        healthy = is_queue_healthy(counts)
        print("\n" + "=" * 60)
        print("Image Queue Status")
        print("=" * 60)
        for state in ("waiting", "delayed", "active", "completed", "failed"):
            print(f"{state.capitalize():<10} {counts[state]}")
        print(f"Paused     {'yes' if paused else 'no'}")
        print(f"Health     {'healthy' if healthy else 'UNHEALTHY (failure rate > 50%)'}")
        if failed_jobs:
            print("\nRecent failed jobs:")
            for job in failed_jobs:
                print(f"  {job.id} print={job.print_id} attempts={job.attempts} {job.error or ''}")
        print("=" * 60 + "\n")

        return 0 if healthy else 2

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        engine = session_factory.kw.get("bind")
        if engine is not None:
            await engine.dispose()
