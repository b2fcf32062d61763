"""CLI command queueing image slots again.

Usage:
    python -m cardart.cli reprocess [OPTIONS]

Examples:
    # Failed slots below the retry cap (same as the periodic sweep)
    python -m cardart.cli reprocess

    # Every failed slot, including exhausted ones
    python -m cardart.cli reprocess --include-exhausted

    # Slots stuck in processing for more than 30 minutes
    python -m cardart.cli reprocess --status processing --stale-minutes 30

    # One print, art crops only
    python -m cardart.cli reprocess --status completed --print-id abc123 --slot-type artCrop

    # Show what would be queued
    python -m cardart.cli reprocess --dry-run
"""

import sys
from argparse import Namespace
from datetime import timedelta

import structlog

from cardart.core import timezone  # noqa: F401
from cardart.core.config import Settings, configure_logging
from cardart.core.database import setup_db_session
from cardart.core.timezone import utc_now
from cardart.models.image_slot import SlotStatus, SlotType
from cardart.repositories.image_slot import SlotFilter
from cardart.services.images.enqueue import reprocess_slots
from cardart.uow import create_uow_factory

logger = structlog.get_logger()


def register(subparsers) -> None:
    parser = subparsers.add_parser("reprocess", help="Queue image slots again")
    parser.add_argument(
        "--status",
        dest="statuses",
        action="append",
        choices=[s.value for s in SlotStatus if s != SlotStatus.QUEUED],
        help="Slot status to select, repeatable (default: failed)",
    )
    parser.add_argument("--print-id", dest="print_ids", action="append", help="Restrict to print")
    parser.add_argument(
        "--slot-type",
        dest="slot_types",
        action="append",
        choices=[s.value for s in SlotType],
        help="Restrict to slot type, repeatable",
    )
    parser.add_argument(
        "--include-exhausted",
        action="store_true",
        help="Also select slots that reached the retry cap",
    )
    parser.add_argument(
        "--stale-minutes",
        type=int,
        help="For processing slots, only those not updated for this many minutes",
    )
    parser.add_argument("--limit", type=int, default=100, help="Maximum slots (default: 100)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Select slots without enqueueing jobs",
    )
    parser.set_defaults(handler=async_main)


async def async_main(args: Namespace) -> int:
    """Queue matching slots.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    slot_filter = SlotFilter(
        statuses=[SlotStatus(s) for s in args.statuses or [SlotStatus.FAILED.value]],
        below_retry_cap=not args.include_exhausted,
        max_retries=settings.max_slot_retries,
        print_ids=args.print_ids,
        slot_types=[SlotType(s) for s in args.slot_types] if args.slot_types else None,
        stale_before=(
            utc_now() - timedelta(minutes=args.stale_minutes) if args.stale_minutes else None
        ),
        limit=args.limit,
    )

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        if args.dry_run:
            async with await uow_factory() as uow:
                slots = await uow.slots.find(slot_filter)
            print(f"Slots matching: {len(slots)}")
            for slot in slots[:20]:
                print(
                    f"  {slot.print_id} {slot.slot_type.value:<11} {slot.status.value:<10} "
                    f"retries={slot.retry_count} {slot.error_message or ''}"
                )
            print("\n[DRY RUN] No jobs were enqueued")
            return 0

        async with await uow_factory() as uow:
            summary = await reprocess_slots(
                uow,
                slot_filter,
                priority=settings.default_job_priority,
                max_attempts=settings.job_max_attempts,
            )
        print(f"Slots selected: {summary.slots_selected}")
        print(f"Jobs enqueued: {summary.jobs_enqueued}")
        return 0

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        engine = session_factory.kw.get("bind")
        if engine is not None:
            await engine.dispose()
