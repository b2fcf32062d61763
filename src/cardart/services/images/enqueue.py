"""Job producers: new print images and reprocessing of existing slots."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional
from uuid import UUID

import structlog

from cardart.models.image_slot import SlotStatus, SlotType
from cardart.repositories.image_slot import SlotFilter
from cardart.services.images.dedup import build_url_mapping, normalize_url
from cardart.services.images.schemas import ImageJobPayload
from cardart.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class ReprocessSummary:
    """Outcome of a reprocessing request."""

    slots_selected: int = 0
    jobs_enqueued: int = 0
    job_ids: list[UUID] = field(default_factory=list)


async def enqueue_job(
    uow: UnitOfWork,
    print_id: str,
    image_urls: Mapping[SlotType, str],
    url_mapping: Optional[Mapping[str, list[SlotType]]] = None,
    priority: int = 5,
    available_at: Optional[datetime] = None,
    max_attempts: int = 3,
) -> UUID:
    """Insert one image job for a print.

    Returns:
        ID of the queue row
    """
    payload = ImageJobPayload(
        print_id=print_id,
        image_urls=dict(image_urls),
        url_mapping=dict(url_mapping) if url_mapping is not None else None,
        priority=priority,
    )
    job = await uow.jobs.enqueue(
        payload.to_wire(),
        priority=priority,
        available_at=available_at,
        max_attempts=max_attempts,
    )
    return job.id


async def enqueue_print_images(
    uow: UnitOfWork,
    print_id: str,
    image_urls: Mapping[SlotType, str],
    priority: int = 5,
    max_attempts: int = 3,
) -> UUID:
    """Queue every image of a print for processing.

    Slots are created (or refreshed with the new URLs) and marked queued, and
    the url_mapping is precomputed so the worker can trust it.

    Returns:
        ID of the queue row
    """
    if not image_urls:
        raise ValueError("image_urls must not be empty")

    for slot_type, url in image_urls.items():
        slot = await uow.slots.get_or_create(print_id, slot_type, url)
        if slot.status != SlotStatus.QUEUED:
            slot.mark_queued(reprocess=True)
            await uow.slots.save(slot)

    job_id = await enqueue_job(
        uow,
        print_id,
        image_urls,
        url_mapping=build_url_mapping(image_urls),
        priority=priority,
        max_attempts=max_attempts,
    )
    logger.info(
        "image_job.enqueued",
        print_id=print_id,
        job_id=str(job_id),
        slot_types=[slot.value for slot in image_urls],
        priority=priority,
    )
    return job_id


async def reprocess_slots(
    uow: UnitOfWork,
    slot_filter: SlotFilter,
    priority: int = 5,
    max_attempts: int = 3,
) -> ReprocessSummary:
    """Queue existing slots again.

    Selected slots are grouped by (print, canonical source URL) so each
    group is fetched once; one job is enqueued per group and its slots move
    to queued. retry_count is left as it is.

    Args:
        uow: Open unit of work
        slot_filter: Slot selection (default: failed slots below the retry cap)
        priority: Queue priority of the new jobs
        max_attempts: Job-level delivery limit of the new jobs

    Returns:
        Number of selected slots and enqueued jobs
    """
    slots = await uow.slots.find(slot_filter)
    summary = ReprocessSummary(slots_selected=len(slots))

    groups: dict[tuple[str, str], list] = {}
    for slot in slots:
        groups.setdefault((slot.print_id, normalize_url(slot.source_url)), []).append(slot)

    for (print_id, canonical_url), members in groups.items():
        for slot in members:
            slot.mark_queued(reprocess=True)
            await uow.slots.save(slot)

        job_id = await enqueue_job(
            uow,
            print_id,
            {slot.slot_type: slot.source_url for slot in members},
            url_mapping={canonical_url: [slot.slot_type for slot in members]},
            priority=priority,
            max_attempts=max_attempts,
        )
        summary.jobs_enqueued += 1
        summary.job_ids.append(job_id)

    if summary.slots_selected:
        logger.info(
            "image_slots.reprocess_enqueued",
            slots_selected=summary.slots_selected,
            jobs_enqueued=summary.jobs_enqueued,
            statuses=[status.value for status in slot_filter.statuses],
        )
    return summary
