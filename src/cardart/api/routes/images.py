"""Image pipeline API endpoints.

- GET /api/images/stats - Queue counts and worker totals
- POST /api/images/reprocess - Queue slots again by status, print and slot type
- GET /api/images/prints/{print_id} - Slot states and variant URLs of one print
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from cardart.api.dependencies import get_settings, get_uow_factory, get_worker
from cardart.core.config import Settings
from cardart.core.timezone import utc_now
from cardart.models.image_slot import SlotStatus, SlotType
from cardart.repositories.image_slot import SlotFilter
from cardart.services.images.enqueue import reprocess_slots
from cardart.workers.image_worker import ImageWorker, is_queue_healthy

logger = structlog.get_logger()
router = APIRouter(prefix="/api/images", tags=["images"])


# Request/Response Models


class QueueStatsResponse(BaseModel):
    """Queue counts plus cumulative totals of the worker in this process."""

    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    paused: bool
    healthy: bool
    total_processed: int = Field(
        default=0, description="Slots processed since the worker started (0 without a worker)"
    )
    total_failed: int = Field(
        default=0, description="Slots (or whole jobs) failed since the worker started"
    )


class ReprocessRequest(BaseModel):
    """Selection of slots to queue again."""

    statuses: list[SlotStatus] = Field(
        default_factory=lambda: [SlotStatus.FAILED],
        description="Slot statuses to select (default: failed)",
        min_length=1,
    )
    print_ids: Optional[list[str]] = Field(default=None, description="Restrict to these prints")
    slot_types: Optional[list[SlotType]] = Field(
        default=None, description="Restrict to these slot types"
    )
    include_exhausted: bool = Field(
        default=False, description="Also select slots that reached the retry cap"
    )
    stale_minutes: Optional[int] = Field(
        default=None,
        ge=1,
        description="For processing slots, only those not updated for this many minutes",
    )
    limit: int = Field(default=100, ge=1, le=1000)


class ReprocessResponse(BaseModel):
    slots_selected: int
    jobs_enqueued: int


class SlotDTO(BaseModel):
    """Processing state of one slot."""

    slot_type: SlotType
    status: SlotStatus
    source_url: str
    storage_urls: Optional[dict[str, str]] = None
    perceptual_hash: Optional[str] = None
    retry_count: int
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None


class PrintImagesResponse(BaseModel):
    print_id: str
    image_processing_status: SlotStatus
    image_processed_at: Optional[datetime] = None
    image_processing_error: Optional[str] = None
    slots: list[SlotDTO]


# API Endpoints


@router.get("/stats", response_model=QueueStatsResponse)
async def get_queue_stats(
    uow_factory=Depends(get_uow_factory),
    worker: Optional[ImageWorker] = Depends(get_worker),
) -> QueueStatsResponse:
    """Queue counts per state and the hosted worker's totals."""
    if worker is not None:
        return QueueStatsResponse(**(await worker.stats()))

    async with await uow_factory() as uow:
        counts = await uow.jobs.counts()
        paused = await uow.system_state.is_queue_paused()
    return QueueStatsResponse(**counts, paused=paused, healthy=is_queue_healthy(counts))


@router.post("/reprocess", response_model=ReprocessResponse, status_code=status.HTTP_202_ACCEPTED)
async def reprocess_images(
    request: ReprocessRequest,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ReprocessResponse:
    """Queue matching slots again, one job per (print, source image)."""
    if SlotStatus.QUEUED in request.statuses:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Queued slots already have a pending job",
        )

    slot_filter = SlotFilter(
        statuses=request.statuses,
        below_retry_cap=not request.include_exhausted,
        max_retries=settings.max_slot_retries,
        print_ids=request.print_ids,
        slot_types=request.slot_types,
        stale_before=(
            utc_now() - timedelta(minutes=request.stale_minutes) if request.stale_minutes else None
        ),
        limit=request.limit,
    )
    async with await uow_factory() as uow:
        summary = await reprocess_slots(
            uow,
            slot_filter,
            priority=settings.default_job_priority,
            max_attempts=settings.job_max_attempts,
        )

    logger.info(
        "api.reprocess_requested",
        statuses=[s.value for s in request.statuses],
        slots_selected=summary.slots_selected,
        jobs_enqueued=summary.jobs_enqueued,
    )
    return ReprocessResponse(
        slots_selected=summary.slots_selected, jobs_enqueued=summary.jobs_enqueued
    )


@router.get("/prints/{print_id}", response_model=PrintImagesResponse)
async def get_print_images(print_id: str, uow_factory=Depends(get_uow_factory)):
    """Slot states and variant URLs of one print."""
    async with await uow_factory() as uow:
        print_ = await uow.prints.get_by_id(print_id)
        if print_ is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Print {print_id} not found"
            )
        slots = await uow.slots.get_for_print(print_id)

    return PrintImagesResponse(
        print_id=print_.id,
        image_processing_status=print_.image_processing_status,
        image_processed_at=print_.image_processed_at,
        image_processing_error=print_.image_processing_error,
        slots=[
            SlotDTO(
                slot_type=slot.slot_type,
                status=slot.status,
                source_url=slot.source_url,
                storage_urls=slot.storage_urls,
                perceptual_hash=slot.perceptual_hash,
                retry_count=slot.retry_count,
                error_message=slot.error_message,
                processed_at=slot.processed_at,
                next_retry_at=slot.next_retry_at,
            )
            for slot in slots
        ],
    )
