"""Slot retry scheduling.

A failed work unit marks each of its slots failed. Slots below the retry
cap move to retry and a single delayed job is enqueued for just that unit,
at a higher priority than fresh work. Slots at the cap stay failed until an
operator reprocesses them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog

from cardart.core.timezone import utc_now
from cardart.models.image_slot import SlotStatus
from cardart.repositories.image_slot import SlotFilter
from cardart.services.images.dedup import WorkUnit
from cardart.services.images.enqueue import ReprocessSummary, enqueue_job, reprocess_slots
from cardart.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class RetryDecision:
    """What happened to a failed unit.

    Attributes:
        retried_slots: Slot type values scheduled for another attempt
        exhausted_slots: Slot type values that reached the retry cap
        next_retry_at: When the retry job becomes deliverable (None if nothing was scheduled)
        job_id: ID of the retry job (None if nothing was scheduled)
    """

    retried_slots: list[str]
    exhausted_slots: list[str]
    next_retry_at: Optional[datetime] = None
    job_id: Optional[UUID] = None

    @property
    def scheduled(self) -> bool:
        return self.job_id is not None


class RetryScheduler:
    """Bounded exponential-backoff retries of failed work units."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 600.0,
        retry_priority: int = 3,
        job_max_attempts: int = 3,
    ):
        """Initialize scheduler.

        Args:
            max_retries: Maximum retry_count of a slot
            base_delay: Delay in seconds before the first retry
            max_delay: Upper bound of any retry delay in seconds
            retry_priority: Queue priority of retry jobs (lower is served first)
            job_max_attempts: Job-level delivery limit of retry jobs
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retry_priority = retry_priority
        self.job_max_attempts = job_max_attempts

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds to wait before retry number retry_count (1-based)."""
        delay = self.base_delay * (2 ** max(retry_count - 1, 0))
        return min(delay, self.max_delay)

    async def handle_failure(
        self, uow: UnitOfWork, print_id: str, unit: WorkUnit, error: str
    ) -> RetryDecision:
        """Record a unit failure on its slots and schedule a retry if allowed.

        Every slot of the unit must be processing.

        Returns:
            RetryDecision describing retried and exhausted slots
        """
        now = utc_now()
        retry_urls = {}
        retried: list[str] = []
        exhausted: list[str] = []
        next_retry_at: Optional[datetime] = None

        for slot_type in unit.slot_types:
            slot = await uow.slots.get(print_id, slot_type, for_update=True)
            if slot is None or slot.status != SlotStatus.PROCESSING:
                logger.warning(
                    "image_slot.failure_skipped",
                    print_id=print_id,
                    slot_type=slot_type.value,
                    status=slot.status.value if slot else None,
                )
                continue

            slot.mark_failed(error, self.max_retries)
            if slot.is_exhausted(self.max_retries):
                exhausted.append(slot_type.value)
            else:
                retry_at = now + timedelta(seconds=self.backoff_delay(slot.retry_count))
                slot.mark_retry(retry_at, self.max_retries)
                retry_urls[slot_type] = slot.source_url
                retried.append(slot_type.value)
                next_retry_at = max(next_retry_at, retry_at) if next_retry_at else retry_at
            await uow.slots.save(slot)

        decision = RetryDecision(retried_slots=retried, exhausted_slots=exhausted)
        if retry_urls:
            decision.next_retry_at = next_retry_at
            decision.job_id = await enqueue_job(
                uow,
                print_id,
                retry_urls,
                url_mapping={unit.canonical_url: list(retry_urls)},
                priority=self.retry_priority,
                available_at=next_retry_at,
                max_attempts=self.job_max_attempts,
            )
            logger.info(
                "image_unit.retry_scheduled",
                print_id=print_id,
                canonical_url=unit.canonical_url,
                slot_types=retried,
                next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
                job_id=str(decision.job_id),
            )
        if exhausted:
            logger.warning(
                "image_unit.retries_exhausted",
                print_id=print_id,
                canonical_url=unit.canonical_url,
                slot_types=exhausted,
                max_retries=self.max_retries,
                error=error,
            )
        return decision

    async def sweep(self, uow: UnitOfWork, limit: int = 100) -> ReprocessSummary:
        """Re-enqueue failed slots still below the cap.

        Covers slots whose retry job was lost, e.g. after a crash between the
        failure and the enqueue, or after the job itself exhausted its deliveries.
        """
        return await reprocess_slots(
            uow,
            SlotFilter(
                statuses=[SlotStatus.FAILED],
                below_retry_cap=True,
                max_retries=self.max_retries,
                limit=limit,
            ),
            priority=self.retry_priority,
            max_attempts=self.job_max_attempts,
        )
