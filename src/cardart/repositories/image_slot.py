"""ImageSlot repository.

Provides data access for per-slot processing state. Rows are loaded with
FOR UPDATE so concurrent jobs touching the same print serialize on the slot rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardart.models.image_slot import ImageSlot, SlotStatus, SlotType


@dataclass
class SlotFilter:
    """Selection of slots for reprocessing and sweeps.

    Attributes:
        statuses: Slot statuses to select
        below_retry_cap: Only slots whose retry_count is below max_retries
        max_retries: Retry cap used by below_retry_cap
        print_ids: Restrict to these prints (None = all)
        slot_types: Restrict to these slot types (None = all)
        stale_before: For processing slots, only rows not updated since this time
        limit: Maximum number of rows
    """

    statuses: list[SlotStatus] = field(default_factory=lambda: [SlotStatus.FAILED])
    below_retry_cap: bool = True
    max_retries: int = 3
    print_ids: Optional[list[str]] = None
    slot_types: Optional[list[SlotType]] = None
    stale_before: Optional[datetime] = None
    limit: int = 100


class ImageSlotRepository:
    """Repository for ImageSlot entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(
        self, print_id: str, slot_type: SlotType, for_update: bool = False
    ) -> ImageSlot | None:
        """Retrieve a slot by its (print, slot type) key.

        Args:
            print_id: Print identifier
            slot_type: Slot type
            for_update: Lock the row until the transaction ends

        Returns:
            ImageSlot if found, None otherwise
        """
        stmt = select(ImageSlot).where(
            ImageSlot.print_id == print_id,  # type: ignore[arg-type]
            ImageSlot.slot_type == slot_type,  # type: ignore[arg-type]
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_print(self, print_id: str) -> list[ImageSlot]:
        """Retrieve all slots of a print ordered by slot type."""
        result = await self.session.execute(
            select(ImageSlot)
            .where(ImageSlot.print_id == print_id)  # type: ignore[arg-type]
            .order_by(ImageSlot.slot_type.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_or_create(self, print_id: str, slot_type: SlotType, source_url: str) -> ImageSlot:
        """Retrieve a slot, creating it as pending on first reference.

        An existing slot gets source_url refreshed to the latest value supplied.
        """
        slot = await self.get(print_id, slot_type, for_update=True)
        if slot is None:
            slot = ImageSlot(
                print_id=print_id,
                slot_type=slot_type,
                source_url=source_url,
                status=SlotStatus.PENDING,
            )
        else:
            slot.source_url = source_url
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def claim_for_processing(
        self, print_id: str, slot_type: SlotType, source_url: str
    ) -> ImageSlot:
        """Move a slot to processing for a delivered job.

        The row passes through queued in memory and is written once as
        processing. A delivered job is an explicit request, so failed,
        completed and stale processing slots are reprocessed.

        Args:
            print_id: Print identifier
            slot_type: Slot type
            source_url: URL supplied for this slot by the job

        Returns:
            Slot in processing state
        """
        slot = await self.get_or_create(print_id, slot_type, source_url)
        if slot.status != SlotStatus.QUEUED:
            slot.mark_queued(reprocess=True)
        slot.mark_processing()
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def save(self, slot: ImageSlot) -> None:
        """Persist in-memory changes of a slot."""
        self.session.add(slot)
        await self.session.flush()

    async def find(self, slot_filter: SlotFilter) -> list[ImageSlot]:
        """Retrieve slots matching a filter, oldest update first, locked for update.

        Query explanation:
        - status IN (...): Requested statuses
        - retry_count < max_retries: Skip exhausted slots unless asked otherwise
        - updated_at < stale_before: Only applies to processing rows
        - FOR UPDATE SKIP LOCKED: Rows claimed by a concurrent sweep are skipped
        """
        stmt = select(ImageSlot).where(
            ImageSlot.status.in_(slot_filter.statuses)  # type: ignore[attr-defined]
        )
        if slot_filter.below_retry_cap:
            stmt = stmt.where(ImageSlot.retry_count < slot_filter.max_retries)  # type: ignore[arg-type]
        if slot_filter.print_ids:
            stmt = stmt.where(ImageSlot.print_id.in_(slot_filter.print_ids))  # type: ignore[attr-defined]
        if slot_filter.slot_types:
            stmt = stmt.where(ImageSlot.slot_type.in_(slot_filter.slot_types))  # type: ignore[attr-defined]
        if slot_filter.stale_before is not None:
            stmt = stmt.where(
                (ImageSlot.status != SlotStatus.PROCESSING)  # type: ignore[arg-type]
                | (ImageSlot.updated_at < slot_filter.stale_before)  # type: ignore[operator]
            )
        stmt = (
            stmt.order_by(ImageSlot.updated_at.asc())  # type: ignore[attr-defined]
            .limit(slot_filter.limit)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Count slots per status. Statuses with no rows report 0."""
        result = await self.session.execute(
            select(ImageSlot.status, func.count(ImageSlot.id)).group_by(ImageSlot.status)  # type: ignore[arg-type]
        )
        counts = {status.value: 0 for status in SlotStatus}
        for status, count in result.all():
            counts[SlotStatus(status).value] = count
        return counts
