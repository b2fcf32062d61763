"""Print repository.

Reads catalog prints and keeps their denormalized image summary in sync.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardart.core.timezone import utc_now
from cardart.models.image_slot import SlotStatus, SlotType
from cardart.models.print import Print


class PrintRepository:
    """Repository for Print entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, print_id: str, for_update: bool = False) -> Print | None:
        """Retrieve print by identifier.

        Args:
            print_id: Print identifier
            for_update: Lock the row until the transaction ends

        Returns:
            Print if found, None otherwise
        """
        stmt = select(Print).where(Print.id == print_id)  # type: ignore[arg-type]
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, print_: Print) -> Print:
        """Persist new print to database."""
        self.session.add(print_)
        await self.session.flush()
        return print_

    async def apply_slot_summary(
        self,
        print_: Print,
        slot_type: SlotType,
        storage_urls: dict[str, str],
        perceptual_hash: Optional[str],
    ) -> None:
        """Copy a completed slot's variant URLs into the print summary columns.

        - normal: small/normal/large variant URLs and the placeholder hash
        - artCrop / borderCrop: their normal variant URL
        - every other slot type has no summary column
        """
        if slot_type is SlotType.NORMAL:
            print_.image_small = storage_urls.get("small")
            print_.image_normal = storage_urls.get("normal")
            print_.image_large = storage_urls.get("large")
            print_.perceptual_hash = perceptual_hash
        elif slot_type is SlotType.ART_CROP:
            print_.image_art_crop = storage_urls.get("normal")
        elif slot_type is SlotType.BORDER_CROP:
            print_.image_border_crop = storage_urls.get("normal")
        elif slot_type in (
            SlotType.MAIN,
            SlotType.SMALL,
            SlotType.LARGE,
            SlotType.THUMBNAIL,
            SlotType.FULL,
            SlotType.BACK,
        ):
            return
        else:
            raise ValueError(f"Unhandled slot type: {slot_type!r}")

        print_.updated_at = utc_now()
        self.session.add(print_)
        await self.session.flush()

    async def set_processing_status(
        self, print_: Print, status: SlotStatus, error_message: Optional[str] = None
    ) -> None:
        """Record the aggregate outcome of the latest image job on the print."""
        now = utc_now()
        print_.image_processing_status = status
        print_.image_processing_error = error_message[:1000] if error_message else None
        if status == SlotStatus.COMPLETED:
            print_.image_processed_at = now
        print_.updated_at = now
        self.session.add(print_)
        await self.session.flush()
