"""ImageSlot entity - per (print, slot type) image processing state."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from cardart.core.timezone import utc_now


class SlotType(str, Enum):
    """Named image role of a print. Values match the job payload keys."""

    MAIN = "main"
    SMALL = "small"
    NORMAL = "normal"
    LARGE = "large"
    THUMBNAIL = "thumbnail"
    FULL = "full"
    ART_CROP = "artCrop"
    BORDER_CROP = "borderCrop"
    BACK = "back"


class SlotStatus(str, Enum):
    """Slot processing lifecycle status."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid slot state transition."""

    pass


class ImageSlot(SQLModel, table=True):
    """ImageSlot is the durable processing record of one image role of a print.

    Rows are created as pending the first time a job references them and are
    only ever mutated afterwards. storage_urls and perceptual_hash are set
    exactly while the slot is completed.
    """

    __tablename__ = "card_images"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("print_id", "slot_type", name="uq_card_images_print_slot"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    print_id: str = Field(foreign_key="prints.id", index=True, max_length=64)
    slot_type: SlotType = Field(default=SlotType.MAIN)
    status: SlotStatus = Field(default=SlotStatus.PENDING, index=True)
    source_url: str = Field(max_length=2048)
    storage_urls: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    perceptual_hash: Optional[str] = Field(default=None, max_length=255)
    retry_count: int = Field(default=0, ge=0)
    error_message: Optional[str] = Field(default=None, max_length=1000)
    processed_at: Optional[datetime] = Field(default=None)
    next_retry_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_exhausted(self, max_retries: int) -> bool:
        """True once automatic retries are used up."""
        return self.retry_count >= max_retries

    def mark_queued(self, reprocess: bool = False) -> None:
        """Transition to queued.

        pending and retry slots queue normally. failed, completed and stale
        processing slots only queue through an explicit reprocessing request,
        which drops any previously published variants.

        Args:
            reprocess: True when an operator or a new producer job asks for the slot again

        Raises:
            InvalidStateTransition: If the slot cannot be queued from its current state
        """
        allowed = {SlotStatus.PENDING, SlotStatus.RETRY}
        if reprocess:
            allowed |= {SlotStatus.FAILED, SlotStatus.COMPLETED, SlotStatus.PROCESSING}
        if self.status not in allowed:
            raise InvalidStateTransition(
                f"Cannot mark queued from {self.status.value}. "
                "Slot must be pending or retry (or reprocessed explicitly)."
            )
        self.status = SlotStatus.QUEUED
        self.storage_urls = None
        self.perceptual_hash = None
        self.next_retry_at = None
        self.updated_at = utc_now()

    def mark_processing(self) -> None:
        """Transition from queued to processing.

        Raises:
            InvalidStateTransition: If current status is not queued
        """
        if self.status != SlotStatus.QUEUED:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. Slot must be in queued state."
            )
        self.status = SlotStatus.PROCESSING
        self.updated_at = utc_now()

    def mark_completed(self, storage_urls: dict[str, str], perceptual_hash: Optional[str]) -> None:
        """Transition from processing to completed, publishing the variant URLs.

        Raises:
            InvalidStateTransition: If current status is not processing
            ValueError: If storage_urls is empty
        """
        if self.status != SlotStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Slot must be in processing state."
            )
        if not storage_urls:
            raise ValueError("storage_urls is required")
        now = utc_now()
        self.storage_urls = dict(storage_urls)
        self.perceptual_hash = perceptual_hash
        self.processed_at = now
        self.error_message = None
        self.next_retry_at = None
        self.status = SlotStatus.COMPLETED
        self.updated_at = now

    def mark_failed(self, error_message: str, max_retries: int) -> None:
        """Transition from processing to failed, counting the attempt.

        retry_count never decreases and never exceeds max_retries.

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != SlotStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark failed from {self.status.value}. Slot must be in processing state."
            )
        self.retry_count = min(self.retry_count + 1, max_retries)
        self.error_message = error_message[:1000]
        self.storage_urls = None
        self.perceptual_hash = None
        self.next_retry_at = None
        self.status = SlotStatus.FAILED
        self.updated_at = utc_now()

    def mark_retry(self, next_retry_at: datetime, max_retries: int) -> None:
        """Transition from failed to retry.

        Raises:
            InvalidStateTransition: If the slot is not failed or has no retries left
        """
        if self.status != SlotStatus.FAILED:
            raise InvalidStateTransition(
                f"Cannot mark retry from {self.status.value}. Slot must be in failed state."
            )
        if self.is_exhausted(max_retries):
            raise InvalidStateTransition(
                f"Cannot mark retry after {self.retry_count} attempts. "
                f"Retry limit is {max_retries}."
            )
        self.next_retry_at = next_retry_at
        self.status = SlotStatus.RETRY
        self.updated_at = utc_now()
