"""Print entity - catalog record whose images the pipeline maintains.

The catalog owns this table; only the columns read or written by the image
pipeline are mapped here.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from cardart.core.timezone import utc_now
from cardart.models.image_slot import SlotStatus


class Print(SQLModel, table=True):
    """Print with denormalized image summary fields.

    The image_* columns and perceptual_hash cache ImageSlot data for fast
    reads; the slots remain the source of truth.
    """

    __tablename__ = "prints"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)

    # Image summary
    image_small: Optional[str] = Field(default=None, max_length=500)
    image_normal: Optional[str] = Field(default=None, max_length=500)
    image_large: Optional[str] = Field(default=None, max_length=500)
    image_art_crop: Optional[str] = Field(default=None, max_length=500)
    image_border_crop: Optional[str] = Field(default=None, max_length=500)
    perceptual_hash: Optional[str] = Field(default=None, max_length=255)

    # Aggregate processing state of the latest image job
    image_processing_status: SlotStatus = Field(default=SlotStatus.PENDING, index=True)
    image_processed_at: Optional[datetime] = Field(default=None)
    image_processing_error: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
