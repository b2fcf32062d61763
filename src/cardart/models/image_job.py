"""ImageProcessingJob entity - queued unit of work for the image worker."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from cardart.core.timezone import utc_now


class JobStatus(str, Enum):
    """Queue row lifecycle status.

    Delayed jobs are waiting rows whose available_at lies in the future.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ImageProcessingJob(SQLModel, table=True):
    """ImageProcessingJob is one delivery of an image job payload.

    Lower priority values are served first. attempts counts deliveries and is
    bounded by max_attempts for job-level redelivery.
    """

    __tablename__ = "image_processing_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    print_id: str = Field(index=True, max_length=64)
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    status: JobStatus = Field(default=JobStatus.WAITING, index=True)
    priority: int = Field(default=5)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    result: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utc_now)
    available_at: datetime = Field(default_factory=utc_now, index=True)
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
