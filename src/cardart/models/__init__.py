"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from cardart.models.image_job import ImageProcessingJob, JobStatus
from cardart.models.image_slot import ImageSlot, InvalidStateTransition, SlotStatus, SlotType
from cardart.models.print import Print
from cardart.models.system_state import SystemState

__all__ = [
    "Print",
    "ImageSlot",
    "SlotType",
    "SlotStatus",
    "InvalidStateTransition",
    "ImageProcessingJob",
    "JobStatus",
    "SystemState",
]
