"""Repository layer for the image pipeline.

Provides data access abstractions for all domain entities.
Each repository is self-contained and receives its session from the caller.
"""

from cardart.repositories.image_job import ImageJobRepository
from cardart.repositories.image_slot import ImageSlotRepository, SlotFilter
from cardart.repositories.print import PrintRepository
from cardart.repositories.system_state import SystemStateRepository

__all__ = [
    "PrintRepository",
    "ImageSlotRepository",
    "SlotFilter",
    "ImageJobRepository",
    "SystemStateRepository",
]
