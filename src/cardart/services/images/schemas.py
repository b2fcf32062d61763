"""Wire models for image jobs and job results.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cardart.models.image_slot import SlotType


class WireModel(BaseModel):
    """Base model accepting and emitting camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible wire format."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ImageJobPayload(WireModel):
    """Job delivered to the image worker.

    url_mapping, when supplied by the producer, maps canonical URLs to the
    slot types that share them. It is trusted, with its keys normalized.
    """

    print_id: str = Field(..., min_length=1, max_length=64)
    image_urls: dict[SlotType, str] = Field(..., min_length=1)
    url_mapping: Optional[dict[str, list[SlotType]]] = None
    priority: Optional[int] = None


class ProcessedImage(WireModel):
    """Outcome of one slot within a job."""

    type: SlotType
    success: bool
    error: Optional[str] = None
    urls: Optional[dict[str, str]] = None
    hash: Optional[str] = None
    is_shared_storage: bool = False


class OptimizationStats(WireModel):
    """Deduplication effect of a job."""

    unique_images_processed: int
    total_image_types: int
    deduplication_ratio: float


class JobResult(WireModel):
    """Result returned to the queue for a processed job."""

    print_id: str
    success: bool
    processed_images: list[ProcessedImage]
    total_processed: int
    total_failed: int
    processing_time_ms: int
    optimization_stats: OptimizationStats
