"""Background workers for async processing tasks."""

from cardart.workers.image_worker import (
    ImageWorker,
    JobEvent,
    JobEventKind,
    WorkerContext,
    open_worker_context,
)

__all__ = [
    "ImageWorker",
    "JobEvent",
    "JobEventKind",
    "WorkerContext",
    "open_worker_context",
]
