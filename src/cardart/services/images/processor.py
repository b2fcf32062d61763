"""Per-job orchestration of the image pipeline.

For one job: group slots into unique work units, claim the slots, then for
each unit fetch/transform/store once and publish the same URLs on every slot
of the unit. A failing unit only affects its own slots; partial success is a
valid job outcome.
"""

import asyncio
import time
import weakref
from typing import Callable

import structlog

from cardart.models.image_slot import SlotStatus
from cardart.services.exceptions import ImagePipelineError, NotFoundError
from cardart.services.images.dedup import WorkUnit, build_work_units, deduplication_ratio
from cardart.services.images.retry import RetryScheduler
from cardart.services.images.schemas import (
    ImageJobPayload,
    JobResult,
    OptimizationStats,
    ProcessedImage,
)
from cardart.services.images.storage import StorageConsolidator
from cardart.services.images.transform import ImageTransformer

logger = structlog.get_logger(__name__)


class PrintImageProcessor:
    """Processes image jobs, one print at a time per print id.

    Jobs for different prints run concurrently. Jobs for the same print are
    serialized by an in-process lock, and slot rows are updated under
    SELECT ... FOR UPDATE so other processes serialize on the database.
    """

    def __init__(
        self,
        uow_factory: Callable,
        transformer: ImageTransformer,
        consolidator: StorageConsolidator,
        retry_scheduler: RetryScheduler,
    ):
        """Initialize processor.

        Args:
            uow_factory: Factory returning new UnitOfWork instances
            transformer: Fetch/decode/encode pipeline
            consolidator: Variant storage
            retry_scheduler: Failure handling for work units
        """
        self.uow_factory = uow_factory
        self.transformer = transformer
        self.consolidator = consolidator
        self.retry_scheduler = retry_scheduler
        self._print_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, print_id: str) -> asyncio.Lock:
        lock = self._print_locks.get(print_id)
        if lock is None:
            lock = asyncio.Lock()
            self._print_locks[print_id] = lock
        return lock

    async def process(self, payload: ImageJobPayload) -> JobResult:
        """Run one job.

        Raises:
            NotFoundError: The print does not exist (nothing is written)
            ValueError: The job has no image URLs
        """
        if not payload.image_urls:
            raise ValueError(f"Job for print {payload.print_id} has no image URLs")

        lock = self._lock_for(payload.print_id)
        async with lock:
            return await self._process_locked(payload)

    async def _process_locked(self, payload: ImageJobPayload) -> JobResult:
        start_time = time.monotonic()
        print_id = payload.print_id
        units = build_work_units(payload.image_urls, payload.url_mapping)
        slot_count = sum(len(unit.slot_types) for unit in units)

        logger.info(
            "image_job.started",
            print_id=print_id,
            slot_types=[slot.value for slot in payload.image_urls],
            unique_units=len(units),
        )

        async with await self.uow_factory() as uow:
            print_ = await uow.prints.get_by_id(print_id, for_update=True)
            if print_ is None:
                raise NotFoundError(f"Print {print_id} not found")
            for slot_type, url in payload.image_urls.items():
                await uow.slots.claim_for_processing(print_id, slot_type, url)
            await uow.prints.set_processing_status(print_, SlotStatus.PROCESSING)

        processed: list[ProcessedImage] = []
        retry_scheduled = False
        last_error = None

        for unit in units:
            try:
                urls, perceptual_hash = await self._process_unit(print_id, unit)
            except ImagePipelineError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "image_unit.failed",
                    print_id=print_id,
                    canonical_url=unit.canonical_url,
                    slot_types=[slot.value for slot in unit.slot_types],
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                async with await self.uow_factory() as uow:
                    decision = await self.retry_scheduler.handle_failure(
                        uow, print_id, unit, last_error
                    )
                retry_scheduled = retry_scheduled or decision.scheduled
                processed.extend(
                    ProcessedImage(type=slot_type, success=False, error=last_error)
                    for slot_type in unit.slot_types
                )
                continue

            processed.extend(
                ProcessedImage(
                    type=slot_type,
                    success=True,
                    urls=urls,
                    hash=perceptual_hash,
                    is_shared_storage=unit.is_shared,
                )
                for slot_type in unit.slot_types
            )

        total_failed = sum(1 for image in processed if not image.success)
        if total_failed == 0:
            aggregate = SlotStatus.COMPLETED
        elif retry_scheduled:
            aggregate = SlotStatus.RETRY
        else:
            aggregate = SlotStatus.FAILED

        async with await self.uow_factory() as uow:
            print_ = await uow.prints.get_by_id(print_id, for_update=True)
            if print_ is not None:
                await uow.prints.set_processing_status(print_, aggregate, last_error)

        result = JobResult(
            print_id=print_id,
            success=total_failed == 0,
            processed_images=processed,
            total_processed=len(processed) - total_failed,
            total_failed=total_failed,
            processing_time_ms=int((time.monotonic() - start_time) * 1000),
            optimization_stats=OptimizationStats(
                unique_images_processed=len(units),
                total_image_types=slot_count,
                deduplication_ratio=deduplication_ratio(units),
            ),
        )

        log = logger.info if result.success else logger.warning
        log(
            "image_job.finished",
            print_id=print_id,
            success=result.success,
            total_processed=result.total_processed,
            total_failed=result.total_failed,
            deduplication_ratio=result.optimization_stats.deduplication_ratio,
            processing_time_ms=result.processing_time_ms,
            status=aggregate.value,
        )
        return result

    async def _process_unit(self, print_id: str, unit: WorkUnit) -> tuple[dict[str, str], str]:
        """Transform and store one unit, then complete all of its slots together.

        Raises:
            ImagePipelineError: Fetch, decode, encode or storage failed
        """
        result = await self.transformer.transform(unit.representative_url)
        urls = await self.consolidator.store(print_id, unit, result)

        async with await self.uow_factory() as uow:
            print_ = await uow.prints.get_by_id(print_id, for_update=True)
            for slot_type in unit.slot_types:
                slot = await uow.slots.get(print_id, slot_type, for_update=True)
                if slot is None or slot.status != SlotStatus.PROCESSING:
                    logger.warning(
                        "image_slot.completion_skipped",
                        print_id=print_id,
                        slot_type=slot_type.value,
                        status=slot.status.value if slot else None,
                    )
                    continue
                slot.mark_completed(urls, result.perceptual_hash)
                await uow.slots.save(slot)
                if print_ is not None:
                    await uow.prints.apply_slot_summary(
                        print_, slot_type, urls, result.perceptual_hash
                    )

        logger.debug(
            "image_unit.completed",
            print_id=print_id,
            canonical_url=unit.canonical_url,
            slot_types=[slot.value for slot in unit.slot_types],
            shared=unit.is_shared,
        )
        return urls, result.perceptual_hash
