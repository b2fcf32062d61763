"""Image worker: fixed-concurrency consumers of the image job queue.

Each consumer polls the queue table, claims one job at a time and runs it
through PrintImageProcessor. Alongside the consumers the worker logs queue
statistics and runs periodic maintenance (retry sweep and old-job cleanup).

Delivery is at-least-once. Jobs left active by a crashed or force-stopped
worker are reset to waiting on the next start and reported as stalled.

Shutdown stops claiming, then waits for in-flight jobs up to a timeout. If
they drain, resources are released and the exit is clean; otherwise the
remaining jobs are cancelled, leaving their rows in the last committed state.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardart.core.config import Settings
from cardart.core.database import setup_db_session
from cardart.core.timezone import utc_now
from cardart.models.image_job import ImageProcessingJob
from cardart.services.exceptions import NotFoundError
from cardart.services.images.processor import PrintImageProcessor
from cardart.services.images.retry import RetryScheduler
from cardart.services.images.schemas import ImageJobPayload
from cardart.services.images.storage import (
    LocalObjectStorage,
    ObjectStorage,
    S3ObjectStorage,
    StorageConsolidator,
)
from cardart.services.images.transform import ImageTransformer
from cardart.uow import create_uow_factory

logger = structlog.get_logger(__name__)

FAILURE_RATIO_THRESHOLD = 0.5


class JobEventKind(str, Enum):
    """Queue notifications delivered to subscribers."""

    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    RETRYING = "retrying"


@dataclass(frozen=True)
class JobEvent:
    """One queue notification.

    Attributes:
        kind: What happened to the job
        job_id: Queue row ID
        print_id: Print the job belongs to
        attempts: Deliveries so far
        result: Job result in wire format (completed only)
        error: Error message (failed and retrying only)
    """

    kind: JobEventKind
    job_id: UUID
    print_id: str
    attempts: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class WorkerStats:
    """Cumulative totals since the worker started.

    processed and failed count slots of handled jobs; a job that fails as a
    whole (thrown, not redelivered) adds one to failed.
    """

    processed: int = 0
    failed: int = 0
    started_at: float = field(default_factory=time.monotonic)


def build_storage(settings: Settings) -> ObjectStorage:
    """Create the configured storage backend."""
    if settings.storage_backend == "local":
        return LocalObjectStorage(Path(settings.local_storage_path), settings.public_base_url)
    if settings.storage_backend == "s3":
        return S3ObjectStorage(
            endpoint_url=settings.storage_endpoint,
            access_key=settings.storage_access_key,
            secret_key=settings.storage_secret_key,
            bucket=settings.storage_bucket,
            public_base_url=settings.public_base_url,
            region=settings.storage_region,
            public_prefix=settings.storage_namespace,
        )
    raise ValueError(f"Unknown storage backend: {settings.storage_backend!r}")


def is_queue_healthy(counts: dict[str, int]) -> bool:
    """Unhealthy once more than half of finished jobs failed."""
    failed = counts.get("failed", 0)
    completed = counts.get("completed", 0)
    return failed / (completed + failed + 1) <= FAILURE_RATIO_THRESHOLD


@dataclass
class WorkerContext:
    """Shared handles of one worker run, opened at start and closed at stop."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    storage: ObjectStorage
    http_client: httpx.AsyncClient
    uow_factory: Callable = field(init=False)
    _closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.uow_factory = create_uow_factory(self.session_factory)

    async def close(self) -> None:
        """Close the HTTP client and the database connection pool."""
        if self._closed:
            return
        self._closed = True
        await self.http_client.aclose()
        engine = self.session_factory.kw.get("bind")
        if engine is not None:
            await engine.dispose()
        logger.debug("worker.context_closed")


async def open_worker_context(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    storage: Optional[ObjectStorage] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> WorkerContext:
    """Open database, storage and HTTP handles for a worker run.

    Any handle passed in is used as-is instead of being built from settings.
    """
    if session_factory is None:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    if storage is None:
        storage = build_storage(settings)
        await storage.ensure_bucket()
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=settings.image_fetch_timeout_seconds,
            headers={"User-Agent": settings.image_user_agent},
            limits=httpx.Limits(max_connections=settings.worker_concurrency * 4),
        )
    return WorkerContext(
        settings=settings,
        session_factory=session_factory,
        storage=storage,
        http_client=http_client,
    )


def build_processor(context: WorkerContext) -> PrintImageProcessor:
    """Wire the image pipeline from a worker context."""
    settings = context.settings
    return PrintImageProcessor(
        uow_factory=context.uow_factory,
        transformer=ImageTransformer(
            http_client=context.http_client,
            cpu_limiter=asyncio.Semaphore(settings.image_cpu_workers),
            fetch_timeout=settings.image_fetch_timeout_seconds,
        ),
        consolidator=StorageConsolidator(context.storage, settings.storage_namespace),
        retry_scheduler=build_retry_scheduler(settings),
    )


def build_retry_scheduler(settings: Settings) -> RetryScheduler:
    return RetryScheduler(
        max_retries=settings.max_slot_retries,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        retry_priority=settings.retry_job_priority,
        job_max_attempts=settings.job_max_attempts,
    )


class ImageWorker:
    """Pool of queue consumers plus statistics and maintenance loops."""

    def __init__(
        self,
        context: WorkerContext,
        processor: Optional[PrintImageProcessor] = None,
    ):
        """Initialize worker.

        Args:
            context: Shared handles (released on shutdown)
            processor: Job handler (built from the context when omitted)
        """
        self.context = context
        self.settings = context.settings
        self.processor = processor or build_processor(context)
        self.retry_scheduler = build_retry_scheduler(self.settings)
        self.totals = WorkerStats()
        self._stopping = asyncio.Event()
        self._consumers: list[asyncio.Task] = []
        self._background: list[asyncio.Task] = []
        self._active = 0
        self._subscribers: list[asyncio.Queue] = []

    @property
    def active_count(self) -> int:
        """Jobs currently being handled by this worker."""
        return self._active

    @property
    def running(self) -> bool:
        return bool(self._consumers) and not self._stopping.is_set()

    def subscribe(self) -> "asyncio.Queue[JobEvent]":
        """Receive every future job event on a new queue."""
        queue: asyncio.Queue[JobEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def _emit(self, event: JobEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    async def start(self) -> None:
        """Recover orphaned jobs, then start consumers and background loops."""
        async with await self.context.uow_factory() as uow:
            stalled = await uow.jobs.recover_orphaned()
        for job in stalled:
            logger.warning(
                "image_job.stalled",
                job_id=str(job.id),
                print_id=job.print_id,
                attempts=job.attempts,
            )
            self._emit(
                JobEvent(
                    kind=JobEventKind.STALLED,
                    job_id=job.id,
                    print_id=job.print_id,
                    attempts=job.attempts,
                )
            )

        self._consumers = [
            asyncio.create_task(self._consume(index), name=f"image-consumer-{index}")
            for index in range(self.settings.worker_concurrency)
        ]
        self._background = [
            asyncio.create_task(
                self._periodic("stats", self.settings.stats_interval_seconds, self._log_stats)
            ),
            asyncio.create_task(
                self._periodic(
                    "retry_sweep", self.settings.retry_sweep_interval_seconds, self._sweep_retries
                )
            ),
            asyncio.create_task(
                self._periodic(
                    "job_cleanup", self.settings.job_cleanup_interval_seconds, self._clean_jobs
                )
            ),
        ]
        logger.info(
            "worker.started",
            concurrency=self.settings.worker_concurrency,
            poll_interval=self.settings.poll_interval_seconds,
            stalled_jobs=len(stalled),
        )

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Sleep up to seconds. Returns True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _consume(self, index: int) -> None:
        while not self._stopping.is_set():
            # Counted before the claim commits so shutdown never misses a claimed job
            self._active += 1
            try:
                job = await self._claim()
            except asyncio.CancelledError:
                self._active -= 1
                raise
            except Exception as e:
                self._active -= 1
                logger.error(
                    "worker.error",
                    consumer=index,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await self._sleep_or_stop(5)
                continue

            if job is None:
                self._active -= 1
                await self._sleep_or_stop(self.settings.poll_interval_seconds)
                continue

            await self._run_job(job)

    async def _claim(self) -> Optional[ImageProcessingJob]:
        """Claim the next job unless the queue is paused or shutdown has begun."""
        if self._stopping.is_set():
            return None
        async with await self.context.uow_factory() as uow:
            if await uow.system_state.is_queue_paused():
                return None
            return await uow.jobs.claim_next()

    async def _run_job(self, job: ImageProcessingJob) -> None:
        """Handle one claimed job and record its outcome on the queue row."""
        log = logger.bind(job_id=str(job.id), print_id=job.print_id, attempts=job.attempts)
        try:
            try:
                payload = ImageJobPayload.model_validate(job.payload)
                result = await self.processor.process(payload)
            except (ValidationError, NotFoundError) as e:
                await self._record_failure(job, f"{type(e).__name__}: {e}", retryable=False)
                return
            except asyncio.CancelledError:
                log.warning("image_job.cancelled")
                raise
            except Exception as e:
                log.error(
                    "image_job.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await self._record_failure(job, f"{type(e).__name__}: {e}", retryable=True)
                return

            wire = result.to_wire()
            async with await self.context.uow_factory() as uow:
                row = await uow.jobs.get_by_id(job.id)
                if row is not None:
                    await uow.jobs.complete(row, wire)
            self.totals.processed += result.total_processed
            self.totals.failed += result.total_failed
            self._emit(
                JobEvent(
                    kind=JobEventKind.COMPLETED,
                    job_id=job.id,
                    print_id=job.print_id,
                    attempts=job.attempts,
                    result=wire,
                )
            )
        finally:
            self._active -= 1

    async def _record_failure(self, job: ImageProcessingJob, error: str, retryable: bool) -> None:
        async with await self.context.uow_factory() as uow:
            row = await uow.jobs.get_by_id(job.id)
            redeliver = False
            if row is not None:
                redeliver = await uow.jobs.fail(
                    row,
                    error,
                    retryable=retryable,
                    backoff_seconds=self.settings.job_backoff_seconds,
                )

        if redeliver:
            logger.warning(
                "image_job.retrying", job_id=str(job.id), print_id=job.print_id, error=error
            )
            kind = JobEventKind.RETRYING
        else:
            logger.error(
                "image_job.failed",
                job_id=str(job.id),
                print_id=job.print_id,
                attempts=job.attempts,
                retryable=retryable,
                error=error,
            )
            self.totals.failed += 1
            kind = JobEventKind.FAILED

        self._emit(
            JobEvent(
                kind=kind, job_id=job.id, print_id=job.print_id, attempts=job.attempts, error=error
            )
        )

    async def _periodic(
        self, name: str, interval: float, func: Callable[[], Awaitable[None]]
    ) -> None:
        while not await self._sleep_or_stop(interval):
            try:
                await func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.maintenance_failed",
                    task=name,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )

    async def stats(self) -> dict[str, Any]:
        """Queue counts plus this worker's cumulative totals."""
        async with await self.context.uow_factory() as uow:
            counts = await uow.jobs.counts()
            paused = await uow.system_state.is_queue_paused()
        return {
            **counts,
            "paused": paused,
            "healthy": is_queue_healthy(counts),
            "in_flight": self._active,
            "total_processed": self.totals.processed,
            "total_failed": self.totals.failed,
            "uptime_seconds": round(time.monotonic() - self.totals.started_at, 1),
        }

    async def _log_stats(self) -> None:
        logger.info("worker.stats", **(await self.stats()))

    async def _sweep_retries(self) -> None:
        async with await self.context.uow_factory() as uow:
            summary = await self.retry_scheduler.sweep(
                uow, limit=self.settings.retry_sweep_batch_size
            )
        if summary.jobs_enqueued:
            logger.info(
                "worker.retry_sweep",
                slots_selected=summary.slots_selected,
                jobs_enqueued=summary.jobs_enqueued,
            )

    async def _clean_jobs(self) -> None:
        cutoff = utc_now() - timedelta(hours=self.settings.job_retention_hours)
        async with await self.context.uow_factory() as uow:
            removed = await uow.jobs.clean(cutoff)
        logger.info("worker.jobs_cleaned", removed=removed, older_than=cutoff.isoformat())

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop claiming and drain in-flight jobs.

        Args:
            timeout: Seconds to wait for in-flight jobs (default SHUTDOWN_TIMEOUT_SECONDS)

        Returns:
            True if every in-flight job finished in time, False if jobs were cancelled
        """
        timeout = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        self._stopping.set()
        logger.info("worker.shutdown_started", in_flight=self._active, timeout=timeout)

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

        deadline = time.monotonic() + timeout
        while self._active > 0 and time.monotonic() < deadline:
            await asyncio.sleep(0.1)

        in_flight = self._active
        clean = in_flight == 0
        if not clean:
            for task in self._consumers:
                task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)

        if clean:
            logger.info(
                "worker.stopped",
                total_processed=self.totals.processed,
                total_failed=self.totals.failed,
            )
        else:
            logger.error(
                "worker.shutdown_forced",
                in_flight=in_flight,
                total_processed=self.totals.processed,
                total_failed=self.totals.failed,
            )

        await self.context.close()
        return clean
