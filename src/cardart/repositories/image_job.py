"""ImageProcessingJob repository - the database-backed job queue.

Consumers claim rows with a conditional UPDATE (status still 'waiting'), so
two workers never receive the same delivery even when their candidate reads
overlap. Delivery is at-least-once: rows left 'active' by a crashed worker are
handed out again after recover_orphaned().
"""

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardart.core.timezone import utc_now
from cardart.models.image_job import ImageProcessingJob, JobStatus


class ImageJobRepository:
    """Repository for ImageProcessingJob queue rows."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def enqueue(
        self,
        payload: dict[str, Any],
        priority: int = 5,
        available_at: Optional[datetime] = None,
        max_attempts: int = 3,
    ) -> ImageProcessingJob:
        """Insert a new waiting job.

        Args:
            payload: Job payload in wire format (printId, imageUrls, urlMapping, priority)
            priority: Lower values are served first
            available_at: Earliest delivery time (None = immediately)
            max_attempts: Job-level delivery limit

        Returns:
            Persisted job with generated ID
        """
        job = ImageProcessingJob(
            print_id=payload["printId"],
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            available_at=available_at or utc_now(),
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> ImageProcessingJob | None:
        """Retrieve job by UUID, refreshing any instance already in the session."""
        result = await self.session.execute(
            select(ImageProcessingJob)
            .where(ImageProcessingJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim_next(self, now: Optional[datetime] = None) -> ImageProcessingJob | None:
        """Claim the next deliverable job and mark it active.

        Query explanation:
        - WHERE status = 'waiting' AND available_at <= now: Deliverable rows only
        - ORDER BY priority, available_at, created_at: Highest priority, oldest first
        - FOR UPDATE SKIP LOCKED: Skip rows another consumer is claiming
        - UPDATE ... WHERE status = 'waiting': Claim succeeds for exactly one consumer

        Returns:
            Claimed job (attempts already incremented), or None if nothing is deliverable
        """
        now = now or utc_now()
        candidates = await self.session.execute(
            select(ImageProcessingJob.id)
            .where(
                ImageProcessingJob.status == JobStatus.WAITING,  # type: ignore[arg-type]
                ImageProcessingJob.available_at <= now,  # type: ignore[arg-type]
            )
            .order_by(
                ImageProcessingJob.priority.asc(),  # type: ignore[attr-defined]
                ImageProcessingJob.available_at.asc(),  # type: ignore[attr-defined]
                ImageProcessingJob.created_at.asc(),  # type: ignore[attr-defined]
            )
            .limit(5)
            .with_for_update(skip_locked=True)
        )

        for job_id in candidates.scalars().all():
            claimed = await self.session.execute(
                update(ImageProcessingJob)
                .where(
                    ImageProcessingJob.id == job_id,  # type: ignore[arg-type]
                    ImageProcessingJob.status == JobStatus.WAITING,  # type: ignore[arg-type]
                )
                .values(
                    status=JobStatus.ACTIVE,
                    attempts=ImageProcessingJob.attempts + 1,
                    started_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:  # type: ignore[attr-defined]
                return await self.get_by_id(job_id)

        return None

    async def complete(self, job: ImageProcessingJob, result: dict[str, Any]) -> None:
        """Mark an active job completed and store its result."""
        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.finished_at = utc_now()
        self.session.add(job)
        await self.session.flush()

    async def fail(
        self,
        job: ImageProcessingJob,
        error_message: str,
        retryable: bool = True,
        backoff_seconds: float = 2.0,
    ) -> bool:
        """Record a failed delivery.

        Retryable failures with attempts left go back to waiting with
        exponential backoff (backoff_seconds * 2^(attempts-1)); everything
        else is marked failed.

        Returns:
            True if the job will be delivered again, False if it is terminally failed
        """
        now = utc_now()
        job.error = error_message[:1000]
        if retryable and job.attempts < job.max_attempts:
            delay = backoff_seconds * (2 ** max(job.attempts - 1, 0))
            job.status = JobStatus.WAITING
            job.available_at = now + timedelta(seconds=delay)
            redeliver = True
        else:
            job.status = JobStatus.FAILED
            job.finished_at = now
            redeliver = False
        self.session.add(job)
        await self.session.flush()
        return redeliver

    async def counts(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Count jobs per queue state.

        Returns:
            Dict with waiting, delayed, active, completed and failed counts
        """
        now = now or utc_now()
        counts = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}

        result = await self.session.execute(
            select(ImageProcessingJob.status, func.count(ImageProcessingJob.id)).group_by(  # type: ignore[arg-type]
                ImageProcessingJob.status
            )
        )
        for status, count in result.all():
            counts[JobStatus(status).value] = count

        delayed = await self.session.execute(
            select(func.count(ImageProcessingJob.id)).where(  # type: ignore[arg-type]
                ImageProcessingJob.status == JobStatus.WAITING,  # type: ignore[arg-type]
                ImageProcessingJob.available_at > now,  # type: ignore[arg-type]
            )
        )
        counts["delayed"] = delayed.scalar() or 0
        counts["waiting"] -= counts["delayed"]
        return counts

    async def recover_orphaned(self) -> list[ImageProcessingJob]:
        """Reset jobs stuck in 'active' back to 'waiting'.

        Worker crashes or forced shutdowns leave rows active. Must only run
        while no consumer of this queue is alive.

        Returns:
            Jobs that were reset (stalled deliveries)
        """
        result = await self.session.execute(
            select(ImageProcessingJob)
            .where(ImageProcessingJob.status == JobStatus.ACTIVE)  # type: ignore[arg-type]
            .with_for_update()
        )
        jobs = list(result.scalars().all())
        for job in jobs:
            job.status = JobStatus.WAITING
            job.available_at = utc_now()
            self.session.add(job)
        await self.session.flush()
        return jobs

    async def list_by_status(self, status: JobStatus, limit: int = 10) -> list[ImageProcessingJob]:
        """Retrieve jobs by status, newest first."""
        result = await self.session.execute(
            select(ImageProcessingJob)
            .where(ImageProcessingJob.status == status)  # type: ignore[arg-type]
            .order_by(ImageProcessingJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def clean(self, older_than: datetime) -> int:
        """Delete completed and failed jobs finished before a cutoff.

        Returns:
            Number of deleted rows
        """
        result = await self.session.execute(
            delete(ImageProcessingJob).where(
                ImageProcessingJob.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),  # type: ignore[attr-defined]
                ImageProcessingJob.finished_at < older_than,  # type: ignore[operator]
            )
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def clear(self) -> int:
        """Delete every job regardless of state.

        Returns:
            Number of deleted rows
        """
        result = await self.session.execute(delete(ImageProcessingJob))
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
