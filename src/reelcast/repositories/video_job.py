"""VideoJob repository for the render queue.

Provides data access methods for VideoJob entities. Every state transition is a
single conditional UPDATE, so concurrent workers and API requests never need
application-level locks.
"""

from datetime import datetime, timedelta

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reelcast.models.job_payload import VideoJobData, VideoJobResult
from reelcast.models.video_job import JobState, VideoJob, utcnow
from reelcast.services.exceptions import DuplicateJobError

COMPLETED_RETENTION = timedelta(hours=24)
FAILED_RETENTION = timedelta(days=7)
CANCELLED_MESSAGE = "cancelled by user"
ORPHANED_MESSAGE = "worker stopped while processing"


class VideoJobRepository:
    """Repository for VideoJob entities.

    Claims use ``FOR UPDATE SKIP LOCKED`` inside a single UPDATE statement, so
    concurrent workers never receive the same job.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, data: VideoJobData) -> VideoJob:
        """Insert a new waiting job.

        Args:
            data: Job specification submitted by the client

        Returns:
            Persisted job with generated ID

        Raises:
            DuplicateJobError: If a job with the same job_id already exists
        """
        job = VideoJob.from_data(data)
        self.session.add(job)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicateJobError(data.job_id) from e
        return job

    async def get_by_job_id(self, job_id: str) -> VideoJob | None:
        """Retrieve job by its client-supplied job_id.

        Args:
            job_id: Natural key used by clients to poll status

        Returns:
            VideoJob if found, None otherwise
        """
        result = await self.session.execute(
            select(VideoJob).where(VideoJob.job_id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def claim_next(self) -> VideoJob | None:
        """Atomically claim the next eligible job.

        Query explanation:
        - Subquery picks the first waiting job with attempts left, ordered by
          priority then creation time (FIFO within a priority band)
        - FOR UPDATE SKIP LOCKED: rows being claimed by another worker are skipped
        - Outer WHERE re-checks state = 'waiting', so on backends without row
          locks only one of several concurrent callers matches the row
        - SET state='active', attempts+1, progress=0, started_at=now

        Returns:
            The claimed job (state=active), or None if nothing is eligible
        """
        now = utcnow()
        candidate = (
            select(VideoJob.id)
            .where(
                VideoJob.state == JobState.WAITING.value,  # type: ignore[arg-type]
                VideoJob.attempts < VideoJob.max_attempts,  # type: ignore[arg-type]
            )
            .order_by(VideoJob.priority.asc(), VideoJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await self.session.execute(
            update(VideoJob)
            .where(
                VideoJob.id == candidate,  # type: ignore[arg-type]
                VideoJob.state == JobState.WAITING.value,  # type: ignore[arg-type]
            )
            .values(
                state=JobState.ACTIVE.value,
                attempts=VideoJob.attempts + 1,
                progress=0,
                started_at=now,
                updated_at=now,
            )
            .returning(VideoJob)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_progress(self, job_id: str, percent: int) -> bool:
        """Record progress for an active job.

        The update only applies while the job is still active and never lowers
        the stored value, so a late report cannot overwrite completion.

        Args:
            job_id: Job to update
            percent: Progress 0-100 (clamped)

        Returns:
            True if a row was updated
        """
        percent = max(0, min(100, int(percent)))
        result = await self.session.execute(
            update(VideoJob)
            .where(
                VideoJob.job_id == job_id,  # type: ignore[arg-type]
                VideoJob.state == JobState.ACTIVE.value,  # type: ignore[arg-type]
                VideoJob.progress <= percent,  # type: ignore[arg-type]
            )
            .values(progress=percent, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def complete(self, job_id: str, job_result: VideoJobResult) -> bool:
        """Mark an active job completed and store its result.

        Returns:
            True if the job was active and is now completed; False if it was
            cancelled (or otherwise left the active state) while running
        """
        now = utcnow()
        result = await self.session.execute(
            update(VideoJob)
            .where(
                VideoJob.job_id == job_id,  # type: ignore[arg-type]
                VideoJob.state == JobState.ACTIVE.value,  # type: ignore[arg-type]
            )
            .values(
                state=JobState.COMPLETED.value,
                progress=100,
                result=job_result.model_dump(mode="json"),
                error=None,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def fail(self, job_id: str, error_message: str) -> JobState | None:
        """Record a failed attempt.

        Query explanation:
        - attempts >= max_attempts: state='failed', completed_at=now (permanent)
        - otherwise: state='waiting' so a later claim retries the job
        - WHERE state='active': a job cancelled mid-run stays failed

        Args:
            job_id: Job whose attempt failed
            error_message: Error description (truncated to 1000 characters)

        Returns:
            Resulting state, or None if the job was not active
        """
        now = utcnow()
        exhausted = VideoJob.attempts >= VideoJob.max_attempts  # type: ignore[operator]
        result = await self.session.execute(
            update(VideoJob)
            .where(
                VideoJob.job_id == job_id,  # type: ignore[arg-type]
                VideoJob.state == JobState.ACTIVE.value,  # type: ignore[arg-type]
            )
            .values(
                state=case(
                    (exhausted, JobState.FAILED.value),
                    else_=JobState.WAITING.value,
                ),
                completed_at=case((exhausted, now), else_=VideoJob.completed_at),
                error=error_message[:1000],
                updated_at=now,
            )
            .returning(VideoJob.state)
            .execution_options(synchronize_session=False)
        )
        new_state = result.scalar_one_or_none()
        return JobState(new_state) if new_state is not None else None

    async def cancel(self, job_id: str) -> bool:
        """Force a waiting or active job into the failed state.

        Returns:
            True if the job was cancelled, False if unknown or already terminal
        """
        now = utcnow()
        result = await self.session.execute(
            update(VideoJob)
            .where(
                VideoJob.job_id == job_id,  # type: ignore[arg-type]
                VideoJob.state.in_([JobState.WAITING.value, JobState.ACTIVE.value]),  # type: ignore[attr-defined]
            )
            .values(
                state=JobState.FAILED.value,
                error=CANCELLED_MESSAGE,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def release(self, job_id: str, reason: str) -> bool:
        """Hand an active job back to the queue without spending an attempt.

        Used when the worker, not the job, ends the attempt (shutdown).

        Returns:
            True if the job was active and is waiting again
        """
        result = await self.session.execute(
            update(VideoJob)
            .where(
                VideoJob.job_id == job_id,  # type: ignore[arg-type]
                VideoJob.state == JobState.ACTIVE.value,  # type: ignore[arg-type]
            )
            .values(
                state=JobState.WAITING.value,
                attempts=case((VideoJob.attempts > 0, VideoJob.attempts - 1), else_=0),
                error=reason[:1000],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def recover_orphaned(self, stale_before: datetime | None = None) -> tuple[int, int]:
        """Reset jobs left active by a worker that died mid-run.

        Query explanation:
        - WHERE state='active' (and updated_at < stale_before when given, so jobs
          still reporting progress from another live worker are left alone)
        - attempts left: state='waiting', retried by a later claim
        - attempts exhausted: state='failed', completed_at=now
        The interrupted attempt stays counted.

        Args:
            stale_before: Only recover jobs not updated since this time

        Returns:
            Tuple of (re-queued, failed)
        """
        now = utcnow()
        conditions = [VideoJob.state == JobState.ACTIVE.value]  # type: ignore[arg-type]
        if stale_before is not None:
            conditions.append(VideoJob.updated_at < stale_before)  # type: ignore[arg-type]

        failed = await self.session.execute(
            update(VideoJob)
            .where(*conditions, VideoJob.attempts >= VideoJob.max_attempts)  # type: ignore[arg-type]
            .values(
                state=JobState.FAILED.value,
                error=ORPHANED_MESSAGE,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        requeued = await self.session.execute(
            update(VideoJob)
            .where(*conditions)
            .values(state=JobState.WAITING.value, error=ORPHANED_MESSAGE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return requeued.rowcount, failed.rowcount  # type: ignore[attr-defined]

    async def delete_expired(self) -> tuple[int, int]:
        """Delete completed jobs older than 24h and failed jobs older than 7 days.

        Returns:
            Tuple of (completed deleted, failed deleted)
        """
        now = utcnow()
        completed = await self.session.execute(
            delete(VideoJob)
            .where(
                VideoJob.state == JobState.COMPLETED.value,  # type: ignore[arg-type]
                VideoJob.completed_at < now - COMPLETED_RETENTION,  # type: ignore[operator]
            )
            .execution_options(synchronize_session=False)
        )
        failed = await self.session.execute(
            delete(VideoJob)
            .where(
                VideoJob.state == JobState.FAILED.value,  # type: ignore[arg-type]
                VideoJob.completed_at < now - FAILED_RETENTION,  # type: ignore[operator]
            )
            .execution_options(synchronize_session=False)
        )
        return completed.rowcount, failed.rowcount  # type: ignore[attr-defined]
