"""Durable video job queue backed by the ``video_jobs`` table.

Every operation runs in its own Unit of Work (one transaction), which keeps the
claim/update statements short and lets many workers share the table safely.
"""

from datetime import timedelta
from typing import Awaitable, Callable

import structlog

from reelcast.models.job_payload import EnqueuedJob, JobStatus, VideoJobData, VideoJobResult
from reelcast.models.video_job import JobState, VideoJob, utcnow
from reelcast.uow import UnitOfWork

logger = structlog.get_logger(__name__)

UowFactory = Callable[[], Awaitable[UnitOfWork]]


class VideoJobQueue:
    """Job Store operations: enqueue, claim, progress, complete, fail, release, cancel,
    orphan recovery and cleanup.
    """

    def __init__(self, uow_factory: UowFactory):
        self._uow_factory = uow_factory

    async def enqueue(self, data: VideoJobData) -> EnqueuedJob:
        """Insert a waiting job.

        Raises:
            DuplicateJobError: If ``data.job_id`` was already submitted. Callers
                should treat this as "already submitted", not retry it.
        """
        async with await self._uow_factory() as uow:
            job = await uow.video_jobs.add(data)

        logger.info(
            "video_job.enqueued",
            job_id=job.job_id,
            priority=job.priority,
            quality=data.quality,
            has_text=data.text_settings is not None,
        )
        return EnqueuedJob(id=str(job.id), job_id=job.job_id)

    async def claim_next(self) -> VideoJob | None:
        """Claim the oldest, highest-priority waiting job (or None)."""
        async with await self._uow_factory() as uow:
            job = await uow.video_jobs.claim_next()

        if job is not None:
            logger.info(
                "video_job.claimed",
                job_id=job.job_id,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
            )
        return job

    async def update_progress(self, job_id: str, percent: int) -> bool:
        async with await self._uow_factory() as uow:
            return await uow.video_jobs.update_progress(job_id, percent)

    async def complete(self, job_id: str, result: VideoJobResult) -> bool:
        async with await self._uow_factory() as uow:
            completed = await uow.video_jobs.complete(job_id, result)

        if completed:
            logger.info(
                "video_job.completed",
                job_id=job_id,
                duration=result.duration,
                file_size=result.file_size,
            )
        else:
            logger.warning("video_job.complete_skipped", job_id=job_id, reason="not_active")
        return completed

    async def fail(self, job_id: str, error_message: str) -> JobState | None:
        """Record a failed attempt; re-queues while attempts remain."""
        async with await self._uow_factory() as uow:
            new_state = await uow.video_jobs.fail(job_id, error_message)

        if new_state == JobState.WAITING:
            logger.warning("video_job.retry_scheduled", job_id=job_id, error_message=error_message)
        elif new_state == JobState.FAILED:
            logger.error("video_job.failed", job_id=job_id, error_message=error_message)
        else:
            logger.warning("video_job.fail_skipped", job_id=job_id, reason="not_active")
        return new_state

    async def release(self, job_id: str, reason: str) -> bool:
        """Re-queue an active job without counting the interrupted attempt."""
        async with await self._uow_factory() as uow:
            released = await uow.video_jobs.release(job_id, reason)

        if released:
            logger.info("video_job.released", job_id=job_id, reason=reason)
        else:
            logger.warning("video_job.release_skipped", job_id=job_id, reason="not_active")
        return released

    async def recover_orphaned(self, idle_seconds: float | None = None) -> tuple[int, int]:
        """Reset jobs stuck in 'active' after a worker crash.

        Args:
            idle_seconds: Only recover jobs without an update for this long;
                None recovers every active job

        Returns:
            Tuple of (re-queued, failed)
        """
        stale_before = utcnow() - timedelta(seconds=idle_seconds) if idle_seconds else None
        async with await self._uow_factory() as uow:
            requeued, failed = await uow.video_jobs.recover_orphaned(stale_before)

        if requeued or failed:
            logger.info("video_job.recovery", orphaned_requeued=requeued, orphaned_failed=failed)
        return requeued, failed

    async def cancel(self, job_id: str) -> bool:
        async with await self._uow_factory() as uow:
            cancelled = await uow.video_jobs.cancel(job_id)

        logger.info("video_job.cancel_requested", job_id=job_id, cancelled=cancelled)
        return cancelled

    async def get_status(self, job_id: str) -> JobStatus | None:
        async with await self._uow_factory() as uow:
            job = await uow.video_jobs.get_by_job_id(job_id)
        return job.to_status() if job else None

    async def cleanup(self) -> tuple[int, int]:
        """Delete expired completed (24h) and failed (7 days) jobs."""
        async with await self._uow_factory() as uow:
            completed, failed = await uow.video_jobs.delete_expired()

        if completed or failed:
            logger.info("video_job.cleanup", completed_deleted=completed, failed_deleted=failed)
        return completed, failed
