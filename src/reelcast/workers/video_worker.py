"""Video worker pool: claims render jobs and runs them with bounded concurrency.

The pool polls the queue while it has free slots. Each claimed job runs as its
own asyncio task; when a task finishes the pool is woken up to claim a
replacement immediately instead of waiting for the next poll tick.

On startup the pool re-queues jobs a crashed worker left in the active state.

Shutdown is graceful: ``stop()`` stops new claims and ``run()`` returns once
every in-flight job has finished. Cancelling the ``run()`` task instead
interrupts in-flight jobs (their encoder subprocesses are killed) and hands
them back to the queue without spending an attempt.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from reelcast.core.config import Settings
from reelcast.models.job_payload import VideoJobData, VideoJobResult
from reelcast.models.video_job import VideoJob
from reelcast.services.exceptions import PermanentError
from reelcast.services.job_queue import VideoJobQueue
from reelcast.services.storage import ObjectStorage
from reelcast.workers.video_processor import ProgressCallback, process_video_job

logger = structlog.get_logger(__name__)

JobProcessor = Callable[
    [VideoJobData, ObjectStorage, Settings, ProgressCallback], Awaitable[VideoJobResult]
]

ERROR_BACKOFF_SECONDS = 5.0
RECORD_ATTEMPTS = 3
RECORD_RETRY_SECONDS = 1.0
SHUTDOWN_MESSAGE = "worker shut down while processing"


class ProgressReporter:
    """Forwards pipeline progress to the queue without blocking the pipeline.

    Values that do not increase are dropped. Writes are coalesced: at most one
    update is in flight per job, and it always carries the latest value.
    """

    def __init__(self, queue: VideoJobQueue, job_id: str):
        self.queue = queue
        self.job_id = job_id
        self.latest = 0
        self._written = 0
        self._task: asyncio.Task | None = None

    def __call__(self, percent: int) -> None:
        if percent <= self.latest:
            return
        self.latest = percent
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._flush())

    async def _flush(self) -> None:
        while self._written < self.latest:
            value = self.latest
            try:
                await self.queue.update_progress(self.job_id, value)
            except Exception as e:
                # Progress is best-effort; the next value (or completion) supersedes it
                logger.warning(
                    "video_job.progress_update_failed",
                    job_id=self.job_id,
                    progress=value,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
            self._written = value

    async def drain(self) -> None:
        """Wait for the pending write, so it cannot land after complete/fail."""
        if self._task is not None:
            await asyncio.shield(self._task)


class VideoWorkerPool:
    """Bounded-concurrency scheduler for the video job queue."""

    def __init__(
        self,
        queue: VideoJobQueue,
        storage: ObjectStorage,
        settings: Settings,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        job_timeout: float | None = None,
        processor: JobProcessor = process_video_job,
        record_retry_delay: float = RECORD_RETRY_SECONDS,
    ):
        """Initialize the pool.

        Args:
            queue: Job store
            storage: Object storage passed to the pipeline
            settings: Application settings (defaults for the tunables below)
            concurrency: Maximum jobs in flight (VIDEO_WORKER_CONCURRENCY)
            poll_interval: Seconds between claims when idle or full
            job_timeout: Wall-clock deadline per job; None disables it
            processor: Pipeline coroutine run for each claimed job
            record_retry_delay: Seconds between attempts to store a job outcome
        """
        self.queue = queue
        self.storage = storage
        self.settings = settings
        self.concurrency = concurrency or settings.video_worker_concurrency
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.video_worker_poll_interval_seconds
        )
        self.job_timeout = (
            job_timeout if job_timeout is not None else settings.video_job_timeout_seconds
        )
        self.processor = processor
        self.record_retry_delay = record_retry_delay
        self.orphan_after = settings.video_job_orphan_after_seconds

        self._in_flight: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()
        self._wakeup = asyncio.Event()
        self._stopping = False

    @property
    def in_flight(self) -> frozenset[str]:
        """Job IDs currently being processed."""
        return frozenset(self._in_flight)

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        """Stop claiming new jobs; ``run()`` returns after in-flight jobs finish."""
        if not self._stopping:
            logger.info("video_worker.stopping", in_flight=len(self._in_flight))
        self._stopping = True
        self._wakeup.set()

    async def run(self) -> None:
        """Claim and process jobs until ``stop()`` is called.

        A ``stop()`` issued before ``run()`` starts makes it return immediately.
        """
        logger.info(
            "video_worker.started",
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
            job_timeout=self.job_timeout,
        )

        try:
            await self._recover_orphaned()

            while not self._stopping:
                if len(self._in_flight) >= self.concurrency:
                    await self._sleep(self.poll_interval)
                    continue

                try:
                    job = await self.queue.claim_next()
                except Exception as e:
                    # Store unavailable - log and back off, never crash the loop
                    logger.error(
                        "video_worker.claim_failed",
                        error_type=type(e).__name__,
                        error_message=str(e),
                        exc_info=True,
                    )
                    await self._sleep(ERROR_BACKOFF_SECONDS)
                    continue

                if job is None:
                    await self._sleep(self.poll_interval)
                    continue

                self._start(job)

        except asyncio.CancelledError:
            await self._cancel_in_flight()
            logger.info("video_worker.stopped", reason="cancelled")
            raise

        await self._drain()
        logger.info("video_worker.stopped", reason="shutdown")

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a job in the store and interrupt it if it runs in this pool.

        Returns:
            True if the job was waiting or active and is now failed
        """
        cancelled = await self.queue.cancel(job_id)
        task = self._in_flight.get(job_id)
        if cancelled and task is not None and not task.done():
            self._cancel_requested.add(job_id)
            task.cancel()
            logger.info("video_worker.job_interrupted", job_id=job_id)
        return cancelled

    async def _recover_orphaned(self) -> None:
        """Re-queue jobs left active by a worker that died mid-run."""
        try:
            await self.queue.recover_orphaned(self.orphan_after)
        except Exception as e:
            # Claiming still works; orphans are picked up on the next start
            logger.error(
                "video_worker.recovery_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )

    async def _sleep(self, timeout: float) -> None:
        """Sleep until the timeout expires or a job finishes."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except TimeoutError:
            pass
        if not self._stopping:
            self._wakeup.clear()

    def _start(self, job: VideoJob) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"video-job-{job.job_id}")
        self._in_flight[job.job_id] = task
        task.add_done_callback(lambda t, job_id=job.job_id: self._on_done(job_id, t))

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._in_flight.pop(job_id, None)
        self._cancel_requested.discard(job_id)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error(
                "video_worker.job_task_error",
                job_id=job_id,
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
        self._wakeup.set()

    async def _run_job(self, job: VideoJob) -> None:
        """Run the pipeline for one claimed job and record the outcome."""
        start_time = time.time()
        reporter = ProgressReporter(self.queue, job.job_id)

        try:
            pipeline = self.processor(job.spec, self.storage, self.settings, reporter)
            if self.job_timeout:
                result = await asyncio.wait_for(pipeline, self.job_timeout)
            else:
                result = await pipeline

        except asyncio.CancelledError:
            await reporter.drain()
            if job.job_id in self._cancel_requested:
                # Store already marked it failed; the cancel ends here
                logger.info("video_job.cancelled", job_id=job.job_id, attempt=job.attempts)
                return
            try:
                await self.queue.release(job.job_id, SHUTDOWN_MESSAGE)
            except Exception as e:
                logger.error(
                    "video_job.release_failed",
                    job_id=job.job_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
            raise

        except Exception as e:
            await reporter.drain()
            if isinstance(e, TimeoutError) and self.job_timeout:
                # Deadline expired; wait_for already cancelled the pipeline
                message = f"timed out after {self.job_timeout:g}s"
            else:
                message = str(e) or type(e).__name__
            log = logger.error if isinstance(e, PermanentError) else logger.warning
            log(
                "video_job.attempt_failed",
                job_id=job.job_id,
                attempt=job.attempts,
                error_type=type(e).__name__,
                error_message=message,
                duration_seconds=time.time() - start_time,
            )
            await self._record(job.job_id, "fail", lambda: self.queue.fail(job.job_id, message))

        else:
            await reporter.drain()
            await self._record(
                job.job_id, "complete", lambda: self.queue.complete(job.job_id, result)
            )

    async def _record(
        self, job_id: str, outcome: str, write: Callable[[], Awaitable[Any]]
    ) -> None:
        """Store a job outcome, retrying while the store is unavailable.

        If every attempt fails the job stays active until orphan recovery
        re-queues it.
        """
        for attempt in range(1, RECORD_ATTEMPTS + 1):
            try:
                await write()
                return
            except Exception as e:
                logger.error(
                    "video_job.record_failed",
                    job_id=job_id,
                    outcome=outcome,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
            if attempt < RECORD_ATTEMPTS:
                await asyncio.sleep(self.record_retry_delay)

        logger.error("video_job.left_active", job_id=job_id, outcome=outcome)

    async def _drain(self) -> None:
        if self._in_flight:
            logger.info("video_worker.draining", in_flight=len(self._in_flight))
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def _cancel_in_flight(self) -> None:
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def run_cleanup_loop(queue: VideoJobQueue, interval_seconds: float) -> None:
    """Delete expired jobs every ``interval_seconds`` until cancelled."""
    logger.info("video_job_cleanup.started", interval=interval_seconds)

    try:
        while True:
            try:
                await queue.cleanup()
            except Exception as e:
                logger.error(
                    "video_job_cleanup.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
            await asyncio.sleep(interval_seconds)

    except asyncio.CancelledError:
        logger.info("video_job_cleanup.stopped")
        raise
