"""Job store tests against PostgreSQL (testcontainers).

Covers enqueue, atomic claims under concurrency, the retry bound, guarded
progress/complete/fail transitions, release, orphan recovery, cancellation and
expiry cleanup, plus an end-to-end run of the worker pool against the real table.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from reelcast.models.job_payload import VideoJobData, VideoJobResult
from reelcast.models.video_job import JobState, VideoJob, utcnow
from reelcast.services.exceptions import DuplicateJobError
from reelcast.services.storage import LocalObjectStorage
from reelcast.workers.video_worker import VideoWorkerPool


def job_data(job_id: str, quality: str = "1080p") -> VideoJobData:
    return VideoJobData(
        job_id=job_id,
        input_video_key=f"videos/{job_id}/input.mp4",
        output_video_key=f"videos/{job_id}/output.mp4",
        quality=quality,
    )


def result_for(job_id: str) -> VideoJobResult:
    return VideoJobResult(
        output_video_key=f"videos/{job_id}/output.mp4",
        download_url="https://cdn.example/out.mp4",
        duration=10.0,
        file_size=2048,
    )


@pytest.mark.asyncio
async def test_enqueue_creates_waiting_job(job_queue):
    enqueued = await job_queue.enqueue(job_data("job-a"))

    status = await job_queue.get_status("job-a")

    assert enqueued.job_id == "job-a"
    assert status.id == enqueued.id
    assert status.state == "waiting"
    assert status.progress == 0
    assert status.attempts == 0
    assert status.max_attempts == 3


@pytest.mark.asyncio
async def test_enqueue_duplicate_job_id_is_rejected(job_queue):
    await job_queue.enqueue(job_data("job-a"))

    with pytest.raises(DuplicateJobError):
        await job_queue.enqueue(job_data("job-a"))


@pytest.mark.asyncio
async def test_get_status_unknown_job(job_queue):
    assert await job_queue.get_status("missing") is None


@pytest.mark.asyncio
async def test_claim_empty_queue_returns_none(job_queue):
    assert await job_queue.claim_next() is None


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_fifo(job_queue):
    await job_queue.enqueue(job_data("first"))
    await job_queue.enqueue(job_data("premium", quality="4k"))
    await job_queue.enqueue(job_data("second", quality="720p"))

    claimed = [(await job_queue.claim_next()).job_id for _ in range(3)]

    assert claimed == ["premium", "first", "second"]
    assert await job_queue.claim_next() is None


@pytest.mark.asyncio
async def test_claim_marks_job_active(job_queue):
    await job_queue.enqueue(job_data("job-a"))

    job = await job_queue.claim_next()

    assert job.job_state == JobState.ACTIVE
    assert job.attempts == 1
    assert job.started_at is not None
    assert job.spec.input_video_key == "videos/job-a/input.mp4"


@pytest.mark.asyncio
async def test_concurrent_claims_hand_out_a_job_once(job_queue):
    await job_queue.enqueue(job_data("only"))

    results = await asyncio.gather(*(job_queue.claim_next() for _ in range(10)))

    claimed = [job for job in results if job is not None]
    assert len(claimed) == 1
    assert claimed[0].job_id == "only"
    assert (await job_queue.get_status("only")).attempts == 1


@pytest.mark.asyncio
async def test_concurrent_claims_distribute_distinct_jobs(job_queue):
    for n in range(5):
        await job_queue.enqueue(job_data(f"job-{n}"))

    results = await asyncio.gather(*(job_queue.claim_next() for _ in range(8)))

    claimed = sorted(job.job_id for job in results if job is not None)
    assert claimed == [f"job-{n}" for n in range(5)]


@pytest.mark.asyncio
async def test_fail_requeues_until_attempts_exhausted(job_queue):
    await job_queue.enqueue(job_data("job-a"))

    states = []
    for attempt in range(3):
        await job_queue.claim_next()
        states.append(await job_queue.fail("job-a", f"FFmpeg error: attempt {attempt + 1}"))

    assert states == [JobState.WAITING, JobState.WAITING, JobState.FAILED]
    status = await job_queue.get_status("job-a")
    assert status.state == "failed"
    assert status.attempts == 3
    assert status.error == "FFmpeg error: attempt 3"
    assert await job_queue.claim_next() is None


@pytest.mark.asyncio
async def test_fail_on_inactive_job_is_ignored(job_queue):
    await job_queue.enqueue(job_data("job-a"))

    assert await job_queue.fail("job-a", "boom") is None
    assert (await job_queue.get_status("job-a")).state == "waiting"


@pytest.mark.asyncio
async def test_complete_stores_result(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()

    assert await job_queue.complete("job-a", result_for("job-a")) is True

    status = await job_queue.get_status("job-a")
    assert status.state == "completed"
    assert status.progress == 100
    assert status.result.download_url == "https://cdn.example/out.mp4"
    assert status.result.file_size == 2048
    assert status.error is None


@pytest.mark.asyncio
async def test_retry_clears_previous_error_on_completion(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()
    await job_queue.fail("job-a", "transient")
    await job_queue.claim_next()

    await job_queue.complete("job-a", result_for("job-a"))

    status = await job_queue.get_status("job-a")
    assert status.attempts == 2
    assert status.error is None


@pytest.mark.asyncio
async def test_progress_never_decreases_and_stops_after_completion(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()

    assert await job_queue.update_progress("job-a", 40) is True
    assert await job_queue.update_progress("job-a", 20) is False
    assert (await job_queue.get_status("job-a")).progress == 40

    await job_queue.complete("job-a", result_for("job-a"))
    assert await job_queue.update_progress("job-a", 95) is False
    assert (await job_queue.get_status("job-a")).progress == 100


@pytest.mark.asyncio
async def test_progress_on_waiting_job_is_ignored(job_queue):
    await job_queue.enqueue(job_data("job-a"))

    assert await job_queue.update_progress("job-a", 50) is False


@pytest.mark.asyncio
async def test_cancel_waiting_and_active_jobs(job_queue):
    await job_queue.enqueue(job_data("waiting"))
    await job_queue.enqueue(job_data("active", quality="4k"))
    await job_queue.claim_next()

    assert await job_queue.cancel("waiting") is True
    assert await job_queue.cancel("active") is True

    for job_id in ("waiting", "active"):
        status = await job_queue.get_status(job_id)
        assert status.state == "failed"
        assert status.error == "cancelled by user"


@pytest.mark.asyncio
async def test_cancelled_job_cannot_be_completed_or_claimed(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()
    await job_queue.cancel("job-a")

    assert await job_queue.complete("job-a", result_for("job-a")) is False
    assert await job_queue.fail("job-a", "late failure") is None
    assert await job_queue.claim_next() is None
    assert (await job_queue.get_status("job-a")).error == "cancelled by user"


@pytest.mark.asyncio
async def test_cancel_terminal_or_unknown_job(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()
    await job_queue.complete("job-a", result_for("job-a"))

    assert await job_queue.cancel("job-a") is False
    assert await job_queue.cancel("missing") is False


@pytest.mark.asyncio
async def test_release_requeues_without_spending_an_attempt(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()

    assert await job_queue.release("job-a", "worker shut down while processing") is True
    assert await job_queue.release("job-a", "worker shut down while processing") is False

    status = await job_queue.get_status("job-a")
    assert status.state == "waiting"
    assert status.attempts == 0
    assert status.error == "worker shut down while processing"

    job = await job_queue.claim_next()
    assert job.job_id == "job-a"
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_recover_orphaned_requeues_or_fails_active_jobs(job_queue):
    await job_queue.enqueue(job_data("job-a"))
    await job_queue.claim_next()
    await job_queue.enqueue(job_data("job-b"))
    for attempt in range(2):
        await job_queue.claim_next()
        await job_queue.fail("job-b", f"FFmpeg error: attempt {attempt + 1}")
    await job_queue.claim_next()
    await job_queue.enqueue(job_data("job-c"))

    assert await job_queue.recover_orphaned() == (1, 1)

    job_a = await job_queue.get_status("job-a")
    assert job_a.state == "waiting"
    assert job_a.attempts == 1
    assert job_a.error == "worker stopped while processing"
    job_b = await job_queue.get_status("job-b")
    assert job_b.state == "failed"
    assert job_b.attempts == 3
    job_c = await job_queue.get_status("job-c")
    assert job_c.state == "waiting"
    assert job_c.error is None

    assert await job_queue.recover_orphaned() == (0, 0)


@pytest.mark.asyncio
async def test_recover_orphaned_skips_recently_updated_jobs(job_queue, uow_factory):
    await job_queue.enqueue(job_data("stale"))
    await job_queue.enqueue(job_data("live"))
    await job_queue.claim_next()
    await job_queue.claim_next()

    async with await uow_factory() as uow:
        await uow.session.execute(
            update(VideoJob)
            .where(VideoJob.job_id == "stale")  # type: ignore[arg-type]
            .values(updated_at=utcnow() - timedelta(minutes=10))
        )

    assert await job_queue.recover_orphaned(idle_seconds=60) == (1, 0)
    assert (await job_queue.get_status("stale")).state == "waiting"
    assert (await job_queue.get_status("live")).state == "active"


@pytest.mark.asyncio
async def test_cleanup_deletes_only_expired_terminal_jobs(job_queue, uow_factory):
    for job_id in ("old-done", "new-done", "old-failed", "recent-failed", "waiting"):
        await job_queue.enqueue(job_data(job_id))
    for job_id in ("old-done", "new-done"):
        await job_queue.claim_next()
        await job_queue.complete(job_id, result_for(job_id))
    for job_id in ("old-failed", "recent-failed"):
        await job_queue.cancel(job_id)

    now = utcnow()
    backdated = {
        "old-done": now - timedelta(hours=25),
        "old-failed": now - timedelta(days=8),
        "recent-failed": now - timedelta(days=2),
    }
    async with await uow_factory() as uow:
        for job_id, completed_at in backdated.items():
            await uow.session.execute(
                update(VideoJob)
                .where(VideoJob.job_id == job_id)  # type: ignore[arg-type]
                .values(completed_at=completed_at)
            )

    assert await job_queue.cleanup() == (1, 1)

    remaining = {
        job_id
        for job_id in ("old-done", "new-done", "old-failed", "recent-failed", "waiting")
        if await job_queue.get_status(job_id) is not None
    }
    assert remaining == {"new-done", "recent-failed", "waiting"}


@pytest.mark.asyncio
async def test_worker_pool_retries_failing_encoder_until_success(
    job_queue, settings, fake_encoder, tmp_path
):
    """Encoder crashes on the first two attempts and succeeds on the third."""
    counter = tmp_path / "attempts"
    counter.write_text("0")
    settings.ffmpeg_path = fake_encoder(
        f"n=$(cat {counter})\n"
        f"echo $((n+1)) > {counter}\n"
        'if [ "$n" -lt 2 ]; then\n'
        "  printf 'Segmentation fault\\n' >&2\n"
        "  exit 139\n"
        "fi\n"
        'cp "$5" "$last"\n'
    )
    storage = LocalObjectStorage(settings.local_storage_path)
    data = job_data("flaky")
    await storage.upload(data.input_video_key, b"input-video", "video/mp4")
    await job_queue.enqueue(data)

    pool = VideoWorkerPool(job_queue, storage, settings, concurrency=1)
    run_task = asyncio.create_task(pool.run())
    try:
        for _ in range(200):
            status = await job_queue.get_status("flaky")
            if status.state in ("completed", "failed"):
                break
            await asyncio.sleep(0.05)
    finally:
        pool.stop()
        await asyncio.wait_for(run_task, timeout=10)

    assert status.state == "completed"
    assert status.attempts == 3
    assert status.progress == 100
    assert status.result.file_size == len(b"input-video")
    assert counter.read_text().strip() == "3"
    assert await storage.exists(data.output_video_key)
