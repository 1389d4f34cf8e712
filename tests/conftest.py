"""pytest fixtures for reelcast tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance (migrations applied)
- utc_timezone: Autouse fixture enforcing UTC timezone
- database / uow_factory / job_queue: Function-scoped store access with table cleanup
- settings: Settings pointing scratch and local storage at tmp_path
- fake_ffmpeg: Factory writing shell scripts that stand in for the ffmpeg binary
- memory_queue: In-memory job queue for worker and API tests that need no database
"""

import os
import stat
import subprocess
import sys
from collections import defaultdict
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text

from reelcast.core.config import Settings
from reelcast.core.database import Database
from reelcast.models.job_payload import EnqueuedJob, JobStatus, VideoJobData, VideoJobResult
from reelcast.models.video_job import JobState, VideoJob
from reelcast.services.exceptions import DuplicateJobError
from reelcast.services.job_queue import VideoJobQueue
from reelcast.uow import create_uow_factory

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Stream summary in the shape `ffmpeg -hide_banner -i input.mp4` prints
PROBE_OUTPUT = """\
Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'input.mp4':
  Metadata:
    major_brand     : isom
  Duration: 00:00:10.00, start: 0.000000, bitrate: 1205 kb/s
  Stream #0:0[0x1](und): Video: h264 (High) (avc1 / 0x31637661), yuv420p(progressive), \
1280x720 [SAR 1:1 DAR 16:9], 1070 kb/s, 30 fps, 30 tbr, 15360 tbn (default)
  Stream #0:1[0x2](und): Audio: aac (LC) (mp4a / 0x6134706D), 44100 Hz, stereo, fltp, 128 kb/s
At least one output file must be specified
"""


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    Tests depending on it are skipped when no container runtime is reachable.
    """
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_reelcast",
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")

    try:
        db_url = container.get_connection_url(driver="psycopg")

        # Set DATABASE_URL environment variable for alembic env.py
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        env["APP_ENV"] = "test"

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            cwd=PROJECT_ROOT,
            check=True,
            capture_output=True,
            text=True,
            env=env,
        )

        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def database(postgres_container) -> AsyncGenerator[Database, None]:
    """Provide a connected Database with the video_jobs table emptied afterwards."""
    db_url = postgres_container.get_connection_url(driver="psycopg")
    database = Database(db_url, pool_size=5, health_check_interval=None)
    await database.connect()

    yield database

    async with database.session_factory() as session:
        await session.execute(text("DELETE FROM video_jobs"))
        await session.commit()
    await database.close()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(database: Database):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(database.session_factory)


@pytest_asyncio.fixture(scope="function")
async def job_queue(uow_factory) -> VideoJobQueue:
    return VideoJobQueue(uow_factory)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to tmp_path (local storage, scratch dir)."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        SCRATCH_DIR=str(tmp_path / "scratch"),
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        VIDEO_WORKER_POLL_INTERVAL_SECONDS=0.05,
    )


@pytest.fixture
def fake_ffmpeg(tmp_path: Path):
    """Return a factory that writes an executable ffmpeg stand-in.

    The script body receives ffmpeg's arguments as ``$@``; ``$5`` is the input
    path and ``$last`` the output path for encode invocations.
    """

    def _write(body: str, name: str = "ffmpeg") -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\nfor last; do :; done\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write


def probe_then(encode_body: str) -> str:
    """Script body answering probe calls with PROBE_OUTPUT and running encode_body otherwise."""
    return (
        'if [ "$1" = "-hide_banner" ]; then\n'
        "  cat >&2 <<'PROBE'\n"
        f"{PROBE_OUTPUT}"
        "PROBE\n"
        "  exit 1\n"
        "fi\n"
        f"{encode_body}"
    )


COPY_ENCODE = (
    "printf '  Duration: 00:00:10.00, start: 0.000000, bitrate: 1205 kb/s\\n' >&2\n"
    "printf 'frame=  75 fps=0.0 q=-1.0 size=256kB time=00:00:02.50 bitrate=838kbits/s\\r' >&2\n"
    "printf 'frame= 150 fps=0.0 q=-1.0 size=512kB time=00:00:05.00 bitrate=838kbits/s\\r' >&2\n"
    "printf 'frame= 300 fps=0.0 q=-1.0 Lsize=1024kB time=00:00:10.00 bitrate=838kbits/s\\n' >&2\n"
    'cp "$5" "$last"\n'
    "exit 0\n"
)


class InMemoryJobQueue:
    """VideoJobQueue stand-in with the same state transitions, kept in a dict."""

    def __init__(self):
        self.jobs: dict[str, VideoJob] = {}
        self.progress_log: dict[str, list[int]] = defaultdict(list)
        self.cleanup_calls = 0
        self.recovery_calls: list[float | None] = []

    async def enqueue(self, data: VideoJobData) -> EnqueuedJob:
        if data.job_id in self.jobs:
            raise DuplicateJobError(data.job_id)
        job = VideoJob.from_data(data)
        self.jobs[data.job_id] = job
        return EnqueuedJob(id=str(job.id), job_id=job.job_id)

    async def claim_next(self) -> VideoJob | None:
        waiting = [
            job
            for job in self.jobs.values()
            if job.state == JobState.WAITING.value and job.attempts < job.max_attempts
        ]
        if not waiting:
            return None
        job = min(waiting, key=lambda j: j.priority)
        job.state = JobState.ACTIVE.value
        job.attempts += 1
        job.progress = 0
        return job

    async def update_progress(self, job_id: str, percent: int) -> bool:
        job = self.jobs[job_id]
        if job.state != JobState.ACTIVE.value or percent < job.progress:
            return False
        job.progress = percent
        self.progress_log[job_id].append(percent)
        return True

    async def complete(self, job_id: str, result: VideoJobResult) -> bool:
        job = self.jobs[job_id]
        if job.state != JobState.ACTIVE.value:
            return False
        job.state = JobState.COMPLETED.value
        job.progress = 100
        job.result = result.model_dump(mode="json")
        job.error = None
        return True

    async def fail(self, job_id: str, error_message: str) -> JobState | None:
        job = self.jobs[job_id]
        if job.state != JobState.ACTIVE.value:
            return None
        exhausted = job.attempts >= job.max_attempts
        job.state = JobState.FAILED.value if exhausted else JobState.WAITING.value
        job.error = error_message
        return job.job_state

    async def release(self, job_id: str, reason: str) -> bool:
        job = self.jobs[job_id]
        if job.state != JobState.ACTIVE.value:
            return False
        job.state = JobState.WAITING.value
        job.attempts = max(0, job.attempts - 1)
        job.error = reason
        return True

    async def recover_orphaned(self, idle_seconds: float | None = None) -> tuple[int, int]:
        self.recovery_calls.append(idle_seconds)
        requeued = failed = 0
        for job in self.jobs.values():
            if job.state != JobState.ACTIVE.value:
                continue
            job.error = "worker stopped while processing"
            if job.attempts >= job.max_attempts:
                job.state = JobState.FAILED.value
                failed += 1
            else:
                job.state = JobState.WAITING.value
                requeued += 1
        return requeued, failed

    async def cancel(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.state not in (JobState.WAITING.value, JobState.ACTIVE.value):
            return False
        job.state = JobState.FAILED.value
        job.error = "cancelled by user"
        return True

    async def get_status(self, job_id: str) -> JobStatus | None:
        job = self.jobs.get(job_id)
        return job.to_status() if job else None

    async def cleanup(self) -> tuple[int, int]:
        self.cleanup_calls += 1
        return 0, 0


@pytest.fixture
def memory_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def probe_output() -> str:
    return PROBE_OUTPUT


@pytest.fixture
def fake_encoder(fake_ffmpeg):
    """Factory for ffmpeg stand-ins that answer probes and run ``body`` for encodes."""

    def _write(body: str) -> str:
        return fake_ffmpeg(probe_then(body))

    return _write


@pytest.fixture
def ffmpeg_copy(fake_encoder) -> str:
    """ffmpeg stand-in that reports 25/50/100% and copies input to output."""
    return fake_encoder(COPY_ENCODE)
