"""SQLModel database entities and job payload types.

All table models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from reelcast.models.job_payload import (
    EnqueuedJob,
    JobStatus,
    TextOverlaySettings,
    VideoJobData,
    VideoJobResult,
)
from reelcast.models.video_job import MAX_ATTEMPTS, JobState, VideoJob

__all__ = [
    "VideoJob",
    "JobState",
    "MAX_ATTEMPTS",
    "VideoJobData",
    "VideoJobResult",
    "TextOverlaySettings",
    "EnqueuedJob",
    "JobStatus",
]
