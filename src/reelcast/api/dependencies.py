"""FastAPI dependencies resolving the services created in the app lifespan."""

from fastapi import Request

from reelcast.core.config import Settings
from reelcast.services.job_queue import VideoJobQueue
from reelcast.services.storage import ObjectStorage
from reelcast.workers.video_worker import VideoWorkerPool


def get_settings(request: Request) -> Settings:
    """Get the settings instance the application was built with."""
    return request.app.state.settings


def get_job_queue(request: Request) -> VideoJobQueue:
    """Get the video job queue from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(queue: VideoJobQueue = Depends(get_job_queue)):
        ...     status = await queue.get_status(job_id)
    """
    return request.app.state.job_queue


def get_storage(request: Request) -> ObjectStorage:
    return request.app.state.storage


def get_worker_pool(request: Request) -> VideoWorkerPool | None:
    """Get the in-process worker pool, or None when RUN_VIDEO_WORKER is off."""
    return getattr(request.app.state, "worker_pool", None)
