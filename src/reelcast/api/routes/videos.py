"""Video job API endpoints.

This module implements the HTTP boundary of the render queue:
- POST /api/videos/jobs - Submit a job for an already-stored input video
- POST /api/videos/upload - Upload a video (multipart) and submit a job for it
- GET /api/videos/{job_id}/status - Poll job state, progress and result
- GET /api/videos/{job_id}/download - Mint a fresh download URL for a finished job
- POST /api/videos/{job_id}/cancel - Cancel a waiting or running job

Processing is asynchronous; clients poll the status endpoint.
"""

import json
import secrets
import string
import time
from typing import Any

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from reelcast.api.dependencies import get_job_queue, get_settings, get_storage, get_worker_pool
from reelcast.core.config import Settings
from reelcast.models.job_payload import (
    CamelModel,
    EnqueuedJob,
    JobStatus,
    Quality,
    TextOverlaySettings,
    VideoJobData,
)
from reelcast.services.exceptions import (
    DuplicateJobError,
    StorageError,
    StorageObjectNotFoundError,
)
from reelcast.services.job_queue import VideoJobQueue
from reelcast.services.storage import ObjectStorage, generate_video_key
from reelcast.workers.video_worker import VideoWorkerPool

logger = structlog.get_logger()
router = APIRouter(prefix="/api/videos", tags=["videos"])

_JOB_ID_ALPHABET = string.ascii_lowercase + string.digits


# Response Models


class UploadResponse(CamelModel):
    success: bool = True
    job_id: str
    status: str = "queued"
    message: str = "Video uploaded successfully. Processing started."


class DownloadResponse(CamelModel):
    success: bool = True
    download_url: str
    duration: float
    file_size: int
    expires_in: int


class CancelResponse(CamelModel):
    job_id: str
    cancelled: bool


# Helpers


def generate_job_id() -> str:
    """Build ``video-<ms>-<random>``."""
    suffix = "".join(secrets.choice(_JOB_ID_ALPHABET) for _ in range(7))
    return f"video-{int(time.time() * 1000)}-{suffix}"


def parse_ui_text_settings(quote_text: str, raw: str) -> TextOverlaySettings:
    """Map the editor's text settings JSON onto overlay settings.

    The editor sends ``position: {x: <offset percent>, y: top|center|bottom}``.

    Raises:
        ValueError: If the JSON is malformed or a field is out of range
    """
    parsed: Any = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("textSettings must be a JSON object")

    position = parsed.get("position") or {}
    fields = {
        "text": quote_text,
        "position_type": position.get("y") or "center",
        "offset_x": position.get("x") or 0,
        "font_size": parsed.get("fontSize") or 100,
        "font_family": parsed.get("fontFamily") or "Georgia",
        "color": parsed.get("color") or "#ffffff",
        "alignment": parsed.get("alignment") or "center",
        "shadow_enabled": parsed.get("shadowEnabled") is not False,
        "is_bold": bool(parsed.get("isBold")),
        "is_italic": bool(parsed.get("isItalic")),
        "is_underline": bool(parsed.get("isUnderline")),
    }
    return TextOverlaySettings.model_validate(fields)


async def _enqueue(queue: VideoJobQueue, data: VideoJobData) -> EnqueuedJob:
    try:
        return await queue.enqueue(data)
    except DuplicateJobError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


# Endpoints


@router.post("/jobs", response_model=EnqueuedJob, status_code=status.HTTP_201_CREATED)
async def submit_job(
    data: VideoJobData,
    queue: VideoJobQueue = Depends(get_job_queue),
) -> EnqueuedJob:
    """Submit a render job for an input video that is already in storage.

    Returns:
        201 with ``{id, jobId}``; 409 if the jobId was already submitted
    """
    return await _enqueue(queue, data)


@router.post("/upload", response_model=UploadResponse)
async def upload_video(
    video: UploadFile = File(...),
    quote_text: str | None = Form(default=None, alias="quoteText"),
    text_settings: str | None = Form(default=None, alias="textSettings"),
    quality: Quality = Form(default="1080p"),
    queue: VideoJobQueue = Depends(get_job_queue),
    storage: ObjectStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    """Store an uploaded video and queue it for rendering.

    Malformed ``textSettings`` are logged and ignored; the job then renders
    without an overlay (stream copy).

    Raises:
        HTTPException: 400 for unsupported types or oversized files
    """
    if video.content_type not in settings.allowed_video_types:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type. Allowed: {', '.join(settings.allowed_video_types)}",
        )

    content = await video.read()
    if len(content) > settings.max_upload_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File too large. Maximum size is {settings.max_upload_size_mb}MB",
        )

    job_id = generate_job_id()
    input_key = generate_video_key(job_id, "input")
    output_key = generate_video_key(job_id, "output")

    try:
        await storage.upload(
            input_key,
            content,
            video.content_type or "video/mp4",
            metadata={"originalName": video.filename or "", "userId": "guest", "jobId": job_id},
        )
    except StorageError as e:
        logger.error("video_upload.storage_failed", job_id=job_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to store uploaded video",
        ) from e

    overlay: TextOverlaySettings | None = None
    if quote_text and text_settings:
        try:
            overlay = parse_ui_text_settings(quote_text, text_settings)
        except (ValueError, ValidationError) as e:
            logger.warning("video_upload.text_settings_invalid", job_id=job_id, error=str(e))

    enqueued = await _enqueue(
        queue,
        VideoJobData(
            job_id=job_id,
            input_video_key=input_key,
            output_video_key=output_key,
            text_settings=overlay,
            quality=quality,
        ),
    )

    logger.info(
        "video_upload.accepted",
        job_id=enqueued.job_id,
        size=len(content),
        content_type=video.content_type,
    )
    return UploadResponse(job_id=enqueued.job_id)


@router.get("/{job_id}/status", response_model=JobStatus)
async def get_job_status(
    job_id: str,
    queue: VideoJobQueue = Depends(get_job_queue),
) -> JobStatus:
    job_status = await queue.get_status(job_id)
    if job_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job_status


@router.get("/{job_id}/download", response_model=DownloadResponse)
async def get_download_url(
    job_id: str,
    queue: VideoJobQueue = Depends(get_job_queue),
    storage: ObjectStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Return a freshly signed download URL for a completed job.

    Returns:
        200 with URL, duration, file size and ``expiresIn``;
        202 with state and progress while the job is unfinished
    """
    job_status = await queue.get_status(job_id)
    if job_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    if job_status.state != "completed":
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "error": "Video processing not completed",
                "state": job_status.state,
                "progress": job_status.progress,
            },
        )

    if job_status.result is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Job completed but no result available",
        )

    ttl = settings.download_url_ttl_seconds
    try:
        url = await storage.presigned_download_url(job_status.result.output_video_key, ttl)
    except StorageObjectNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Output video no longer available"
        ) from e
    except StorageError as e:
        logger.error("video_download.sign_failed", job_id=job_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to generate download URL",
        ) from e

    return DownloadResponse(
        download_url=url,
        duration=job_status.result.duration,
        file_size=job_status.result.file_size,
        expires_in=ttl,
    )


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    queue: VideoJobQueue = Depends(get_job_queue),
    pool: VideoWorkerPool | None = Depends(get_worker_pool),
) -> CancelResponse:
    """Cancel a waiting or active job.

    When the job runs in this process its task is interrupted as well, which
    kills the encoder subprocess.

    Raises:
        HTTPException: 404 if unknown, 409 if the job already finished
    """
    cancelled = await (pool.cancel_job(job_id) if pool else queue.cancel(job_id))
    if not cancelled:
        if await queue.get_status(job_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job already finished")
    return CancelResponse(job_id=job_id, cancelled=True)
