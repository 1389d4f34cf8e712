"""Per-job rendering pipeline.

Downloads the input video into a private scratch directory, probes it, renders
the text overlay, runs FFmpeg, uploads the result and mints a download URL.
Scratch files are removed on every exit path.

Errors propagate to the caller (the worker pool), which records them on the
job via ``fail()``.
"""

import asyncio
import shutil
import time
from collections.abc import Callable
from pathlib import Path

import structlog

from reelcast.core.config import Settings
from reelcast.models.job_payload import VideoJobData, VideoJobResult
from reelcast.services.media.overlay import render_overlay, resolve_overlay_position
from reelcast.services.media.probe import probe_video
from reelcast.services.media.transcode import build_ffmpeg_args, run_ffmpeg
from reelcast.services.storage import ObjectStorage

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int], None]

# Encoder progress is mapped onto 40-90% of the job
ENCODE_START = 40
ENCODE_SPAN = 0.5


def _noop(_: int) -> None:
    pass


def scratch_dir_for(job_id: str, settings: Settings) -> Path:
    """Private scratch directory of one job, always directly under SCRATCH_DIR.

    Raises:
        ValueError: If the job ID would place the directory elsewhere
    """
    root = Path(settings.scratch_dir).resolve()
    scratch = (root / f"video-job-{job_id}").resolve()
    if scratch.parent != root:
        raise ValueError(f"Job ID escapes the scratch directory: {job_id!r}")
    return scratch


async def process_video_job(
    data: VideoJobData,
    storage: ObjectStorage,
    settings: Settings,
    progress_callback: ProgressCallback | None = None,
) -> VideoJobResult:
    """Render one job and return its result record.

    Progress milestones: 10 before download, 20 after, 30 while rendering the
    overlay, 40-90 during encoding, 95 before upload, 100 once the URL exists.

    Args:
        data: Job specification
        storage: Object storage holding input and receiving output
        settings: Application settings (FFmpeg path, scratch dir, URL TTL)
        progress_callback: Synchronous callback receiving 0-100

    Returns:
        Output key, download URL, input duration and output size

    Raises:
        StorageError, ProbeError, TranscodeError, FFmpegNotFoundError: Any
            pipeline failure; the scratch directory is removed first
        ValueError: If the job ID cannot name a scratch directory
    """
    report = progress_callback or _noop
    start_time = time.time()
    scratch = scratch_dir_for(data.job_id, settings)
    scratch_files: list[Path] = []

    try:
        scratch.mkdir(parents=True, exist_ok=True)

        input_path = scratch / "input.mp4"
        logger.info("video_processor.downloading", job_id=data.job_id, key=data.input_video_key)
        report(10)
        scratch_files.append(input_path)
        await storage.download(data.input_video_key, str(input_path))
        report(20)

        info = await probe_video(str(input_path), settings.ffmpeg_path)

        overlay_path: Path | None = None
        if data.text_settings is not None:
            overlay_path = scratch / "overlay.png"
            report(30)
            x, y = resolve_overlay_position(data.text_settings, info.width, info.height)
            scratch_files.append(overlay_path)
            await asyncio.to_thread(
                render_overlay,
                data.text_settings,
                info.width,
                info.height,
                x,
                y,
                str(overlay_path),
            )
        elif data.overlay_key:
            overlay_path = scratch / "overlay.png"
            report(30)
            scratch_files.append(overlay_path)
            await storage.download(data.overlay_key, str(overlay_path))

        output_path = scratch / "output.mp4"
        scratch_files.append(output_path)
        args = build_ffmpeg_args(
            str(input_path),
            str(output_path),
            str(overlay_path) if overlay_path else None,
        )

        logger.info(
            "video_processor.encoding",
            job_id=data.job_id,
            width=info.width,
            height=info.height,
            duration=info.duration,
            overlay=overlay_path is not None,
        )
        report(ENCODE_START)
        await run_ffmpeg(
            args,
            ffmpeg_path=settings.ffmpeg_path,
            progress_callback=lambda p: report(ENCODE_START + int(p * ENCODE_SPAN)),
        )
        report(90)

        output = await asyncio.to_thread(output_path.read_bytes)
        file_size = len(output)

        report(95)
        await storage.upload(
            data.output_video_key,
            output,
            "video/mp4",
            metadata={
                "jobId": data.job_id,
                "duration": str(info.duration),
                "fileSize": str(file_size),
            },
        )
        download_url = await storage.presigned_download_url(
            data.output_video_key, expires_in=settings.download_url_ttl_seconds
        )
        report(100)

        logger.info(
            "video_processor.succeeded",
            job_id=data.job_id,
            file_size=file_size,
            duration_seconds=time.time() - start_time,
        )
        return VideoJobResult(
            output_video_key=data.output_video_key,
            download_url=download_url,
            duration=info.duration,
            file_size=file_size,
        )

    finally:
        _cleanup_scratch(data.job_id, scratch, scratch_files)


def _cleanup_scratch(job_id: str, scratch: Path, files: list[Path]) -> None:
    """Remove scratch files and the directory, logging (never raising) failures."""
    for path in files:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(
                "video_processor.cleanup_failed",
                job_id=job_id,
                path=str(path),
                error_message=str(e),
            )

    if not scratch.exists():
        return
    try:
        shutil.rmtree(scratch)
    except OSError as e:
        logger.warning(
            "video_processor.cleanup_failed",
            job_id=job_id,
            path=str(scratch),
            error_message=str(e),
        )
