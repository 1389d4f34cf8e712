"""Video metadata probing via FFmpeg's diagnostic output."""

import asyncio
import re
from dataclasses import dataclass

import structlog

from reelcast.services.exceptions import FFmpegNotFoundError, ProbeError

logger = structlog.get_logger(__name__)

DURATION_PATTERN = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2})\.(\d{2})")
TIME_PATTERN = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})")
# Codec tags such as "0x31637661" must not be mistaken for a frame size
DIMENSIONS_PATTERN = re.compile(r"Video:.*?\b(\d{2,5})x(\d{2,5})\b")


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    duration: float  # seconds, 0.0 when unknown


def timestamp_to_seconds(match: re.Match) -> float:
    """Convert an ``HH:MM:SS.CC`` match to seconds."""
    hours, minutes, seconds, centiseconds = (int(g) for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds + centiseconds / 100


def parse_video_info(diagnostics: str) -> VideoInfo:
    """Extract width, height and duration from ``ffmpeg -i`` stderr.

    Raises:
        ProbeError: If no ``WxH`` dimension token follows a ``Video:`` stream line.
    """
    dimensions = DIMENSIONS_PATTERN.search(diagnostics)
    if not dimensions:
        raise ProbeError("Could not parse video dimensions")

    duration_match = DURATION_PATTERN.search(diagnostics)
    duration = timestamp_to_seconds(duration_match) if duration_match else 0.0

    return VideoInfo(
        width=int(dimensions.group(1)),
        height=int(dimensions.group(2)),
        duration=duration,
    )


async def probe_video(path: str, ffmpeg_path: str = "ffmpeg") -> VideoInfo:
    """Run ``ffmpeg -hide_banner -i <path>`` and parse the stream summary.

    FFmpeg exits non-zero here because no output file is given; only the
    diagnostic text matters.

    Raises:
        FFmpegNotFoundError: If the binary cannot be executed
        ProbeError: If dimensions are missing from the output
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            "-hide_banner",
            "-i",
            path,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise FFmpegNotFoundError(f"FFmpeg not available at {ffmpeg_path}: {e}") from e

    _, stderr = await proc.communicate()
    info = parse_video_info(stderr.decode("utf-8", errors="replace"))
    logger.debug(
        "video_probe.parsed",
        path=path,
        width=info.width,
        height=info.height,
        duration=info.duration,
    )
    return info
