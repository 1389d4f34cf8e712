"""FFmpeg invocation with streamed progress reporting."""

import asyncio
import re
from collections.abc import Callable

import structlog

from reelcast.services.exceptions import FFmpegNotFoundError, TranscodeError
from reelcast.services.media.probe import DURATION_PATTERN, TIME_PATTERN, timestamp_to_seconds

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int], None]

OVERLAY_FILTER = "[0:v][1:v]overlay=0:0:format=auto"
STDERR_TAIL_CHARS = 500
_READ_CHUNK_SIZE = 4096
# FFmpeg rewrites its status line with carriage returns
_LINE_SPLIT = re.compile(r"[\r\n]")


def build_ffmpeg_args(
    input_path: str,
    output_path: str,
    overlay_path: str | None = None,
) -> list[str]:
    """Build the FFmpeg argument list (without the binary).

    Without an overlay the streams are copied untouched. With an overlay the
    PNG is composited at 0:0 and video is re-encoded with x264
    (preset slow, CRF 18, yuv420p); audio is copied and the moov atom is moved
    to the front so the file plays while downloading.
    """
    args = [
        "-y",
        "-threads",
        "0",
        "-i",
        input_path,
    ]

    if overlay_path:
        args += [
            "-i",
            overlay_path,
            "-filter_complex",
            OVERLAY_FILTER,
            "-c:v",
            "libx264",
            "-preset",
            "slow",
            "-crf",
            "18",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "copy",
            "-movflags",
            "+faststart",
        ]
    else:
        args += ["-c", "copy"]

    args.append(output_path)
    return args


class FFmpegProgressParser:
    """Turns FFmpeg's diagnostic stream into percent-complete values.

    ``Duration:`` is captured once; each later ``time=`` marker yields
    ``min(100, floor(current / duration * 100))``. Text is fed in arbitrary
    chunks; markers split across chunks are handled by buffering the last
    partial line.
    """

    def __init__(self, duration: float = 0.0):
        self.duration = duration
        self._partial = ""

    def feed(self, text: str) -> list[int]:
        lines = _LINE_SPLIT.split(self._partial + text)
        self._partial = lines.pop()
        return [p for line in lines if (p := self._parse_line(line)) is not None]

    def flush(self) -> list[int]:
        line, self._partial = self._partial, ""
        progress = self._parse_line(line)
        return [progress] if progress is not None else []

    def _parse_line(self, line: str) -> int | None:
        if not self.duration:
            duration_match = DURATION_PATTERN.search(line)
            if duration_match:
                self.duration = timestamp_to_seconds(duration_match)

        time_match = TIME_PATTERN.search(line)
        if time_match and self.duration:
            current = timestamp_to_seconds(time_match)
            return min(100, int(current / self.duration * 100))
        return None


async def run_ffmpeg(
    args: list[str],
    ffmpeg_path: str = "ffmpeg",
    progress_callback: ProgressCallback | None = None,
) -> None:
    """Run FFmpeg and report progress as markers arrive on stderr.

    Cancelling the awaiting task kills the subprocess.

    Raises:
        FFmpegNotFoundError: If the binary cannot be executed
        TranscodeError: On non-zero exit; the message holds the last
            500 characters of stderr
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise FFmpegNotFoundError(f"FFmpeg not available at {ffmpeg_path}: {e}") from e

    assert proc.stderr is not None
    parser = FFmpegProgressParser()
    tail = ""

    def report(values: list[int]) -> None:
        if progress_callback:
            for value in values:
                progress_callback(value)

    try:
        while chunk := await proc.stderr.read(_READ_CHUNK_SIZE):
            text = chunk.decode("utf-8", errors="replace")
            tail = (tail + text)[-STDERR_TAIL_CHARS:]
            report(parser.feed(text))
        report(parser.flush())
        returncode = await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
            logger.warning("ffmpeg.killed", pid=proc.pid)
        raise

    if returncode != 0:
        raise TranscodeError(f"FFmpeg error: {tail}", returncode=returncode)

    report([100])
