"""Media services: probing, overlay rasterization and encoding."""

from reelcast.services.media.overlay import (
    OverlayLayout,
    render_overlay,
    resolve_overlay_position,
    wrap_text,
)
from reelcast.services.media.probe import VideoInfo, probe_video
from reelcast.services.media.transcode import build_ffmpeg_args, run_ffmpeg

__all__ = [
    "OverlayLayout",
    "VideoInfo",
    "build_ffmpeg_args",
    "probe_video",
    "render_overlay",
    "resolve_overlay_position",
    "run_ffmpeg",
    "wrap_text",
]
