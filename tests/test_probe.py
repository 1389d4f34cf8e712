"""Media probe tests: parsing ffmpeg's stream summary and running the binary."""

import pytest

from reelcast.services.exceptions import FFmpegNotFoundError, ProbeError
from reelcast.services.media.probe import parse_video_info, probe_video


def test_parse_video_info_reads_dimensions_and_duration(probe_output):
    info = parse_video_info(probe_output)

    assert info.width == 1280
    assert info.height == 720
    assert info.duration == pytest.approx(10.0)


def test_parse_video_info_ignores_hex_codec_tags():
    """The ``0x31637661`` codec tag precedes the frame size and must not match."""
    diagnostics = (
        "  Duration: 00:01:02.50, start: 0.000000, bitrate: 900 kb/s\n"
        "  Stream #0:0: Video: h264 (avc1 / 0x31637661), yuv420p, 1080x1920, 30 fps\n"
    )

    info = parse_video_info(diagnostics)

    assert (info.width, info.height) == (1080, 1920)
    assert info.duration == pytest.approx(62.5)


def test_parse_video_info_without_duration_defaults_to_zero():
    info = parse_video_info("  Stream #0:0: Video: vp9, yuv420p, 640x360\n")

    assert info.duration == 0.0
    assert (info.width, info.height) == (640, 360)


def test_parse_video_info_without_dimensions_raises():
    with pytest.raises(ProbeError, match="Could not parse video dimensions"):
        parse_video_info("  Duration: 00:00:05.00\n  Stream #0:0: Audio: aac, 44100 Hz\n")


@pytest.mark.asyncio
async def test_probe_video_parses_stderr_despite_nonzero_exit(fake_encoder, tmp_path):
    ffmpeg = fake_encoder("exit 0\n")
    video = tmp_path / "input.mp4"
    video.write_bytes(b"\x00")

    info = await probe_video(str(video), ffmpeg_path=ffmpeg)

    assert (info.width, info.height, info.duration) == (1280, 720, 10.0)


@pytest.mark.asyncio
async def test_probe_video_missing_binary(tmp_path):
    with pytest.raises(FFmpegNotFoundError):
        await probe_video(str(tmp_path / "input.mp4"), ffmpeg_path=str(tmp_path / "no-ffmpeg"))
