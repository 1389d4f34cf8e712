"""Text overlay rasterization with Pillow.

The overlay is a full-frame transparent PNG: a vertical gradient scrim for
legibility, then word-wrapped text (optionally with a soft shadow and an
underline) anchored at an absolute pixel position.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from PIL import Image, ImageColor, ImageDraw, ImageFilter, ImageFont

from reelcast.models.job_payload import TextOverlaySettings

logger = structlog.get_logger(__name__)

Measure = Callable[[str], float]
Font = ImageFont.FreeTypeFont | ImageFont.ImageFont

# (offset, black alpha) pairs, darker at top and bottom
SCRIM_STOPS = ((0.0, 0.25), (0.35, 0.05), (0.65, 0.05), (1.0, 0.35))
BASE_FONT_RATIO = 0.045
WRAP_WIDTH_RATIO = 0.85
LINE_HEIGHT_RATIO = 1.5
SHADOW_COLOR = (0, 0, 0, 178)
SHADOW_BLUR = 12
SHADOW_OFFSET = (2, 2)

VERTICAL_ANCHORS = {"top": 0.25, "center": 0.45, "bottom": 0.70}
HORIZONTAL_ANCHORS = {"left": 0.08, "center": 0.5, "right": 0.92}
# Pillow anchors: horizontal edge + vertical middle
_TEXT_ANCHORS = {"left": "lm", "center": "mm", "right": "rm"}

_FONT_DIRS = (
    "/usr/share/fonts/truetype/dejavu",
    "/usr/share/fonts/TTF",
    "/Library/Fonts",
)
_FALLBACK_FILES = {
    (False, False): "DejaVuSans.ttf",
    (True, False): "DejaVuSans-Bold.ttf",
    (False, True): "DejaVuSans-Oblique.ttf",
    (True, True): "DejaVuSans-BoldOblique.ttf",
}


@dataclass(frozen=True)
class OverlayLayout:
    """Resolved text block geometry in pixels."""

    lines: list[str]
    font_size: int
    line_height: float
    x: float
    y: float
    max_width: float
    underline_width: float

    @property
    def total_height(self) -> float:
        return len(self.lines) * self.line_height

    @property
    def line_positions(self) -> list[float]:
        """Vertical middle of each line, first at ``y - total_height / 2``."""
        start = self.y - self.total_height / 2
        return [start + i * self.line_height for i in range(len(self.lines))]

    @property
    def underline_y(self) -> float:
        return self.y + self.total_height / 2 + self.font_size * 0.2


def resolve_overlay_position(
    settings: TextOverlaySettings, width: int, height: int
) -> tuple[float, float]:
    """Map logical placement onto absolute pixel coordinates.

    The vertical anchor comes from the position type, the horizontal anchor
    from the alignment, and ``offset_x`` shifts it by a percentage of the width.
    """
    y = height * VERTICAL_ANCHORS[settings.position_type]
    x = width * HORIZONTAL_ANCHORS[settings.alignment]
    x += settings.offset_x / 100 * width
    return x, y


def compute_font_size(width: int, font_size_percent: int) -> int:
    base = math.floor(width * BASE_FONT_RATIO)
    return max(1, math.floor(base * font_size_percent / 100))


def wrap_text(text: str, measure: Measure, max_width: float) -> list[str]:
    """Greedy first-fit word wrap.

    A word moves to a new line only when appending it would make the line
    strictly wider than ``max_width``; a single over-long word keeps its own line.
    """
    lines: list[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if current and measure(candidate) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


def layout_text(
    text: str,
    x: float,
    y: float,
    frame_width: int,
    font_size: int,
    measure: Measure,
) -> OverlayLayout:
    max_width = frame_width * WRAP_WIDTH_RATIO
    return OverlayLayout(
        lines=wrap_text(text, measure, max_width),
        font_size=font_size,
        line_height=font_size * LINE_HEIGHT_RATIO,
        x=x,
        y=y,
        max_width=max_width,
        underline_width=min(max_width, measure(text)),
    )


def load_font(family: str, size: int, bold: bool = False, italic: bool = False) -> Font:
    """Load the requested family, falling back to DejaVu and then Pillow's default."""
    style = ("Bold" if bold else "") + ("Italic" if italic else "")
    candidates = [f"{family}-{style}.ttf"] if style else []
    candidates.append(f"{family}.ttf")
    fallback = _FALLBACK_FILES[(bold, italic)]
    candidates += [f"{d}/{fallback}" for d in _FONT_DIRS]
    candidates.append(fallback)

    for path in candidates:
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue

    logger.warning("overlay.font_fallback", family=family, size=size)
    return ImageFont.load_default(size=size)


def _parse_color(color: str) -> tuple[int, int, int, int]:
    try:
        rgb = ImageColor.getrgb(color)
    except ValueError:
        logger.warning("overlay.invalid_color", color=color)
        return (255, 255, 255, 255)
    return (*rgb[:3], 255) if len(rgb) == 3 else rgb  # type: ignore[return-value]


def _scrim_alpha(position: float) -> int:
    for (start, a0), (end, a1) in zip(SCRIM_STOPS, SCRIM_STOPS[1:]):
        if position <= end:
            ratio = (position - start) / (end - start)
            return round((a0 + (a1 - a0) * ratio) * 255)
    return round(SCRIM_STOPS[-1][1] * 255)


def _draw_scrim(width: int, height: int) -> Image.Image:
    """Full-frame black layer whose alpha follows the gradient stops."""
    column = Image.new("L", (1, height))
    column.putdata([_scrim_alpha((row + 0.5) / height) for row in range(height)])
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.putalpha(column.resize((width, height), Image.Resampling.NEAREST))
    return canvas


def _draw_text_block(
    draw: ImageDraw.ImageDraw,
    layout: OverlayLayout,
    font: Font,
    fill: tuple[int, int, int, int],
    alignment: str,
    offset: tuple[int, int] = (0, 0),
) -> None:
    anchor = _TEXT_ANCHORS[alignment]
    dx, dy = offset
    for line, line_y in zip(layout.lines, layout.line_positions):
        draw.text((layout.x + dx, line_y + dy), line, font=font, fill=fill, anchor=anchor)


def _draw_underline(
    draw: ImageDraw.ImageDraw,
    layout: OverlayLayout,
    fill: tuple[int, int, int, int],
    alignment: str,
) -> None:
    line_width = max(2, round(layout.font_size * 0.05))
    width = layout.underline_width
    if alignment == "left":
        start = layout.x
    elif alignment == "right":
        start = layout.x - width
    else:
        start = layout.x - width / 2
    y = layout.underline_y
    draw.line([(start, y), (start + width, y)], fill=fill, width=line_width)


def render_overlay(
    settings: TextOverlaySettings,
    width: int,
    height: int,
    x: float,
    y: float,
    output_path: str,
) -> OverlayLayout:
    """Rasterize the overlay to an RGBA PNG at ``output_path``.

    CPU-bound; async callers should run it in a worker thread.

    Returns:
        The layout that was drawn
    """
    font_size = compute_font_size(width, settings.font_size)
    font = load_font(settings.font_family, font_size, settings.is_bold, settings.is_italic)
    fill = _parse_color(settings.color)

    canvas = _draw_scrim(width, height)
    draw = ImageDraw.Draw(canvas)
    layout = layout_text(
        settings.text, x, y, width, font_size, lambda s: draw.textlength(s, font=font)
    )

    if settings.shadow_enabled:
        shadow = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        _draw_text_block(
            ImageDraw.Draw(shadow), layout, font, SHADOW_COLOR, settings.alignment, SHADOW_OFFSET
        )
        canvas.alpha_composite(shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR / 2)))
        draw = ImageDraw.Draw(canvas)

    _draw_text_block(draw, layout, font, fill, settings.alignment)
    if settings.is_underline:
        _draw_underline(draw, layout, fill, settings.alignment)

    canvas.save(output_path, "PNG")
    logger.debug(
        "overlay.rendered",
        path=output_path,
        lines=len(layout.lines),
        font_size=font_size,
    )
    return layout
