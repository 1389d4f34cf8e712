"""Job payload types shared by the queue, the pipeline and the HTTP boundary.

All models accept both snake_case and camelCase keys and serialize with camelCase
aliases, which is the shape the submitting UI speaks.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Quality = Literal["720p", "1080p", "4k"]
PositionType = Literal["top", "center", "bottom"]
Alignment = Literal["left", "center", "right"]

# Job IDs name scratch directories and storage prefixes
JOB_ID_PATTERN = r"^[A-Za-z0-9._-]+$"

# Lower number = claimed first
PRIORITY_BY_QUALITY: dict[str, int] = {"4k": 1, "1080p": 5, "720p": 5}
DEFAULT_PRIORITY = 5


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TextOverlaySettings(CamelModel):
    """Text and style choices for the overlay, in logical (resolution-free) units."""

    text: str = Field(..., min_length=1, max_length=2000)
    position_type: PositionType = "center"
    offset_x: float = Field(
        default=0.0,
        ge=-50,
        le=50,
        description="Fine horizontal offset as a percentage of the frame width",
    )
    font_size: int = Field(
        default=100, ge=10, le=400, description="Percentage of the base font size"
    )
    font_family: str = "Georgia"
    color: str = "#ffffff"
    alignment: Alignment = "center"
    shadow_enabled: bool = True
    is_bold: bool = False
    is_italic: bool = False
    is_underline: bool = False


class VideoJobData(CamelModel):
    """Immutable specification of one rendering job."""

    job_id: str = Field(..., min_length=1, max_length=255, pattern=JOB_ID_PATTERN)
    user_id: str | None = None
    input_video_key: str = Field(..., min_length=1)
    output_video_key: str = Field(..., min_length=1)
    overlay_key: str | None = None
    text_settings: TextOverlaySettings | None = None
    quality: Quality = "1080p"

    @property
    def priority(self) -> int:
        return PRIORITY_BY_QUALITY.get(self.quality, DEFAULT_PRIORITY)


class VideoJobResult(CamelModel):
    output_video_key: str
    download_url: str
    duration: float
    file_size: int


class EnqueuedJob(CamelModel):
    id: str
    job_id: str


class JobStatus(CamelModel):
    id: str
    job_id: str
    state: Literal["waiting", "active", "completed", "failed"]
    progress: int | None = None
    attempts: int = 0
    max_attempts: int = 0
    result: VideoJobResult | None = None
    error: str | None = None
