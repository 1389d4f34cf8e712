"""VideoJob entity - one queued text-overlay render and its lifecycle."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, String
from sqlmodel import Field, SQLModel

from reelcast.models.job_payload import JobStatus, VideoJobData, VideoJobResult

MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobState(str, Enum):
    """Job lifecycle state.

    waiting -> active -> completed
                      -> waiting (retry, while attempts < max_attempts)
                      -> failed (attempts exhausted or cancelled)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class VideoJob(SQLModel, table=True):
    """VideoJob is the queue record for one render request.

    ``data`` holds the immutable job specification and ``result`` is only set
    once the job completes. ``attempts`` is incremented by every claim.
    """

    __tablename__ = "video_jobs"  # type: ignore[assignment]
    __table_args__ = (Index("ix_video_jobs_claim", "state", "priority", "created_at"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: str = Field(max_length=255, unique=True, index=True)
    user_id: Optional[str] = Field(default=None, max_length=255)
    state: str = Field(
        default=JobState.WAITING.value,
        sa_column=Column(String(16), nullable=False),
    )
    progress: int = Field(default=0, ge=0, le=100)
    data: dict = Field(sa_column=Column(JSON, nullable=False))
    result: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=1000)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=MAX_ATTEMPTS, ge=1)
    priority: int = Field(default=5)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @classmethod
    def from_data(cls, data: VideoJobData) -> "VideoJob":
        """Build a fresh waiting job from a submission."""
        now = utcnow()
        return cls(
            job_id=data.job_id,
            user_id=data.user_id,
            state=JobState.WAITING.value,
            progress=0,
            data=data.model_dump(mode="json"),
            attempts=0,
            max_attempts=MAX_ATTEMPTS,
            priority=data.priority,
            created_at=now,
            updated_at=now,
        )

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def spec(self) -> VideoJobData:
        return VideoJobData.model_validate(self.data)

    def to_status(self) -> JobStatus:
        return JobStatus(
            id=str(self.id),
            job_id=self.job_id,
            state=self.job_state.value,
            progress=self.progress,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            result=VideoJobResult.model_validate(self.result) if self.result else None,
            error=self.error,
        )
