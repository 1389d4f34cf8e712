"""create_video_jobs

Revision ID: 3f9a1c2d7b4e
Revises:
Create Date: 2026-10-18 09:12:41.318207

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b4e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create video_jobs table with claim and job_id indexes."""
    op.create_table(
        "video_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error", sa.String(length=1000), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    # Unique natural key; duplicate submissions fail on insert
    op.create_index("ix_video_jobs_job_id", "video_jobs", ["job_id"], unique=True)
    # Claim query: WHERE state = 'waiting' ORDER BY priority, created_at
    op.create_index("ix_video_jobs_claim", "video_jobs", ["state", "priority", "created_at"])


def downgrade() -> None:
    """Drop video_jobs table."""
    op.drop_index("ix_video_jobs_claim", table_name="video_jobs")
    op.drop_index("ix_video_jobs_job_id", table_name="video_jobs")
    op.drop_table("video_jobs")
