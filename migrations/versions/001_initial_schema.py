"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Thumbnail sets and their candidates.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create thumbnail_sets and thumbnail_candidates."""
    op.create_table(
        "thumbnail_sets",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("video_key", sa.String(255), unique=True, nullable=False),
        sa.Column("selected_candidate_id", sa.String(32), nullable=True),
        sa.Column("selection_mode", sa.String(10), nullable=False, server_default="auto"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("last_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("selection_mode IN ('auto', 'manual')", name="ck_thumbnail_sets_selection_mode"),
    )

    op.create_table(
        "thumbnail_candidates",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column(
            "video_key",
            sa.String(255),
            sa.ForeignKey("thumbnail_sets.video_key", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("seek_time_seconds", sa.Integer, nullable=False),
        sa.Column("pixel_score", sa.Float, nullable=False),
        sa.Column("pixel_metrics", sa.Text, nullable=True),
        sa.Column("ai_score", sa.Float, nullable=True),
        sa.Column("ai_rationale", sa.Text, nullable=True),
        sa.Column("ai_improvements", sa.Text, nullable=True),
        sa.Column("storage_key", sa.String(512), nullable=True),
        sa.Column("storage_url", sa.Text, nullable=True),
        sa.Column("file_size_bytes", sa.Integer, server_default="0"),
        sa.Column("upload_status", sa.String(10), nullable=False, server_default="pending"),
        sa.Column("upload_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("pixel_score >= 0 AND pixel_score <= 100", name="ck_thumbnail_candidates_pixel_score"),
        sa.CheckConstraint(
            "ai_score IS NULL OR (ai_score >= 0 AND ai_score <= 100)",
            name="ck_thumbnail_candidates_ai_score",
        ),
        sa.CheckConstraint(
            "upload_status IN ('uploaded', 'failed', 'pending')",
            name="ck_thumbnail_candidates_upload_status",
        ),
    )
    op.create_index("ix_thumbnail_candidates_video_key", "thumbnail_candidates", ["video_key"])
    op.create_index(
        "uq_thumbnail_candidates_active_seek",
        "thumbnail_candidates",
        ["video_key", "seek_time_seconds"],
        unique=True,
        postgresql_where=sa.text("superseded_at IS NULL"),
        sqlite_where=sa.text("superseded_at IS NULL"),
    )


def downgrade() -> None:
    """Drop all thumbnail tables."""
    op.drop_index("uq_thumbnail_candidates_active_seek", table_name="thumbnail_candidates")
    op.drop_index("ix_thumbnail_candidates_video_key", table_name="thumbnail_candidates")
    op.drop_table("thumbnail_candidates")
    op.drop_table("thumbnail_sets")
