from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def is_postgresql(db: Database) -> bool:
    """Check the actual database URL being used (tests may patch this)."""
    return str(db.url).startswith("postgresql")


# One row per video key; holds the current selection
thumbnail_sets = sa.Table(
    "thumbnail_sets",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_key", sa.String(255), unique=True, nullable=False),
    sa.Column("selected_candidate_id", sa.String(32), nullable=True),
    sa.Column(
        "selection_mode",
        sa.String(10),
        sa.CheckConstraint(
            "selection_mode IN ('auto', 'manual')",
            name="ck_thumbnail_sets_selection_mode"
        ),
        nullable=False,
        default="auto"
    ),  # auto, manual
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("last_generated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_updated_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
)

# Candidate rows are never deleted; replaced rows get superseded_at set.
# Score columns are written once at insert.
thumbnail_candidates = sa.Table(
    "thumbnail_candidates",
    metadata,
    sa.Column("id", sa.String(32), primary_key=True),  # uuid4 hex
    sa.Column(
        "video_key",
        sa.String(255),
        sa.ForeignKey("thumbnail_sets.video_key", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("seek_time_seconds", sa.Integer, nullable=False),
    sa.Column(
        "pixel_score",
        sa.Float,
        sa.CheckConstraint(
            "pixel_score >= 0 AND pixel_score <= 100",
            name="ck_thumbnail_candidates_pixel_score"
        ),
        nullable=False,
    ),
    sa.Column("pixel_metrics", sa.Text, nullable=True),  # JSON: brightness, contrast, detail, colorDistribution
    sa.Column(
        "ai_score",
        sa.Float,
        sa.CheckConstraint(
            "ai_score IS NULL OR (ai_score >= 0 AND ai_score <= 100)",
            name="ck_thumbnail_candidates_ai_score"
        ),
        nullable=True,
    ),  # NULL = AI scoring unavailable
    sa.Column("ai_rationale", sa.Text, nullable=True),
    sa.Column("ai_improvements", sa.Text, nullable=True),
    sa.Column("storage_key", sa.String(512), nullable=True),
    sa.Column("storage_url", sa.Text, nullable=True),
    sa.Column("file_size_bytes", sa.Integer, default=0),
    sa.Column(
        "upload_status",
        sa.String(10),
        sa.CheckConstraint(
            "upload_status IN ('uploaded', 'failed', 'pending')",
            name="ck_thumbnail_candidates_upload_status"
        ),
        nullable=False,
        default="pending"
    ),  # uploaded, failed, pending
    sa.Column("upload_error", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),  # NULL = active
    sa.Index("ix_thumbnail_candidates_video_key", "video_key"),
    # At most one active candidate per seek time
    sa.Index(
        "uq_thumbnail_candidates_active_seek",
        "video_key",
        "seek_time_seconds",
        unique=True,
        postgresql_where=sa.text("superseded_at IS NULL"),
        sqlite_where=sa.text("superseded_at IS NULL"),
    ),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created.")
