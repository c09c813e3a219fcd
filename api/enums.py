"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class SelectionMode(str, Enum):
    """How the selected candidate of a thumbnail set was chosen."""

    AUTO = "auto"  # Highest combined score wins
    MANUAL = "manual"  # Pinned by an override, sticky across regenerations


class UploadStatus(str, Enum):
    """Storage state of a candidate's frame."""

    UPLOADED = "uploaded"
    FAILED = "failed"  # Retries exhausted, frame kept in staging
    PENDING = "pending"  # Never attempted (run deadline hit), frame kept in staging


class ScoringMethod(str, Enum):
    """Which scores went into a combined score."""

    HYBRID = "hybrid"  # Pixel and AI
    PIXEL_ONLY = "pixel_only"


class CandidateState(str, Enum):
    """Per-candidate states during a generation run."""

    PENDING = "pending"
    FRAME_EXTRACTED = "frame_extracted"
    PIXEL_SCORED = "pixel_scored"
    AI_SCORE_PENDING = "ai_score_pending"
    AI_SCORED = "ai_scored"
    AI_ABSENT = "ai_absent"
    COMBINED = "combined"
    UPLOADED = "uploaded"
    PERSISTED = "persisted"
    # Alternate terminals
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_CANDIDATE_STATES = frozenset([CandidateState.PERSISTED, CandidateState.SKIPPED, CandidateState.FAILED])
