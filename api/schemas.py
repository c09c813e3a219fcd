from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from api.candidate_store import ThumbnailCandidate, ThumbnailSet
from api.common import validate_video_key
from api.enums import CandidateState, ScoringMethod, SelectionMode, UploadStatus
from api.errors import sanitize_error_message, truncate_string
from config import ERROR_DETAIL_MAX_LENGTH, MAX_SEEK_TIMES_PER_RUN

# Upper bound for a single seek offset (24 hours in seconds)
MAX_SEEK_TIME_SECONDS = 86400


class CamelModel(BaseModel):
    """JSON bodies use camelCase; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request models
class GenerateRequest(CamelModel):
    video_key: str = Field(..., min_length=1, max_length=255)
    seek_times: Optional[List[int]] = None
    replace: bool = False
    force: bool = False

    @field_validator("video_key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        return validate_video_key(v)

    @field_validator("seek_times")
    @classmethod
    def validate_seek_times(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is None:
            return None
        if any(t < 0 for t in v):
            raise ValueError("seek times must be non-negative")
        if any(t > MAX_SEEK_TIME_SECONDS for t in v):
            raise ValueError(f"seek times must not exceed {MAX_SEEK_TIME_SECONDS}s")
        unique = sorted(set(v))
        if len(unique) > MAX_SEEK_TIMES_PER_RUN:
            raise ValueError(f"at most {MAX_SEEK_TIMES_PER_RUN} distinct seek times per request")
        return unique


class SelectionRequest(CamelModel):
    candidate_id: str = Field(..., min_length=1, max_length=64)


# Response models
class CandidateResponse(CamelModel):
    id: str
    seek_time_seconds: int
    pixel_score: float
    pixel_metrics: Optional[Dict[str, float]] = None
    ai_score: Optional[float] = None
    ai_rationale: Optional[str] = None
    ai_improvements: Optional[str] = None
    combined_score: float
    confidence: float
    scoring_method: ScoringMethod
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    file_size_bytes: int = 0
    upload_status: UploadStatus
    upload_error: Optional[str] = None
    created_at: Optional[datetime] = None
    selected: bool = False

    @classmethod
    def from_candidate(cls, candidate: ThumbnailCandidate, selected_id: Optional[str]) -> "CandidateResponse":
        return cls(
            id=candidate.id,
            seek_time_seconds=candidate.seek_time,
            pixel_score=candidate.pixel_score,
            pixel_metrics=candidate.pixel_metrics,
            ai_score=candidate.ai_score,
            ai_rationale=candidate.ai_rationale,
            ai_improvements=candidate.ai_improvements,
            combined_score=candidate.combined_score,
            confidence=candidate.confidence,
            scoring_method=candidate.scoring_method,
            storage_key=candidate.storage_key,
            storage_url=candidate.storage_url,
            file_size_bytes=candidate.file_size_bytes,
            upload_status=candidate.upload_status,
            upload_error=clean_error(candidate.upload_error),
            created_at=candidate.created_at,
            selected=candidate.id == selected_id,
        )


class ThumbnailSetResponse(CamelModel):
    video_key: str
    candidates: List[CandidateResponse] = []
    selected_candidate_id: Optional[str] = None
    selection_mode: SelectionMode = SelectionMode.AUTO
    last_generated_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    @classmethod
    def set_fields(cls, thumbnail_set: ThumbnailSet) -> dict:
        selected_id = thumbnail_set.selected_candidate_id
        return {
            "video_key": thumbnail_set.video_key,
            "candidates": [CandidateResponse.from_candidate(c, selected_id) for c in thumbnail_set.candidates],
            "selected_candidate_id": selected_id,
            "selection_mode": thumbnail_set.selection_mode,
            "last_generated_at": thumbnail_set.last_generated_at,
            "last_updated_at": thumbnail_set.last_updated_at,
        }

    @classmethod
    def from_set(cls, thumbnail_set: ThumbnailSet) -> "ThumbnailSetResponse":
        return cls(**cls.set_fields(thumbnail_set))


class CandidateOutcomeResponse(CamelModel):
    seek_time_seconds: int
    state: CandidateState
    candidate_id: Optional[str] = None
    error: Optional[str] = None
    ai_error: Optional[str] = None
    upload_status: Optional[UploadStatus] = None


class GenerateResponse(ThumbnailSetResponse):
    outcomes: List[CandidateOutcomeResponse] = []
    deadline_exceeded: bool = False


class HealthResponse(CamelModel):
    status: str
    checks: Dict[str, bool]


def clean_error(error: Optional[str]) -> Optional[str]:
    """Sanitize and truncate an error before it leaves the API."""
    return truncate_string(sanitize_error_message(error, log_original=False), ERROR_DETAIL_MAX_LENGTH)
