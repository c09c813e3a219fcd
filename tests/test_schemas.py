"""Tests for request validation and response shaping."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from api.candidate_store import ThumbnailCandidate
from api.enums import ScoringMethod, UploadStatus
from api.schemas import CandidateResponse, GenerateRequest, SelectionRequest
from config import MAX_SEEK_TIMES_PER_RUN


def make_candidate(**overrides) -> ThumbnailCandidate:
    fields = {
        "id": "cand-1",
        "video_key": "vid-1",
        "seek_time": 5,
        "pixel_score": 60.0,
        "pixel_metrics": {"brightness": 70.0},
        "ai_score": 80.0,
        "ai_rationale": "Clear subject",
        "ai_improvements": None,
        "storage_key": "thumbnails/vid-1/cand-1.jpg",
        "storage_url": "https://cdn.test/thumbnails/vid-1/cand-1.jpg",
        "file_size_bytes": 1234,
        "upload_status": UploadStatus.UPLOADED,
        "upload_error": None,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return ThumbnailCandidate(**fields)


class TestGenerateRequest:
    def test_camel_case_body(self):
        request = GenerateRequest.model_validate({"videoKey": "vid-1", "seekTimes": [5], "replace": True})
        assert request.video_key == "vid-1"
        assert request.seek_times == [5]
        assert request.replace is True
        assert request.force is False

    def test_snake_case_accepted(self):
        request = GenerateRequest(video_key="vid-1")
        assert request.seek_times is None

    def test_seek_times_deduplicated_and_sorted(self):
        request = GenerateRequest(video_key="vid-1", seek_times=[10, 2, 10, 0])
        assert request.seek_times == [0, 2, 10]

    def test_negative_seek_time_rejected(self):
        with pytest.raises(ValidationError):
            GenerateRequest(video_key="vid-1", seek_times=[5, -1])

    def test_too_many_seek_times_rejected(self):
        with pytest.raises(ValidationError):
            GenerateRequest(video_key="vid-1", seek_times=list(range(MAX_SEEK_TIMES_PER_RUN + 1)))

    def test_duplicates_do_not_count_against_limit(self):
        request = GenerateRequest(video_key="vid-1", seek_times=[1] * (MAX_SEEK_TIMES_PER_RUN + 5))
        assert request.seek_times == [1]

    def test_invalid_video_key_rejected(self):
        with pytest.raises(ValidationError):
            GenerateRequest(video_key="../secret")

    def test_empty_candidate_id_rejected(self):
        with pytest.raises(ValidationError):
            SelectionRequest(candidate_id="")


class TestCandidateResponse:
    def test_from_candidate(self):
        response = CandidateResponse.from_candidate(make_candidate(), selected_id="cand-1")

        assert response.selected is True
        assert response.seek_time_seconds == 5
        assert response.combined_score == pytest.approx(72.0)
        assert response.scoring_method == ScoringMethod.HYBRID

        body = response.model_dump(by_alias=True)
        assert body["seekTimeSeconds"] == 5
        assert body["storageUrl"].endswith("cand-1.jpg")

    def test_not_selected(self):
        response = CandidateResponse.from_candidate(make_candidate(), selected_id="other")
        assert response.selected is False

    def test_pixel_only(self):
        response = CandidateResponse.from_candidate(make_candidate(ai_score=None), selected_id=None)
        assert response.scoring_method == ScoringMethod.PIXEL_ONLY
        assert response.combined_score == 60.0

    def test_upload_error_sanitized(self):
        candidate = make_candidate(
            upload_status=UploadStatus.FAILED,
            upload_error="Upload of thumbnails/vid-1/x.jpg failed after 3 attempts: https://s3.internal/bucket",
        )
        response = CandidateResponse.from_candidate(candidate, selected_id=None)
        assert response.upload_error == "Upload to object storage failed. It can be retried."
