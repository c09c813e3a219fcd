"""Exception types raised by the thumbnail generation pipeline."""

from typing import Optional


class ThumbnailPipelineError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class VideoNotFound(ThumbnailPipelineError):
    """The source resolver does not know the video key."""

    def __init__(self, video_key: str):
        self.video_key = video_key
        super().__init__(f"Video not found: {video_key}")


class SourceUnavailable(ThumbnailPipelineError):
    """No playable source could be produced for a video. Fatal to a run."""

    def __init__(self, message: str, retry_after: int = 30):
        self.retry_after = retry_after
        super().__init__(message)


class FrameExtractionFailed(ThumbnailPipelineError):
    """A single seek offset could not be turned into a frame."""

    def __init__(self, seek_time: float, message: str):
        self.seek_time = seek_time
        super().__init__(f"Frame extraction failed at {seek_time}s: {message}")


class PixelScoringFailed(ThumbnailPipelineError):
    """Frame bytes could not be decoded or analysed."""


class AIScoreUnavailable(ThumbnailPipelineError):
    """The AI scorer gave no usable score after exhausting retries."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class UploadFailed(ThumbnailPipelineError):
    """An artifact upload failed after exhausting retries."""

    def __init__(self, key: str, message: str, attempts: int = 0):
        self.key = key
        self.attempts = attempts
        super().__init__(f"Upload of {key} failed after {attempts} attempts: {message}")


class SelectionNotFound(ThumbnailPipelineError):
    """An override referenced a set or candidate that does not exist."""

    def __init__(self, video_key: str, candidate_id: Optional[str] = None):
        self.video_key = video_key
        self.candidate_id = candidate_id
        if candidate_id is None:
            message = f"No thumbnail set for video: {video_key}"
        else:
            message = f"Candidate {candidate_id} not found in thumbnail set for video: {video_key}"
        super().__init__(message)


class StorageError(ThumbnailPipelineError):
    """Non-retryable object storage failure."""


class StorageThrottled(StorageError):
    """Object storage asked the client to slow down."""


class StorageUnavailable(StorageError):
    """Object storage could not be reached or returned a server error."""
