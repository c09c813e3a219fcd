"""Uploads candidate frames to object storage with bounded retries.

Frames whose upload fails (or is never attempted) are written to a staging
directory so the upload can be retried later without re-extracting.
"""

import asyncio
import logging
import random
from pathlib import Path
from typing import Optional

from config import (
    STAGING_DIR,
    STORAGE_KEY_PREFIX,
    UPLOAD_MAX_ATTEMPTS,
    UPLOAD_RETRY_BASE_DELAY,
    UPLOAD_RETRY_MAX_DELAY,
)
from worker.exceptions import StorageThrottled, StorageUnavailable, UploadFailed

logger = logging.getLogger(__name__)

CONTENT_TYPE = "image/jpeg"


def storage_key_for(video_key: str, candidate_id: str, prefix: str = STORAGE_KEY_PREFIX) -> str:
    """Deterministic object key for a candidate frame."""
    if prefix:
        return f"{prefix}/{video_key}/{candidate_id}.jpg"
    return f"{video_key}/{candidate_id}.jpg"


class FrameStaging:
    """Local holding area for frames that are not in object storage yet."""

    def __init__(self, root: Path = STAGING_DIR):
        self.root = Path(root)

    def path_for(self, video_key: str, candidate_id: str) -> Path:
        return self.root / video_key / f"{candidate_id}.jpg"

    def _write_sync(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def stage(self, video_key: str, candidate_id: str, data: bytes) -> Path:
        path = self.path_for(video_key, candidate_id)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_sync, path, data)
        return path

    async def load(self, video_key: str, candidate_id: str) -> Optional[bytes]:
        path = self.path_for(video_key, candidate_id)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError:
            return None

    async def discard(self, video_key: str, candidate_id: str) -> None:
        path = self.path_for(video_key, candidate_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass


class ArtifactUploader:
    """Puts frames into object storage, retrying throttled/unavailable errors."""

    def __init__(
        self,
        storage,
        max_attempts: int = UPLOAD_MAX_ATTEMPTS,
        base_delay: float = UPLOAD_RETRY_BASE_DELAY,
        max_delay: float = UPLOAD_RETRY_MAX_DELAY,
        key_prefix: str = STORAGE_KEY_PREFIX,
    ):
        self.storage = storage
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.key_prefix = key_prefix

    def key_for(self, video_key: str, candidate_id: str) -> str:
        return storage_key_for(video_key, candidate_id, self.key_prefix)

    async def upload(self, video_key: str, candidate_id: str, data: bytes) -> str:
        """Upload a frame and return its URL.

        Raises:
            UploadFailed: If retries are exhausted or storage rejects the object
        """
        key = self.key_for(video_key, candidate_id)
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                return await self.storage.put(key, data, CONTENT_TYPE)
            except (StorageThrottled, StorageUnavailable) as e:
                last_error = e
            except Exception as e:
                # Permanent errors (bad credentials, missing bucket) are not retried
                raise UploadFailed(key, str(e), attempts=attempt + 1) from e

            if attempt < self.max_attempts - 1:
                delay = min(self.base_delay * (2**attempt), self.max_delay)
                # Add jitter (±25%)
                delay = delay * (0.75 + random.random() * 0.5)
                logger.warning(
                    f"Upload of {key} failed (attempt {attempt + 1}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {last_error}"
                )
                await asyncio.sleep(delay)

        raise UploadFailed(key, str(last_error), attempts=self.max_attempts)
