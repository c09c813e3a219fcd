"""Object storage backends for candidate frames.

S3ObjectStorage talks to S3 (or any S3-compatible endpoint) through boto3.
LocalObjectStorage writes into a directory and is used for single-host
deployments and tests.
"""

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError

from config import (
    S3_ENDPOINT_URL,
    S3_REGION,
    STORAGE_BACKEND,
    STORAGE_BUCKET,
    STORAGE_PUBLIC_BASE_URL,
    THUMBNAILS_DIR,
)
from worker.exceptions import StorageError, StorageThrottled, StorageUnavailable

logger = logging.getLogger(__name__)

THROTTLE_ERROR_CODES = frozenset(
    ["SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequestsException"]
)
UNAVAILABLE_ERROR_CODES = frozenset(
    ["InternalError", "ServiceUnavailable", "RequestTimeout", "RequestTimeTooSkewed", "503", "500"]
)


def classify_client_error(exc: ClientError) -> StorageError:
    """Map a botocore ClientError to the storage error taxonomy."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
    message = f"{code or 'ClientError'}: {error.get('Message', str(exc))}"

    if code in THROTTLE_ERROR_CODES or status == 429:
        return StorageThrottled(message)
    if code in UNAVAILABLE_ERROR_CODES or status >= 500:
        return StorageUnavailable(message)
    return StorageError(message)


class S3ObjectStorage:
    """Uploads frames to an S3 bucket and returns their public URLs."""

    def __init__(
        self,
        bucket: str = STORAGE_BUCKET,
        region: str = S3_REGION,
        endpoint_url: Optional[str] = S3_ENDPOINT_URL,
        public_base_url: str = STORAGE_PUBLIC_BASE_URL,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                # Retries are handled by ArtifactUploader
                config=Config(signature_version="s3v4", retries={"max_attempts": 1, "mode": "standard"}),
            )
        return self._client

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _put_sync(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            raise classify_client_error(e) from e
        except BotoConnectionError as e:
            raise StorageUnavailable(f"S3 connection error: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 error: {e}") from e
        return self.url_for(key)

    async def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Upload bytes under key; returns the object's URL."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._put_sync, key, data, content_type))


class LocalObjectStorage:
    """Writes frames under a root directory; URLs are built from a public base."""

    def __init__(self, root: Path = THUMBNAILS_DIR, public_base_url: str = STORAGE_PUBLIC_BASE_URL):
        self.root = Path(root)
        self.public_base_url = (public_base_url or "/thumbnails").rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise StorageError(f"Storage key escapes storage root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def _put_sync(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as e:
            raise StorageUnavailable(f"Local storage write failed: {e}") from e
        return self.url_for(key)

    async def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._put_sync, key, data)


def create_storage(backend: str = STORAGE_BACKEND):
    """Build the storage backend named by THUMBPICK_STORAGE_BACKEND."""
    if backend == "s3":
        return S3ObjectStorage()
    if backend == "local":
        return LocalObjectStorage()
    raise ValueError(f"Unknown storage backend: {backend} (expected 's3' or 'local')")
