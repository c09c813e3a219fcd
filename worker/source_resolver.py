"""Resolve a video key to a playable source URL and duration."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx

from config import (
    SOURCE_RESOLVER,
    SOURCE_RESOLVER_TIMEOUT,
    SOURCE_RESOLVER_URL,
    SUPPORTED_VIDEO_EXTENSIONS,
    UPLOADS_DIR,
)
from worker.exceptions import SourceUnavailable, VideoNotFound
from worker.frame_extractor import FrameExtractor, validate_duration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedSource:
    url: str
    duration: float
    # True when the resolver already read the source with ffprobe
    probed: bool = False


class HTTPSourceResolver:
    """Asks an external service for a source URL: GET {base}/api/video/{key}/url.

    The reply is JSON with "url" and optionally "durationSeconds". When the
    duration is missing the source is probed with ffprobe; otherwise the
    generator probes it before fan-out.
    """

    def __init__(
        self,
        base_url: str = SOURCE_RESOLVER_URL,
        extractor: Optional[FrameExtractor] = None,
        timeout: float = SOURCE_RESOLVER_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.extractor = extractor or FrameExtractor()
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def resolve(self, video_key: str) -> ResolvedSource:
        """
        Raises:
            VideoNotFound: If the resolver answers 404
            SourceUnavailable: On any other failure to produce a URL
        """
        client = await self._get_client()
        url = f"{self.base_url}/api/video/{quote(video_key, safe='')}/url"
        try:
            resp = await client.get(url, timeout=self.timeout)
        except httpx.RequestError as e:
            raise SourceUnavailable(f"Source resolver unreachable: {type(e).__name__}")

        if resp.status_code == 404:
            raise VideoNotFound(video_key)
        if resp.status_code >= 400:
            raise SourceUnavailable(f"Source resolver returned HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError:
            raise SourceUnavailable("Source resolver returned invalid JSON")

        source_url = payload.get("url") if isinstance(payload, dict) else None
        if not source_url:
            raise SourceUnavailable("Source resolver returned no URL")

        raw_duration = payload.get("durationSeconds")
        if raw_duration is not None:
            try:
                return ResolvedSource(url=source_url, duration=validate_duration(raw_duration))
            except ValueError as e:
                logger.warning(f"Resolver duration for {video_key} unusable ({e}), probing source")

        info = await self.extractor.probe_source(source_url)
        return ResolvedSource(url=source_url, duration=info.duration, probed=True)


class LocalSourceResolver:
    """Finds {uploads_dir}/{video_key}.{ext} and probes it for duration."""

    def __init__(self, uploads_dir: Path = UPLOADS_DIR, extractor: Optional[FrameExtractor] = None):
        self.uploads_dir = Path(uploads_dir)
        self.extractor = extractor or FrameExtractor()

    def find_source(self, video_key: str) -> Optional[Path]:
        for ext in sorted(SUPPORTED_VIDEO_EXTENSIONS):
            candidate = self.uploads_dir / f"{video_key}{ext}"
            if candidate.exists():
                return candidate
        return None

    async def resolve(self, video_key: str) -> ResolvedSource:
        path = self.find_source(video_key)
        if path is None:
            raise VideoNotFound(video_key)
        info = await self.extractor.probe_source(str(path))
        return ResolvedSource(url=str(path), duration=info.duration, probed=True)


def create_resolver(kind: str = SOURCE_RESOLVER, extractor: Optional[FrameExtractor] = None):
    """Build the resolver named by THUMBPICK_SOURCE_RESOLVER."""
    if kind == "http":
        return HTTPSourceResolver(extractor=extractor)
    if kind == "local":
        return LocalSourceResolver(extractor=extractor)
    raise ValueError(f"Unknown source resolver: {kind} (expected 'http' or 'local')")
