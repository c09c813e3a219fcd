"""Candidate frame extraction with ffmpeg/ffprobe.

Frames are grabbed with input seeking (-ss before -i), which jumps to the
nearest keyframe without decoding the whole stream. Offsets are approximate.
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Tuple

from api.errors import truncate_error
from config import ERROR_DETAIL_MAX_LENGTH, FRAME_EXTRACT_TIMEOUT, FRAME_WIDTH, SOURCE_PROBE_TIMEOUT
from worker.exceptions import FrameExtractionFailed, SourceUnavailable

logger = logging.getLogger(__name__)

# Maximum allowed video duration (1 week in seconds), guards against corrupted metadata
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class SourceInfo:
    duration: float
    width: int = 0
    height: int = 0
    codec: str = "unknown"


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration {duration}s exceeds maximum of {MAX_DURATION_SECONDS}s")

    return float(duration)


def plan_offsets(offsets: Iterable[float], duration: float) -> Tuple[List[float], List[float]]:
    """Split requested offsets into (extractable, beyond_duration), both sorted and deduplicated."""
    unique = sorted(set(offsets))
    valid = [offset for offset in unique if 0 <= offset <= duration]
    skipped = [offset for offset in unique if offset > duration]
    return valid, skipped


class FrameExtractor:
    """Probes video sources and grabs single JPEG frames at seek offsets."""

    def __init__(
        self,
        width: int = FRAME_WIDTH,
        extract_timeout: float = FRAME_EXTRACT_TIMEOUT,
        probe_timeout: float = SOURCE_PROBE_TIMEOUT,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
    ):
        self.width = width
        self.extract_timeout = extract_timeout
        self.probe_timeout = probe_timeout
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    async def _run(self, cmd: List[str], timeout: float) -> Tuple[int, bytes, bytes]:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        except asyncio.CancelledError:
            # Run deadline cancelled us; don't leave ffmpeg running
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return process.returncode, stdout, stderr

    async def probe_source(self, url: str) -> SourceInfo:
        """Check that a source is readable and return its metadata.

        Raises:
            SourceUnavailable: If ffprobe fails, times out, or finds no video stream
        """
        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            url,
        ]
        try:
            returncode, stdout, stderr = await self._run(cmd, self.probe_timeout)
        except asyncio.TimeoutError:
            raise SourceUnavailable(f"ffprobe timed out after {self.probe_timeout}s")
        except OSError as e:
            raise SourceUnavailable(f"ffprobe could not be started: {e}")

        if returncode != 0:
            error_msg = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
            raise SourceUnavailable(f"ffprobe failed: {error_msg}")

        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore"))
        except json.JSONDecodeError as e:
            raise SourceUnavailable(f"ffprobe returned invalid JSON: {e}")

        video_stream = None
        for stream in data.get("streams", []):
            if stream.get("codec_type") == "video":
                video_stream = stream
                break

        if not video_stream:
            raise SourceUnavailable("No video stream found")

        try:
            duration = validate_duration(data.get("format", {}).get("duration"))
        except ValueError as e:
            raise SourceUnavailable(f"ffprobe: {e}")

        return SourceInfo(
            duration=duration,
            width=int(video_stream.get("width", 0)),
            height=int(video_stream.get("height", 0)),
            codec=video_stream.get("codec_name", "unknown"),
        )

    async def extract_frame(self, url: str, seek_time: float) -> bytes:
        """Grab one JPEG frame at seek_time, scaled to the configured width.

        Raises:
            FrameExtractionFailed: On timeout, non-zero exit or empty output
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            str(seek_time),
            "-i",
            url,
            "-frames:v",
            "1",
            "-vf",
            f"scale={self.width}:-2",
            "-f",
            "image2pipe",
            "-vcodec",
            "mjpeg",
            "-q:v",
            "2",
            "pipe:1",
        ]
        try:
            returncode, stdout, stderr = await self._run(cmd, self.extract_timeout)
        except asyncio.TimeoutError:
            raise FrameExtractionFailed(seek_time, f"ffmpeg timed out after {self.extract_timeout}s")
        except OSError as e:
            raise FrameExtractionFailed(seek_time, f"ffmpeg could not be started: {e}")

        if returncode != 0:
            error_msg = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
            raise FrameExtractionFailed(seek_time, f"ffmpeg exited with {returncode}: {error_msg}")

        if not stdout:
            # ffmpeg exits 0 with no output when seeking past the last keyframe
            raise FrameExtractionFailed(seek_time, "ffmpeg produced no frame")

        logger.debug(f"Extracted frame at {seek_time}s ({len(stdout)} bytes)")
        return stdout
