"""AI vision scoring of candidate frames through an OpenAI-compatible API."""

import asyncio
import base64
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from api.errors import truncate_error
from config import (
    AI_API_KEY,
    AI_API_URL,
    AI_MAX_RETRIES,
    AI_MAX_TOKENS,
    AI_MODEL,
    AI_RETRY_BASE_DELAY,
    AI_TIMEOUT,
    ERROR_SUMMARY_MAX_LENGTH,
)
from worker.exceptions import AIScoreUnavailable

logger = logging.getLogger(__name__)

DEFAULT_RETRY_MAX_DELAY = 8.0  # seconds

EVALUATION_PROMPT = """
Analyze this video thumbnail for quality and rate it 1-100. Consider:

COMPOSITION (30%):
- Is there a clear focal point or subject?
- Is the frame well-composed and balanced?
- Are there distracting elements or empty space?

VISUAL CLARITY (25%):
- Is the image sharp and in focus?
- Can you clearly see facial expressions or important details?
- Is there good contrast between elements?

LIGHTING & EXPOSURE (25%):
- Is the lighting natural and pleasing?
- Are faces and important areas well-lit?
- Is the exposure balanced (not too dark/bright)?

PROFESSIONAL APPEARANCE (20%):
- Does the frame look intentional and presentable?
- Is the background clean and free of clutter?

Respond with a single JSON object and nothing else:
{
  "overallScore": <integer 1-100>,
  "composition": <integer 1-100>,
  "clarity": <integer 1-100>,
  "lighting": <integer 1-100>,
  "professional": <integer 1-100>,
  "reasoning": "<one sentence>",
  "improvements": "<one sentence>"
}
""".strip()

# Replies sometimes wrap the JSON in prose or a markdown fence
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class AIScore:
    score: float
    rationale: Optional[str] = None
    improvements: Optional[str] = None


class MalformedAIResponse(ValueError):
    """The AI reply did not contain a usable score."""


def parse_ai_reply(content: str) -> AIScore:
    """Extract the score object from the model's message content.

    Raises:
        MalformedAIResponse: If no JSON object with a numeric overallScore in 0-100 is found
    """
    match = _JSON_OBJECT_RE.search(content or "")
    if not match:
        raise MalformedAIResponse("No JSON object in AI reply")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedAIResponse(f"Invalid JSON in AI reply: {e}")
    if not isinstance(payload, dict):
        raise MalformedAIResponse("AI reply JSON is not an object")

    raw_score = payload.get("overallScore")
    # bool is an int subclass; "true" is not a score
    if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)):
        raise MalformedAIResponse(f"overallScore missing or not a number: {raw_score!r}")
    if raw_score < 0 or raw_score > 100:
        raise MalformedAIResponse(f"overallScore out of range: {raw_score}")

    return AIScore(
        score=float(raw_score),
        rationale=_as_text(payload.get("reasoning")),
        improvements=_as_text(payload.get("improvements")),
    )


def _as_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        return "; ".join(str(item) for item in value)
    return str(value)


class VisionScorer:
    """Scores frames with a vision-capable chat completions model.

    Every failure (timeout, connection error, non-2xx, malformed reply) is
    retried with exponential backoff and jitter. When retries are exhausted
    AIScoreUnavailable is raised; a score is never made up.
    """

    def __init__(
        self,
        api_url: str = AI_API_URL,
        api_key: str = AI_API_KEY,
        model: str = AI_MODEL,
        timeout: float = AI_TIMEOUT,
        max_retries: int = AI_MAX_RETRIES,
        base_delay: float = AI_RETRY_BASE_DELAY,
        max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        prompt: str = EVALUATION_PROMPT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.prompt = prompt
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
            self._client = httpx.AsyncClient(timeout=self.timeout, limits=limits)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    def _build_request(self, frame: bytes) -> dict:
        encoded = base64.b64encode(frame).decode("ascii")
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.prompt},
                        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
                    ],
                }
            ],
            "max_tokens": AI_MAX_TOKENS,
        }

    async def _attempt(self, frame: bytes) -> AIScore:
        client = await self._get_client()
        resp = await client.post(
            f"{self.api_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=self._build_request(frame),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedAIResponse(f"Unexpected completions payload: {e}")
        return parse_ai_reply(content)

    async def score(self, frame: bytes) -> AIScore:
        """Score a frame, retrying transient and malformed replies.

        Raises:
            AIScoreUnavailable: If scoring is disabled or every attempt failed
        """
        if not self.enabled:
            raise AIScoreUnavailable("AI scoring disabled (no API key configured)")

        last_error: Optional[Exception] = None
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                return await self._attempt(frame)
            except httpx.HTTPStatusError as e:
                last_error = e
                detail = f"HTTP {e.response.status_code}"
            except httpx.RequestError as e:
                last_error = e
                detail = f"{type(e).__name__}: {e}"
            except MalformedAIResponse as e:
                last_error = e
                detail = str(e)

            if attempt < attempts - 1:
                delay = min(self.base_delay * (2**attempt), self.max_delay)
                # Add jitter (±25%)
                delay = delay * (0.75 + random.random() * 0.5)
                logger.warning(
                    f"AI scoring attempt {attempt + 1}/{attempts} failed, retrying in {delay:.2f}s: "
                    f"{truncate_error(detail, ERROR_SUMMARY_MAX_LENGTH)}"
                )
                await asyncio.sleep(delay)

        raise AIScoreUnavailable(f"AI scoring failed after {attempts} attempts: {last_error}", attempts=attempts)
