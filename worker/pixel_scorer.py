"""Pixel heuristic scoring of candidate frames.

Frames are decoded with Pillow, downscaled to fit 400x225 and analysed with
numpy. Four sub-metrics, each 0-100, are averaged with equal weights:

- brightness: distance of mean luma from mid-grey (128)
- contrast: standard deviation of luma
- detail: mean forward-difference gradient magnitude of luma
- color distribution: normalised entropy of an 8x8x8 RGB histogram

Scoring is deterministic and side-effect free.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Dict

import numpy as np
from PIL import Image, UnidentifiedImageError

from worker.exceptions import PixelScoringFailed

logger = logging.getLogger(__name__)

ANALYSIS_SIZE = (400, 225)

METRIC_WEIGHTS = {
    "brightness": 0.25,
    "contrast": 0.25,
    "detail": 0.25,
    "colorDistribution": 0.25,
}

# ITU-R BT.601 luma coefficients
LUMA_COEFFICIENTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)

HISTOGRAM_BINS_PER_CHANNEL = 8


@dataclass(frozen=True)
class PixelScore:
    score: float
    metrics: Dict[str, float]


def _load_rgb(frame: bytes) -> np.ndarray:
    if not frame:
        raise PixelScoringFailed("Cannot decode empty frame")
    try:
        with Image.open(io.BytesIO(frame)) as image:
            image = image.convert("RGB")
            # Image.thumbnail keeps aspect ratio and never upscales
            image.thumbnail(ANALYSIS_SIZE, Image.Resampling.BILINEAR)
            pixels = np.asarray(image, dtype=np.float64)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise PixelScoringFailed(f"Cannot decode frame: {e}") from e

    if pixels.ndim != 3 or pixels.shape[0] < 2 or pixels.shape[1] < 2:
        raise PixelScoringFailed(f"Frame too small to analyse: {pixels.shape[1]}x{pixels.shape[0]}")
    return pixels


def brightness_score(luma: np.ndarray) -> float:
    mean = float(luma.mean())
    return max(0.0, 100.0 - abs(mean - 128.0) / 128.0 * 100.0)


def contrast_score(luma: np.ndarray) -> float:
    return min(float(luma.std()) * 2.0, 100.0)


def detail_score(luma: np.ndarray) -> float:
    dx = np.diff(luma, axis=1)[:-1, :]
    dy = np.diff(luma, axis=0)[:, :-1]
    magnitude = np.sqrt(dx * dx + dy * dy)
    return min(float(magnitude.mean()) * 10.0, 100.0)


def color_distribution_score(rgb: np.ndarray) -> float:
    bins = HISTOGRAM_BINS_PER_CHANNEL
    quantized = np.clip(rgb // (256 // bins), 0, bins - 1).astype(np.int64)
    index = quantized[..., 0] * bins * bins + quantized[..., 1] * bins + quantized[..., 2]
    counts = np.bincount(index.ravel(), minlength=bins**3).astype(np.float64)
    probabilities = counts[counts > 0] / counts.sum()
    entropy = -float(np.sum(probabilities * np.log2(probabilities)))
    max_entropy = np.log2(bins**3)
    return min(entropy / max_entropy * 100.0, 100.0)


def score_frame(frame: bytes) -> PixelScore:
    """Score a JPEG/PNG frame on pixel heuristics.

    Raises:
        PixelScoringFailed: If the frame is empty, malformed or too small
    """
    rgb = _load_rgb(frame)
    luma = rgb @ LUMA_COEFFICIENTS

    metrics = {
        "brightness": brightness_score(luma),
        "contrast": contrast_score(luma),
        "detail": detail_score(luma),
        "colorDistribution": color_distribution_score(rgb),
    }
    score = sum(metrics[name] * weight for name, weight in METRIC_WEIGHTS.items())
    return PixelScore(score=max(0.0, min(100.0, score)), metrics=metrics)


async def score_frame_async(frame: bytes) -> PixelScore:
    """Run score_frame in the default executor so decoding does not block the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, score_frame, frame)
