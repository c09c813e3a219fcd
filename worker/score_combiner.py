"""Combine pixel and AI scores into one ranking score.

This module is the only place that knows the pixel/AI weighting and the
confidence assigned to each combination method.
"""

from dataclasses import dataclass
from typing import Optional

from api.enums import ScoringMethod

PIXEL_WEIGHT = 0.4
AI_WEIGHT = 0.6

CONFIDENCE_HYBRID = 0.95
CONFIDENCE_PIXEL_ONLY = 0.7


@dataclass(frozen=True)
class CombinedScore:
    score: float
    confidence: float
    method: ScoringMethod


def combine_scores(pixel_score: float, ai_score: Optional[float] = None) -> CombinedScore:
    """Combine a pixel score with an optional AI score.

    Args:
        pixel_score: Pixel heuristic score (0-100)
        ai_score: AI vision score (0-100), or None when the AI scorer gave no score

    Returns:
        CombinedScore with the weighted score, its confidence and the method used

    Raises:
        ValueError: If a score is outside 0-100
    """
    _check_range("pixel_score", pixel_score)
    if ai_score is None:
        return CombinedScore(
            score=float(pixel_score),
            confidence=CONFIDENCE_PIXEL_ONLY,
            method=ScoringMethod.PIXEL_ONLY,
        )

    _check_range("ai_score", ai_score)
    return CombinedScore(
        score=pixel_score * PIXEL_WEIGHT + ai_score * AI_WEIGHT,
        confidence=CONFIDENCE_HYBRID,
        method=ScoringMethod.HYBRID,
    )


def _check_range(name: str, value: float) -> None:
    if value < 0 or value > 100:
        raise ValueError(f"{name} must be between 0 and 100, got {value}")
