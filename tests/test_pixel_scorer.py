"""Tests for pixel heuristic scoring."""

import io

import numpy as np
import pytest
from PIL import Image

from worker.exceptions import PixelScoringFailed
from worker.pixel_scorer import (
    METRIC_WEIGHTS,
    brightness_score,
    color_distribution_score,
    contrast_score,
    detail_score,
    score_frame,
    score_frame_async,
)


def encode(image: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def solid(color, size=(64, 36)) -> bytes:
    return encode(Image.new("RGB", size, color))


def noise(size=(320, 180), seed=1) -> bytes:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    return encode(Image.fromarray(pixels, "RGB"))


class TestSubMetrics:
    """Tests for the individual 0-100 sub-metrics."""

    def test_brightness_peaks_at_mid_grey(self):
        assert brightness_score(np.full((4, 4), 128.0)) == pytest.approx(100.0)
        assert brightness_score(np.zeros((4, 4))) == pytest.approx(0.0)
        assert brightness_score(np.full((4, 4), 255.0)) == pytest.approx(0.78125)

    def test_contrast_is_scaled_std(self):
        luma = np.array([[0.0, 20.0], [0.0, 20.0]])  # std 10
        assert contrast_score(luma) == pytest.approx(20.0)
        assert contrast_score(np.array([[0.0, 255.0], [0.0, 255.0]])) == 100.0

    def test_detail_zero_for_flat_image(self):
        assert detail_score(np.full((8, 8), 90.0)) == 0.0

    def test_detail_from_gradients(self):
        luma = np.tile(np.arange(8, dtype=np.float64), (8, 1))  # horizontal ramp, gradient 1
        assert detail_score(luma) == pytest.approx(10.0)

    def test_color_distribution_single_color_is_zero(self):
        rgb = np.full((8, 8, 3), 200.0)
        assert color_distribution_score(rgb) == pytest.approx(0.0)

    def test_color_distribution_uniform_is_max(self):
        # One pixel in each of the 512 bins
        values = np.arange(8) * 32 + 16
        r, g, b = np.meshgrid(values, values, values, indexing="ij")
        rgb = np.stack([r, g, b], axis=-1).reshape(64, 8, 3).astype(np.float64)
        assert color_distribution_score(rgb) == pytest.approx(100.0)


class TestScoreFrame:
    """Tests for score_frame."""

    def test_weights_sum_to_one(self):
        assert sum(METRIC_WEIGHTS.values()) == pytest.approx(1.0)

    def test_mid_grey_frame(self):
        """A flat mid-grey frame only earns the brightness quarter."""
        result = score_frame(solid((128, 128, 128)))
        assert result.metrics["brightness"] == pytest.approx(100.0, abs=1e-6)
        assert result.metrics["contrast"] == pytest.approx(0.0)
        assert result.metrics["detail"] == pytest.approx(0.0)
        assert result.metrics["colorDistribution"] == pytest.approx(0.0)
        assert result.score == pytest.approx(25.0, abs=1e-6)

    def test_black_frame_scores_zero(self):
        assert score_frame(solid((0, 0, 0))).score == pytest.approx(0.0)

    def test_textured_frame_beats_flat_frame(self):
        assert score_frame(noise()).score > score_frame(solid((128, 128, 128))).score

    def test_score_and_metrics_in_range(self):
        result = score_frame(noise())
        assert 0 <= result.score <= 100
        assert set(result.metrics) == set(METRIC_WEIGHTS)
        assert all(0 <= value <= 100 for value in result.metrics.values())

    def test_deterministic(self):
        frame = noise(seed=7)
        assert score_frame(frame) == score_frame(frame)

    def test_large_jpeg_frame(self):
        """Full HD JPEGs are downscaled before analysis."""
        gradient = np.tile(np.linspace(0, 255, 1920, dtype=np.uint8), (1080, 1))
        image = Image.fromarray(np.stack([gradient] * 3, axis=-1), "RGB")
        result = score_frame(encode(image, "JPEG"))
        assert 0 < result.score <= 100

    def test_empty_frame(self):
        with pytest.raises(PixelScoringFailed):
            score_frame(b"")

    def test_garbage_bytes(self):
        with pytest.raises(PixelScoringFailed, match="decode"):
            score_frame(b"not an image at all")

    def test_too_small_frame(self):
        with pytest.raises(PixelScoringFailed, match="too small"):
            score_frame(solid((10, 20, 30), size=(1, 1)))

    @pytest.mark.asyncio
    async def test_async_wrapper(self):
        frame = noise(seed=3)
        assert await score_frame_async(frame) == score_frame(frame)
