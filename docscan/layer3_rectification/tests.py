"""
Tests for Layer 3: perspective rectification.
"""
import cv2
import numpy as np
import pytest

from docscan.layer2_detection import DownsampledPoint, FullResPoint, Quadrilateral
from docscan.layer3_rectification import PerspectiveRectifier

TARGET = (170, 220)


def skewed_quad(confidence=0.9):
    return Quadrilateral(
        FullResPoint(100, 60), FullResPoint(520, 90),
        FullResPoint(560, 430), FullResPoint(70, 400),
        confidence=confidence
    )


class TestOutputSize:
    """Test the output raster size never varies."""

    @pytest.mark.parametrize("shape", [(480, 640, 3), (1080, 1920, 3), (300, 300), (2000, 1500, 3)])
    def test_exact_target_size(self, shape):
        """Test every frame size rectifies to exactly the target."""
        frame = np.random.default_rng(1).integers(0, 255, size=shape, dtype=np.uint8)
        height, width = shape[:2]
        quad = Quadrilateral(
            FullResPoint(width * 0.1, height * 0.1), FullResPoint(width * 0.9, height * 0.15),
            FullResPoint(width * 0.85, height * 0.9), FullResPoint(width * 0.12, height * 0.8),
            confidence=0.95
        )
        out = PerspectiveRectifier(TARGET).rectify(frame, quad)
        assert out.shape[:2] == (TARGET[1], TARGET[0])
        assert out.ndim == frame.ndim

    def test_letter_at_300_dpi(self):
        """Test the reference target of 2550x3300."""
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        out = PerspectiveRectifier().rectify(frame, skewed_quad())
        assert out.shape == (3300, 2550, 3)


class TestFallback:
    """Test low-confidence and degenerate quadrilaterals."""

    def test_low_confidence_equals_no_detection(self):
        """Test a weak quadrilateral gives the same page as no detection at all."""
        frame = np.random.default_rng(2).integers(0, 255, size=(480, 640, 3), dtype=np.uint8)
        rectifier = PerspectiveRectifier(TARGET, confidence_threshold=0.5)
        weak = rectifier.rectify(frame, skewed_quad(confidence=0.3))
        none = rectifier.rectify(frame, None)
        assert np.array_equal(weak, none)

    def test_confident_quad_changes_output(self):
        """Test a usable quadrilateral is actually applied."""
        frame = np.random.default_rng(3).integers(0, 255, size=(480, 640, 3), dtype=np.uint8)
        rectifier = PerspectiveRectifier(TARGET)
        assert not np.array_equal(rectifier.rectify(frame, skewed_quad()), rectifier.rectify(frame, None))

    def test_degenerate_quad_falls_back_to_scale(self):
        """Test collinear corners fall back to scaling the whole frame."""
        frame = np.random.default_rng(4).integers(0, 255, size=(480, 640, 3), dtype=np.uint8)
        degenerate = Quadrilateral(
            FullResPoint(0, 0), FullResPoint(50, 0),
            FullResPoint(100, 0), FullResPoint(0, 100),
            confidence=0.9
        )
        out = PerspectiveRectifier(TARGET).rectify(frame, degenerate)
        expected = cv2.resize(frame, TARGET, interpolation=cv2.INTER_AREA)
        assert np.array_equal(out, expected)

    def test_rejects_downsampled_corners(self):
        """Test downsampled corners must be scaled before rectification."""
        frame = np.zeros((100, 100, 3), dtype=np.uint8)
        quad = Quadrilateral(
            DownsampledPoint(0, 0), DownsampledPoint(50, 0),
            DownsampledPoint(50, 50), DownsampledPoint(0, 50),
            confidence=0.9
        )
        with pytest.raises(TypeError):
            PerspectiveRectifier(TARGET).rectify(frame, quad)

    def test_empty_frame(self):
        """Test an empty frame is rejected."""
        with pytest.raises(ValueError):
            PerspectiveRectifier(TARGET).rectify(np.zeros((0, 0, 3), dtype=np.uint8))


class TestHomography:
    """Test the projective transform itself."""

    def test_corners_map_to_target_rectangle(self):
        """Test the four corners land on the target rectangle corners."""
        quad = skewed_quad()
        M = PerspectiveRectifier(TARGET).homography(quad)
        mapped = cv2.perspectiveTransform(quad.as_array().reshape(1, 4, 2), M).reshape(4, 2)
        expected = np.array([[0, 0], [169, 0], [169, 219], [0, 219]], dtype=np.float32)
        assert np.allclose(mapped, expected, atol=1e-3)

    def test_page_content_is_recovered(self):
        """Test a warped bright page fills the rectified output."""
        frame = np.full((480, 640, 3), 20, dtype=np.uint8)
        quad = skewed_quad()
        cv2.fillPoly(frame, [np.round(quad.as_array()).astype(np.int32)], (230, 230, 230))
        out = PerspectiveRectifier(TARGET).rectify(frame, quad)
        inner = out[10:-10, 10:-10]
        assert inner.min() > 200
