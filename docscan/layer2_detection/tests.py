"""
Tests for Layer 2: edge detector, quadrilateral geometry, corner scaler and overlay.
"""
import numpy as np
import pytest

from docscan.error_handlers import DegenerateQuadrilateralError
from docscan.layer1_capture import FrameDownsampler
from docscan.layer2_detection import (
    CornerScaler,
    DetectionCandidate,
    DownsampledPoint,
    EdgeDetector,
    FullResPoint,
    Quadrilateral,
    draw_guide_overlay,
    full_frame_quadrilateral,
    order_corners,
    validate_quadrilateral,
)


def square(point_type=FullResPoint, confidence=1.0, size=100.0):
    return Quadrilateral(
        point_type(0.0, 0.0), point_type(size, 0.0),
        point_type(size, size), point_type(0.0, size),
        confidence=confidence
    )


class TestEdgeDetector:
    """Test document boundary detection on synthetic buffers."""

    def test_synthetic_rectangle(self, synthetic_buffer, page_corners):
        """Test known corners are recovered within a few pixels with high confidence."""
        quad = EdgeDetector().detect(synthetic_buffer)

        assert quad is not None
        assert quad.point_type is DownsampledPoint
        assert quad.confidence > 0.6
        found = quad.as_array()
        expected = np.array(page_corners, dtype=np.float32)
        assert np.max(np.abs(found - expected)) <= 4.0

    def test_accepts_downsampled_frame(self, document_frame, page_corners):
        """Test the detector reads the buffer from a DownsampledFrame."""
        small = FrameDownsampler(4).downsample(document_frame)
        quad = EdgeDetector().detect(small)
        assert quad is not None
        expected = np.array(page_corners, dtype=np.float32)
        assert np.max(np.abs(quad.as_array() - expected)) <= 4.0

    def test_blank_frame_is_a_miss(self):
        """Test a featureless buffer returns None rather than raising."""
        assert EdgeDetector().detect(np.full((300, 300), 90, dtype=np.uint8)) is None

    def test_tiny_region_is_a_miss(self):
        """Test candidates covering almost none of the frame are rejected."""
        buffer = np.full((300, 300), 30, dtype=np.uint8)
        buffer[140:155, 140:160] = 220
        assert EdgeDetector().detect(buffer) is None

    def test_frame_filling_region_penalized(self):
        """Test a boundary hugging the frame edge gets almost no area credit."""
        buffer = np.full((300, 300), 220, dtype=np.uint8)
        buffer[:2, :] = 30
        buffer[-2:, :] = 30
        buffer[:, :2] = 30
        buffer[:, -2:] = 30
        candidates = EdgeDetector().find_candidates(buffer)
        assert all(c.area_score < 0.25 for c in candidates)

    def test_empty_buffer(self):
        """Test an empty buffer is a miss."""
        assert EdgeDetector().detect(np.zeros((0, 0), dtype=np.uint8)) is None

    def test_ties_go_to_largest_area(self):
        """Test equally confident candidates resolve to the largest enclosed area."""
        corners = np.zeros((4, 2))
        small = DetectionCandidate(corners, 100.0, 1, 1, 1, 0.8, "a")
        large = DetectionCandidate(corners, 900.0, 1, 1, 1, 0.8, "b")
        weak = DetectionCandidate(corners, 5000.0, 1, 1, 1, 0.1, "c")
        assert EdgeDetector().select_best([small, weak, large]) is large

    def test_below_min_confidence_reports_nothing(self):
        """Test candidates under the detector floor are not reported."""
        corners = np.zeros((4, 2))
        weak = DetectionCandidate(corners, 100.0, 0, 0, 0, 0.2, "a")
        assert EdgeDetector(min_confidence=0.3).select_best([weak]) is None


class TestQuadrilateral:
    """Test quadrilateral construction and helpers."""

    def test_mixed_spaces_rejected(self):
        """Test corners from both coordinate spaces cannot be combined."""
        with pytest.raises(TypeError):
            Quadrilateral(
                DownsampledPoint(0, 0), FullResPoint(1, 0),
                FullResPoint(1, 1), FullResPoint(0, 1)
            )

    def test_confidence_range(self):
        """Test confidence outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            square(confidence=1.5)

    def test_from_points_orders_clockwise(self):
        """Test unordered points come back as TL, TR, BR, BL."""
        quad = Quadrilateral.from_points([(90, 80), (10, 10), (10, 85), (95, 5)])
        assert quad.top_left == FullResPoint(10, 10)
        assert quad.top_right == FullResPoint(95, 5)
        assert quad.bottom_right == FullResPoint(90, 80)
        assert quad.bottom_left == FullResPoint(10, 85)

    def test_order_corners_diamond(self):
        """Test a 45-degree square is still ordered clockwise."""
        ordered = order_corners(np.array([(0, 50), (50, 100), (100, 50), (50, 0)]))
        assert ordered.tolist() == [[50, 0], [100, 50], [50, 100], [0, 50]]

    def test_area_and_usability(self):
        """Test shoelace area and the usability threshold."""
        quad = square(confidence=0.5)
        assert quad.area() == pytest.approx(10000.0)
        assert quad.is_usable(0.5)
        assert not quad.is_usable(0.51)

    def test_to_dict_percentages(self):
        """Test corners are rendered as percentages of the frame."""
        data = square(size=50.0).to_dict(frame_width=200, frame_height=100)
        bottom_right = data["corners"][2]
        assert bottom_right["name"] == "bottom-right"
        assert bottom_right["x_percent"] == 25.0
        assert bottom_right["y_percent"] == 50.0

    def test_full_frame_default(self):
        """Test the default quadrilateral spans the frame bounds."""
        quad = full_frame_quadrilateral(640, 480)
        assert quad.point_type is FullResPoint
        assert quad.bottom_right == FullResPoint(639, 479)
        assert quad.confidence == 1.0


class TestValidateQuadrilateral:
    """Test degeneracy checks."""

    def test_valid_square(self):
        """Test a square passes."""
        validate_quadrilateral(square())

    def test_coincident_corners(self):
        """Test coincident corners are rejected."""
        quad = Quadrilateral(
            FullResPoint(0, 0), FullResPoint(0, 0),
            FullResPoint(10, 10), FullResPoint(0, 10)
        )
        with pytest.raises(DegenerateQuadrilateralError):
            validate_quadrilateral(quad)

    def test_collinear_corners(self):
        """Test three collinear corners are rejected."""
        quad = Quadrilateral(
            FullResPoint(0, 0), FullResPoint(5, 0),
            FullResPoint(10, 0), FullResPoint(0, 10)
        )
        with pytest.raises(DegenerateQuadrilateralError):
            validate_quadrilateral(quad)

    def test_self_intersecting(self):
        """Test a bow-tie ordering is rejected."""
        quad = Quadrilateral(
            FullResPoint(0, 0), FullResPoint(10, 10),
            FullResPoint(10, 0), FullResPoint(0, 10)
        )
        with pytest.raises(DegenerateQuadrilateralError):
            validate_quadrilateral(quad)

    def test_non_finite(self):
        """Test NaN coordinates are rejected."""
        quad = Quadrilateral(
            FullResPoint(float('nan'), 0), FullResPoint(10, 0),
            FullResPoint(10, 10), FullResPoint(0, 10)
        )
        with pytest.raises(DegenerateQuadrilateralError):
            validate_quadrilateral(quad)


class TestCornerScaler:
    """Test the downsampled -> full-resolution bridge."""

    def test_scales_every_coordinate(self):
        """Test coordinates are multiplied by the factor and confidence is kept."""
        quad = square(point_type=DownsampledPoint, confidence=0.7, size=10.0)
        full = CornerScaler(4).to_full_resolution(quad)
        assert full.point_type is FullResPoint
        assert full.bottom_right == FullResPoint(40.0, 40.0)
        assert full.confidence == 0.7

    def test_rejects_full_resolution_input(self):
        """Test scaling twice is a type error."""
        with pytest.raises(TypeError):
            CornerScaler(4).to_full_resolution(square())


class TestGuideOverlay:
    """Test the preview guide overlay."""

    def test_draws_on_copy(self):
        """Test the overlay leaves the source frame untouched."""
        frame = np.zeros((120, 120, 3), dtype=np.uint8)
        out = draw_guide_overlay(frame, square(size=100.0))
        assert out.shape == frame.shape
        assert out.any()
        assert not frame.any()

    def test_no_quad_returns_plain_copy(self):
        """Test no detection means no guide."""
        frame = np.full((20, 20, 3), 5, dtype=np.uint8)
        out = draw_guide_overlay(frame, None)
        assert np.array_equal(out, frame)
        assert out is not frame

    def test_rejects_downsampled_corners(self):
        """Test the overlay only accepts full-resolution corners."""
        frame = np.zeros((20, 20, 3), dtype=np.uint8)
        with pytest.raises(TypeError):
            draw_guide_overlay(frame, square(point_type=DownsampledPoint, size=10.0))
