"""
Layer 2 – Edge Detector
Responsibility: Find the four-corner document boundary in a downsampled luma buffer
Output: Quadrilateral in downsampled coordinates with a confidence, or None

Pipeline:
1. Edge maps (Canny over the blurred buffer at several threshold pairs)
   plus an Otsu foreground mask for bright pages on dark backgrounds
2. External contours -> convex hull -> 4-vertex polygon approximation
3. Boundary lines fitted to the contour points of each side; corners are
   the intersections of adjacent lines
4. Confidence from edge straightness, right-angle deviation and the
   fraction of the frame the candidate covers
"""
import cv2
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
import numpy as np

from ..error_handlers import DegenerateQuadrilateralError
from .geometry import DownsampledPoint, Quadrilateral, order_corners, polygon_area, validate_quadrilateral

logger = logging.getLogger(__name__)


@dataclass
class DetectionCandidate:
    """One scored four-corner candidate (downsampled coordinates)."""
    corners: np.ndarray      # (4, 2) ordered TL, TR, BR, BL
    area: float
    straightness: float      # 0-1, how well each side fits a straight line
    angle_score: float       # 0-1, closeness of the corners to 90 degrees
    area_score: float        # 0-1, penalizes very small or very large candidates
    confidence: float        # 0-1 weighted combination
    source: str = ""

    def to_quadrilateral(self) -> Quadrilateral:
        return Quadrilateral.from_points(self.corners, point_type=DownsampledPoint, confidence=self.confidence)


class EdgeDetector:
    """
    Classical document boundary detector.

    Runs only on the downsampled analysis buffer. A miss is a normal
    outcome and is reported as None, never as an error.
    """

    # Weights for the confidence combination
    WEIGHTS = {
        'straightness': 0.35,
        'angle': 0.35,
        'area': 0.30,
    }

    def __init__(self,
                 min_confidence=0.3,
                 canny_thresholds=((30, 100), (50, 150), (75, 200)),
                 blur_kernel=5,
                 approx_epsilons=(0.02, 0.03, 0.04),
                 straightness_tolerance=2.5,
                 max_angle_deviation=30.0,
                 min_area_ratio=0.05,
                 ideal_area_range=(0.15, 0.85),
                 max_area_ratio=0.98,
                 use_foreground_mask=True,
                 weights=None):
        """
        Initialize edge detector

        Args:
            min_confidence: Candidates below this are not reported
            canny_thresholds: (low, high) pairs tried in order
            blur_kernel: Gaussian kernel size applied before edge extraction
            approx_epsilons: Polygon approximation tolerances (fraction of perimeter)
            straightness_tolerance: Mean residual (px) at which a side scores 0
            max_angle_deviation: Mean corner deviation from 90 deg at which the angle score is 0
            min_area_ratio: Candidates covering less of the frame score 0
            ideal_area_range: Coverage band that scores 1
            max_area_ratio: Candidates covering more of the frame score 0
            use_foreground_mask: Also search an Otsu mask of bright regions
            weights: Optional override of the confidence weights
        """
        self.min_confidence = min_confidence
        self.canny_thresholds = tuple(canny_thresholds)
        self.blur_kernel = blur_kernel
        self.approx_epsilons = tuple(approx_epsilons)
        self.straightness_tolerance = straightness_tolerance
        self.max_angle_deviation = max_angle_deviation
        self.min_area_ratio = min_area_ratio
        self.ideal_area_range = ideal_area_range
        self.max_area_ratio = max_area_ratio
        self.use_foreground_mask = use_foreground_mask
        self.weights = {**self.WEIGHTS, **(weights or {})}

        logger.info("EdgeDetector initialized")
        logger.debug(f"  Min confidence: {min_confidence}")
        logger.debug(f"  Canny thresholds: {self.canny_thresholds}")
        logger.debug(f"  Area band: {min_area_ratio}-{max_area_ratio} (ideal {ideal_area_range})")

    def detect(self, frame) -> Optional[Quadrilateral]:
        """
        Detect the document boundary.

        Args:
            frame: Downsampled luma buffer (or a DownsampledFrame)

        Returns:
            Quadrilateral in downsampled coordinates, or None on a miss
        """
        gray = getattr(frame, "gray", frame)
        if gray is None or gray.size == 0:
            return None
        if gray.ndim == 3:
            gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)

        candidates = self.find_candidates(gray)
        best = self.select_best(candidates)

        if best is None:
            logger.debug("No confident document boundary in frame")
            return None

        logger.debug(f"Document boundary found via {best.source} (confidence {best.confidence:.2f})")
        return best.to_quadrilateral()

    def select_best(self, candidates: List[DetectionCandidate]) -> Optional[DetectionCandidate]:
        """
        Pick the strongest candidate; equally strong ones go to the largest area.
        """
        confident = [c for c in candidates if c.confidence >= self.min_confidence]
        if not confident:
            return None
        return max(confident, key=lambda c: (round(c.confidence, 2), c.area))

    def find_candidates(self, gray: np.ndarray) -> List[DetectionCandidate]:
        """
        Collect and score every four-sided boundary candidate in the buffer.

        Args:
            gray: Single-channel uint8 buffer

        Returns:
            list: Scored DetectionCandidate objects (unsorted)
        """
        height, width = gray.shape[:2]
        frame_area = float(width * height)
        blurred = cv2.GaussianBlur(gray, (self.blur_kernel, self.blur_kernel), 0)

        maps = []
        for low, high in self.canny_thresholds:
            maps.append((f"canny_{low}_{high}", self._edge_map(blurred, low, high)))
        if self.use_foreground_mask:
            maps.append(("foreground", self._foreground_mask(blurred)))

        candidates = []
        for source, binary in maps:
            contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
            contours = sorted(contours, key=cv2.contourArea, reverse=True)[:5]

            for contour in contours:
                if cv2.contourArea(contour) < self.min_area_ratio * frame_area:
                    break
                candidate = self._evaluate_contour(contour, (height, width), source)
                if candidate is not None:
                    candidates.append(candidate)

        return candidates

    def _edge_map(self, blurred: np.ndarray, low: int, high: int) -> np.ndarray:
        """Canny edges with small gaps closed."""
        edges = cv2.Canny(blurred, low, high)
        kernel = np.ones((3, 3), np.uint8)
        return cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel)

    def _foreground_mask(self, blurred: np.ndarray) -> np.ndarray:
        """Bright-region mask (white paper on a darker background)."""
        _, mask = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        kernel = np.ones((5, 5), np.uint8)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)
        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)
        return mask

    def _evaluate_contour(self, contour: np.ndarray, shape: Tuple[int, int], source: str) -> Optional[DetectionCandidate]:
        """Reduce a contour to a scored four-corner candidate, or None."""
        hull = cv2.convexHull(contour)
        peri = cv2.arcLength(hull, True)
        if peri == 0:
            return None

        approx = None
        for epsilon in self.approx_epsilons:
            poly = cv2.approxPolyDP(hull, epsilon * peri, True)
            if len(poly) == 4:
                approx = poly.reshape(4, 2).astype(np.float64)
                break
        if approx is None:
            return None

        points = contour.reshape(-1, 2).astype(np.float64)
        fitted = self._fit_boundary_lines(points, approx)
        if fitted is None:
            return None
        corners, residuals = fitted

        height, width = shape
        corners[:, 0] = np.clip(corners[:, 0], 0, width - 1)
        corners[:, 1] = np.clip(corners[:, 1], 0, height - 1)
        corners = order_corners(corners)

        quad = Quadrilateral.from_points(corners, point_type=DownsampledPoint)
        try:
            validate_quadrilateral(quad, min_side=2.0)
        except DegenerateQuadrilateralError as e:
            logger.debug(f"Skipping {source} candidate: {e.message}")
            return None

        area = polygon_area(corners)
        straightness = self._straightness_score(residuals)
        angle_score = self._angle_score(corners)
        area_score = self._area_score(area / float(width * height))

        w = self.weights
        confidence = (
            w['straightness'] * straightness +
            w['angle'] * angle_score +
            w['area'] * area_score
        )
        if area_score == 0.0:
            confidence = 0.0
        confidence = float(min(1.0, max(0.0, confidence)))

        return DetectionCandidate(
            corners=corners,
            area=area,
            straightness=straightness,
            angle_score=angle_score,
            area_score=area_score,
            confidence=confidence,
            source=source,
        )

    def _fit_boundary_lines(self, points: np.ndarray, approx: np.ndarray) -> Optional[Tuple[np.ndarray, List[float]]]:
        """
        Fit one line per side and intersect adjacent lines.

        Contour points are assigned to their nearest approximated side; the
        points closest to each approximated vertex are left out so rounded
        corners do not bend the fit.

        Returns:
            tuple: (corners (4, 2), per-side mean residuals) or None
        """
        starts = approx
        ends = np.roll(approx, -1, axis=0)

        distances = np.stack(
            [_point_segment_distance(points, starts[i], ends[i]) for i in range(4)],
            axis=1
        )
        owner = np.argmin(distances, axis=1)

        lines = []
        residuals = []
        for i in range(4):
            side_points = points[owner == i]
            side_length = float(np.linalg.norm(ends[i] - starts[i]))
            if side_length < 2.0:
                return None

            # Drop points near either end of the side
            margin = 0.1 * side_length
            near_start = np.linalg.norm(side_points - starts[i], axis=1) < margin
            near_end = np.linalg.norm(side_points - ends[i], axis=1) < margin
            core = side_points[~(near_start | near_end)]
            if len(core) < 2:
                core = np.array([starts[i], ends[i]])

            vx, vy, x0, y0 = cv2.fitLine(core.astype(np.float32), cv2.DIST_L2, 0, 0.01, 0.01).ravel()
            direction = np.array([vx, vy], dtype=np.float64)
            origin = np.array([x0, y0], dtype=np.float64)
            normal = np.array([-direction[1], direction[0]])
            residuals.append(float(np.mean(np.abs((core - origin) @ normal))))
            lines.append((origin, direction))

        corners = np.zeros((4, 2), dtype=np.float64)
        for i in range(4):
            # Vertex i joins side i-1 (ending at it) and side i (starting at it)
            point = _intersect(lines[i - 1], lines[i])
            if point is None:
                return None
            corners[i] = point

        return corners, residuals

    def _straightness_score(self, residuals: List[float]) -> float:
        tol = self.straightness_tolerance
        return float(np.mean([max(0.0, 1.0 - r / tol) for r in residuals]))

    def _angle_score(self, corners: np.ndarray) -> float:
        deviations = []
        for i in range(4):
            prev_pt, pt, next_pt = corners[i - 1], corners[i], corners[(i + 1) % 4]
            v1, v2 = prev_pt - pt, next_pt - pt
            norm = np.linalg.norm(v1) * np.linalg.norm(v2)
            if norm == 0:
                return 0.0
            angle = np.degrees(np.arccos(np.clip(np.dot(v1, v2) / norm, -1.0, 1.0)))
            deviations.append(abs(angle - 90.0))
        return float(max(0.0, 1.0 - np.mean(deviations) / self.max_angle_deviation))

    def _area_score(self, ratio: float) -> float:
        low, high = self.ideal_area_range
        if ratio <= self.min_area_ratio or ratio >= self.max_area_ratio:
            return 0.0
        if ratio < low:
            return (ratio - self.min_area_ratio) / (low - self.min_area_ratio)
        if ratio > high:
            return (self.max_area_ratio - ratio) / (self.max_area_ratio - high)
        return 1.0


def _point_segment_distance(points: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Distance from each point to segment ab."""
    ab = b - a
    denom = float(np.dot(ab, ab))
    if denom == 0:
        return np.linalg.norm(points - a, axis=1)
    t = np.clip(((points - a) @ ab) / denom, 0.0, 1.0)
    projection = a + t[:, None] * ab
    return np.linalg.norm(points - projection, axis=1)


def _intersect(line_a, line_b) -> Optional[np.ndarray]:
    """Intersection of two (origin, direction) lines, None if near-parallel."""
    (p, r), (q, s) = line_a, line_b
    denom = r[0] * s[1] - r[1] * s[0]
    if abs(denom) < 1e-6:
        return None
    qp = q - p
    t = (qp[0] * s[1] - qp[1] * s[0]) / denom
    return p + t * r
