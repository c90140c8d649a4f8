"""
Layer 2 – Geometry
Point types for the two coordinate spaces, the four-corner Quadrilateral,
and the Corner Scaler that is the only bridge between the spaces.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Sequence, Tuple, Type, Union
import numpy as np

from ..error_handlers import DegenerateQuadrilateralError

logger = logging.getLogger(__name__)

CORNER_NAMES = ("top-left", "top-right", "bottom-right", "bottom-left")


class DownsampledPoint(NamedTuple):
    """Pixel coordinate in the downsampled analysis buffer."""
    x: float
    y: float


class FullResPoint(NamedTuple):
    """Pixel coordinate in the full-resolution camera frame."""
    x: float
    y: float


Point = Union[DownsampledPoint, FullResPoint]


@dataclass(frozen=True)
class Quadrilateral:
    """
    Four document corners in clockwise order plus a detection confidence.

    All four corners share one coordinate space; mixing DownsampledPoint and
    FullResPoint in one quadrilateral is rejected.
    """
    top_left: Point
    top_right: Point
    bottom_right: Point
    bottom_left: Point
    confidence: float = 1.0

    def __post_init__(self):
        kinds = {type(p) for p in self.corners}
        if len(kinds) != 1 or not kinds <= {DownsampledPoint, FullResPoint}:
            raise TypeError("Quadrilateral corners must all be DownsampledPoint or all FullResPoint")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def corners(self) -> Tuple[Point, Point, Point, Point]:
        return (self.top_left, self.top_right, self.bottom_right, self.bottom_left)

    @property
    def point_type(self) -> Type:
        return type(self.top_left)

    @classmethod
    def from_points(cls, points, point_type: Type = FullResPoint, confidence: float = 1.0) -> "Quadrilateral":
        """
        Build a quadrilateral from four unordered points.

        Args:
            points: Anything reshapeable to (4, 2)
            point_type: DownsampledPoint or FullResPoint
            confidence: Detection confidence in [0, 1]
        """
        ordered = order_corners(np.asarray(points, dtype=np.float64).reshape(4, 2))
        tl, tr, br, bl = (point_type(float(x), float(y)) for x, y in ordered)
        return cls(tl, tr, br, bl, confidence=float(confidence))

    def as_array(self) -> np.ndarray:
        """Corners as float32 (4, 2) in TL, TR, BR, BL order."""
        return np.array([[p.x, p.y] for p in self.corners], dtype=np.float32)

    def area(self) -> float:
        """Enclosed area (shoelace formula)."""
        return polygon_area(self.as_array())

    def is_usable(self, threshold: float) -> bool:
        """Confident enough to drive rectification."""
        return self.confidence >= threshold

    def to_dict(self, frame_width: int = None, frame_height: int = None) -> Dict:
        """
        JSON-serializable form.

        When the frame size is given, each corner also carries its position
        as a percentage (0-100) of the frame, for overlay collaborators.
        """
        corners: List[Dict] = []
        for name, point in zip(CORNER_NAMES, self.corners):
            entry = {"name": name, "x": round(point.x, 2), "y": round(point.y, 2)}
            if frame_width and frame_height:
                entry["x_percent"] = round(point.x / frame_width * 100, 2)
                entry["y_percent"] = round(point.y / frame_height * 100, 2)
            corners.append(entry)
        return {
            "corners": corners,
            "confidence": round(self.confidence, 4),
            "space": "downsampled" if self.point_type is DownsampledPoint else "full",
        }


def order_corners(pts: np.ndarray) -> np.ndarray:
    """
    Order points in consistent order: top-left, top-right, bottom-right, bottom-left

    Args:
        pts: Array of 4 points

    Returns:
        numpy.ndarray: Ordered points (float64)
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(4, 2)
    rect = np.zeros((4, 2), dtype=np.float64)

    # Sum and difference to find corners
    s = pts.sum(axis=1)
    diff = np.diff(pts, axis=1).ravel()

    picks = [np.argmin(s), np.argmin(diff), np.argmax(s), np.argmax(diff)]

    if len(set(int(i) for i in picks)) == 4:
        for slot, index in enumerate(picks):
            rect[slot] = pts[index]
        return rect

    # Sum/difference is ambiguous for quads rotated near 45 degrees;
    # sort by angle around the centroid instead (clockwise on screen)
    center = pts.mean(axis=0)
    angles = np.arctan2(pts[:, 1] - center[1], pts[:, 0] - center[0])
    ring = pts[np.argsort(angles)]
    start = int(np.argmin(ring.sum(axis=1)))
    return np.roll(ring, -start, axis=0)


def polygon_area(pts: np.ndarray) -> float:
    """Absolute area of a simple polygon."""
    x = pts[:, 0].astype(np.float64)
    y = pts[:, 1].astype(np.float64)
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def full_frame_quadrilateral(width: int, height: int) -> Quadrilateral:
    """Default quadrilateral covering the whole full-resolution frame."""
    right = float(width - 1)
    bottom = float(height - 1)
    return Quadrilateral(
        FullResPoint(0.0, 0.0),
        FullResPoint(right, 0.0),
        FullResPoint(right, bottom),
        FullResPoint(0.0, bottom),
        confidence=1.0,
    )


def validate_quadrilateral(quad: Quadrilateral, min_side: float = 1.0, min_area: float = 1.0):
    """
    Reject corners that cannot define a perspective transform.

    Args:
        quad: Quadrilateral to check
        min_side: Minimum distance between any two corners
        min_area: Minimum enclosed area

    Raises:
        DegenerateQuadrilateralError: On coincident, collinear, non-convex
            or self-intersecting corners
    """
    pts = quad.as_array().astype(np.float64)

    if not np.all(np.isfinite(pts)):
        raise DegenerateQuadrilateralError("non-finite corner coordinates")

    for i in range(4):
        for j in range(i + 1, 4):
            if np.linalg.norm(pts[i] - pts[j]) < min_side:
                raise DegenerateQuadrilateralError(f"corners {CORNER_NAMES[i]} and {CORNER_NAMES[j]} coincide")

    # Signed turn at every corner; a convex clockwise ring turns the same way everywhere
    turns = []
    for i in range(4):
        a, b, c = pts[i - 1], pts[i], pts[(i + 1) % 4]
        turns.append(_cross(b - a, c - b))

    scale = max(float(np.ptp(pts[:, 0])), float(np.ptp(pts[:, 1])), 1.0)
    eps = 1e-6 * scale * scale
    if any(abs(t) <= eps for t in turns):
        raise DegenerateQuadrilateralError("three corners are collinear")
    if not (all(t > 0 for t in turns) or all(t < 0 for t in turns)):
        raise DegenerateQuadrilateralError("corners do not form a convex quadrilateral")

    if polygon_area(pts) < min_area:
        raise DegenerateQuadrilateralError("enclosed area too small")


def _cross(u: Sequence[float], v: Sequence[float]) -> float:
    return float(u[0] * v[1] - u[1] * v[0])


class CornerScaler:
    """Maps downsampled corners to full-resolution corners."""

    def __init__(self, factor: float):
        self.factor = factor

    def to_full_resolution(self, quad: Quadrilateral) -> Quadrilateral:
        """
        Multiply every coordinate by the downsample factor.

        Raises:
            TypeError: If the quadrilateral is not in downsampled space
        """
        if quad.point_type is not DownsampledPoint:
            raise TypeError("CornerScaler expects a quadrilateral in downsampled coordinates")

        s = self.factor
        tl, tr, br, bl = (FullResPoint(p.x * s, p.y * s) for p in quad.corners)
        return Quadrilateral(tl, tr, br, bl, confidence=quad.confidence)
