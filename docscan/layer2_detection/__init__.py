"""
Layer 2 – Detection
Document boundary detection on the downsampled buffer and the geometry
types shared by the rest of the pipeline.
"""
from .edge_detector import DetectionCandidate, EdgeDetector
from .geometry import (
    CornerScaler,
    DownsampledPoint,
    FullResPoint,
    Quadrilateral,
    full_frame_quadrilateral,
    order_corners,
    validate_quadrilateral,
)
from .overlay import draw_guide_overlay

__all__ = [
    'CornerScaler',
    'DetectionCandidate',
    'DownsampledPoint',
    'EdgeDetector',
    'FullResPoint',
    'Quadrilateral',
    'draw_guide_overlay',
    'full_frame_quadrilateral',
    'order_corners',
    'validate_quadrilateral',
]
