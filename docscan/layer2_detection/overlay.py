"""
Layer 2 – Guide Overlay
Draws the latest detected boundary onto a preview frame.
"""
import cv2
from typing import Optional
import numpy as np

from .geometry import FullResPoint, Quadrilateral

GUIDE_COLOR = (0, 255, 0)
WEAK_GUIDE_COLOR = (0, 165, 255)


def draw_guide_overlay(frame: np.ndarray, quad: Optional[Quadrilateral], confidence_threshold: float = 0.5) -> np.ndarray:
    """
    Return a copy of the frame with the document guide drawn on it.

    Args:
        frame: Full-resolution BGR frame
        quad: Full-resolution quadrilateral, or None for no guide
        confidence_threshold: Guides below this are drawn in the weak color

    Returns:
        numpy.ndarray: Annotated copy of the frame
    """
    overlay_frame = frame.copy()
    if quad is None:
        return overlay_frame
    if quad.point_type is not FullResPoint:
        raise TypeError("Overlay expects full-resolution corners")

    color = GUIDE_COLOR if quad.is_usable(confidence_threshold) else WEAK_GUIDE_COLOR
    pts = np.round(quad.as_array()).astype(np.int32)

    cv2.polylines(overlay_frame, [pts], True, color, 4, cv2.LINE_AA)
    for point in pts:
        cv2.circle(overlay_frame, (int(point[0]), int(point[1])), 10, color, -1)
        cv2.circle(overlay_frame, (int(point[0]), int(point[1])), 10, (255, 255, 255), 2)

    return overlay_frame
