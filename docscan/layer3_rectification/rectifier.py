"""
Layer 3 – Perspective Rectifier
Responsibility: Map the document quadrilateral onto an upright page raster
Output: BGR (or gray) image of exactly the configured target size

The output size never depends on the input frame or the detected shape,
so every captured page has the same geometry downstream.
"""
import cv2
import logging
from typing import Optional, Tuple
import numpy as np

from ..error_handlers import DegenerateQuadrilateralError
from ..layer2_detection.geometry import FullResPoint, Quadrilateral, full_frame_quadrilateral, validate_quadrilateral

logger = logging.getLogger(__name__)


class PerspectiveRectifier:
    """Homography-based page rectification with full-frame fallback."""

    def __init__(self, target_size: Tuple[int, int] = (2550, 3300), confidence_threshold: float = 0.5):
        """
        Initialize rectifier

        Args:
            target_size: Output (width, height) in pixels, e.g. letter at 300 DPI
            confidence_threshold: Quadrilaterals below this are treated as no detection
        """
        width, height = target_size
        if width < 2 or height < 2:
            raise ValueError(f"target size too small: {target_size}")

        self.target_size = (int(width), int(height))
        self.confidence_threshold = confidence_threshold

        logger.info("PerspectiveRectifier initialized")
        logger.debug(f"  Target size: {self.target_size[0]}x{self.target_size[1]}")
        logger.debug(f"  Confidence threshold: {confidence_threshold}")

    def _destination(self) -> np.ndarray:
        width, height = self.target_size
        return np.array([
            [0, 0],
            [width - 1, 0],
            [width - 1, height - 1],
            [0, height - 1]
        ], dtype="float32")

    def homography(self, quad: Quadrilateral) -> np.ndarray:
        """
        3x3 projective transform from the quadrilateral to the target rectangle.

        Raises:
            DegenerateQuadrilateralError: If the corners cannot define a transform
        """
        if quad.point_type is not FullResPoint:
            raise TypeError("Rectifier expects full-resolution corners")

        validate_quadrilateral(quad)
        return cv2.getPerspectiveTransform(quad.as_array(), self._destination())

    def select_quadrilateral(self, frame: np.ndarray, quad: Optional[Quadrilateral]) -> Quadrilateral:
        """The detected quad if confident enough, else the full-frame default."""
        if quad is not None and quad.is_usable(self.confidence_threshold):
            return quad

        height, width = frame.shape[:2]
        if quad is not None:
            logger.debug(f"Quadrilateral confidence {quad.confidence:.2f} below threshold, using full frame")
        return full_frame_quadrilateral(width, height)

    def rectify(self, frame: np.ndarray, quad: Optional[Quadrilateral] = None) -> np.ndarray:
        """
        Resample the frame through the page homography.

        Args:
            frame: Full-resolution frame
            quad: Full-resolution quadrilateral, or None for no detection

        Returns:
            numpy.ndarray: Rectified raster of exactly target_size
        """
        if frame is None or frame.size == 0:
            raise ValueError("Cannot rectify an empty frame")

        chosen = self.select_quadrilateral(frame, quad)

        try:
            M = self.homography(chosen)
        except DegenerateQuadrilateralError as e:
            logger.warning(f"{e.message}; falling back to full-frame scale")
            return self._scale_full_frame(frame)

        # warpPerspective samples the source through the inverse map (bilinear)
        warped = cv2.warpPerspective(
            frame,
            M,
            self.target_size,
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE
        )

        logger.debug(f"Perspective corrected to {self.target_size[0]}x{self.target_size[1]}")
        return warped

    def _scale_full_frame(self, frame: np.ndarray) -> np.ndarray:
        """Plain scale of the whole frame to the target size."""
        height, width = frame.shape[:2]
        shrinking = width > self.target_size[0] and height > self.target_size[1]
        interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        return cv2.resize(frame, self.target_size, interpolation=interpolation)
