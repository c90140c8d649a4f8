"""
Layer 1 – Frame Downsampler
Reduces a full-resolution frame to a small luma buffer for per-frame analysis.
"""
import cv2
import logging
from dataclasses import dataclass
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownsampledFrame:
    """Grayscale analysis buffer and the factor it was reduced by."""
    gray: np.ndarray
    factor: int

    @property
    def width(self) -> int:
        return int(self.gray.shape[1])

    @property
    def height(self) -> int:
        return int(self.gray.shape[0])


class FrameDownsampler:
    """Shrinks frames by an integer factor and converts them to luma."""

    def __init__(self, factor: int = 4):
        """
        Args:
            factor: Linear reduction factor (4 -> 1920x1080 becomes 480x270)
        """
        if factor < 1:
            raise ValueError("downsample factor must be >= 1")
        self.factor = int(factor)
        logger.debug(f"FrameDownsampler initialized (factor={self.factor})")

    def downsample(self, image: np.ndarray) -> DownsampledFrame:
        """
        Build the analysis buffer for one frame.

        Args:
            image: Full-resolution BGR or grayscale image

        Returns:
            DownsampledFrame: floor(W/factor) x floor(H/factor) luma buffer
        """
        height, width = image.shape[:2]
        small_width = max(1, width // self.factor)
        small_height = max(1, height // self.factor)

        # Shrink before the color conversion so it runs on the small buffer
        small = image
        if self.factor > 1:
            small = cv2.resize(image, (small_width, small_height), interpolation=cv2.INTER_AREA)

        if small.ndim == 3:
            gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
        else:
            gray = small.copy()

        return DownsampledFrame(gray=gray, factor=self.factor)
