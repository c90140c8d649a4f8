"""
Layer 4 – Enhancement Engine
Responsibility: Turn a rectified page raster into a clean, print-ready page
Output: Raster of identical width and height (BGR for color, single channel for monochrome)

Stages run in a fixed order, each optional:
1. Shadow removal (flatten uneven illumination)
2. Brightness normalization (percentile stretch)
3. Contrast boost around mid-gray
4. Sharpen (unsharp mask)
5. Mode conversion (color keeps BGR, monochrome is Sauvola-thresholded)

Every stage is a pure function of its input buffer; identical input and
settings always produce byte-identical output.
"""
import cv2
import logging
import math
from dataclasses import asdict, dataclass, replace
from typing import Dict
import numpy as np

from ..config import MODE_COLOR, MODE_MONOCHROME, MODES, PipelineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnhancementSettings:
    """Operator-selected enhancement options, fixed per capture."""
    mode: str = MODE_MONOCHROME
    shadow_removal: bool = True
    contrast_boost: float = 1.3
    brightness_normalize: bool = True
    sharpen: bool = True

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        for name in ('shadow_removal', 'brightness_normalize', 'sharpen'):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be true or false, got {value!r}")

        boost = self.contrast_boost
        if isinstance(boost, bool) or not isinstance(boost, (int, float)):
            raise ValueError(f"contrast_boost must be a number, got {boost!r}")
        if not math.isfinite(boost) or boost <= 0:
            raise ValueError(f"contrast_boost must be positive and finite, got {boost}")

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "EnhancementSettings":
        return cls(
            mode=config.default_mode,
            shadow_removal=config.shadow_removal,
            contrast_boost=config.contrast_boost,
            brightness_normalize=config.brightness_normalize,
            sharpen=config.sharpen,
        )

    def updated(self, **changes) -> "EnhancementSettings":
        """New settings with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict:
        return asdict(self)


class EnhancementEngine:
    """Fixed-order image enhancement pipeline."""

    def __init__(self,
                 shadow_target=230.0,
                 brightness_percentiles=(2.0, 98.0),
                 brightness_target=250.0,
                 min_brightness_range=10.0,
                 sharpen_amount=0.5,
                 sauvola_window=25,
                 sauvola_k=0.15,
                 sauvola_range=128.0,
                 despeckle=True):
        """
        Initialize enhancement engine

        Args:
            shadow_target: Brightness the estimated background is scaled to
            brightness_percentiles: Luma percentiles mapped to 0 and brightness_target
            brightness_target: Output level of the upper percentile
            min_brightness_range: Percentile spreads narrower than this are left alone
            sharpen_amount: Unsharp mask strength
            sauvola_window: Odd window size for local thresholding
            sauvola_k: Sauvola sensitivity
            sauvola_range: Dynamic range of the standard deviation (R)
            despeckle: Remove isolated pixels after thresholding
        """
        self.shadow_target = shadow_target
        self.brightness_percentiles = brightness_percentiles
        self.brightness_target = brightness_target
        self.min_brightness_range = min_brightness_range
        self.sharpen_amount = sharpen_amount
        self.sauvola_window = sauvola_window | 1
        self.sauvola_k = sauvola_k
        self.sauvola_range = sauvola_range
        self.despeckle = despeckle

        logger.info("EnhancementEngine initialized")
        logger.debug(f"  Sauvola: window={self.sauvola_window}, k={sauvola_k}, R={sauvola_range}")

    def enhance(self, image: np.ndarray, settings: EnhancementSettings) -> np.ndarray:
        """
        Run every enabled stage in order.

        Args:
            image: Rectified BGR or grayscale raster (uint8)
            settings: EnhancementSettings for this capture

        Returns:
            numpy.ndarray: Enhanced raster with the input's width and height
        """
        if image is None or image.size == 0:
            raise ValueError("Cannot enhance an empty image")

        result = np.ascontiguousarray(image, dtype=np.uint8)
        if result.ndim == 3 and result.shape[2] == 4:
            result = cv2.cvtColor(result, cv2.COLOR_BGRA2BGR)

        if settings.shadow_removal:
            result = self.remove_shadows(result)
        if settings.brightness_normalize:
            result = self.normalize_brightness(result)
        if settings.contrast_boost != 1.0:
            result = self.boost_contrast(result, settings.contrast_boost)
        if settings.sharpen:
            result = self.sharpen(result)

        if settings.mode == MODE_MONOCHROME:
            result = self.to_monochrome(result)
        elif result.ndim == 2:
            # Color mode always hands back three channels
            result = cv2.cvtColor(result, cv2.COLOR_GRAY2BGR)

        logger.debug(f"Enhanced {result.shape[1]}x{result.shape[0]} page ({settings.mode})")
        return result

    def remove_shadows(self, image: np.ndarray) -> np.ndarray:
        """
        Divide out a smoothed estimate of the background illumination.

        Text strokes are suppressed with a small dilation before the large
        blur so they do not darken the background estimate.
        """
        gray = _luma(image)
        height, width = gray.shape[:2]

        block = max(31, min(width, height) // 15) | 1
        text_free = cv2.dilate(gray, np.ones((7, 7), np.uint8))
        background = cv2.blur(text_free.astype(np.float32), (block, block), borderType=cv2.BORDER_REPLICATE)

        scale = self.shadow_target / np.maximum(background, 1.0)
        if image.ndim == 3:
            scale = scale[:, :, np.newaxis]

        return np.clip(np.rint(image.astype(np.float32) * scale), 0, 255).astype(np.uint8)

    def normalize_brightness(self, image: np.ndarray) -> np.ndarray:
        """Stretch the luma percentile band so the page reaches the target brightness."""
        low_pct, high_pct = self.brightness_percentiles
        low, high = np.percentile(_luma(image), [low_pct, high_pct])

        if high - low < self.min_brightness_range:
            logger.debug(f"Brightness range {high - low:.1f} too narrow, skipping normalization")
            return image

        levels = np.arange(256, dtype=np.float64)
        table = np.clip(np.rint((levels - low) * self.brightness_target / (high - low)), 0, 255)
        return cv2.LUT(image, table.astype(np.uint8))

    def boost_contrast(self, image: np.ndarray, factor: float) -> np.ndarray:
        """Scale every level's distance from mid-gray (128) by the factor."""
        levels = np.arange(256, dtype=np.float64)
        table = np.clip(np.rint((levels - 128.0) * factor + 128.0), 0, 255)
        return cv2.LUT(image, table.astype(np.uint8))

    def sharpen(self, image: np.ndarray) -> np.ndarray:
        """Unsharp mask over a 3x3 Gaussian."""
        blurred = cv2.GaussianBlur(image, (3, 3), 0)
        amount = self.sharpen_amount
        return cv2.addWeighted(image, 1.0 + amount, blurred, -amount, 0)

    def to_monochrome(self, image: np.ndarray) -> np.ndarray:
        """
        Sauvola local threshold to a single-channel 0/255 raster.

        threshold = mean * (1 + k * (std / R - 1)) over a square window
        """
        gray = _luma(image).astype(np.float64)
        window = (self.sauvola_window, self.sauvola_window)

        mean = cv2.boxFilter(gray, cv2.CV_64F, window, borderType=cv2.BORDER_REPLICATE)
        mean_sq = cv2.boxFilter(gray * gray, cv2.CV_64F, window, borderType=cv2.BORDER_REPLICATE)
        std = np.sqrt(np.maximum(mean_sq - mean * mean, 0.0))

        threshold = mean * (1.0 + self.sauvola_k * (std / self.sauvola_range - 1.0))
        binary = np.where(gray > threshold, 255, 0).astype(np.uint8)

        if self.despeckle:
            binary = _despeckle(binary)
        return binary


def _luma(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def _despeckle(binary: np.ndarray) -> np.ndarray:
    """Flip pixels whose eight neighbours all have the opposite value."""
    kernel = np.ones((3, 3), np.float32)
    kernel[1, 1] = 0
    dark = (binary == 0).astype(np.float32)
    dark_neighbours = cv2.filter2D(dark, -1, kernel, borderType=cv2.BORDER_REPLICATE)

    cleaned = binary.copy()
    cleaned[(binary == 0) & (dark_neighbours < 0.5)] = 255
    cleaned[(binary == 255) & (dark_neighbours > 7.5)] = 0
    return cleaned


def draw_page_badge(image: np.ndarray, page_number: int) -> np.ndarray:
    """
    Return a copy of the page with a "Page N" badge in the top-right corner.

    Args:
        image: Enhanced page (BGR or single channel)
        page_number: 1-based position in the session
    """
    badged = image.copy()
    height, width = badged.shape[:2]
    text = f"Page {page_number}"

    scale = max(0.4, width / 1275.0)
    thickness = max(1, int(round(scale * 2)))
    (text_w, text_h), baseline = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, scale, thickness)

    pad = max(4, int(round(12 * scale)))
    x2 = width - pad
    x1 = max(0, x2 - text_w - 2 * pad)
    y1 = pad
    y2 = min(height, y1 + text_h + baseline + 2 * pad)

    dark = (0, 0, 0) if badged.ndim == 3 else 0
    light = (255, 255, 255) if badged.ndim == 3 else 255
    cv2.rectangle(badged, (x1, y1), (x2, y2), dark, -1)
    cv2.putText(badged, text, (x1 + pad, y2 - pad - baseline), cv2.FONT_HERSHEY_SIMPLEX,
                scale, light, thickness, cv2.LINE_AA)
    return badged
