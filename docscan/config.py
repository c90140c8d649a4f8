"""
Pipeline configuration
Every tunable of the capture pipeline, with reference defaults and
DOCSCAN_* environment overrides.
"""
import logging
import math
import os
from dataclasses import dataclass, fields
from typing import Dict, Optional, Tuple

from .error_handlers import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCSCAN_"
POINTS_PER_INCH = 72.0

MODE_COLOR = "color"
MODE_MONOCHROME = "monochrome"
MODES = (MODE_COLOR, MODE_MONOCHROME)


@dataclass
class PipelineConfig:
    """Configuration for the document capture pipeline."""
    # Camera settings
    camera_index: int = 0
    camera_width: int = 1920
    camera_height: int = 1080
    camera_fps: int = 30

    # Detection settings
    downsample_factor: int = 4
    detection_interval_ms: int = 200
    confidence_threshold: float = 0.5       # Usable for rectification
    min_detection_confidence: float = 0.3   # Below this the detector reports nothing
    max_frame_failures: int = 10

    # Output page geometry (letter at 300 DPI -> 2550x3300)
    page_width_in: float = 8.5
    page_height_in: float = 11.0
    dpi: int = 300

    # Enhancement defaults
    default_mode: str = MODE_MONOCHROME
    shadow_removal: bool = True
    contrast_boost: float = 1.3
    brightness_normalize: bool = True
    sharpen: bool = True

    # Pages and output
    preview_width: int = 200
    jpeg_quality: int = 95
    stamp_page_numbers: bool = False
    output_dir: str = "Logs/scanned_documents"

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Check value ranges.

        Raises:
            ConfigurationError: On the first out-of-range value
        """
        positive = (
            'camera_width', 'camera_height', 'camera_fps', 'downsample_factor',
            'detection_interval_ms', 'max_frame_failures', 'page_width_in',
            'page_height_in', 'dpi', 'preview_width', 'contrast_boost',
        )
        for name in positive:
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigurationError(name, value, reason="must be positive")

        for name in ('confidence_threshold', 'min_detection_confidence'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(name, value, reason="must be within [0, 1]")

        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigurationError('jpeg_quality', self.jpeg_quality, reason="must be within [1, 100]")

        if self.default_mode not in MODES:
            raise ConfigurationError('default_mode', self.default_mode, reason=f"must be one of {MODES}")

    @property
    def target_size(self) -> Tuple[int, int]:
        """Rectified page raster size (width, height) in pixels."""
        return (
            int(round(self.page_width_in * self.dpi)),
            int(round(self.page_height_in * self.dpi))
        )

    @property
    def page_size_points(self) -> Tuple[float, float]:
        """Physical page size in PDF points."""
        return (
            self.page_width_in * POINTS_PER_INCH,
            self.page_height_in * POINTS_PER_INCH
        )

    @property
    def detection_interval(self) -> float:
        """Detection cadence in seconds."""
        return self.detection_interval_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "PipelineConfig":
        """
        Build configuration from DOCSCAN_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            **overrides: Explicit values that win over the environment

        Returns:
            PipelineConfig: Validated configuration

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        environ = os.environ if environ is None else environ
        values = {}

        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key not in environ:
                continue
            raw = environ[key]
            values[f.name] = _parse_value(f.name, f.type, raw)
            logger.debug(f"Config override from {key}: {values[f.name]!r}")

        values.update(overrides)
        return cls(**values)


def _parse_value(name, field_type, raw):
    """Convert an environment string to the field's type."""
    # Annotations may be strings under postponed evaluation
    type_name = field_type if isinstance(field_type, str) else field_type.__name__

    try:
        if type_name == 'bool':
            lowered = raw.strip().lower()
            if lowered in ('1', 'true', 'yes', 'on'):
                return True
            if lowered in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError("expected a boolean")
        if type_name == 'int':
            return int(raw)
        if type_name == 'float':
            return float(raw)
        return raw
    except ValueError as e:
        raise ConfigurationError(name, raw, reason=str(e))
