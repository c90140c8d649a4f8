"""
Layer 1 – Camera Handler
Low-level camera initialization and latest-frame pull.
The pipeline never buffers a backlog: every read returns the freshest frame.
"""
import cv2
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from ..error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
    InvalidImageError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """A full-resolution camera frame and the time it was read."""
    image: np.ndarray
    timestamp: float

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.image.ndim == 2 else int(self.image.shape[2])


class CameraHandler:
    """
    USB camera source.

    Only one read is in flight at a time; the detection loop's pull and the
    capture snapshot both go through latest_frame() and release the device
    as soon as the read returns.
    """

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer so reads return the newest frame
    }

    def __init__(
        self,
        camera_index: int = 0,
        config: Optional[dict] = None
    ):
        """
        Initialize camera handler.

        Args:
            camera_index: OpenCV device index
            config: Optional configuration override
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._is_initialized = False
        self._read_lock = threading.Lock()

        # Actual resolution (may differ from requested)
        self.actual_width = 0
        self.actual_height = 0
        self.actual_fps = 0

        logger.info(f"CameraHandler created for device index {camera_index}")

    def initialize(self) -> bool:
        """
        Open and configure the camera.

        Returns:
            bool: True if successful

        Raises:
            CameraNotFoundError: If no device answers at the index
            CameraInitError: If the device opens but cannot deliver frames
        """
        if self._is_initialized and self.camera is not None:
            logger.debug("Camera already initialized")
            return True

        logger.info(f"Initializing camera at index {self.camera_index}")

        camera = cv2.VideoCapture(self.camera_index)
        if not camera.isOpened():
            camera.release()
            logger.error(f"Camera not found at index {self.camera_index}")
            raise CameraNotFoundError(self.camera_index)

        try:
            self.camera = camera
            self._configure_camera()

            # A first read proves permission and that nothing else holds the device
            ok, frame = self.camera.read()
            if not ok or frame is None:
                raise CameraInitError(self.camera_index, reason="Device opened but returned no frame")

            self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
            self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
            self.actual_fps = self.camera.get(cv2.CAP_PROP_FPS)

        except CameraInitError:
            self.release()
            raise
        except cv2.error as e:
            self.release()
            logger.error(f"Camera initialization failed: {e}")
            raise CameraInitError(self.camera_index, reason=str(e))

        self._is_initialized = True
        logger.info(f"Camera initialized: {self.actual_width}x{self.actual_height} @ {self.actual_fps}fps")
        return True

    def _configure_camera(self):
        """Apply camera configuration settings."""
        cfg = self.config

        fourcc = cv2.VideoWriter_fourcc(*cfg['codec'])
        self.camera.set(cv2.CAP_PROP_FOURCC, fourcc)
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

        logger.debug(f"Camera configured: {cfg['width']}x{cfg['height']} @ {cfg['fps']}fps")

    def latest_frame(self) -> Frame:
        """
        Pull the most recent frame from the camera.

        Returns:
            Frame: Raw BGR frame with its read timestamp

        Raises:
            CameraNotInitializedError: If camera not initialized
            FrameCaptureError: If frame capture fails
        """
        with self._read_lock:
            if not self._is_initialized or self.camera is None:
                raise CameraNotInitializedError()

            ret, image = self.camera.read()

        if not ret or image is None:
            raise FrameCaptureError()

        return Frame(image=image, timestamp=time.time())

    def get_resolution(self) -> Tuple[int, int]:
        """Get actual camera resolution."""
        return (self.actual_width, self.actual_height)

    def is_opened(self) -> bool:
        """Check if camera is currently open and initialized."""
        return self._is_initialized and self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release camera resources."""
        with self._read_lock:
            if self.camera is not None:
                self.camera.release()
                self.camera = None
            self._is_initialized = False
        logger.info("Camera released")

    def __enter__(self):
        """Context manager entry."""
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.release()
        return False


class StaticFrameSource:
    """
    Frame source that always returns the same image.

    Used for uploaded photos and for exercising the pipeline without a
    camera; exposes the same interface as CameraHandler.
    """

    def __init__(self, image: np.ndarray):
        if image is None or image.size == 0:
            raise InvalidImageError("empty image buffer")
        self.image = image
        self._opened = False

    @classmethod
    def from_bytes(cls, data: bytes) -> "StaticFrameSource":
        """
        Decode an encoded image (JPEG, PNG, ...) into a frame source.

        Raises:
            InvalidImageError: If the bytes are not a decodable image
        """
        buffer = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
        if image is None:
            raise InvalidImageError("could not decode image data")
        return cls(image)

    def initialize(self) -> bool:
        self._opened = True
        return True

    def latest_frame(self) -> Frame:
        if not self._opened:
            raise CameraNotInitializedError()
        return Frame(image=self.image, timestamp=time.time())

    def get_resolution(self) -> Tuple[int, int]:
        return (int(self.image.shape[1]), int(self.image.shape[0]))

    def is_opened(self) -> bool:
        return self._opened

    def release(self):
        self._opened = False
