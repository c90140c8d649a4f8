"""
Layer 1 – Detection Loop Scheduler
Drives the edge detector at a fixed cadence against the latest camera frame.

State machine: IDLE -> RUNNING -> IDLE
- A tick pulls one frame, downsamples it, detects, and scales the corners
- Ticks that would start while a pass is still running are skipped, never queued
- stop() cancels the pending tick and discards the last detection
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..error_handlers import CameraAcquisitionError, CameraNotInitializedError, FrameCaptureError
from ..layer2_detection.geometry import CornerScaler, Quadrilateral
from .camera import Frame

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one detection tick."""
    quad: Optional[Quadrilateral]       # Full-resolution corners, None on a miss
    frame_width: int
    frame_height: int
    timestamp: float
    frame: Optional[Frame] = field(default=None, repr=False, compare=False)  # Kept for the preview stream

    @property
    def detected(self) -> bool:
        return self.quad is not None

    def to_dict(self, confidence_threshold: float = 0.5) -> dict:
        """Status payload for UI collaborators."""
        if self.quad is None:
            return {"detected": False, "usable": False, "timestamp": self.timestamp}
        return {
            "detected": True,
            "usable": self.quad.is_usable(confidence_threshold),
            "timestamp": self.timestamp,
            "frame_width": self.frame_width,
            "frame_height": self.frame_height,
            **self.quad.to_dict(self.frame_width, self.frame_height),
        }


class DetectionScheduler:
    """
    Periodic background detection.

    The detector, downsampler and scaler are injected; the scheduler only
    owns the timing and the last result.
    """

    def __init__(self, source, downsampler, detector, scaler: CornerScaler,
                 interval: float = 0.2, max_frame_failures: int = 10):
        """
        Args:
            source: Frame source with latest_frame() and is_opened()
            downsampler: FrameDownsampler
            detector: Object with detect(buffer) -> Optional[Quadrilateral]
            scaler: CornerScaler matching the downsampler's factor
            interval: Seconds between ticks
            max_frame_failures: Consecutive frame pull failures before the loop gives up
        """
        self.source = source
        self.downsampler = downsampler
        self.detector = detector
        self.scaler = scaler
        self.interval = interval
        self.max_frame_failures = max_frame_failures

        self._state = SchedulerState.IDLE
        self._state_lock = threading.Lock()
        self._result_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._latest: Optional[DetectionResult] = None
        self._consecutive_failures = 0
        self.tick_count = 0
        self.skipped_ticks = 0
        self.last_error: Optional[CameraAcquisitionError] = None

        logger.info("DetectionScheduler created")
        logger.debug(f"  Interval: {interval * 1000:.0f}ms")
        logger.debug(f"  Max frame failures: {max_frame_failures}")

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    def start(self):
        """
        Enter RUNNING and begin ticking.

        Raises:
            CameraNotInitializedError: If the frame source is not open
        """
        with self._state_lock:
            if self._state is SchedulerState.RUNNING:
                logger.debug("Scheduler already running")
                return
            if not self.source.is_opened():
                raise CameraNotInitializedError()

            self._stop_event.clear()
            self._consecutive_failures = 0
            self.last_error = None
            self._state = SchedulerState.RUNNING
            self._thread = threading.Thread(target=self._run, name="detection-loop", daemon=True)
            self._thread.start()

        logger.info("Detection loop started")

    def stop(self):
        """Cancel pending ticks, wait for the loop to exit, and drop the last result."""
        with self._state_lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join()

        with self._state_lock:
            was_running = self._state is SchedulerState.RUNNING
            self._state = SchedulerState.IDLE
        with self._result_lock:
            self._latest = None

        if was_running:
            logger.info(f"Detection loop stopped ({self.tick_count} ticks, {self.skipped_ticks} skipped)")

    def latest_detection(self) -> Optional[DetectionResult]:
        """Most recent tick result, or None if none is available."""
        with self._result_lock:
            return self._latest

    def run_once(self) -> Optional[DetectionResult]:
        """
        Execute one detection pass synchronously.

        Returns:
            DetectionResult, or None if no frame could be pulled

        Raises:
            CameraAcquisitionError: Once consecutive frame failures exceed the limit
        """
        try:
            frame = self.source.latest_frame()
        except FrameCaptureError:
            self._consecutive_failures += 1
            logger.debug(f"Frame pull failed ({self._consecutive_failures}/{self.max_frame_failures})")
            if self._consecutive_failures >= self.max_frame_failures:
                raise
            return None

        self._consecutive_failures = 0
        try:
            small = self.downsampler.downsample(frame.image)
            quad = self.detector.detect(small)
            if quad is not None:
                quad = self.scaler.to_full_resolution(quad)
        except Exception:
            # A failed pass counts as a miss; the next tick scans a fresh frame
            logger.exception("Detection pass failed, treating tick as a miss")
            quad = None

        result = DetectionResult(
            quad=quad,
            frame_width=frame.width,
            frame_height=frame.height,
            timestamp=frame.timestamp,
            frame=frame,
        )
        with self._result_lock:
            self._latest = result
        self.tick_count += 1
        return result

    def _run(self):
        """Fixed-rate loop; ticks missed while a pass runs are skipped."""
        next_tick = time.monotonic()

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except CameraAcquisitionError as e:
                self.last_error = e
                logger.error(f"Detection loop stopped: {e.error_code}: {e.message}")
                with self._state_lock:
                    self._state = SchedulerState.IDLE
                with self._result_lock:
                    self._latest = None
                return
            except Exception:
                logger.exception("Unexpected error in detection tick")

            next_tick += self.interval
            now = time.monotonic()
            if now > next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                self.skipped_ticks += missed
                next_tick += missed * self.interval
                logger.debug(f"Detection pass overran, skipped {missed} tick(s)")

            self._stop_event.wait(max(0.0, next_tick - now))
