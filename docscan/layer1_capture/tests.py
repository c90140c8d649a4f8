"""
Tests for Layer 1: camera source, downsampler and detection loop scheduler.
"""
import time

import cv2
import numpy as np
import pytest

from docscan.error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
    InvalidImageError,
)
from docscan.layer1_capture import camera as camera_module
from docscan.layer1_capture import (
    CameraHandler,
    DetectionScheduler,
    FrameDownsampler,
    SchedulerState,
    StaticFrameSource,
)
from docscan.layer2_detection import CornerScaler, DownsampledPoint, EdgeDetector, FullResPoint, Quadrilateral


class FakeVideoCapture:
    """cv2.VideoCapture stand-in."""

    def __init__(self, opened=True, frame=None):
        self.opened = opened
        self.frame = frame
        self.released = False
        self.props = {}

    def isOpened(self):
        return self.opened and not self.released

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0)

    def read(self):
        if self.frame is None:
            return False, None
        return True, self.frame.copy()

    def release(self):
        self.released = True


class StubDetector:
    """Detector returning a fixed result and counting calls."""

    def __init__(self, quad=None, delay=0.0):
        self.quad = quad
        self.delay = delay
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return self.quad


class FlakyDetector(StubDetector):
    """Detector that raises on the given call numbers."""

    def __init__(self, fail_on=(2,), quad=None):
        super().__init__(quad=quad)
        self.fail_on = set(fail_on)

    def detect(self, frame):
        result = super().detect(frame)
        if self.calls in self.fail_on:
            raise RuntimeError("detector blew up")
        return result


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestFrameDownsampler:
    """Test analysis buffer generation."""

    def test_reference_resolution(self):
        """Test 1920x1080 at factor 4 gives a 480x270 luma buffer."""
        frame = np.zeros((1080, 1920, 3), dtype=np.uint8)
        small = FrameDownsampler(4).downsample(frame)
        assert small.gray.shape == (270, 480)
        assert small.gray.dtype == np.uint8
        assert small.factor == 4

    def test_odd_sizes_round_down(self):
        """Test buffer size is floor(W/f) x floor(H/f)."""
        frame = np.zeros((1083, 1921, 3), dtype=np.uint8)
        small = FrameDownsampler(4).downsample(frame)
        assert (small.width, small.height) == (480, 270)

    def test_gray_input_not_aliased(self):
        """Test factor 1 on gray input returns a copy."""
        frame = np.full((10, 10), 7, dtype=np.uint8)
        small = FrameDownsampler(1).downsample(frame)
        small.gray[0, 0] = 0
        assert frame[0, 0] == 7

    def test_invalid_factor(self):
        """Test factor below 1 is rejected."""
        with pytest.raises(ValueError):
            FrameDownsampler(0)


class TestStaticFrameSource:
    """Test the fixed-image frame source."""

    def test_requires_initialize(self, document_frame):
        """Test reading before initialize fails like an unopened camera."""
        source = StaticFrameSource(document_frame)
        with pytest.raises(CameraNotInitializedError):
            source.latest_frame()

    def test_latest_frame(self, document_frame):
        """Test frames carry the image and a timestamp."""
        source = StaticFrameSource(document_frame)
        source.initialize()
        frame = source.latest_frame()
        assert frame.width == 1200 and frame.height == 1200
        assert frame.channels == 3
        assert frame.timestamp > 0

    def test_from_bytes_roundtrip(self, document_frame):
        """Test encoded images decode into a source."""
        ok, buffer = cv2.imencode('.png', document_frame)
        assert ok
        source = StaticFrameSource.from_bytes(buffer.tobytes())
        assert source.get_resolution() == (1200, 1200)

    def test_from_bytes_rejects_garbage(self):
        """Test undecodable bytes raise InvalidImageError."""
        with pytest.raises(InvalidImageError):
            StaticFrameSource.from_bytes(b"not an image")
        with pytest.raises(InvalidImageError):
            StaticFrameSource.from_bytes(b"")


class TestCameraHandler:
    """Test camera initialization against a fake VideoCapture."""

    def test_camera_not_found(self, monkeypatch):
        """Test unopened device raises CameraNotFoundError."""
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda index: FakeVideoCapture(opened=False))
        handler = CameraHandler(camera_index=3)
        with pytest.raises(CameraNotFoundError) as exc:
            handler.initialize()
        assert exc.value.details["camera_index"] == 3
        assert not handler.is_opened()

    def test_camera_without_frames(self, monkeypatch):
        """Test a device that opens but cannot read raises CameraInitError."""
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda index: FakeVideoCapture(frame=None))
        handler = CameraHandler()
        with pytest.raises(CameraInitError):
            handler.initialize()
        assert handler.camera is None

    def test_latest_frame_and_release(self, monkeypatch):
        """Test a working device delivers frames until released."""
        image = np.zeros((48, 64, 3), dtype=np.uint8)
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda index: FakeVideoCapture(frame=image))
        with CameraHandler() as handler:
            assert handler.is_opened()
            frame = handler.latest_frame()
            assert frame.image.shape == (48, 64, 3)
        assert not handler.is_opened()
        with pytest.raises(CameraNotInitializedError):
            handler.latest_frame()

    def test_read_failure(self, monkeypatch):
        """Test a failed read raises FrameCaptureError."""
        fake = FakeVideoCapture(frame=np.zeros((8, 8, 3), dtype=np.uint8))
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda index: fake)
        handler = CameraHandler()
        handler.initialize()
        fake.frame = None
        with pytest.raises(FrameCaptureError):
            handler.latest_frame()
        handler.release()


class TestDetectionScheduler:
    """Test the periodic detection loop."""

    def make_scheduler(self, source, detector, interval=0.02, max_failures=3):
        return DetectionScheduler(
            source,
            FrameDownsampler(4),
            detector,
            CornerScaler(4),
            interval=interval,
            max_frame_failures=max_failures
        )

    def test_start_requires_open_source(self, fake_source):
        """Test the scheduler will not start without frames."""
        scheduler = self.make_scheduler(fake_source, StubDetector())
        with pytest.raises(CameraNotInitializedError):
            scheduler.start()
        assert scheduler.state is SchedulerState.IDLE

    def test_run_once_scales_to_full_resolution(self, fake_source, page_corners):
        """Test one tick detects on the buffer and reports full-resolution corners."""
        fake_source.initialize()
        scheduler = self.make_scheduler(fake_source, EdgeDetector())
        result = scheduler.run_once()

        assert result.detected
        assert result.quad.point_type is FullResPoint
        assert (result.frame_width, result.frame_height) == (1200, 1200)
        expected = np.array(page_corners, dtype=np.float32) * 4
        assert np.allclose(result.quad.as_array(), expected, atol=16)
        assert scheduler.latest_detection() is result

    def test_miss_is_not_an_error(self, fake_source):
        """Test a detection miss is stored as an undetected result."""
        fake_source.initialize()
        scheduler = self.make_scheduler(fake_source, StubDetector(quad=None))
        result = scheduler.run_once()
        assert result is not None
        assert not result.detected
        assert result.to_dict()["detected"] is False

    def test_loop_runs_and_stop_discards_result(self, fake_source):
        """Test RUNNING produces results and stop returns to IDLE with nothing kept."""
        fake_source.initialize()
        detector = StubDetector()
        scheduler = self.make_scheduler(fake_source, detector)

        scheduler.start()
        assert scheduler.state is SchedulerState.RUNNING
        assert wait_for(lambda: scheduler.latest_detection() is not None)

        scheduler.stop()
        assert scheduler.state is SchedulerState.IDLE
        assert scheduler.latest_detection() is None

        calls = detector.calls
        time.sleep(0.1)
        assert detector.calls == calls

    def test_slow_passes_skip_ticks(self, fake_source):
        """Test overrunning passes skip ticks instead of queueing them."""
        fake_source.initialize()
        detector = StubDetector(delay=0.07)
        scheduler = self.make_scheduler(fake_source, detector, interval=0.02)

        scheduler.start()
        time.sleep(0.35)
        scheduler.stop()

        assert scheduler.skipped_ticks > 0
        # Never more passes than fit back to back
        assert detector.calls <= int(0.35 / 0.07) + 2

    def test_repeated_frame_failures_stop_the_loop(self, make_source, document_frame):
        """Test persistent read failures stop the loop and record the error once."""
        source = make_source(document_frame, fail_reads=100)
        source.initialize()
        scheduler = self.make_scheduler(source, StubDetector(), max_failures=3)

        scheduler.start()
        assert wait_for(lambda: scheduler.state is SchedulerState.IDLE)
        assert isinstance(scheduler.last_error, FrameCaptureError)
        assert scheduler.latest_detection() is None
        scheduler.stop()

    def test_transient_failures_are_tolerated(self, make_source, document_frame):
        """Test a few failed reads are skipped and detection resumes."""
        source = make_source(document_frame, fail_reads=2)
        source.initialize()
        scheduler = self.make_scheduler(source, StubDetector(), max_failures=3)

        assert scheduler.run_once() is None
        assert scheduler.run_once() is None
        assert scheduler.run_once() is not None

    def test_detector_error_is_a_miss(self, fake_source):
        """Test a failing detection pass yields an undetected result."""
        fake_source.initialize()
        scheduler = self.make_scheduler(fake_source, FlakyDetector(fail_on=(1,)))
        result = scheduler.run_once()
        assert result is not None
        assert not result.detected
        assert scheduler.run_once() is not None

    def test_loop_survives_detector_error(self, fake_source):
        """Test the loop keeps ticking after a detection pass raises."""
        fake_source.initialize()
        detector = FlakyDetector(fail_on=(2,))
        scheduler = self.make_scheduler(fake_source, detector, interval=0.01)

        scheduler.start()
        assert wait_for(lambda: detector.calls >= 5)
        assert scheduler.state is SchedulerState.RUNNING
        assert scheduler.latest_detection() is not None
        scheduler.stop()
        assert scheduler.state is SchedulerState.IDLE

    def test_result_dict_reports_usability(self, fake_source):
        """Test the status payload flags low-confidence quadrilaterals as unusable."""
        fake_source.initialize()
        quad = Quadrilateral(
            DownsampledPoint(10, 10), DownsampledPoint(100, 10),
            DownsampledPoint(100, 100), DownsampledPoint(10, 100),
            confidence=0.4
        )
        scheduler = self.make_scheduler(fake_source, StubDetector(quad=quad))
        payload = scheduler.run_once().to_dict(confidence_threshold=0.5)
        assert payload["detected"] is True
        assert payload["usable"] is False
        assert payload["space"] == "full"
        assert payload["corners"][0]["x"] == 40
