"""
Pytest configuration and fixtures for the document capture pipeline tests.
"""
import time

import cv2
import numpy as np
import pytest

from docscan.config import PipelineConfig
from docscan.coordinator import ScanCoordinator
from docscan.error_handlers import CameraInitError, CameraNotInitializedError, FrameCaptureError
from docscan.layer1_capture.camera import Frame
from docscan.layer5_document.saver import DirectorySink

# Known page corners in the 300x300 analysis buffer (TL, TR, BR, BL)
PAGE_CORNERS = ((60, 50), (240, 50), (240, 250), (60, 250))


class FakeFrameSource:
    """Camera stand-in with the CameraHandler interface."""

    def __init__(self, image, fail_init=False, fail_reads=0):
        self.image = image
        self.fail_init = fail_init
        self.fail_reads = fail_reads
        self.opened = False
        self.released = False
        self.read_count = 0

    def initialize(self):
        if self.fail_init:
            raise CameraInitError(0, reason="device busy")
        self.opened = True
        self.released = False
        return True

    def set_image(self, image):
        self.image = image

    def latest_frame(self):
        if not self.opened:
            raise CameraNotInitializedError()
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise FrameCaptureError("simulated read failure")
        self.read_count += 1
        return Frame(image=self.image, timestamp=time.time())

    def get_resolution(self):
        return (self.image.shape[1], self.image.shape[0])

    def is_opened(self):
        return self.opened

    def release(self):
        self.opened = False
        self.released = True


def draw_document(width, height, corners, background=30, paper=220):
    """Dark background with a bright filled quadrilateral."""
    image = np.full((height, width, 3), background, dtype=np.uint8)
    pts = np.array(corners, dtype=np.int32)
    cv2.fillPoly(image, [pts], (paper, paper, paper))
    return image


@pytest.fixture
def synthetic_buffer():
    """300x300 luma buffer: bright rectangle of known corners on a dark background."""
    image = draw_document(300, 300, PAGE_CORNERS)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


@pytest.fixture
def page_corners():
    return PAGE_CORNERS


@pytest.fixture
def document_frame():
    """1200x1200 BGR frame that downsamples (factor 4) to the synthetic buffer."""
    corners = [(x * 4, y * 4) for x, y in PAGE_CORNERS]
    image = draw_document(1200, 1200, corners)
    # A few dark text lines on the page
    for row in range(300, 900, 80):
        cv2.line(image, (320, row), (880, row), (40, 40, 40), 6)
    return image


@pytest.fixture
def textured_page():
    """Seeded page-like raster with text strokes and uneven lighting."""
    rng = np.random.default_rng(7)
    height, width = 220, 170
    gradient = np.tile(np.linspace(150, 230, width), (height, 1))
    noise = rng.normal(0, 4, size=(height, width))
    gray = np.clip(gradient + noise, 0, 255).astype(np.uint8)
    for row in range(30, 200, 20):
        cv2.line(gray, (15, row), (150, row), 35, 2)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


@pytest.fixture
def small_config(tmp_path):
    """Low-DPI letter page (170x220) so tests run fast."""
    return PipelineConfig(
        dpi=20,
        detection_interval_ms=20,
        preview_width=50,
        output_dir=str(tmp_path / "scans")
    )


@pytest.fixture
def make_source():
    """Factory for FakeFrameSource instances."""
    return FakeFrameSource


@pytest.fixture
def fake_source(document_frame):
    return FakeFrameSource(document_frame)


@pytest.fixture
def coordinator(small_config, fake_source):
    """Coordinator on a fake camera with a directory sink under tmp_path."""
    scanner = ScanCoordinator(
        config=small_config,
        source=fake_source,
        sink=DirectorySink(small_config.output_dir)
    )
    yield scanner
    scanner.close_session()


@pytest.fixture
def app(coordinator):
    """Create Flask test application."""
    from docscan.app import create_app
    flask_app = create_app(coordinator)
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
