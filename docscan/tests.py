"""
Tests for the scan coordinator, configuration, error handling and the HTTP surface.
"""
import json
import os
import time
import types
from io import BytesIO

import cv2
import numpy as np
import pytest
from PyPDF2 import PdfReader

from docscan.config import MODE_COLOR, PipelineConfig
from docscan.coordinator import ScanCoordinator
from docscan.error_handlers import (
    CameraAcquisitionError,
    ConfigurationError,
    EmptySessionError,
    FrameCaptureError,
    InvalidPageIndexError,
    NoActiveSessionError,
    SessionClosedError,
    handle_error,
)
from docscan.layer2_detection import DownsampledPoint, Quadrilateral
from docscan.layer4_enhancement import EnhancementEngine


class FixedDetector:
    """Detector stub returning one quadrilateral."""

    def __init__(self, quad):
        self.quad = quad

    def detect(self, frame):
        return self.quad


class ClosingEnhancer(EnhancementEngine):
    """Enhancer that tears the session down while a page is in flight."""

    def __init__(self):
        super().__init__()
        self.coordinator = None

    def enhance(self, image, settings):
        self.coordinator.close_session()
        return super().enhance(image, settings)


def page_ids(document):
    return [page["page_id"] for page in document.metadata["pages"]]


class TestPipelineConfig:
    """Test configuration defaults and environment overrides."""

    def test_reference_defaults(self):
        """Test letter at 300 DPI and the reference cadence."""
        config = PipelineConfig()
        assert config.target_size == (2550, 3300)
        assert config.page_size_points == (612.0, 792.0)
        assert config.detection_interval == pytest.approx(0.2)
        assert config.downsample_factor == 4
        assert config.confidence_threshold == 0.5

    def test_env_overrides(self):
        """Test DOCSCAN_* variables are parsed to field types."""
        config = PipelineConfig.from_env({
            "DOCSCAN_DPI": "150",
            "DOCSCAN_CONTRAST_BOOST": "1.5",
            "DOCSCAN_STAMP_PAGE_NUMBERS": "yes",
            "DOCSCAN_DEFAULT_MODE": "color",
            "UNRELATED": "x",
        })
        assert config.target_size == (1275, 1650)
        assert config.contrast_boost == 1.5
        assert config.stamp_page_numbers is True
        assert config.default_mode == MODE_COLOR

    def test_explicit_overrides_win(self):
        """Test keyword overrides beat the environment."""
        config = PipelineConfig.from_env({"DOCSCAN_DPI": "150"}, dpi=72)
        assert config.dpi == 72

    @pytest.mark.parametrize("env", [
        {"DOCSCAN_DPI": "many"},
        {"DOCSCAN_SHARPEN": "maybe"},
        {"DOCSCAN_CONFIDENCE_THRESHOLD": "1.5"},
        {"DOCSCAN_DEFAULT_MODE": "sepia"},
        {"DOCSCAN_CONTRAST_BOOST": "nan"},
    ])
    def test_invalid_values(self, env):
        """Test malformed or out-of-range values raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_env(env)


class TestErrorHandling:
    """Test error envelopes."""

    def test_known_error_dict(self):
        """Test scanner errors render their code and details."""
        response = handle_error(InvalidPageIndexError(5, 2))
        assert response["success"] is False
        assert response["error_code"] == "INVALID_INDEX"
        assert response["details"] == {"index": 5, "page_count": 2}

    def test_unexpected_error_dict(self):
        """Test other exceptions are wrapped."""
        response = handle_error(RuntimeError("boom"))
        assert response["error_code"] == "UNEXPECTED_ERROR"
        assert response["details"]["error_type"] == "RuntimeError"

    def test_camera_errors_are_acquisition_failures(self):
        """Test frame errors belong to the acquisition family."""
        assert isinstance(FrameCaptureError(), CameraAcquisitionError)


class TestSessionLifecycle:
    """Test starting and closing capture sessions."""

    def test_start_runs_detection(self, coordinator, fake_source):
        """Test start opens the camera and starts the loop."""
        session = coordinator.start_session()
        assert fake_source.is_opened()
        assert coordinator.scheduler.is_running
        assert len(session) == 0

    def test_camera_failure_is_fatal(self, small_config, make_source, document_frame):
        """Test acquisition failure surfaces once and the loop never starts."""
        source = make_source(document_frame, fail_init=True)
        scanner = ScanCoordinator(config=small_config, source=source)
        with pytest.raises(CameraAcquisitionError):
            scanner.start_session()
        assert not scanner.scheduler.is_running
        assert scanner.session is None

    def test_close_stops_loop_and_releases_camera(self, coordinator, fake_source):
        """Test close returns only after detection stopped and the camera is released."""
        coordinator.start_session()
        coordinator.close_session()
        assert not coordinator.scheduler.is_running
        assert fake_source.released
        assert coordinator.scheduler.latest_detection() is None
        with pytest.raises(NoActiveSessionError):
            coordinator.capture()

    def test_operations_need_a_session(self, coordinator):
        """Test page operations without a session report NO_ACTIVE_SESSION."""
        with pytest.raises(NoActiveSessionError):
            coordinator.finalize()
        with pytest.raises(NoActiveSessionError):
            coordinator.remove_page(0)


class TestCapture:
    """Test the capture path end to end."""

    def test_capture_uses_detected_corners(self, coordinator):
        """Test a confident detection drives rectification."""
        coordinator.start_session()
        coordinator.scheduler.run_once()
        outcome = coordinator.capture()

        assert outcome.used_detection
        assert outcome.index == 0
        assert outcome.page.size == coordinator.config.target_size
        assert outcome.page.image.ndim == 2

    def test_low_confidence_is_treated_as_no_detection(self, small_config, fake_source):
        """Test a weak quadrilateral falls back to the full frame and capture still succeeds."""
        weak = Quadrilateral(
            DownsampledPoint(10, 10), DownsampledPoint(200, 20),
            DownsampledPoint(210, 220), DownsampledPoint(5, 240),
            confidence=0.35
        )
        weak_scanner = ScanCoordinator(config=small_config, source=fake_source, detector=FixedDetector(weak))
        blind_scanner = ScanCoordinator(config=small_config, source=fake_source, detector=FixedDetector(None))
        try:
            weak_scanner.start_session()
            weak_scanner.scheduler.run_once()
            weak_page = weak_scanner.capture().page
            weak_scanner.close_session()

            blind_scanner.start_session()
            blind_scanner.scheduler.run_once()
            blind_page = blind_scanner.capture().page
        finally:
            weak_scanner.close_session()
            blind_scanner.close_session()

        assert not weak_page.detected
        assert np.array_equal(weak_page.image, blind_page.image)

    def test_settings_apply_to_later_captures(self, coordinator):
        """Test switching to color mode yields three-channel pages."""
        coordinator.start_session()
        coordinator.update_settings(mode=MODE_COLOR)
        outcome = coordinator.capture()
        assert outcome.page.image.ndim == 3
        assert outcome.page.mode == MODE_COLOR

    def test_invalid_settings(self, coordinator):
        """Test unknown or invalid settings raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            coordinator.update_settings(mode="sepia")
        with pytest.raises(ConfigurationError):
            coordinator.update_settings(saturation=2)
        with pytest.raises(ConfigurationError):
            coordinator.update_settings(contrast_boost="high")

    def test_page_badge(self, small_config, fake_source):
        """Test stamped pages differ from unstamped ones."""
        small_config.stamp_page_numbers = True
        stamped = ScanCoordinator(config=small_config, source=fake_source, detector=FixedDetector(None))
        plain = ScanCoordinator(
            config=PipelineConfig(dpi=20, output_dir=small_config.output_dir),
            source=fake_source,
            detector=FixedDetector(None)
        )
        try:
            stamped.start_session()
            badge_page = stamped.capture().page
            stamped.close_session()
            plain.start_session()
            plain_page = plain.capture().page
        finally:
            stamped.close_session()
            plain.close_session()

        assert not np.array_equal(badge_page.image, plain_page.image)

    def test_in_flight_capture_is_discarded_after_close(self, small_config, fake_source):
        """Test a capture finishing after teardown never writes to the session."""
        enhancer = ClosingEnhancer()
        scanner = ScanCoordinator(config=small_config, source=fake_source, enhancer=enhancer)
        enhancer.coordinator = scanner
        session = scanner.start_session()

        with pytest.raises(SessionClosedError):
            scanner.capture()
        assert session.closed
        assert len(session) == 0
        assert fake_source.released

    def test_upload_goes_through_detection(self, coordinator, document_frame):
        """Test an uploaded photo is detected, rectified and appended."""
        coordinator.start_session()
        ok, buffer = cv2.imencode('.png', document_frame)
        outcome = coordinator.add_uploaded_image(buffer.tobytes())
        assert outcome.used_detection
        assert outcome.page.size == coordinator.config.target_size


class TestFinalize:
    """Test document finalization scenarios."""

    def test_remove_middle_page(self, coordinator):
        """Test capture A, B, C then remove B gives a two-page A, C document."""
        coordinator.start_session()
        a = coordinator.capture().page
        coordinator.capture()
        c = coordinator.capture().page

        assert coordinator.remove_page(1) == 2
        document, receipt = coordinator.finalize()

        assert document.page_count == 2
        assert page_ids(document) == [a.page_id, c.page_id]
        assert len(PdfReader(BytesIO(document.pdf_bytes)).pages) == 2
        assert os.path.isfile(receipt["document_path"])

    def test_finalize_before_any_capture(self, coordinator):
        """Test an empty session reports EmptySession and stays appendable."""
        session = coordinator.start_session()
        with pytest.raises(EmptySessionError):
            coordinator.finalize()
        assert len(session) == 0
        assert not os.path.exists(os.path.join(coordinator.config.output_dir, "documents"))

        coordinator.capture()
        document, _ = coordinator.finalize()
        assert document.page_count == 1

    def test_invalid_removal_keeps_pages(self, coordinator):
        """Test a bad index leaves the session as it was."""
        coordinator.start_session()
        coordinator.capture()
        with pytest.raises(InvalidPageIndexError):
            coordinator.remove_page(4)
        assert len(coordinator.list_pages()) == 1

    def test_session_survives_finalize(self, coordinator):
        """Test pages remain after finalize so capturing can continue."""
        coordinator.start_session()
        coordinator.capture()
        coordinator.finalize()
        coordinator.capture()
        document, _ = coordinator.finalize()
        assert document.page_count == 2


class TestHealthEndpoint:
    """Test health and status endpoints."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_status_reports_session(self, client):
        """Test /api/status describes the pipeline."""
        data = json.loads(client.get('/api/status').data)
        assert data['success'] is True
        assert data['session_active'] is False
        assert data['target_size'] == [170, 220]
        assert 'capture' in data['endpoints']


class TestCaptureEndpoints:
    """Test session and page routes."""

    def test_capture_without_session(self, client):
        """Test /capture before /start_camera is a 400."""
        response = client.post('/capture')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_ACTIVE_SESSION'

    def test_capture_list_preview_remove(self, client):
        """Test the page workflow over HTTP."""
        assert client.post('/start_camera').status_code == 200
        for _ in range(2):
            response = client.post('/capture')
            assert response.status_code == 200
            assert json.loads(response.data)['success'] is True

        pages = json.loads(client.get('/api/pages').data)
        assert pages['page_count'] == 2
        assert pages['pages'][1]['index'] == 1

        preview = client.get('/api/pages/0/preview')
        assert preview.status_code == 200
        assert preview.mimetype == 'image/jpeg'

        response = client.delete('/api/pages/0')
        assert json.loads(response.data)['page_count'] == 1

    def test_remove_invalid_index(self, client):
        """Test removing a missing page is a 400 INVALID_INDEX."""
        client.post('/start_camera')
        for index in (0, -1):
            response = client.delete(f'/api/pages/{index}')
            assert response.status_code == 400
            assert json.loads(response.data)['error_code'] == 'INVALID_INDEX'

    def test_camera_failure_is_503(self, small_config, make_source, document_frame):
        """Test acquisition failures map to 503."""
        from docscan.app import create_app
        scanner = ScanCoordinator(config=small_config, source=make_source(document_frame, fail_init=True))
        client = create_app(scanner).test_client()
        response = client.post('/start_camera')
        assert response.status_code == 503
        assert json.loads(response.data)['error_code'] == 'CAMERA_INIT_FAILED'

    def test_stop_camera(self, client):
        """Test /stop_camera ends the session."""
        client.post('/start_camera')
        assert client.post('/stop_camera').status_code == 200
        assert json.loads(client.get('/api/status').data)['session_active'] is False

    def test_detection_status(self, client):
        """Test /detection_status always answers."""
        client.post('/start_camera')
        data = json.loads(client.get('/detection_status').data)
        assert data['success'] is True
        assert 'detected' in data['detection']

    def test_video_feed_without_session(self, client):
        """Test the stream ends immediately when detection is not running."""
        response = client.get('/video_feed')
        assert response.status_code == 200
        assert response.mimetype == 'multipart/x-mixed-replace'
        assert response.data == b''

    def test_video_feed_waits_after_encode_failure(self, client, coordinator, monkeypatch):
        """Test a frame that cannot be encoded still paces the stream."""
        from docscan import app as app_module

        client.post('/start_camera')
        deadline = time.monotonic() + 2.0
        while coordinator.preview_frame() is None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert coordinator.preview_frame() is not None

        sleeps = []

        def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 3:
                coordinator.close_session()

        monkeypatch.setattr(app_module.cv2, 'imencode', lambda ext, image: (False, None))
        monkeypatch.setattr(app_module, 'time', types.SimpleNamespace(sleep=fake_sleep))

        response = client.get('/video_feed')
        assert response.data == b''
        assert sleeps == [coordinator.config.detection_interval] * 3


class TestSettingsEndpoint:
    """Test /api/settings."""

    def test_get_and_update(self, client):
        """Test settings can be read and changed."""
        data = json.loads(client.get('/api/settings').data)
        assert data['settings']['mode'] == 'monochrome'

        response = client.post('/api/settings', json={'mode': 'color', 'sharpen': False})
        data = json.loads(response.data)
        assert data['settings']['mode'] == 'color'
        assert data['settings']['sharpen'] is False

    def test_invalid_update(self, client):
        """Test invalid settings are a 400."""
        response = client.post('/api/settings', json={'mode': 'sepia'})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CONFIGURATION'

    @pytest.mark.parametrize("body", [
        {'sharpen': 'false'},
        {'shadow_removal': 'no'},
        {'contrast_boost': 'high'},
    ])
    def test_mistyped_values_rejected(self, client, body):
        """Test string flags and factors are a 400 and leave settings unchanged."""
        response = client.post('/api/settings', json=body)
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CONFIGURATION'

        settings = json.loads(client.get('/api/settings').data)['settings']
        assert settings['sharpen'] is True
        assert settings['shadow_removal'] is True
        assert settings['contrast_boost'] == 1.3

    def test_nan_contrast_rejected(self, client):
        """Test a NaN contrast factor in the JSON body is a 400."""
        response = client.post('/api/settings', data='{"contrast_boost": NaN}',
                               content_type='application/json')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CONFIGURATION'

    def test_requires_json_object(self, client):
        """Test non-object bodies are rejected."""
        response = client.post('/api/settings', data='not json', content_type='text/plain')
        assert response.status_code == 400


class TestUploadEndpoint:
    """Test /api/pages/upload."""

    def test_upload_requires_image(self, client):
        """Test a request without a file is a 400."""
        client.post('/start_camera')
        response = client.post('/api/pages/upload', data={'note': 'no file'}, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_upload_rejects_garbage(self, client):
        """Test undecodable uploads are a 400 INVALID_IMAGE."""
        client.post('/start_camera')
        response = client.post(
            '/api/pages/upload',
            data={'image': (BytesIO(b'not an image'), 'page.jpg')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_upload_adds_page(self, client, document_frame):
        """Test a valid upload becomes a page."""
        client.post('/start_camera')
        ok, buffer = cv2.imencode('.jpg', document_frame)
        response = client.post(
            '/api/pages/upload',
            data={'image': (BytesIO(buffer.tobytes()), 'page.jpg')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 200
        assert json.loads(response.data)['page_count'] == 1


class TestFinalizeEndpoint:
    """Test /api/finalize."""

    def test_empty_session_is_409(self, client):
        """Test finalizing nothing is a 409 EMPTY_SESSION."""
        client.post('/start_camera')
        response = client.post('/api/finalize')
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'EMPTY_SESSION'

    def test_finalize_saves_document(self, client):
        """Test the JSON summary and saved files."""
        client.post('/start_camera')
        client.post('/capture')
        data = json.loads(client.post('/api/finalize').data)
        assert data['success'] is True
        assert data['page_count'] == 1
        assert data['metadata']['enhancement_mode'] == 'monochrome'
        assert os.path.isfile(data['saved']['metadata_path'])

    def test_finalize_download(self, client):
        """Test ?download=1 returns the PDF."""
        client.post('/start_camera')
        client.post('/capture')
        client.post('/capture')
        response = client.post('/api/finalize?download=1')
        assert response.status_code == 200
        assert response.mimetype == 'application/pdf'
        assert len(PdfReader(BytesIO(response.data)).pages) == 2
