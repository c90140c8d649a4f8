"""
Scan Coordinator
Thin coordinator for the layered document capture pipeline.

Operator operations:
- start / close a capture session (camera + detection loop)
- change enhancement settings
- capture a page, upload a page, remove a page
- finalize the session into a paginated document
"""
import cv2
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import numpy as np

from .config import PipelineConfig
from .error_handlers import (
    CameraAcquisitionError,
    ConfigurationError,
    NoActiveSessionError,
    SessionClosedError,
)
from .layer1_capture import CameraHandler, DetectionScheduler, FrameDownsampler, StaticFrameSource
from .layer2_detection import CornerScaler, EdgeDetector, Quadrilateral, draw_guide_overlay
from .layer3_rectification import PerspectiveRectifier
from .layer4_enhancement import EnhancementEngine, EnhancementSettings, draw_page_badge
from .layer5_document import AssembledDocument, CapturedPage, CaptureSession, DirectorySink, DocumentAssembler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureOutcome:
    """Result of one capture or upload."""
    index: int
    page: CapturedPage
    page_count: int
    used_detection: bool

    def to_dict(self) -> Dict:
        return {
            "success": True,
            "index": self.index,
            "page_count": self.page_count,
            "used_detection": self.used_detection,
            "page": self.page.to_dict(),
        }


class ScanCoordinator:
    """
    Coordinates the capture pipeline across layers
    Thin wrapper that delegates to layer-specific components
    """

    def __init__(self, config: Optional[PipelineConfig] = None, source=None, detector=None,
                 enhancer=None, sink=None):
        """
        Args:
            config: PipelineConfig (defaults to reference values)
            source: Frame source; a CameraHandler for config.camera_index by default
            detector: Object with detect(buffer) -> Optional[Quadrilateral]
            enhancer: EnhancementEngine
            sink: DocumentSink receiving finalized documents; None keeps them in memory only
        """
        logger.info("Initializing ScanCoordinator")
        self.config = config or PipelineConfig()
        cfg = self.config

        # Layer 1: Capture
        self.camera = source if source is not None else CameraHandler(
            camera_index=cfg.camera_index,
            config={'width': cfg.camera_width, 'height': cfg.camera_height, 'fps': cfg.camera_fps}
        )
        self.downsampler = FrameDownsampler(cfg.downsample_factor)

        # Layer 2: Detection
        self.detector = detector if detector is not None else EdgeDetector(min_confidence=cfg.min_detection_confidence)
        self.scaler = CornerScaler(cfg.downsample_factor)

        self.scheduler = DetectionScheduler(
            self.camera,
            self.downsampler,
            self.detector,
            self.scaler,
            interval=cfg.detection_interval,
            max_frame_failures=cfg.max_frame_failures
        )

        # Layer 3: Rectification
        self.rectifier = PerspectiveRectifier(cfg.target_size, cfg.confidence_threshold)

        # Layer 4: Enhancement
        self.enhancer = enhancer if enhancer is not None else EnhancementEngine()
        self.settings = EnhancementSettings.from_config(cfg)

        # Layer 5: Document
        self.assembler = DocumentAssembler(cfg.page_size_points, cfg.jpeg_quality)
        self.sink = sink

        self.session: Optional[CaptureSession] = None
        self._lock = threading.Lock()

        logger.info("ScanCoordinator initialized successfully")

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "ScanCoordinator":
        """Coordinator with the real camera and a directory sink under config.output_dir."""
        return cls(config=config, sink=DirectorySink(config.output_dir))

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self) -> CaptureSession:
        """
        Open the camera, start the detection loop and make a session current.

        An already open session is kept, so restarting the camera does not
        lose captured pages.

        Raises:
            CameraAcquisitionError: If the camera cannot supply frames; the
                scheduler is not started
        """
        with self._lock:
            try:
                self.camera.initialize()
            except CameraAcquisitionError as e:
                logger.error(f"Capture session cannot start: {e.message}")
                raise

            if self.session is None or self.session.closed:
                self.session = CaptureSession()
                logger.info("New capture session started")

            self.scheduler.start()
            return self.session

    def close_session(self):
        """Stop detection, release the camera and tear the session down."""
        with self._lock:
            self.scheduler.stop()
            self.camera.release()
            session, self.session = self.session, None

        if session is not None:
            session.close()

    def _require_session(self) -> CaptureSession:
        session = self.session
        if session is None or session.closed:
            raise NoActiveSessionError()
        return session

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> EnhancementSettings:
        return self.settings

    def update_settings(self, **changes) -> EnhancementSettings:
        """
        Replace enhancement settings for subsequent captures.

        Raises:
            ConfigurationError: On an unknown field or invalid value
        """
        known = set(EnhancementSettings.__dataclass_fields__)
        for key, value in changes.items():
            if key not in known:
                raise ConfigurationError(key, value, reason="unknown enhancement setting")

        try:
            updated = self.settings.updated(**changes)
        except (TypeError, ValueError) as e:
            key = next(iter(changes), "settings")
            raise ConfigurationError(key, changes.get(key), reason=str(e))

        self.settings = updated
        logger.info(f"Enhancement settings updated: {updated.to_dict()}")
        return updated

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def _build_page(self, image: np.ndarray, quad: Optional[Quadrilateral],
                    settings: EnhancementSettings, position: int, captured_at: float) -> CapturedPage:
        """Rectify, enhance and (optionally) badge one full-resolution frame."""
        rectified = self.rectifier.rectify(image, quad)
        enhanced = self.enhancer.enhance(rectified, settings)
        if self.config.stamp_page_numbers:
            enhanced = draw_page_badge(enhanced, position)

        used = quad is not None and quad.is_usable(self.config.confidence_threshold)
        return CapturedPage.create(
            enhanced,
            settings,
            preview_width=self.config.preview_width,
            detected=used,
            confidence=quad.confidence if quad is not None else None,
            captured_at=captured_at
        )

    def _commit(self, session: CaptureSession, image: np.ndarray, quad: Optional[Quadrilateral],
                settings: EnhancementSettings, captured_at: float) -> CaptureOutcome:
        """Reserve a slot, process the frame and append it in reservation order."""
        reservation = session.reserve_slot()
        try:
            page = self._build_page(image, quad, settings, reservation.position, captured_at)
            index = session.append(page, reservation)
        except SessionClosedError:
            logger.warning("Capture session closed while the page was processed; page discarded")
            raise
        except Exception:
            session.release_slot(reservation)
            raise

        return CaptureOutcome(
            index=index,
            page=page,
            page_count=len(session),
            used_detection=page.detected
        )

    def capture(self, settings: Optional[EnhancementSettings] = None) -> CaptureOutcome:
        """
        Capture the current frame as the next page.

        Uses the detection loop's last quadrilateral when it is confident
        enough, the full frame otherwise.

        Raises:
            NoActiveSessionError: If no session is open
            CameraAcquisitionError: If the snapshot cannot be taken
            SessionClosedError: If the session was torn down mid-capture
        """
        session = self._require_session()
        settings = settings or self.settings

        logger.info("=" * 60)
        logger.info("Starting page capture")

        # Layer 1: Snapshot
        frame = self.camera.latest_frame()
        logger.info(f"[Layer 1] Frame captured - {frame.width}x{frame.height}")

        # Layer 2: Last known corners
        quad = None
        detection = self.scheduler.latest_detection()
        if detection is not None and detection.quad is not None:
            if (detection.frame_width, detection.frame_height) == (frame.width, frame.height):
                quad = detection.quad
            else:
                logger.debug("Detection was computed on a different frame size, ignoring it")
        logger.info(f"[Layer 2] Corners: {'detected' if quad is not None else 'none (full frame)'}")

        # Layers 3-5: Rectify, enhance, append
        outcome = self._commit(session, frame.image, quad, settings, frame.timestamp)
        logger.info(f"[Pipeline] Page {outcome.index + 1} of {outcome.page_count} captured")
        logger.info("=" * 60)
        return outcome

    def add_uploaded_image(self, data: bytes, settings: Optional[EnhancementSettings] = None) -> CaptureOutcome:
        """
        Run an uploaded photo through detection and the capture path.

        Raises:
            NoActiveSessionError: If no session is open
            InvalidImageError: If the bytes are not a decodable image
        """
        session = self._require_session()
        settings = settings or self.settings

        source = StaticFrameSource.from_bytes(data)
        source.initialize()
        frame = source.latest_frame()
        logger.info(f"Uploaded image decoded - {frame.width}x{frame.height}")

        small = self.downsampler.downsample(frame.image)
        quad = self.detector.detect(small)
        if quad is not None:
            quad = self.scaler.to_full_resolution(quad)

        outcome = self._commit(session, frame.image, quad, settings, frame.timestamp)
        logger.info(f"Uploaded page stored at index {outcome.index}")
        return outcome

    def remove_page(self, index: int) -> int:
        """
        Remove one page.

        Returns:
            int: Pages remaining

        Raises:
            InvalidPageIndexError: If the index is out of range
        """
        session = self._require_session()
        session.remove(index)
        return len(session)

    def list_pages(self) -> List[Dict]:
        session = self._require_session()
        return [{"index": i, **page.to_dict()} for i, page in enumerate(session.pages())]

    def page_preview(self, index: int) -> bytes:
        """JPEG thumbnail of one page."""
        page = self._require_session().page(index)
        ok, buffer = cv2.imencode('.jpg', page.preview)
        if not ok:
            raise ValueError(f"Could not encode preview for page {index}")
        return buffer.tobytes()

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(self) -> Tuple[AssembledDocument, Optional[Dict]]:
        """
        Assemble the session into one document and hand it to the sink.

        The session is left untouched, so the operator can keep capturing.

        Returns:
            tuple: (AssembledDocument, sink receipt or None)

        Raises:
            NoActiveSessionError: If no session is open
            EmptySessionError: If the session has no pages
        """
        session = self._require_session()
        document = self.assembler.assemble(session)

        receipt = None
        if self.sink is not None:
            receipt = self.sink.deliver(document)

        return document, receipt

    # ------------------------------------------------------------------
    # Status / preview
    # ------------------------------------------------------------------

    def detection_status(self) -> Dict:
        """Latest detection for UI overlays."""
        detection = self.scheduler.latest_detection()
        if detection is None:
            return {"detected": False, "usable": False, "running": self.scheduler.is_running}
        return {
            **detection.to_dict(self.config.confidence_threshold),
            "running": self.scheduler.is_running
        }

    def preview_frame(self) -> Optional[np.ndarray]:
        """Last frame seen by the detection loop with the guide overlay drawn on it."""
        detection = self.scheduler.latest_detection()
        if detection is None or detection.frame is None:
            return None
        return draw_guide_overlay(detection.frame.image, detection.quad, self.config.confidence_threshold)

    def status(self) -> Dict:
        session = self.session
        error = self.scheduler.last_error
        return {
            "camera_opened": self.camera.is_opened(),
            "detection_state": self.scheduler.state.value,
            "session_active": session is not None and not session.closed,
            "page_count": len(session) if session is not None else 0,
            "settings": self.settings.to_dict(),
            "target_size": list(self.config.target_size),
            "last_error": error.to_dict() if error is not None else None
        }
