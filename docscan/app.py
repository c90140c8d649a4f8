"""
Document Scanner Web Application
Thin HTTP surface for the layered document capture pipeline.

Provides REST API for:
- Camera session control and live preview with the document guide
- Enhancement settings
- Page capture, upload, listing and removal
- Finalizing the session into a paginated PDF
"""
from flask import Flask, Response, jsonify, request, send_file
from flask_cors import CORS
from io import BytesIO
import cv2
import time
import logging

from .config import PipelineConfig
from .coordinator import ScanCoordinator
from .error_handlers import (
    CameraError,
    ConfigurationError,
    EmptySessionError,
    InvalidImageError,
    InvalidPageIndexError,
    NoActiveSessionError,
    ScannerError,
    SessionClosedError,
    handle_error
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "docscan"
SERVICE_VERSION = "1.0.0"

# Status code per error family; first match wins
ERROR_STATUS = (
    (InvalidPageIndexError, 400),
    (NoActiveSessionError, 400),
    (InvalidImageError, 400),
    (ConfigurationError, 400),
    (EmptySessionError, 409),
    (SessionClosedError, 409),
    (CameraError, 503),
)


def status_for(error) -> int:
    """HTTP status code for a pipeline error."""
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(coordinator=None, config=None):
    """
    Build the Flask application around a ScanCoordinator.

    Args:
        coordinator: Existing coordinator (tests inject one with a fake source)
        config: PipelineConfig used when no coordinator is given
    """
    if coordinator is None:
        coordinator = ScanCoordinator.from_config(config or PipelineConfig.from_env())

    app = Flask(__name__)
    app.config['COORDINATOR'] = coordinator

    # Enable CORS for cross-origin requests from the operator UI
    CORS(app, origins=["*"])

    scanner = coordinator

    @app.errorhandler(ScannerError)
    def scanner_error(e):
        return jsonify(handle_error(e)), status_for(e)

    # ========================================================================
    # Session control and live preview
    # ========================================================================

    @app.route('/start_camera', methods=['POST'])
    def start_camera():
        """Open the camera, start detection and make a capture session current"""
        logger.info("Start camera request received")
        session = scanner.start_session()
        return jsonify({"success": True, "page_count": len(session)})

    @app.route('/stop_camera', methods=['POST'])
    def stop_camera():
        """Stop detection, release the camera and discard the session"""
        logger.info("Stop camera request received")
        scanner.close_session()
        return jsonify({"success": True})

    @app.route('/detection_status', methods=['GET'])
    def detection_status():
        """Latest document detection (for UI overlays)"""
        return jsonify({
            "success": True,
            "detection": scanner.detection_status()
        })

    @app.route('/video_feed')
    def video_feed():
        """MJPEG stream of the detection loop's frames with the document guide"""
        logger.info("Video feed with overlay requested")
        interval = scanner.config.detection_interval

        def generate():
            frame_count = 0
            while scanner.scheduler.is_running:
                frame = scanner.preview_frame()
                if frame is None:
                    time.sleep(interval)
                    continue

                ret, buffer = cv2.imencode('.jpg', frame)
                if not ret:
                    logger.warning("Failed to encode preview frame")
                    time.sleep(interval)
                    continue

                frame_count += 1
                if frame_count % 30 == 0:
                    logger.debug(f"  Streamed {frame_count} preview frames")

                yield (b'--frame\r\n'
                       b'Content-Type: image/jpeg\r\n\r\n' + buffer.tobytes() + b'\r\n')
                time.sleep(interval)

            logger.info("Video feed ended (detection loop not running)")

        return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')

    # ========================================================================
    # Settings and pages
    # ========================================================================

    @app.route('/api/settings', methods=['GET', 'POST'])
    def settings():
        """Read or change enhancement settings for later captures"""
        if request.method == 'POST':
            changes = request.get_json(silent=True)
            if not isinstance(changes, dict):
                return jsonify({
                    "success": False,
                    "error": "Expected a JSON object of settings",
                    "error_code": "INVALID_REQUEST"
                }), 400
            scanner.update_settings(**changes)

        return jsonify({"success": True, "settings": scanner.get_settings().to_dict()})

    @app.route('/capture', methods=['POST'])
    def capture():
        """Capture the current frame as the next page"""
        logger.info("Capture request received from client")
        outcome = scanner.capture()
        return jsonify(outcome.to_dict())

    @app.route('/api/pages', methods=['GET'])
    def list_pages():
        """Pages of the current session in document order"""
        pages = scanner.list_pages()
        return jsonify({"success": True, "page_count": len(pages), "pages": pages})

    @app.route('/api/pages/<int(signed=True):index>/preview', methods=['GET'])
    def page_preview(index):
        """JPEG thumbnail of one page"""
        return Response(scanner.page_preview(index), mimetype='image/jpeg')

    @app.route('/api/pages/<int(signed=True):index>', methods=['DELETE'])
    def remove_page(index):
        """Remove one page; later pages move up"""
        logger.info(f"Remove page {index} requested")
        remaining = scanner.remove_page(index)
        return jsonify({"success": True, "page_count": remaining})

    @app.route('/api/pages/upload', methods=['POST'])
    def upload_page():
        """
        Add an uploaded photo as the next page.

        Request:
            - multipart/form-data with 'image' field containing the photo
        """
        logger.info("Page upload request received")

        if 'image' not in request.files:
            return jsonify({
                "success": False,
                "error": "No image file provided",
                "error_code": "NO_IMAGE"
            }), 400

        image_file = request.files['image']
        if image_file.filename == '':
            return jsonify({
                "success": False,
                "error": "Empty filename",
                "error_code": "EMPTY_FILENAME"
            }), 400

        outcome = scanner.add_uploaded_image(image_file.read())
        return jsonify(outcome.to_dict())

    @app.route('/api/finalize', methods=['POST'])
    def finalize():
        """
        Assemble the session into one PDF.

        ?download=1 returns the PDF itself instead of the JSON summary.
        """
        logger.info("Finalize request received")
        document, receipt = scanner.finalize()

        if request.args.get('download') in ('1', 'true', 'yes'):
            return send_file(
                BytesIO(document.pdf_bytes),
                mimetype='application/pdf',
                as_attachment=True,
                download_name="scan.pdf"
            )

        return jsonify({
            "success": True,
            "page_count": document.page_count,
            "metadata": document.to_dict(),
            "saved": receipt
        })

    # ========================================================================
    # Service endpoints
    # ========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for service discovery and load balancers"""
        return jsonify({
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION
        })

    @app.route("/api/status", methods=["GET"])
    def api_status():
        """Get service status and capabilities"""
        return jsonify({
            "success": True,
            **scanner.status(),
            "endpoints": {
                "health": "/health",
                "start_camera": "/start_camera",
                "stop_camera": "/stop_camera",
                "detection_status": "/detection_status",
                "video_feed": "/video_feed",
                "settings": "/api/settings",
                "capture": "/capture",
                "pages": "/api/pages",
                "upload": "/api/pages/upload",
                "finalize": "/api/finalize"
            }
        })

    return app


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    config = PipelineConfig.from_env()
    width, height = config.target_size

    print("\n" + "=" * 60)
    print("DOCUMENT SCANNER WEB SERVER")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_capture/        - Camera, downsampling, detection loop")
    print("  layer2_detection/      - Document boundary detection + guide overlay")
    print("  layer3_rectification/  - Perspective correction")
    print("  layer4_enhancement/    - Shadow, brightness, contrast, sharpen, mode")
    print("  layer5_document/       - Capture session, PDF assembly, storage")
    print(f"  {config.output_dir}/")
    print("    ├── documents/         - Assembled PDF files")
    print("    ├── pages/             - Per-page JPG files")
    print("    └── metadata/          - Document metadata (JSON)")
    print("\n🌐 Server Info:")
    print("  URL: http://localhost:5000")
    print("  Logging Level: DEBUG")
    print("\n📡 API Endpoints:")
    print("  GET  /health            - Health check")
    print("  GET  /api/status        - Service status")
    print("  POST /start_camera      - Start capture session")
    print("  POST /capture           - Capture a page")
    print("  POST /api/finalize      - Assemble the PDF")
    print("  GET  /video_feed        - MJPEG video stream")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{config.camera_index}")
    print(f"  Resolution: {config.camera_width}x{config.camera_height}")
    print(f"  Output page: {width}x{height} @ {config.dpi} DPI")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    app = create_app(config=config)

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, threaded=True)


if __name__ == '__main__':
    main()
