"""
Error Handling System
Provides consistent error responses across all pipeline layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ConfigurationError(ScannerError):
    """Invalid pipeline configuration value"""
    def __init__(self, key, value, reason=None):
        super().__init__(
            message=f"Invalid configuration value for {key}: {value!r}",
            error_code="INVALID_CONFIGURATION",
            details={
                "key": key,
                "value": str(value),
                "reason": reason
            }
        )


# Layer 1 Errors - Camera
class CameraError(ScannerError):
    """Camera-related errors"""
    pass


class CameraAcquisitionError(CameraError):
    """Camera could not supply frames; fatal to the current capture session"""
    pass


class CameraNotFoundError(CameraAcquisitionError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at index {camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraAcquisitionError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at index {camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraAcquisitionError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class FrameCaptureError(CameraAcquisitionError):
    """Failed to capture frame"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "reason": reason,
                "suggestion": "Check camera connection or restart the camera"
            }
        )


# Layer 2/3 Errors - Image Processing
class ProcessingError(ScannerError):
    """Image processing errors"""
    pass


class DegenerateQuadrilateralError(ProcessingError):
    """Corners cannot define a perspective transform"""
    def __init__(self, reason):
        super().__init__(
            message=f"Degenerate quadrilateral: {reason}",
            error_code="DEGENERATE_QUADRILATERAL",
            details={
                "reason": reason
            }
        )


class InvalidImageError(ProcessingError):
    """Image buffer could not be decoded or is empty"""
    def __init__(self, reason):
        super().__init__(
            message=f"Invalid image: {reason}",
            error_code="INVALID_IMAGE",
            details={
                "reason": reason,
                "suggestion": "Upload a JPEG or PNG photo of the page"
            }
        )


# Layer 5 Errors - Capture session and document assembly
class SessionError(ScannerError):
    """Capture session usage errors"""
    pass


class InvalidPageIndexError(SessionError):
    """Page removal referenced a non-existent page"""
    def __init__(self, index, page_count):
        super().__init__(
            message=f"Page index {index} out of range (session has {page_count} pages)",
            error_code="INVALID_INDEX",
            details={
                "index": index,
                "page_count": page_count
            }
        )


class EmptySessionError(SessionError):
    """Finalize attempted with zero pages"""
    def __init__(self):
        super().__init__(
            message="Cannot finalize an empty capture session",
            error_code="EMPTY_SESSION",
            details={
                "suggestion": "Capture at least one page before finalizing"
            }
        )


class SessionClosedError(SessionError):
    """Write attempted on a session that has been torn down"""
    def __init__(self):
        super().__init__(
            message="Capture session has been closed",
            error_code="SESSION_CLOSED",
            details={
                "suggestion": "Start a new capture session"
            }
        )


class NoActiveSessionError(SessionError):
    """Operation requires an open capture session"""
    def __init__(self):
        super().__init__(
            message="No active capture session",
            error_code="NO_ACTIVE_SESSION",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class DocumentAssemblyError(ScannerError):
    """Paginated document could not be produced"""
    def __init__(self, reason):
        super().__init__(
            message=f"Document assembly failed: {reason}",
            error_code="ASSEMBLY_FAILED",
            details={
                "reason": str(reason)
            }
        )


class DocumentSaveError(ScannerError):
    """Failed to hand the document to storage"""
    def __init__(self, filepath, reason):
        super().__init__(
            message=f"Failed to save document to {filepath}",
            error_code="DOCUMENT_SAVE_FAILED",
            details={
                "filepath": filepath,
                "reason": str(reason),
                "suggestion": "Check disk space and write permissions"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
