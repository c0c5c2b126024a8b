"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for auto-capture errors"""
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


# Layer 1 Errors - Camera
class CameraError(ScannerError):
    """Frame source could not be opened or read"""
    pass


class CameraNotFoundError(CameraError):
    """No V4L2 device node for the configured index"""
    def __init__(self, camera_index):
        device = f"/dev/video{camera_index}"
        super().__init__(
            message=f"No capture device at {device}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "device": device,
                "suggestion": "Set CAMERA_INDEX to an existing /dev/video* node and POST /start_camera again"
            }
        )


class CameraInitError(CameraError):
    """Device node exists but OpenCV could not open or configure it"""
    def __init__(self, camera_index, reason=None):
        device = f"/dev/video{camera_index}"
        super().__init__(
            message=f"Could not open {device} for auto-capture",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "device": device,
                "reason": reason,
                "suggestion": "The device may be held by another process or not readable by the service user (video group)"
            }
        )


class CameraNotInitializedError(CameraError):
    """Frame requested while no session holds the camera"""
    def __init__(self):
        super().__init__(
            message="No auto-capture session holds the camera",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "POST /start_camera to open a capture session"
            }
        )


class FrameCaptureError(CameraError):
    """Device is open but returned no frame"""
    def __init__(self, reason=None):
        super().__init__(
            message="Camera returned no frame",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "reason": reason,
                "suggestion": "A single miss only skips one detection tick; repeated misses usually mean the device was unplugged"
            }
        )


# Layer 2 Errors - Detection
class ProcessingError(ScannerError):
    """Image processing errors"""
    pass


class InvalidFrameError(ProcessingError):
    """Frame cannot be fed to the detection pipeline"""
    def __init__(self, reason):
        super().__init__(
            message=f"Invalid frame: {reason}",
            error_code="INVALID_FRAME",
            details={
                "reason": str(reason),
                "suggestion": "Send a BGR, BGRA or grayscale 8-bit image"
            }
        )


class ConfigError(ScannerError):
    """Detection configuration is inconsistent"""
    def __init__(self, field, reason):
        super().__init__(
            message=f"Invalid detection config field '{field}': {reason}",
            error_code="INVALID_CONFIG",
            details={
                "field": field,
                "reason": str(reason)
            }
        )


# Layer 3 Errors - Session / capture
class SessionError(ScannerError):
    """Auto-capture session errors"""
    pass


class SessionAlreadyRunningError(SessionError):
    """A detection loop is already scheduled"""
    def __init__(self):
        super().__init__(
            message="Auto-capture session already running",
            error_code="SESSION_ALREADY_RUNNING",
            details={
                "suggestion": "Call /stop_camera before starting a new session"
            }
        )


class CaptureEncodeError(SessionError):
    """Failed to encode the captured still image"""
    def __init__(self, reason):
        super().__init__(
            message=f"Failed to encode captured image: {reason}",
            error_code="CAPTURE_ENCODE_FAILED",
            details={
                "reason": str(reason)
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Turn any exception raised behind a route into the JSON error body.

    ScannerError subclasses keep their own code and details; anything
    else is reported as UNEXPECTED_ERROR with its type and text.
    """
    if log_message:
        logger.error(log_message)

    if not isinstance(error, ScannerError):
        logger.exception(f"Unhandled {type(error).__name__} in auto-capture service")
        return {
            "success": False,
            "error": "Internal error in the auto-capture service",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }

    logger.error(f"[{error.error_code}] {error.message}")
    if error.details:
        logger.debug(f"[{error.error_code}] details: {error.details}")
    return error.to_dict()
