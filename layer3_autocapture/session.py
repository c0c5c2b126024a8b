"""
Layer 3 — Auto-Capture Session
Drives the detection pipeline from a camera at a fixed interval until
the document has been held steady long enough to capture.
"""
import logging
import threading
from enum import Enum
from typing import Dict, Optional

from error_handlers import CameraError, SessionAlreadyRunningError
from layer1_capture import CameraHandler, compute_scale
from layer2_detection import DetectionConfig, DetectionPipeline, DetectionResult, VisionOps

from .scheduler import RecurringTask
from .sink import CaptureRecord, FeedbackLog, OverlayCaptureSink

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CAPTURED = "captured"
    FAILED = "failed"


class CaptureSession:
    """
    One auto-capture session: camera -> pipeline -> capture sink.

    Camera start failure is fatal to the session (it stays idle until
    started again). Per-tick failures only skip that tick. The scheduler
    is stopped once, when the pipeline reports the capture.
    """

    def __init__(
        self,
        camera=None,
        config: Optional[DetectionConfig] = None,
        interval: float = 0.5,
        max_ticks: Optional[int] = 12000,
        capture_sink: Optional[OverlayCaptureSink] = None,
        feedback: Optional[FeedbackLog] = None,
        vision: Optional[VisionOps] = None,
    ):
        """
        Initialize session.

        Args:
            camera: Frame source with initialize/get_frame/get_resolution/release
            config: Detection thresholds
            interval: Seconds between ticks
            max_ticks: Safety cap on ticks per session (None disables)
            capture_sink: Receives the final frame and native rect
            feedback: Receives status strings
            vision: Image primitives override
        """
        self.camera = camera if camera is not None else CameraHandler()
        self.config = config or DetectionConfig()
        self.interval = interval
        self.max_ticks = max_ticks
        self.capture_sink = capture_sink or OverlayCaptureSink()
        self.feedback = feedback or FeedbackLog()
        self.vision = vision

        self.status = SessionStatus.IDLE
        self.pipeline: Optional[DetectionPipeline] = None
        self.scheduler: Optional[RecurringTask] = None
        self.last_result: Optional[DetectionResult] = None
        self.capture: Optional[CaptureRecord] = None
        self.skipped_ticks = 0
        self.error: Optional[Dict] = None
        self._lock = threading.Lock()

        logger.info("CaptureSession created")

    def open(self) -> DetectionPipeline:
        """
        Start the camera and build a fresh pipeline for its resolution.

        Raises:
            CameraError: If the camera cannot be started
        """
        self.pipeline = None
        self.last_result = None
        self.capture = None

        try:
            self.camera.initialize()
            width, height = self.camera.get_resolution()
            if width <= 0 or height <= 0:
                # Some drivers only report the mode after the first read
                height, width = self.camera.get_frame().shape[:2]
        except CameraError as e:
            self.camera.release()
            self.status = SessionStatus.FAILED
            self.error = e.to_dict()
            self.feedback("Camera error. Check permissions and connection.")
            logger.error(f"Camera start failed: {e.message}")
            raise

        scale_x, scale_y = compute_scale(
            (width, height),
            (self.config.container_width, self.config.container_height)
        )

        self.pipeline = DetectionPipeline(
            config=self.config,
            vision=self.vision,
            scale_x=scale_x,
            scale_y=scale_y,
            capture_sink=self.capture_sink,
            feedback=self.feedback,
        )
        self.pipeline.reset()
        self.skipped_ticks = 0
        self.error = None
        self.status = SessionStatus.RUNNING
        logger.info(f"Session opened: {width}x{height}, scale=({scale_x:.3f}, {scale_y:.3f})")
        return self.pipeline

    def start(self):
        """
        Open the camera and schedule the detection loop.

        Raises:
            SessionAlreadyRunningError: If a loop is already scheduled
            CameraError: If the camera cannot be started
        """
        with self._lock:
            if self.scheduler is not None and self.scheduler.running:
                raise SessionAlreadyRunningError()

            self.open()
            self.scheduler = RecurringTask(
                self.tick,
                period=self.interval,
                max_ticks=self.max_ticks,
            )
            self.scheduler.start()

    def tick(self) -> bool:
        """
        One scheduled pass.

        Returns:
            bool: False once the document has been captured
        """
        if self.pipeline is None or self.status is not SessionStatus.RUNNING:
            return False

        try:
            frame = self.camera.get_frame()
        except CameraError as e:
            self.skipped_ticks += 1
            logger.warning(f"Tick skipped: {e.message}")
            return True

        result = self.pipeline.process(frame)
        self.last_result = result

        if result.captured:
            self.capture = result.capture
            self.status = SessionStatus.CAPTURED
            logger.info("Document captured, stopping detection loop")
            return False
        return True

    def stop(self):
        """Stop the loop and release the camera."""
        with self._lock:
            if self.scheduler is not None:
                self.scheduler.stop()
                self.scheduler.join(timeout=self.interval * 2)
                if not self.scheduler.wait_idle(timeout=0):
                    logger.warning("Tick still in flight, waiting for it before releasing the camera")
                    self.scheduler.wait_idle()
                self.scheduler = None
            self.camera.release()
            if self.status is SessionStatus.RUNNING:
                self.status = SessionStatus.IDLE
        logger.info("Session stopped")

    def to_dict(self) -> Dict:
        """Session snapshot for the status endpoints."""
        result = {
            'status': self.status.value,
            'stable_frames': self.pipeline.state.consecutive_stable_frames if self.pipeline else 0,
            'stable_required': self.config.stability_threshold,
            'skipped_ticks': self.skipped_ticks,
            'feedback': self.feedback.latest,
        }
        if self.scheduler is not None:
            result['ticks'] = self.scheduler.ticks
            result['dropped_ticks'] = self.scheduler.dropped_ticks
        if self.last_result is not None:
            result['detection'] = self.last_result.to_dict()
        if self.capture is not None:
            result['capture'] = self.capture.to_dict(include_image=False)
        if self.error is not None:
            result['error'] = self.error
        return result
