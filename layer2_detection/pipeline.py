"""
Layer 2 — Detection Pipeline
One full evaluation per tick:
sharpness gate -> contour search -> candidate selection -> stability -> capture

Features:
- Blurry frames short-circuit before any contour search
- Every per-tick buffer is released exactly once on every exit path
- Stability state lives in an explicit StabilityState value
- Capture sink is called once, with the rect in native pixels
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import DetectionConfig
from .geometry import Rect, RejectReason
from .selector import CandidateSelector
from .sharpness import SharpnessEvaluator
from .stability import INITIAL_STATE, StabilityState, StabilityTracker
from .vision import FrameScope, OpenCVVisionOps, VisionOps

logger = logging.getLogger(__name__)

CaptureSink = Callable[[Any, Rect], Any]
FeedbackSink = Callable[[str], None]


class DetectionStatus(str, Enum):
    NO_CANDIDATE = "no_candidate"
    REJECTED = "rejected"
    ACCEPTED = "accepted"


@dataclass
class DetectionResult:
    """Outcome of one pipeline tick."""
    status: DetectionStatus
    sharpness: float = 0.0
    reason: Optional[RejectReason] = None
    rect: Optional[Rect] = None
    stable_frames: int = 0
    captured: bool = False
    capture: Any = None
    candidates: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.status is DetectionStatus.ACCEPTED

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'status': self.status.value,
            'sharpness': round(self.sharpness, 2),
            'stable_frames': self.stable_frames,
            'captured': self.captured,
        }
        if self.reason is not None:
            result['reason'] = self.reason.value
        if self.rect is not None:
            result['rect'] = self.rect.to_dict()
        if self.candidates:
            result['candidates'] = self.candidates
        return result


def _ignore_feedback(message: str):
    return None


class DetectionPipeline:
    """
    Orchestrates the per-tick evaluation of camera frames.

    The pipeline owns the StabilityState; only the tracker's transition
    function produces new states. scale_x / scale_y convert native frame
    pixels to container units and are fixed for a session.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        vision: Optional[VisionOps] = None,
        scale_x: float = 1.0,
        scale_y: float = 1.0,
        capture_sink: Optional[CaptureSink] = None,
        feedback: Optional[FeedbackSink] = None,
    ):
        """
        Initialize detection pipeline.

        Args:
            config: Detection thresholds (loose tuning if not provided)
            vision: Image primitives (OpenCV if not provided)
            scale_x: native frame width / container width
            scale_y: native frame height / container height
            capture_sink: Called with (frame, native_rect) on capture
            feedback: Receives human-readable status strings
        """
        if scale_x <= 0 or scale_y <= 0:
            raise ValueError(f"Scale factors must be positive, got {scale_x}, {scale_y}")

        self.config = config or DetectionConfig()
        self.vision = vision or OpenCVVisionOps()
        self.scale_x = scale_x
        self.scale_y = scale_y
        self.capture_sink = capture_sink
        self.feedback = feedback or _ignore_feedback

        self.sharpness = SharpnessEvaluator(self.vision)
        self.selector = CandidateSelector(self.config, self.vision)
        self.tracker = StabilityTracker(self.config)
        self.state: StabilityState = INITIAL_STATE

        logger.info("DetectionPipeline initialized")
        logger.debug(f"Config: {self.config}, scale=({scale_x:.3f}, {scale_y:.3f})")

    def reset(self):
        """Start a new capture session."""
        self.state = INITIAL_STATE
        logger.debug("Stability state reset")

    @property
    def captured(self) -> bool:
        return self.state.captured

    def _advance(self, candidate: Optional[Rect]) -> bool:
        self.state, captured_now = self.tracker.transition(self.state, candidate)
        return captured_now

    def process(self, frame) -> DetectionResult:
        """
        Evaluate one frame.

        Args:
            frame: Camera frame; the pipeline releases it before returning

        Returns:
            DetectionResult: outcome of this tick
        """
        cfg = self.config

        with FrameScope(self.vision) as scope:
            scope.track('frame', frame)

            # 1. Grayscale
            gray = scope.track('gray', self.vision.to_grayscale(frame))

            # 2. Focus gate
            sharpness = self.sharpness.evaluate(gray)
            self.feedback(f"Sharpness: {sharpness:.2f}")

            if sharpness < cfg.min_focus_threshold:
                self._advance(None)
                self.feedback(f"Image is blurry. Sharpness: {sharpness:.2f}")
                return DetectionResult(
                    status=DetectionStatus.REJECTED,
                    sharpness=sharpness,
                    reason=RejectReason.BLURRY,
                    stable_frames=self.state.consecutive_stable_frames,
                )

            # 3. Blur, Canny, morphological close, contours
            blurred = scope.track(
                'blurred',
                self.vision.gaussian_blur(gray, cfg.blur_kernel_size, cfg.blur_sigma)
            )
            edges = scope.track(
                'edges',
                self.vision.canny_edges(blurred, cfg.canny_low, cfg.canny_high)
            )
            kernel = scope.track('kernel', self.vision.make_kernel(cfg.close_kernel_size))
            closed = scope.track('closed', self.vision.morphological_close(edges, kernel))
            contours = scope.track('contours', self.vision.find_external_contours(closed))

            # 4. Candidate selection
            selection = self.selector.select(contours, self.scale_x, self.scale_y)

            # 5. Stability; a capture is only committed once the sink has taken it
            next_state, captured_now = self.tracker.transition(self.state, selection.best)
            if not captured_now:
                self.state = next_state

            if selection.best is None:
                if selection.rejections:
                    reason = selection.rejections[0].reason
                    self.feedback(f"No valid contour: {reason.value}")
                    result = DetectionResult(
                        status=DetectionStatus.REJECTED,
                        sharpness=sharpness,
                        reason=reason,
                        stable_frames=self.state.consecutive_stable_frames,
                        candidates=selection.debug,
                    )
                else:
                    self.feedback("No document found")
                    result = DetectionResult(
                        status=DetectionStatus.NO_CANDIDATE,
                        sharpness=sharpness,
                        stable_frames=self.state.consecutive_stable_frames,
                        candidates=selection.debug,
                    )
                return result

            result = DetectionResult(
                status=DetectionStatus.ACCEPTED,
                sharpness=sharpness,
                rect=selection.best,
                stable_frames=next_state.consecutive_stable_frames,
                candidates=selection.debug,
            )

            # 6. Capture, once, while the frame is still owned by this tick
            if captured_now:
                result.captured = True
                native_rect = selection.best.scaled(self.scale_x, self.scale_y)
                logger.info(f"Document captured at {native_rect}")
                if self.capture_sink is not None:
                    result.capture = self.capture_sink(frame, native_rect)
                self.state = next_state
                self.feedback("Document captured!")

            return result
