"""
Layer 3 — Capture and Feedback Sinks
Final overlay + still-image encoding, and the status message feed.
"""
import base64
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from error_handlers import CaptureEncodeError
from layer2_detection import Rect

logger = logging.getLogger(__name__)


@dataclass
class CaptureRecord:
    """The finalized capture of a session."""
    rect: Rect                     # Native pixel space
    image: np.ndarray              # Clean still
    overlay: np.ndarray            # Still with the detection drawn on it
    data_url: str
    timestamp: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S"))

    def to_dict(self, include_image: bool = True) -> Dict:
        """Convert to dictionary for API response."""
        h, w = self.image.shape[:2]
        result = {
            'timestamp': self.timestamp,
            'rect': self.rect.to_dict(),
            'size': (w, h),
        }
        if include_image:
            result['image'] = self.data_url
        return result


class OverlayCaptureSink:
    """
    Renders the final detection rectangle and encodes the still as a
    base64 PNG data URL. Nothing is written to disk.
    """

    def __init__(self, color: Tuple[int, int, int] = (0, 255, 0), thickness: int = 4,
                 image_format: str = '.png'):
        self.color = color
        self.thickness = thickness
        self.image_format = image_format
        self.last_capture: Optional[CaptureRecord] = None

    def draw_final_rect(self, frame: np.ndarray, rect: Rect) -> np.ndarray:
        """Copy of the frame with the rect outlined."""
        overlay = frame.copy()
        top_left = (int(round(rect.x)), int(round(rect.y)))
        bottom_right = (int(round(rect.x + rect.width)), int(round(rect.y + rect.height)))
        cv2.rectangle(overlay, top_left, bottom_right, self.color, self.thickness)
        return overlay

    def encode(self, image: np.ndarray) -> str:
        """
        Encode an image as a data URL.

        Raises:
            CaptureEncodeError: If OpenCV cannot encode the image
        """
        try:
            ok, buffer = cv2.imencode(self.image_format, image)
        except cv2.error as e:
            raise CaptureEncodeError(e)
        if not ok:
            raise CaptureEncodeError(f"cv2.imencode returned False for {self.image_format}")
        mime = 'image/png' if self.image_format == '.png' else 'image/jpeg'
        return f"data:{mime};base64," + base64.b64encode(buffer.tobytes()).decode('ascii')

    def __call__(self, frame: np.ndarray, rect: Rect) -> CaptureRecord:
        still = frame.copy()
        overlay = self.draw_final_rect(still, rect)
        data_url = self.encode(still)

        record = CaptureRecord(rect=rect, image=still, overlay=overlay, data_url=data_url)
        self.last_capture = record
        logger.info(f"Photo captured. Base64: {data_url[:50]}...")
        return record


class FeedbackLog:
    """Keeps the most recent status messages for display."""

    def __init__(self, maxlen: int = 20):
        self._messages = deque(maxlen=maxlen)

    def __call__(self, message: str):
        logger.debug(f"Feedback: {message}")
        self._messages.append(message)

    @property
    def latest(self) -> Optional[str]:
        return self._messages[-1] if self._messages else None

    def messages(self) -> List[str]:
        return list(self._messages)

    def clear(self):
        self._messages.clear()
