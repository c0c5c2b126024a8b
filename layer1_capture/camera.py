"""
Layer 1 — Capture
Responsibility: Camera initialization and frame capture
Output: Raw numpy.ndarray frame (BGR) plus the native resolution
used to derive the container scale factors
"""
import cv2
import logging
import os
from typing import Optional, Tuple

import numpy as np

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)

logger = logging.getLogger(__name__)


def compute_scale(resolution: Tuple[int, int], container: Tuple[float, float]) -> Tuple[float, float]:
    """
    Native-to-container scale factors.

    Args:
        resolution: (width, height) of camera frames
        container: (width, height) of the target region

    Returns:
        Tuple of (scale_x, scale_y)
    """
    width, height = resolution
    container_width, container_height = container
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid camera resolution {width}x{height}")
    return width / container_width, height / container_height


class CameraHandler:
    """Handles USB camera initialization and frame capture"""

    # Requested stream; the driver may pick the nearest supported mode
    DEFAULT_CONFIG = {
        'width': 384,
        'height': 272,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer so each tick sees a fresh frame
    }

    def __init__(self, camera_index: int = 0, config: Optional[dict] = None):
        """
        Initialize camera handler

        Args:
            camera_index: V4L2 device index (e.g., 0 for /dev/video0)
            config: Optional configuration override
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None

        self.actual_width = 0
        self.actual_height = 0

        logger.info(f"Camera handler created for device index {camera_index}")

    def _check_camera_exists(self):
        """Check if camera device exists"""
        device_path = f"/dev/video{self.camera_index}"
        if not os.path.exists(device_path):
            logger.error(f"Camera device not found: {device_path}")
            raise CameraNotFoundError(self.camera_index)

    def initialize(self) -> bool:
        """
        Initialize and configure the camera

        Returns:
            bool: True if successful

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            CameraInitError: If camera fails to initialize
        """
        if self.is_opened():
            logger.debug("Camera already initialized")
            return True

        self._check_camera_exists()
        logger.info(f"Initializing camera at /dev/video{self.camera_index}")

        try:
            self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)
        except cv2.error as e:
            logger.error(f"Error initializing camera: {e}")
            raise CameraInitError(self.camera_index, reason=str(e))

        if not self.camera.isOpened():
            self.camera = None
            raise CameraInitError(
                self.camera_index,
                reason="Camera opened but isOpened() returned False"
            )

        cfg = self.config
        self.camera.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg['codec']))
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

        self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))

        logger.info(f"Camera initialized: {self.actual_width}x{self.actual_height}")
        return True

    def get_frame(self) -> np.ndarray:
        """
        Capture a single frame from the camera

        Returns:
            numpy.ndarray: Raw BGR frame

        Raises:
            CameraNotInitializedError: If camera not initialized
            FrameCaptureError: If frame capture fails
        """
        if not self.is_opened():
            raise CameraNotInitializedError()

        ret, frame = self.camera.read()

        if not ret or frame is None:
            logger.warning("Failed to read frame from camera")
            raise FrameCaptureError(reason="read() returned no frame")

        return frame

    def get_resolution(self) -> Tuple[int, int]:
        """Get actual camera resolution."""
        return (self.actual_width, self.actual_height)

    def is_opened(self) -> bool:
        """Check if camera is currently open"""
        return self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release camera resources"""
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        logger.info("Camera released")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
