"""
Layer 2 — Vision Operations
Image primitives consumed by the detection pipeline, plus the per-tick
scope that owns every intermediate buffer.

The pipeline only talks to VisionOps, so any image library that honours
this contract can replace OpenCV.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence, Tuple

import cv2
import numpy as np

from error_handlers import InvalidFrameError

logger = logging.getLogger(__name__)


class VisionOps(ABC):
    """Primitive image operations the detection core depends on."""

    @abstractmethod
    def to_grayscale(self, frame: Any) -> Any:
        ...

    @abstractmethod
    def laplacian(self, gray: Any) -> np.ndarray:
        """Signed second-derivative response, same dimensions as input."""

    @abstractmethod
    def gaussian_blur(self, gray: Any, kernel_size: int, sigma: float) -> Any:
        ...

    @abstractmethod
    def canny_edges(self, gray: Any, low_threshold: float, high_threshold: float) -> Any:
        ...

    @abstractmethod
    def make_kernel(self, size: int) -> Any:
        """Square structuring element for morphology."""

    @abstractmethod
    def morphological_close(self, binary: Any, kernel: Any) -> Any:
        ...

    @abstractmethod
    def find_external_contours(self, binary: Any) -> Sequence[Any]:
        ...

    @abstractmethod
    def arc_length(self, contour: Any, closed: bool) -> float:
        ...

    @abstractmethod
    def approx_polygon(self, contour: Any, tolerance: float, closed: bool) -> Any:
        ...

    @abstractmethod
    def vertex_count(self, polygon: Any) -> int:
        ...

    @abstractmethod
    def is_convex(self, polygon: Any) -> bool:
        ...

    @abstractmethod
    def bounding_rect(self, polygon: Any) -> Tuple[float, float, float, float]:
        """(x, y, width, height) in native pixel space."""

    def release(self, handle: Any):
        """Free a buffer produced by this library. No-op by default."""
        return None


class OpenCVVisionOps(VisionOps):
    """VisionOps backed by cv2 / numpy."""

    def to_grayscale(self, frame: np.ndarray) -> np.ndarray:
        if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
            raise InvalidFrameError("empty frame")
        if frame.ndim == 2:
            return frame
        if frame.ndim == 3 and frame.shape[2] == 3:
            return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        if frame.ndim == 3 and frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
        if frame.ndim == 3 and frame.shape[2] == 1:
            return frame[:, :, 0]
        raise InvalidFrameError(f"unsupported shape {frame.shape}")

    def laplacian(self, gray: np.ndarray) -> np.ndarray:
        if gray.size == 0:
            return np.empty((0,), dtype=np.float64)
        return cv2.Laplacian(gray, cv2.CV_64F)

    def gaussian_blur(self, gray: np.ndarray, kernel_size: int, sigma: float) -> np.ndarray:
        return cv2.GaussianBlur(gray, (kernel_size, kernel_size), sigma)

    def canny_edges(self, gray: np.ndarray, low_threshold: float, high_threshold: float) -> np.ndarray:
        return cv2.Canny(gray, low_threshold, high_threshold)

    def make_kernel(self, size: int) -> np.ndarray:
        return np.ones((size, size), np.uint8)

    def morphological_close(self, binary: np.ndarray, kernel: np.ndarray) -> np.ndarray:
        return cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel)

    def find_external_contours(self, binary: np.ndarray) -> List[np.ndarray]:
        # OpenCV 4 returns (contours, hierarchy); 3.x prepended the image
        found = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        contours = found[0] if len(found) == 2 else found[1]
        return list(contours)

    def arc_length(self, contour: np.ndarray, closed: bool) -> float:
        return float(cv2.arcLength(contour, closed))

    def approx_polygon(self, contour: np.ndarray, tolerance: float, closed: bool) -> np.ndarray:
        return cv2.approxPolyDP(contour, tolerance, closed)

    def vertex_count(self, polygon: np.ndarray) -> int:
        return int(len(polygon))

    def is_convex(self, polygon: np.ndarray) -> bool:
        return bool(cv2.isContourConvex(polygon))

    def bounding_rect(self, polygon: np.ndarray) -> Tuple[float, float, float, float]:
        x, y, w, h = cv2.boundingRect(polygon)
        return float(x), float(y), float(w), float(h)


class FrameScope:
    """
    Owns the intermediate buffers of one pipeline tick.

    Every handle registered with track() is handed back to
    VisionOps.release() exactly once when the scope exits, whichever
    path (early reject, normal return, exception) leaves the block.
    """

    def __init__(self, vision: VisionOps):
        self.vision = vision
        self._handles: Dict[str, Any] = {}
        self._closed = False

    def track(self, name: str, handle: Any) -> Any:
        if self._closed:
            raise RuntimeError("FrameScope already released")
        if name in self._handles:
            raise ValueError(f"Handle '{name}' already tracked in this tick")
        self._handles[name] = handle
        return handle

    @property
    def tracked(self) -> List[str]:
        return list(self._handles)

    def close(self):
        if self._closed:
            return
        self._closed = True
        # Release in reverse acquisition order; a gray input may alias the frame
        released = set()
        for name in reversed(list(self._handles)):
            handle = self._handles[name]
            if handle is None or id(handle) in released:
                continue
            released.add(id(handle))
            try:
                self.vision.release(handle)
            except Exception as e:
                logger.warning(f"Failed to release '{name}': {e}")
        logger.debug(f"Released tick buffers: {list(self._handles)}")
        self._handles.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
