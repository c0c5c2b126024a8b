"""
Pytest configuration and fixtures for the auto-capture tests.
"""
import os
import sys
from collections import Counter
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from layer2_detection import VisionOps  # noqa: E402


@dataclass
class FakeContour:
    """Scripted contour: what approxPolyDP / isContourConvex / boundingRect will say."""
    rect: Tuple[float, float, float, float]
    vertices: int = 4
    convex: bool = True


class Handle:
    """Opaque buffer handed out by ScriptedVision."""
    def __init__(self, kind, payload=None):
        self.kind = kind
        self.payload = payload

    def __repr__(self):
        return f"Handle({self.kind})"


class ScriptedContours(list):
    """Contour set handle; iterable like the real one."""


class ScriptedVision(VisionOps):
    """
    VisionOps double that replays a fixed sharpness and contour set,
    and counts every release() per handle.
    """

    def __init__(self, sharpness=200.0, contours=()):
        self.sharpness = sharpness
        self.contours = list(contours)
        self.created = []
        self.releases = Counter()
        self.calls = Counter()

    def _new(self, kind, payload=None):
        handle = Handle(kind, payload)
        self.created.append(handle)
        return handle

    def to_grayscale(self, frame):
        self.calls['to_grayscale'] += 1
        return self._new('gray')

    def laplacian(self, gray):
        self.calls['laplacian'] += 1
        # var([-s, s]) == s**2
        response = np.array([-1.0, 1.0]) * np.sqrt(self.sharpness)
        self.created.append(response)
        return response

    def gaussian_blur(self, gray, kernel_size, sigma):
        self.calls['gaussian_blur'] += 1
        return self._new('blurred')

    def canny_edges(self, gray, low_threshold, high_threshold):
        self.calls['canny_edges'] += 1
        return self._new('edges')

    def make_kernel(self, size):
        return self._new('kernel')

    def morphological_close(self, binary, kernel):
        return self._new('closed')

    def find_external_contours(self, binary):
        self.calls['find_external_contours'] += 1
        contours = ScriptedContours(self.contours)
        self.created.append(contours)
        return contours

    def arc_length(self, contour, closed):
        return 100.0

    def approx_polygon(self, contour, tolerance, closed):
        return self._new('approx', contour)

    def vertex_count(self, polygon):
        return polygon.payload.vertices

    def is_convex(self, polygon):
        return polygon.payload.convex

    def bounding_rect(self, polygon):
        return polygon.payload.rect

    def release(self, handle):
        self.releases[id(handle)] += 1


@pytest.fixture
def scripted_vision():
    """Factory for ScriptedVision doubles."""
    def make(sharpness=200.0, rects=()):
        contours = [r if isinstance(r, FakeContour) else FakeContour(rect=r) for r in rects]
        return ScriptedVision(sharpness=sharpness, contours=contours)
    return make


@pytest.fixture
def fake_contour():
    """FakeContour constructor."""
    return FakeContour


@pytest.fixture
def scenario_config():
    """Container 384x272 with the loose tuning."""
    from layer2_detection import DetectionConfig
    return DetectionConfig(
        min_focus_threshold=120,
        min_area_fraction=0.3,
        max_area_fraction=0.9,
        min_aspect_ratio=1.0,
        max_aspect_ratio=4.0,
        container_width=384,
        container_height=272,
        stability_threshold=5,
    )


@pytest.fixture
def document_frame():
    """Synthetic 384x272 BGR frame: light document on a dark desk."""
    def make(x=60, y=40, w=230, h=180, width=384, height=272):
        frame = np.full((height, width, 3), 30, np.uint8)
        cv2.rectangle(frame, (x, y), (x + w - 1, y + h - 1), (230, 230, 230), -1)
        return frame
    return make


@pytest.fixture
def blank_frame():
    """Flat gray frame: zero Laplacian response."""
    return np.full((272, 384, 3), 128, np.uint8)


@pytest.fixture
def png_bytes():
    """Encode a frame as PNG bytes."""
    def encode(frame):
        ok, buffer = cv2.imencode('.png', frame)
        assert ok
        return buffer.tobytes()
    return encode


@pytest.fixture
def flask_app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()
