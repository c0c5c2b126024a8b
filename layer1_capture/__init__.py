"""
Layer 1 — Capture
Camera frame source for the auto-capture session.
"""
from .camera import CameraHandler, compute_scale

__all__ = ['CameraHandler', 'compute_scale']
