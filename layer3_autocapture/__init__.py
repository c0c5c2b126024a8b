"""
Layer 3 — Auto-Capture
Schedules detection ticks against the camera and finalizes the capture.
"""
from .scheduler import RecurringTask
from .session import CaptureSession, SessionStatus
from .sink import CaptureRecord, FeedbackLog, OverlayCaptureSink

__all__ = [
    'RecurringTask',
    'CaptureSession',
    'SessionStatus',
    'CaptureRecord',
    'FeedbackLog',
    'OverlayCaptureSink',
]
