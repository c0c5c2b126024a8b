"""
Layer 2 — Detection
Per-frame document framing check and stabilization.
Handles focus scoring, contour geometry, candidate selection,
and the stability state machine that triggers the capture.
"""
from .config import DetectionConfig, LOOSE, STRICT, PRESETS
from .geometry import ContourGeometryValidator, Rect, RejectReason
from .pipeline import DetectionPipeline, DetectionResult, DetectionStatus
from .selector import CandidateSelector, Selection
from .sharpness import SharpnessEvaluator
from .stability import Phase, StabilityState, StabilityTracker, are_rects_similar
from .vision import FrameScope, OpenCVVisionOps, VisionOps

__all__ = [
    'DetectionConfig',
    'LOOSE',
    'STRICT',
    'PRESETS',
    'ContourGeometryValidator',
    'Rect',
    'RejectReason',
    'DetectionPipeline',
    'DetectionResult',
    'DetectionStatus',
    'CandidateSelector',
    'Selection',
    'SharpnessEvaluator',
    'Phase',
    'StabilityState',
    'StabilityTracker',
    'are_rects_similar',
    'FrameScope',
    'OpenCVVisionOps',
    'VisionOps',
]
