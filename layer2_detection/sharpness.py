"""
Layer 2 — Sharpness
Focus score from the variance of the Laplacian.
"""
import logging
from typing import Optional

import numpy as np

from .vision import OpenCVVisionOps, VisionOps

logger = logging.getLogger(__name__)


class SharpnessEvaluator:
    """
    Laplacian-variance focus score.

    Higher values mean more high-frequency edge energy, i.e. a sharper
    frame. The score is a relative proxy; thresholds are tuned per
    deployment.
    """

    def __init__(self, vision: Optional[VisionOps] = None):
        self.vision = vision or OpenCVVisionOps()

    def evaluate(self, gray) -> float:
        """
        Calculate the population variance of the Laplacian response.

        Args:
            gray: Single-channel frame

        Returns:
            float: Focus score, 0.0 for an empty frame
        """
        response = self.vision.laplacian(gray)
        try:
            data = np.asarray(response, dtype=np.float64)
            if data.size == 0:
                return 0.0
            # ndarray.var() divides by N, not N - 1
            return float(data.var())
        finally:
            self.vision.release(response)
