"""
Layer 2 — Candidate Selection
Picks the single largest well-framed quadrilateral among a frame's contours.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .config import DetectionConfig
from .geometry import ContourGeometryValidator, GeometryReport, Rect
from .vision import VisionOps

logger = logging.getLogger(__name__)


@dataclass
class Selection:
    """Outcome of scanning all contours of one frame."""
    best: Optional[Rect] = None
    reports: List[GeometryReport] = field(default_factory=list)
    debug: List[str] = field(default_factory=list)

    @property
    def quads(self) -> int:
        """Number of contours that reached geometry validation."""
        return len(self.reports)

    @property
    def rejections(self) -> List[GeometryReport]:
        return [r for r in self.reports if not r.accepted]


class CandidateSelector:
    """
    Approximates every contour to a polygon and keeps the largest accepted
    rectangle. Polygons that are not convex quadrilaterals never reach the
    geometry validator.
    """

    def __init__(self, config: DetectionConfig, vision: VisionOps,
                 validator: Optional[ContourGeometryValidator] = None):
        self.config = config
        self.vision = vision
        self.validator = validator or ContourGeometryValidator(config, vision)

    def select(self, contours: Sequence, scale_x: float, scale_y: float) -> Selection:
        """
        Scan contours and report every quadrilateral measured.

        Args:
            contours: Contours in native pixel space
            scale_x: native / container width factor
            scale_y: native / container height factor

        Returns:
            Selection: best rect (or None) plus per-contour diagnostics
        """
        selection = Selection()
        max_area = 0.0

        for i, contour in enumerate(contours):
            perimeter = self.vision.arc_length(contour, True)
            approx = self.vision.approx_polygon(
                contour, self.config.approx_epsilon_ratio * perimeter, True
            )
            try:
                vertices = self.vision.vertex_count(approx)
                if vertices != 4 or not self.vision.is_convex(approx):
                    selection.debug.append(f"Contour {i}: {vertices} vertices, discarded")
                    continue

                report = self.validator.describe(approx, scale_x, scale_y)
                selection.reports.append(report)
                selection.debug.append(report.describe(i))

                # Strictly larger wins; ties keep the first seen
                if report.accepted and (selection.best is None or report.rect.area > max_area):
                    selection.best = report.rect
                    max_area = report.rect.area
            finally:
                self.vision.release(approx)

        if selection.best is not None:
            logger.debug(f"Best candidate: {selection.best} ({selection.quads} quads examined)")
        return selection

    def select_best(self, contours: Sequence, scale_x: float, scale_y: float) -> Optional[Rect]:
        """Largest accepted rect in container space, or None."""
        return self.select(contours, scale_x, scale_y).best
