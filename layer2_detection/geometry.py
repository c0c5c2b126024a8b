"""
Layer 2 — Contour Geometry
Containment, area and proportion checks for a candidate quadrilateral,
expressed in container coordinates.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from .config import DetectionConfig
from .vision import VisionOps

logger = logging.getLogger(__name__)


class RejectReason(str, Enum):
    """Why a frame or candidate was turned down (diagnostic only)."""
    BLURRY = "blurry"
    OUTSIDE_CONTAINER = "outside_container"
    AREA_OUT_OF_RANGE = "area_out_of_range"
    ASPECT_OUT_OF_RANGE = "aspect_out_of_range"


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle."""
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def scaled(self, scale_x: float, scale_y: float) -> "Rect":
        """Multiply by the native/container factors (container -> native pixels)."""
        return Rect(
            x=self.x * scale_x,
            y=self.y * scale_y,
            width=self.width * scale_x,
            height=self.height * scale_y,
        )

    def to_dict(self) -> Dict:
        return {
            'x': round(self.x, 2),
            'y': round(self.y, 2),
            'width': round(self.width, 2),
            'height': round(self.height, 2),
        }


@dataclass(frozen=True)
class GeometryReport:
    """Measured values for one quadrilateral, for the debug feed."""
    rect: Rect
    inside: bool
    area_ratio: float
    aspect_ratio: float
    reason: Optional[RejectReason]

    @property
    def accepted(self) -> bool:
        return self.reason is None

    def describe(self, index: int) -> str:
        line = (
            f"Contour {index}: 4 vertices, x={self.rect.x:.2f}, y={self.rect.y:.2f}, "
            f"w={self.rect.width:.2f}, h={self.rect.height:.2f}, "
            f"areaRatio={self.area_ratio:.2f}, aspectRatio={self.aspect_ratio:.2f}, "
            f"inside={self.inside}"
        )
        if self.reason is not None:
            line += f" -> rejected: {self.reason.value}"
        return line


class ContourGeometryValidator:
    """
    Decides whether a 4-vertex convex polygon frames the document well.

    Tests run in a fixed order (containment, area, aspect) and stop at the
    first failure; the order only affects which reason gets reported.
    """

    def __init__(self, config: DetectionConfig, vision: VisionOps):
        self.config = config
        self.vision = vision

    def to_container(self, polygon, scale_x: float, scale_y: float) -> Rect:
        """Bounding rect of the polygon, rescaled from native to container space."""
        x, y, w, h = self.vision.bounding_rect(polygon)
        return Rect(
            x=x / scale_x,
            y=y / scale_y,
            width=w / scale_x,
            height=h / scale_y,
        )

    def measure(self, rect: Rect) -> GeometryReport:
        cfg = self.config

        inside = (
            rect.x >= 0 and
            rect.y >= 0 and
            rect.x + rect.width <= cfg.container_width and
            rect.y + rect.height <= cfg.container_height
        )
        area_ratio = rect.area / cfg.container_area
        aspect_ratio = rect.width / rect.height if rect.height > 0 else 0.0

        if not inside:
            reason = RejectReason.OUTSIDE_CONTAINER
        elif not cfg.min_area_fraction <= area_ratio <= cfg.max_area_fraction:
            reason = RejectReason.AREA_OUT_OF_RANGE
        elif rect.height <= 0 or not cfg.min_aspect_ratio <= aspect_ratio <= cfg.max_aspect_ratio:
            reason = RejectReason.ASPECT_OUT_OF_RANGE
        else:
            reason = None

        return GeometryReport(
            rect=rect,
            inside=inside,
            area_ratio=area_ratio,
            aspect_ratio=aspect_ratio,
            reason=reason,
        )

    def describe(self, polygon, scale_x: float, scale_y: float) -> GeometryReport:
        """Full measurement of a polygon, including the rejection reason."""
        return self.measure(self.to_container(polygon, scale_x, scale_y))

    def validate(self, polygon, scale_x: float, scale_y: float) -> Union[Rect, RejectReason]:
        """
        Validate a quadrilateral against the container.

        Args:
            polygon: 4-vertex convex polygon in native pixels
            scale_x: native frame width / container width
            scale_y: native frame height / container height

        Returns:
            Rect in container space if accepted, otherwise the RejectReason
        """
        report = self.describe(polygon, scale_x, scale_y)
        return report.rect if report.accepted else report.reason
