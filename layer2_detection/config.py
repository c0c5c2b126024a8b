"""
Layer 2 — Detection Configuration
Immutable thresholds for the per-frame detection pipeline.
Set once when the pipeline is built, never mutated afterwards.
"""
import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Dict, Mapping, Optional

from error_handlers import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTOCAPTURE_"


@dataclass(frozen=True)
class DetectionConfig:
    """Tunable surface of the detection pipeline."""
    # Focus gate (Laplacian variance)
    min_focus_threshold: float = 120.0

    # Document size relative to the container
    min_area_fraction: float = 0.3
    max_area_fraction: float = 0.9

    # Document proportions (width / height)
    min_aspect_ratio: float = 1.0
    max_aspect_ratio: float = 4.0

    # Target region in container space
    container_width: float = 384.0
    container_height: float = 272.0

    # Stabilization
    position_threshold: float = 10.0
    size_threshold: float = 20.0
    stability_threshold: int = 5      # Consecutive similar frames to capture

    # Edge chain
    blur_kernel_size: int = 5
    blur_sigma: float = 0.0
    canny_low: float = 50.0
    canny_high: float = 150.0
    close_kernel_size: int = 3
    approx_epsilon_ratio: float = 0.02  # Polygon tolerance as a fraction of perimeter

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Check that the thresholds describe a satisfiable detection window.

        Raises:
            ConfigError: On the first inconsistent field
        """
        if self.container_width <= 0:
            raise ConfigError("container_width", "must be positive")
        if self.container_height <= 0:
            raise ConfigError("container_height", "must be positive")
        if self.min_focus_threshold < 0:
            raise ConfigError("min_focus_threshold", "must not be negative")
        if not 0 <= self.min_area_fraction <= self.max_area_fraction:
            raise ConfigError(
                "min_area_fraction",
                f"expected 0 <= {self.min_area_fraction} <= max_area_fraction ({self.max_area_fraction})"
            )
        if not 0 < self.min_aspect_ratio <= self.max_aspect_ratio:
            raise ConfigError(
                "min_aspect_ratio",
                f"expected 0 < {self.min_aspect_ratio} <= max_aspect_ratio ({self.max_aspect_ratio})"
            )
        if self.position_threshold <= 0:
            raise ConfigError("position_threshold", "must be positive")
        if self.size_threshold <= 0:
            raise ConfigError("size_threshold", "must be positive")
        if self.stability_threshold < 1:
            raise ConfigError("stability_threshold", "must be at least 1")
        if self.blur_kernel_size < 1 or self.blur_kernel_size % 2 == 0:
            raise ConfigError("blur_kernel_size", "must be a positive odd number")
        if self.close_kernel_size < 1:
            raise ConfigError("close_kernel_size", "must be positive")
        if self.canny_low > self.canny_high:
            raise ConfigError("canny_low", "must not exceed canny_high")
        if self.approx_epsilon_ratio <= 0:
            raise ConfigError("approx_epsilon_ratio", "must be positive")

    @property
    def container_area(self) -> float:
        return self.container_width * self.container_height

    def with_overrides(self, **overrides) -> "DetectionConfig":
        """Return a copy with some fields replaced."""
        return replace(self, **overrides)

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DetectionConfig":
        """
        Build a config from environment variables.

        AUTOCAPTURE_PRESET selects the base tuning ("loose" or "strict"),
        then every field can be overridden with AUTOCAPTURE_<FIELD_NAME>,
        e.g. AUTOCAPTURE_MIN_FOCUS_THRESHOLD=180.

        Raises:
            ConfigError: On unknown preset or unparsable value
        """
        env = os.environ if environ is None else environ
        preset_name = env.get(ENV_PREFIX + "PRESET", "loose").strip().lower()
        if preset_name not in PRESETS:
            raise ConfigError("preset", f"unknown preset '{preset_name}', expected one of {sorted(PRESETS)}")
        base = PRESETS[preset_name]

        overrides = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            caster = int if isinstance(getattr(base, f.name), int) else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError:
                raise ConfigError(f.name, f"cannot parse '{raw}' as {caster.__name__}")

        if overrides:
            logger.info(f"Detection config overrides from environment: {overrides}")
        return base.with_overrides(**overrides) if overrides else base


# Two field tunings observed in deployment
LOOSE = DetectionConfig()
STRICT = DetectionConfig(
    min_focus_threshold=180.0,
    min_area_fraction=0.6,
    max_area_fraction=0.9,
    min_aspect_ratio=1.4,
    max_aspect_ratio=1.7,
)

PRESETS = {
    "loose": LOOSE,
    "strict": STRICT,
}
