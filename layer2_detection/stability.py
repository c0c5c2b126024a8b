"""
Layer 2 — Stability Tracking
State machine deciding when successive detections are steady enough
to finalize the capture.

    SEARCHING --candidate--> STABILIZING(n) --n >= threshold--> CAPTURED

A missed frame zeroes the streak but keeps the last rectangle, so one
noisy frame does not erase history. CAPTURED is terminal until reset.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from .config import DetectionConfig
from .geometry import Rect

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    SEARCHING = "searching"
    STABILIZING = "stabilizing"
    CAPTURED = "captured"


@dataclass(frozen=True)
class StabilityState:
    """Session state owned by the pipeline, replaced once per tick."""
    phase: Phase = Phase.SEARCHING
    previous_rect: Optional[Rect] = None
    consecutive_stable_frames: int = 0

    @property
    def captured(self) -> bool:
        return self.phase is Phase.CAPTURED

    def to_dict(self) -> Dict:
        return {
            'phase': self.phase.value,
            'previous_rect': self.previous_rect.to_dict() if self.previous_rect else None,
            'consecutive_stable_frames': self.consecutive_stable_frames,
        }


INITIAL_STATE = StabilityState()


def are_rects_similar(rect1: Rect, rect2: Rect,
                      position_threshold: float = 10.0,
                      size_threshold: float = 20.0) -> bool:
    """Check if two rects are close in position and size (strict bounds)."""
    return (
        abs(rect1.x - rect2.x) < position_threshold and
        abs(rect1.y - rect2.y) < position_threshold and
        abs(rect1.width - rect2.width) < size_threshold and
        abs(rect1.height - rect2.height) < size_threshold
    )


class StabilityTracker:
    """Pure transition function over StabilityState."""

    def __init__(self, config: DetectionConfig):
        self.config = config

    def is_similar(self, rect1: Rect, rect2: Rect) -> bool:
        return are_rects_similar(
            rect1, rect2,
            position_threshold=self.config.position_threshold,
            size_threshold=self.config.size_threshold,
        )

    def transition(self, state: StabilityState,
                   candidate: Optional[Rect]) -> Tuple[StabilityState, bool]:
        """
        Advance the state machine by one tick.

        Args:
            state: Current state (not modified)
            candidate: Best accepted rect of this tick, or None

        Returns:
            Tuple of (next_state, captured_now); captured_now is True only
            on the tick that enters CAPTURED
        """
        if state.captured:
            return state, False

        if candidate is None:
            return StabilityState(
                phase=Phase.SEARCHING,
                previous_rect=state.previous_rect,
                consecutive_stable_frames=0,
            ), False

        if state.previous_rect is None:
            count = 1
        elif self.is_similar(state.previous_rect, candidate):
            count = state.consecutive_stable_frames + 1
        else:
            logger.debug(f"Candidate moved: {state.previous_rect} -> {candidate}")
            count = 1

        if count >= self.config.stability_threshold:
            logger.info(f"Detection stable for {count} frames")
            return StabilityState(
                phase=Phase.CAPTURED,
                previous_rect=candidate,
                consecutive_stable_frames=count,
            ), True

        return StabilityState(
            phase=Phase.STABILIZING,
            previous_rect=candidate,
            consecutive_stable_frames=count,
        ), False
