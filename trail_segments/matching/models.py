"""Dataclasses describing matcher inputs and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..config import (
    MATCHING_ENDPOINT_TOLERANCE_M,
    MATCHING_MIN_OVERLAP,
    MATCHING_RESAMPLE_INTERVAL_M,
    STOPPED_SPEED_THRESHOLD_MPS,
)

LonLat = Tuple[float, float]


@dataclass(slots=True)
class SegmentShape:
    """Geometry of a stored segment, detached from the ORM session."""

    segment_id: str
    points: List[LonLat]
    distance_m: float
    activity_type: Optional[str] = None

    @classmethod
    def from_row(cls, segment: Any) -> "SegmentShape":
        return cls(
            segment_id=segment.id,
            points=[(float(p[0]), float(p[1])) for p in segment.points],
            distance_m=float(segment.distance_m),
            activity_type=segment.activity_type,
        )


@dataclass(slots=True)
class Tolerances:
    """Thresholds applied when deciding whether a track traverses a segment."""

    endpoint_tolerance_m: float = MATCHING_ENDPOINT_TOLERANCE_M
    min_overlap: float = MATCHING_MIN_OVERLAP
    resample_interval_m: float = MATCHING_RESAMPLE_INTERVAL_M
    stopped_speed_mps: float = STOPPED_SPEED_THRESHOLD_MPS


@dataclass(slots=True)
class SegmentTiming:
    """Timing of one traversal, interpolated at the entry and exit positions."""

    started_at: datetime
    elapsed_time_s: float
    moving_time_s: float
    average_speed_mps: Optional[float]
    max_speed_mps: Optional[float]
    start_time_s: float
    end_time_s: float


@dataclass(slots=True)
class MatchResult:
    """Outcome of matching one track against one segment."""

    matched: bool
    segment_id: str
    start_fraction: Optional[float] = None
    end_fraction: Optional[float] = None
    timing: Optional[SegmentTiming] = None
    coverage_ratio: Optional[float] = None
    rejection_reason: Optional[str] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_time_s(self) -> Optional[float]:
        return self.timing.elapsed_time_s if self.timing else None


__all__ = ["LonLat", "MatchResult", "SegmentShape", "SegmentTiming", "Tolerances"]
