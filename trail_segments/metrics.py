"""Whole-activity metrics computed in a single pass over the track."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Union

from .config import ELEVATION_NOISE_THRESHOLD_M
from .models import ActivityMetrics, TrackPoint
from .utils import haversine_m


class MetricKind(str, Enum):
    DISTANCE = "distance"
    DURATION = "duration"
    ELEVATION_GAIN = "elevation_gain"


class DistanceMetric:
    """Sum of great-circle distances between consecutive points (metres)."""

    kind = MetricKind.DISTANCE

    def __init__(self) -> None:
        self._previous: Optional[TrackPoint] = None
        self._total = 0.0

    def next_point(self, point: TrackPoint) -> None:
        if self._previous is not None:
            self._total += haversine_m(
                self._previous.lat, self._previous.lon, point.lat, point.lon
            )
        self._previous = point

    def finish(self) -> float:
        return self._total


class DurationMetric:
    """Seconds between the first and last timestamped points."""

    kind = MetricKind.DURATION

    def __init__(self) -> None:
        self._first: Optional[float] = None
        self._last: Optional[float] = None

    def next_point(self, point: TrackPoint) -> None:
        if point.timestamp is None:
            return
        if self._first is None:
            self._first = point.timestamp
        self._last = point.timestamp

    def finish(self) -> float:
        if self._first is None or self._last is None:
            return 0.0
        return max(self._last - self._first, 0.0)


class ElevationGainMetric:
    """Cumulative climbing with a noise threshold.

    Gains are measured against a reference elevation that only moves once the
    track has climbed or dropped more than ``noise_threshold_m`` from it. A
    threshold of zero reduces to the plain sum of positive deltas.
    """

    kind = MetricKind.ELEVATION_GAIN

    def __init__(self, noise_threshold_m: float = ELEVATION_NOISE_THRESHOLD_M) -> None:
        self._threshold = max(float(noise_threshold_m), 0.0)
        self._reference: Optional[float] = None
        self._total = 0.0

    def next_point(self, point: TrackPoint) -> None:
        elevation = point.elevation
        if elevation is None:
            return
        if self._reference is None:
            self._reference = elevation
            return
        if elevation - self._reference > self._threshold:
            self._total += elevation - self._reference
            self._reference = elevation
        elif self._reference - elevation > self._threshold:
            self._reference = elevation

    def finish(self) -> float:
        return self._total


MetricAccumulator = Union[DistanceMetric, DurationMetric, ElevationGainMetric]

ALL_METRICS = (MetricKind.DISTANCE, MetricKind.DURATION, MetricKind.ELEVATION_GAIN)


def build_accumulator(
    kind: MetricKind, *, elevation_noise_threshold_m: float = ELEVATION_NOISE_THRESHOLD_M
) -> MetricAccumulator:
    if kind is MetricKind.DISTANCE:
        return DistanceMetric()
    if kind is MetricKind.DURATION:
        return DurationMetric()
    if kind is MetricKind.ELEVATION_GAIN:
        return ElevationGainMetric(elevation_noise_threshold_m)
    raise ValueError(f"Unknown metric kind: {kind!r}")


def score_track(
    points: Iterable[TrackPoint],
    kinds: Sequence[MetricKind] = ALL_METRICS,
    *,
    elevation_noise_threshold_m: float = ELEVATION_NOISE_THRESHOLD_M,
) -> ActivityMetrics:
    """Run the requested accumulators over ``points`` in one pass."""

    accumulators: Dict[MetricKind, MetricAccumulator] = {
        kind: build_accumulator(
            MetricKind(kind), elevation_noise_threshold_m=elevation_noise_threshold_m
        )
        for kind in kinds
    }
    for point in points:
        for accumulator in accumulators.values():
            accumulator.next_point(point)

    results = {kind: acc.finish() for kind, acc in accumulators.items()}
    return ActivityMetrics(
        distance_m=results.get(MetricKind.DISTANCE, 0.0),
        duration_s=results.get(MetricKind.DURATION, 0.0),
        elevation_gain_m=results.get(MetricKind.ELEVATION_GAIN, 0.0),
    )


__all__ = [
    "ALL_METRICS",
    "DistanceMetric",
    "DurationMetric",
    "ElevationGainMetric",
    "MetricKind",
    "build_accumulator",
    "score_track",
]
