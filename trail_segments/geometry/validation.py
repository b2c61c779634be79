"""Validation helpers for submitted tracks and new segment geometry."""

from __future__ import annotations

import math
from typing import Sequence

from ..config import SEGMENT_MAX_LENGTH_M, SEGMENT_MIN_LENGTH_M, SEGMENT_MIN_POINTS
from ..errors import DegenerateGeometryError, SegmentValidationError, TrackValidationError
from ..models import TrackPoint
from ..utils import haversine_m


def path_length_m(points: Sequence[TrackPoint]) -> float:
    """Great-circle length of an ordered point sequence."""

    total = 0.0
    for prev, curr in zip(points, points[1:]):
        total += haversine_m(prev.lat, prev.lon, curr.lat, curr.lon)
    return total


def validate_track(points: Sequence[TrackPoint]) -> float:
    """Reject point streams the matcher cannot process.

    Returns the track length in metres.

    Raises:
        DegenerateGeometryError: fewer than two points or zero length.
        TrackValidationError: non-finite or out-of-range coordinates, or
            timestamps that run backwards.
    """

    if points is None or len(points) < 2:
        raise DegenerateGeometryError("Track needs at least two points")
    last_time = None
    for index, point in enumerate(points):
        if not (math.isfinite(point.lon) and math.isfinite(point.lat)):
            raise TrackValidationError(f"Point {index} has non-finite coordinates")
        if not (-180.0 <= point.lon <= 180.0 and -90.0 <= point.lat <= 90.0):
            raise TrackValidationError(f"Point {index} is outside WGS84 bounds")
        if point.elevation is not None and not math.isfinite(point.elevation):
            raise TrackValidationError(f"Point {index} has a non-finite elevation")
        if point.timestamp is None:
            continue
        if not math.isfinite(point.timestamp):
            raise TrackValidationError(f"Point {index} has a non-finite timestamp")
        if last_time is not None and point.timestamp < last_time:
            raise TrackValidationError(f"Point {index} timestamp runs backwards")
        last_time = point.timestamp

    length = path_length_m(points)
    if length <= 0:
        raise DegenerateGeometryError("Track has zero length")
    return length


def validate_segment_geometry(
    points: Sequence[TrackPoint],
    *,
    min_points: int = SEGMENT_MIN_POINTS,
    min_length_m: float = SEGMENT_MIN_LENGTH_M,
    max_length_m: float = SEGMENT_MAX_LENGTH_M,
) -> float:
    """Check a proposed segment path and return its length in metres."""

    if len(points) < min_points:
        raise SegmentValidationError(
            f"Segment must have at least {min_points} points (got {len(points)})"
        )
    for index, point in enumerate(points):
        if not (math.isfinite(point.lon) and math.isfinite(point.lat)):
            raise SegmentValidationError(f"Point {index} has non-finite coordinates")
        if not (-180.0 <= point.lon <= 180.0 and -90.0 <= point.lat <= 90.0):
            raise SegmentValidationError(f"Point {index} is outside WGS84 bounds")
    length = path_length_m(points)
    if length < min_length_m:
        raise SegmentValidationError(
            f"Segment must be at least {min_length_m:.0f}m long (got {length:.1f}m)"
        )
    if length > max_length_m:
        raise SegmentValidationError(
            f"Segment must be at most {max_length_m / 1000:.0f}km long (got {length / 1000:.1f}km)"
        )
    return length


__all__ = ["path_length_m", "validate_segment_geometry", "validate_track"]
