"""Point-to-polyline projection helpers used by the segment matcher."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import LineString
from shapely.ops import substring

from .preprocessing import LonLat, MetricArray


@dataclass(slots=True)
class Visit:
    """One pass of a track near a reference point.

    ``fraction`` is the closest-approach position along the track in [0, 1].
    """

    fraction: float
    distance_along_m: float
    offset_m: float
    edge_index: int


def project_onto_edges(
    polyline: MetricArray, point: Sequence[float]
) -> Tuple[MetricArray, MetricArray]:
    """Project ``point`` onto every edge of ``polyline``.

    Returns per-edge clamped parameters ``t`` in [0, 1] and the distance from
    the point to each edge.
    """

    starts = polyline[:-1]
    vectors = np.diff(polyline, axis=0)
    lengths_sq = np.einsum("ij,ij->i", vectors, vectors)
    target = np.asarray(point, dtype=float)
    rel = target - starts
    with np.errstate(divide="ignore", invalid="ignore"):
        t = np.where(lengths_sq > 0, np.einsum("ij,ij->i", rel, vectors) / lengths_sq, 0.0)
    t = np.clip(t, 0.0, 1.0)
    closest = starts + vectors * t[:, None]
    offsets = np.linalg.norm(closest - target, axis=1)
    return t, offsets


def locate_visits(
    polyline: MetricArray,
    cumulative: MetricArray,
    point: Sequence[float],
    tolerance_m: float,
) -> List[Visit]:
    """Return every distinct pass of ``polyline`` within ``tolerance_m`` of ``point``.

    Consecutive edges inside the tolerance belong to the same pass; each pass
    is reported at its closest approach.
    """

    if len(polyline) < 2:
        return []
    total = float(cumulative[-1])
    if total <= 0:
        return []
    t, offsets = project_onto_edges(polyline, point)
    within = offsets <= tolerance_m
    if not np.any(within):
        return []

    edge_lengths = np.diff(cumulative)
    visits: List[Visit] = []
    for start, stop in _contiguous_runs(within):
        run = np.arange(start, stop)
        best = int(run[np.argmin(offsets[start:stop])])
        along = float(cumulative[best] + t[best] * edge_lengths[best])
        visits.append(
            Visit(
                fraction=min(max(along / total, 0.0), 1.0),
                distance_along_m=along,
                offset_m=float(offsets[best]),
                edge_index=best,
            )
        )
    return visits


def coverage_ratio(
    track_line: LineString,
    start_m: float,
    end_m: float,
    reference_points: MetricArray,
    tolerance_m: float,
) -> float:
    """Share of the reference polyline's length lying within ``tolerance_m`` of a track span.

    The span runs from ``start_m`` to ``end_m`` metres along ``track_line``.
    """

    if len(reference_points) < 2 or end_m <= start_m:
        return 0.0
    span = substring(track_line, start_m, end_m)
    return covered_share(span, reference_points, tolerance_m)


def covered_share(
    geometry: shapely.Geometry, reference_points: MetricArray, tolerance_m: float
) -> float:
    """Share of the reference polyline's length within ``tolerance_m`` of ``geometry``.

    An edge of the reference polyline counts as covered when both of its
    endpoints are inside the tolerance.
    """

    if len(reference_points) < 2:
        return 0.0
    distances = shapely.distance(geometry, shapely.points(reference_points))
    inside = np.asarray(distances <= tolerance_m, dtype=bool)
    edge_lengths = np.linalg.norm(np.diff(reference_points, axis=0), axis=1)
    total = float(edge_lengths.sum())
    if total <= 0:
        return 0.0
    covered = float(edge_lengths[inside[:-1] & inside[1:]].sum())
    return min(covered / total, 1.0)


def interpolate_at_distance(
    points: Sequence[LonLat],
    cumulative: MetricArray,
    distance_m: float,
    elevations: Optional[Sequence[Optional[float]]] = None,
) -> Tuple[float, float, Optional[float]]:
    """Return the lon/lat (and elevation when known) ``distance_m`` along a path."""

    total = float(cumulative[-1])
    target = min(max(distance_m, 0.0), total)
    idx = int(np.searchsorted(cumulative, target, side="right")) - 1
    idx = max(0, min(idx, len(points) - 2))
    span = float(cumulative[idx + 1] - cumulative[idx])
    ratio = 0.0 if span <= 0 else (target - float(cumulative[idx])) / span
    ratio = min(max(ratio, 0.0), 1.0)
    lon = points[idx][0] + ratio * (points[idx + 1][0] - points[idx][0])
    lat = points[idx][1] + ratio * (points[idx + 1][1] - points[idx][1])
    elevation: Optional[float] = None
    if elevations is not None:
        low, high = elevations[idx], elevations[idx + 1]
        if low is not None and high is not None:
            elevation = low + ratio * (high - low)
        else:
            elevation = low if low is not None else high
    return float(lon), float(lat), elevation


def _contiguous_runs(mask: np.ndarray) -> List[Tuple[int, int]]:
    """Return ``(start, stop)`` index pairs for each run of True values."""

    padded = np.concatenate(([False], mask, [False])).astype(np.int8)
    changes = np.diff(padded)
    starts = np.flatnonzero(changes == 1)
    stops = np.flatnonzero(changes == -1)
    return list(zip(starts.tolist(), stops.tolist()))


__all__ = [
    "Visit",
    "coverage_ratio",
    "covered_share",
    "interpolate_at_distance",
    "locate_visits",
    "project_onto_edges",
]
