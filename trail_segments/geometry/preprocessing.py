"""Preprocessing utilities for track and segment geometry."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from polyline import decode as polyline_decode
from pyproj import CRS, Transformer
from shapely.geometry import LineString

from ..config import MATCHING_MAX_RESAMPLED_POINTS, MATCHING_RESAMPLE_INTERVAL_M
from ..models import TrackPoint

MetricArray = NDArray[np.float64]
LonLat = Tuple[float, float]


@dataclass(slots=True)
class PreparedTrack:
    """Metric representation of an activity track.

    ``timestamps`` holds epoch seconds per point with ``NaN`` where the sample
    carried no time.
    """

    points: List[TrackPoint]
    metric_points: MetricArray
    cumulative_m: MetricArray
    total_length_m: float
    timestamps: MetricArray
    transformer: Transformer
    crs_code: int
    linestring: LineString

    @property
    def fractions(self) -> MetricArray:
        if self.total_length_m <= 0:
            return np.zeros_like(self.cumulative_m)
        return self.cumulative_m / self.total_length_m

    @property
    def has_timestamps(self) -> bool:
        return bool(np.isfinite(self.timestamps).sum() >= 2)


@dataclass(slots=True)
class PreparedSegment:
    """Metric representation of a segment in a track's CRS."""

    segment_id: str
    crs_code: int
    metric_points: MetricArray
    cumulative_m: MetricArray
    length_m: float
    resampled_points: MetricArray
    resample_interval_m: float
    resample_capped: bool

    @property
    def start(self) -> MetricArray:
        return self.metric_points[0]

    @property
    def end(self) -> MetricArray:
        return self.metric_points[-1]


def decode_polyline(encoded: str) -> List[LonLat]:
    """Decode an encoded polyline string into a list of (lon, lat) tuples."""

    if not encoded:
        return []
    try:
        decoded = polyline_decode(encoded)
    except (ValueError, TypeError, IndexError) as exc:
        raise ValueError("Unable to decode polyline") from exc
    return [(float(lon), float(lat)) for lat, lon in decoded]


def build_local_transformer(points: Sequence[LonLat]) -> Tuple[Transformer, int]:
    """Build a UTM transformer centred on the provided coordinates.

    Returns the transformer together with the EPSG code of the target CRS so
    callers can key caches on it.
    """

    if not points:
        raise ValueError("Cannot build a transformer for an empty point collection")
    lons = np.asarray([pt[0] for pt in points], dtype=float)
    lats = np.asarray([pt[1] for pt in points], dtype=float)
    mean_lat = float(np.mean(lats))
    mean_lon = float(np.mean(lons))
    zone = int((mean_lon + 180.0) // 6.0) + 1
    zone = max(1, min(zone, 60))
    epsg = 32600 + zone if mean_lat >= 0 else 32700 + zone
    try:
        target_crs = CRS.from_epsg(epsg)
    except Exception:
        epsg = 3857
        target_crs = CRS.from_epsg(epsg)
    transformer = Transformer.from_crs(CRS.from_epsg(4326), target_crs, always_xy=True)
    return transformer, epsg


def project_points(points: Sequence[LonLat], transformer: Transformer) -> MetricArray:
    """Project lon/lat pairs through an existing transformer."""

    if not points:
        return np.empty((0, 2), dtype=float)
    lons = np.asarray([pt[0] for pt in points], dtype=float)
    lats = np.asarray([pt[1] for pt in points], dtype=float)
    xs, ys = transformer.transform(lons, lats)
    return np.column_stack((xs, ys)).astype(float, copy=False)


def cumulative_distances(points: MetricArray) -> MetricArray:
    """Running distance along a metric polyline, starting at zero."""

    if len(points) == 0:
        return np.empty(0, dtype=float)
    steps = np.linalg.norm(np.diff(points, axis=0), axis=1)
    return np.concatenate(([0.0], np.cumsum(steps)))


def resample_by_distance(points: Iterable[Sequence[float]], spacing_m: float) -> MetricArray:
    """Evenly spaced samples every ``spacing_m`` metres; the last vertex is always kept."""

    if spacing_m <= 0:
        raise ValueError("spacing_m must be positive")
    coords = np.asarray(list(points), dtype=float)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise ValueError("Expected (x, y) coordinate pairs")
    if len(coords) < 2:
        return coords.copy()
    along = cumulative_distances(coords)
    length = float(along[-1])
    if length == 0:
        return coords[:1].copy()
    stations = np.arange(0.0, length, spacing_m)
    stations = np.append(stations, length)
    return np.column_stack(
        (np.interp(stations, along, coords[:, 0]), np.interp(stations, along, coords[:, 1]))
    )


def prepare_track(
    points: Sequence[TrackPoint],
    transformer: Optional[Transformer] = None,
    crs_code: Optional[int] = None,
) -> PreparedTrack:
    """Project a track into a local metric CRS and precompute distances."""

    if not points:
        raise ValueError("Track has no GPS points")
    lonlat = [(pt.lon, pt.lat) for pt in points]
    if transformer is None or crs_code is None:
        transformer, crs_code = build_local_transformer(lonlat)
    metric = project_points(lonlat, transformer)
    cumulative = cumulative_distances(metric)
    timestamps = np.asarray(
        [np.nan if pt.timestamp is None else float(pt.timestamp) for pt in points],
        dtype=float,
    )
    line = LineString(metric) if len(metric) >= 2 else LineString([metric[0], metric[0]])
    return PreparedTrack(
        points=list(points),
        metric_points=metric,
        cumulative_m=cumulative,
        total_length_m=float(cumulative[-1]),
        timestamps=timestamps,
        transformer=transformer,
        crs_code=int(crs_code),
        linestring=line,
    )


def prepare_segment(
    segment_id: str,
    points: Sequence[LonLat],
    transformer: Transformer,
    crs_code: int,
    *,
    resample_interval_m: float = MATCHING_RESAMPLE_INTERVAL_M,
    max_resampled_points: int = MATCHING_MAX_RESAMPLED_POINTS,
) -> PreparedSegment:
    """Project a segment into the CRS of the track it is being matched to."""

    if len(points) < 2:
        raise ValueError("Segment geometry needs at least two points")
    metric = project_points(points, transformer)
    cumulative = cumulative_distances(metric)
    resampled, interval, capped = _resample_with_budget(
        metric, resample_interval_m, max_resampled_points
    )
    return PreparedSegment(
        segment_id=segment_id,
        crs_code=int(crs_code),
        metric_points=metric,
        cumulative_m=cumulative,
        length_m=float(cumulative[-1]),
        resampled_points=resampled,
        resample_interval_m=interval,
        resample_capped=capped,
    )


def _resample_with_budget(
    points: MetricArray, spacing_m: float, max_points: int
) -> Tuple[MetricArray, float, bool]:
    """Resample at ``spacing_m``, widening the spacing when the result exceeds ``max_points``."""

    spacing = max(spacing_m, 0.001)
    samples = resample_by_distance(points, spacing)
    if len(samples) <= max_points:
        return samples, spacing, False

    spacing *= max(2.0, math.ceil(len(samples) / max_points))
    samples = resample_by_distance(points, spacing)
    if len(samples) > max_points:
        keep = np.linspace(0, len(samples) - 1, num=max(2, max_points), dtype=int)
        samples = samples[keep]
    return samples, spacing, True


__all__ = [
    "LonLat",
    "MetricArray",
    "PreparedSegment",
    "PreparedTrack",
    "build_local_transformer",
    "cumulative_distances",
    "decode_polyline",
    "prepare_segment",
    "prepare_track",
    "project_points",
    "resample_by_distance",
]
