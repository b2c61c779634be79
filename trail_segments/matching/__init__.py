"""Public entry points for the track-to-segment matching package."""

from __future__ import annotations

import logging
from threading import RLock
from typing import Hashable, Iterable, List, Optional, Tuple

from cachetools import LRUCache

from ..config import MATCHING_SEGMENT_CACHE_SIZE
from ..geometry.preprocessing import PreparedSegment, PreparedTrack, prepare_segment
from ..geometry.projection import Visit, coverage_ratio, covered_share, locate_visits
from .models import MatchResult, SegmentShape, SegmentTiming, Tolerances
from .timing import compute_timing, detect_stops, interpolate_time

_log = logging.getLogger(__name__)

_SEGMENT_CACHE: "LRUCache[Hashable, PreparedSegment]" = LRUCache(
    maxsize=max(1, MATCHING_SEGMENT_CACHE_SIZE)
)
_SEGMENT_CACHE_LOCK = RLock()


def prepared_segment_for(
    shape: SegmentShape,
    track: PreparedTrack,
    tolerances: Tolerances,
) -> PreparedSegment:
    """Return the segment projected into the track's CRS, cached per CRS."""

    key = (shape.segment_id, track.crs_code, tolerances.resample_interval_m)
    with _SEGMENT_CACHE_LOCK:
        cached = _SEGMENT_CACHE.get(key)
    if cached is not None:
        return cached
    prepared = prepare_segment(
        shape.segment_id,
        shape.points,
        track.transformer,
        track.crs_code,
        resample_interval_m=tolerances.resample_interval_m,
    )
    with _SEGMENT_CACHE_LOCK:
        _SEGMENT_CACHE[key] = prepared
    return prepared


def forget_segment(segment_id: str) -> None:
    """Drop every cached projection of ``segment_id``."""

    with _SEGMENT_CACHE_LOCK:
        for key in [k for k in _SEGMENT_CACHE.keys() if k[0] == segment_id]:
            _SEGMENT_CACHE.pop(key, None)


def clear_segment_cache() -> None:
    """Empty the prepared segment cache (primarily for testing)."""

    with _SEGMENT_CACHE_LOCK:
        _SEGMENT_CACHE.clear()


def match_track_to_segment(
    track: PreparedTrack,
    shape: SegmentShape,
    tolerances: Optional[Tolerances] = None,
) -> MatchResult:
    """Decide whether ``track`` traverses ``shape`` and time the fastest traversal.

    Every pass of the track near the segment start is paired with every later
    pass near the segment end. A pair qualifies when the track span between
    them follows the segment for at least ``min_overlap`` of its length; the
    qualifying pair with the shortest elapsed time wins.
    """

    tol = tolerances or Tolerances()
    segment = prepared_segment_for(shape, track, tol)
    diagnostics: dict = {"segment_length_m": segment.length_m}

    full_coverage = covered_share(
        track.linestring, segment.resampled_points, tol.endpoint_tolerance_m
    )
    diagnostics["full_track_coverage"] = full_coverage
    if full_coverage < tol.min_overlap:
        return _rejected(shape, "insufficient_overlap", diagnostics, full_coverage)

    starts = locate_visits(
        track.metric_points, track.cumulative_m, segment.start, tol.endpoint_tolerance_m
    )
    ends = locate_visits(
        track.metric_points, track.cumulative_m, segment.end, tol.endpoint_tolerance_m
    )
    diagnostics["start_passes"] = len(starts)
    diagnostics["end_passes"] = len(ends)
    if not starts:
        return _rejected(shape, "start_not_reached", diagnostics, full_coverage)
    if not ends:
        return _rejected(shape, "end_not_reached", diagnostics, full_coverage)

    best: Optional[Tuple[Visit, Visit, SegmentTiming, float]] = None
    forward_pairs = 0
    covered_pairs = 0
    best_ratio = 0.0
    for start in starts:
        for end in ends:
            if start.fraction >= end.fraction:
                continue
            forward_pairs += 1
            ratio = coverage_ratio(
                track.linestring,
                start.distance_along_m,
                end.distance_along_m,
                segment.resampled_points,
                tol.endpoint_tolerance_m,
            )
            best_ratio = max(best_ratio, ratio)
            if ratio < tol.min_overlap:
                continue
            covered_pairs += 1
            timing = compute_timing(
                track,
                start.fraction,
                end.fraction,
                shape.distance_m,
                stopped_speed_mps=tol.stopped_speed_mps,
            )
            if timing is None:
                continue
            if best is None or timing.elapsed_time_s < best[2].elapsed_time_s:
                best = (start, end, timing, ratio)

    diagnostics["forward_pairs"] = forward_pairs
    diagnostics["covered_pairs"] = covered_pairs
    if best is None:
        if forward_pairs == 0:
            reason = "wrong_direction"
        elif covered_pairs == 0:
            reason = "insufficient_overlap"
        else:
            reason = "no_timing"
        return _rejected(shape, reason, diagnostics, best_ratio)

    start, end, timing, ratio = best
    return MatchResult(
        matched=True,
        segment_id=shape.segment_id,
        start_fraction=start.fraction,
        end_fraction=end.fraction,
        timing=timing,
        coverage_ratio=ratio,
        diagnostics=diagnostics,
    )


def match_track(
    track: PreparedTrack,
    shapes: Iterable[SegmentShape],
    tolerances: Optional[Tolerances] = None,
) -> List[MatchResult]:
    """Match ``track`` against each candidate and return only the matches."""

    matches: List[MatchResult] = []
    for shape in shapes:
        result = match_track_to_segment(track, shape, tolerances)
        if result.matched:
            _log.debug(
                "Segment %s matched: fractions %.4f-%.4f elapsed=%.1fs coverage=%.3f",
                shape.segment_id,
                result.start_fraction,
                result.end_fraction,
                result.elapsed_time_s,
                result.coverage_ratio,
            )
            matches.append(result)
        else:
            _log.debug(
                "Segment %s rejected: %s %s",
                shape.segment_id,
                result.rejection_reason,
                result.diagnostics,
            )
    return matches


def _rejected(
    shape: SegmentShape, reason: str, diagnostics: dict, coverage: Optional[float]
) -> MatchResult:
    return MatchResult(
        matched=False,
        segment_id=shape.segment_id,
        coverage_ratio=coverage,
        rejection_reason=reason,
        diagnostics=diagnostics,
    )


__all__ = [
    "MatchResult",
    "SegmentShape",
    "SegmentTiming",
    "Tolerances",
    "clear_segment_cache",
    "compute_timing",
    "detect_stops",
    "forget_segment",
    "interpolate_time",
    "match_track",
    "match_track_to_segment",
    "prepared_segment_for",
]
