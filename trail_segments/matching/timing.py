"""Utilities for timing a matched traversal and detecting stops."""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from ..config import STOP_MIN_DURATION_S, STOPPED_SPEED_THRESHOLD_MPS
from ..geometry.preprocessing import PreparedTrack
from ..models import StoppedInterval
from ..utils import epoch_to_datetime
from .models import SegmentTiming

MetricArray = NDArray[np.float64]


def timed_samples(track: PreparedTrack) -> Tuple[MetricArray, MetricArray, MetricArray]:
    """Return fractions, along-track distances and times of timestamped points."""

    mask = np.isfinite(track.timestamps)
    return track.fractions[mask], track.cumulative_m[mask], track.timestamps[mask]


def interpolate_time(
    fractions: MetricArray, times: MetricArray, fraction: float
) -> Optional[float]:
    """Linearly interpolate the timestamp at ``fraction`` along the track.

    Uses the last sample at or before ``fraction`` and the sample after it.
    Fractions before the first sample map to its time; fractions at or past
    the last sample map to the last time.
    """

    if fractions.size == 0:
        return None
    lower = int(np.searchsorted(fractions, fraction, side="right")) - 1
    lower = max(lower, 0)
    if lower >= fractions.size - 1:
        return float(times[-1])
    f1, f2 = float(fractions[lower]), float(fractions[lower + 1])
    t1, t2 = float(times[lower]), float(times[lower + 1])
    if abs(f2 - f1) < np.finfo(float).eps:
        return t1
    ratio = (fraction - f1) / (f2 - f1)
    ratio = min(max(ratio, 0.0), 1.0)
    return t1 + ratio * (t2 - t1)


def compute_timing(
    track: PreparedTrack,
    start_fraction: float,
    end_fraction: float,
    segment_distance_m: float,
    *,
    stopped_speed_mps: float = STOPPED_SPEED_THRESHOLD_MPS,
) -> Optional[SegmentTiming]:
    """Time the traversal between two fractional positions of ``track``.

    Returns None when the track carries no usable timestamps or the span has
    a non-positive elapsed time.
    """

    fractions, distances, times = timed_samples(track)
    if fractions.size == 0 or track.total_length_m <= 0:
        return None
    start_time = interpolate_time(fractions, times, start_fraction)
    end_time = interpolate_time(fractions, times, end_fraction)
    if start_time is None or end_time is None:
        return None
    elapsed = end_time - start_time
    if elapsed <= 0:
        return None

    moving_time, max_speed = _moving_time(
        fractions, distances, times, start_fraction, end_fraction, stopped_speed_mps
    )
    average_speed = float(segment_distance_m) / elapsed if segment_distance_m > 0 else None
    if max_speed is not None and average_speed is not None:
        max_speed = max(max_speed, average_speed)
    return SegmentTiming(
        started_at=epoch_to_datetime(start_time),
        elapsed_time_s=float(elapsed),
        moving_time_s=moving_time,
        average_speed_mps=average_speed,
        max_speed_mps=max_speed,
        start_time_s=float(start_time),
        end_time_s=float(end_time),
    )


def _moving_time(
    fractions: MetricArray,
    distances: MetricArray,
    times: MetricArray,
    start_fraction: float,
    end_fraction: float,
    stopped_speed_mps: float,
) -> Tuple[float, Optional[float]]:
    """Sum the parts of sample intervals inside the span that move at least ``stopped_speed_mps``.

    Also returns the fastest sampled speed among those intervals.
    """

    if fractions.size < 2:
        return 0.0, None
    lower, upper = fractions[:-1], fractions[1:]
    width = upper - lower
    overlap = np.minimum(upper, end_fraction) - np.maximum(lower, start_fraction)
    d = np.diff(distances)
    dt = np.diff(times)
    valid = (width > 0) & (overlap > 0) & (dt > 0)
    if not np.any(valid):
        return 0.0, None
    # Intervals cut by the entry or exit point count in proportion to the cut.
    share = np.minimum(overlap[valid] / width[valid], 1.0)
    speeds = d[valid] / dt[valid]
    moving = float((dt[valid] * share)[speeds >= stopped_speed_mps].sum())
    return moving, float(np.max(speeds))


def detect_stops(
    track: PreparedTrack,
    *,
    stopped_speed_mps: float = STOPPED_SPEED_THRESHOLD_MPS,
    min_duration_s: float = STOP_MIN_DURATION_S,
) -> List[StoppedInterval]:
    """Return stretches where the athlete moved slower than ``stopped_speed_mps``."""

    stops: List[StoppedInterval] = []
    if not track.has_timestamps:
        return stops
    _, distances, times = timed_samples(track)

    run_start: Optional[float] = None
    run_end: Optional[float] = None
    for idx in range(1, times.size):
        dt = float(times[idx] - times[idx - 1])
        if dt <= 0:
            continue
        speed = float(distances[idx] - distances[idx - 1]) / dt
        if speed < stopped_speed_mps:
            if run_start is None:
                run_start = float(times[idx - 1])
            run_end = float(times[idx])
            continue
        _close_run(stops, run_start, run_end, min_duration_s)
        run_start = run_end = None
    _close_run(stops, run_start, run_end, min_duration_s)
    return stops


def _close_run(
    stops: List[StoppedInterval],
    run_start: Optional[float],
    run_end: Optional[float],
    min_duration_s: float,
) -> None:
    if run_start is None or run_end is None:
        return
    duration = run_end - run_start
    if duration >= min_duration_s:
        stops.append(
            StoppedInterval(
                start_time=epoch_to_datetime(run_start),
                end_time=epoch_to_datetime(run_end),
                duration_s=duration,
            )
        )


__all__ = ["compute_timing", "detect_stops", "interpolate_time", "timed_samples"]
