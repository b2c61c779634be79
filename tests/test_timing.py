"""Tests for traversal timing and stop detection."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import BASE_LON, T0, lat_at, north_coords, timed_path
from trail_segments.geometry.preprocessing import prepare_track
from trail_segments.matching.timing import compute_timing, detect_stops, interpolate_time
from trail_segments.utils import epoch_to_datetime


def test_interpolate_time_between_samples() -> None:
    fractions = np.array([0.0, 0.5, 1.0])
    times = np.array([100.0, 110.0, 130.0])

    assert interpolate_time(fractions, times, 0.25) == pytest.approx(105.0)
    assert interpolate_time(fractions, times, 0.75) == pytest.approx(120.0)
    assert interpolate_time(fractions, times, 1.0) == pytest.approx(130.0)


def test_interpolate_time_clamps_and_handles_empty() -> None:
    fractions = np.array([0.2, 0.8])
    times = np.array([10.0, 20.0])

    assert interpolate_time(fractions, times, 0.0) == pytest.approx(10.0)
    assert interpolate_time(fractions, times, 0.95) == pytest.approx(20.0)
    assert interpolate_time(np.array([]), np.array([]), 0.5) is None


def test_moving_time_excludes_slow_intervals() -> None:
    steps = [4.0] * 20
    steps[10] = 60.0  # ~11 m in a minute counts as stopped
    track = prepare_track(timed_path(north_coords(0, 20), steps))

    timing = compute_timing(track, 0.0, 1.0, 222.4)

    assert timing is not None
    assert timing.elapsed_time_s == pytest.approx(136.0)
    assert timing.moving_time_s == pytest.approx(76.0)
    assert timing.max_speed_mps == pytest.approx(11.12 / 4.0, rel=0.01)
    assert timing.average_speed_mps == pytest.approx(222.4 / 136.0)
    assert timing.started_at == epoch_to_datetime(T0)


def test_moving_time_counts_partial_intervals_with_sparse_samples() -> None:
    # One sample every 55.6 m / 20 s, so the span starts and ends mid-interval.
    coords = [(BASE_LON, lat_at(k)) for k in range(0, 21, 5)]
    track = prepare_track(timed_path(coords, 20.0))

    timing = compute_timing(track, 0.1, 0.9, 0.8 * 222.4)

    assert timing is not None
    assert timing.elapsed_time_s == pytest.approx(64.0)
    assert timing.moving_time_s == pytest.approx(timing.elapsed_time_s)
    assert timing.max_speed_mps >= timing.average_speed_mps


def test_compute_timing_requires_positive_elapsed() -> None:
    points = timed_path(north_coords(0, 20), 0.0)
    assert compute_timing(prepare_track(points), 0.0, 1.0, 222.4) is None


def test_detect_stops_reports_long_pauses_only() -> None:
    coords = north_coords(0, 5)
    coords += [(BASE_LON, lat_at(5))] * 10  # 50 s standing still
    coords += north_coords(6, 10)
    coords += [(BASE_LON, lat_at(10))] * 3  # 15 s, too short to count
    coords += north_coords(11, 15)
    track = prepare_track(timed_path(coords, 5.0))

    stops = detect_stops(track, stopped_speed_mps=1.0, min_duration_s=30.0)

    assert len(stops) == 1
    assert stops[0].duration_s == pytest.approx(50.0)
    assert stops[0].start_time == epoch_to_datetime(T0 + 25.0)


def test_detect_stops_without_timestamps() -> None:
    points = timed_path(north_coords(0, 10), start_time=None)
    assert detect_stops(prepare_track(points)) == []
