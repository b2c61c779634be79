"""Tests for whole-activity metric accumulators."""

from __future__ import annotations

import pytest

from conftest import BASE_LON, lat_at
from trail_segments.metrics import (
    ElevationGainMetric,
    MetricKind,
    build_accumulator,
    score_track,
)
from trail_segments.models import TrackPoint


def _points(elevations, timestamps=None):
    timestamps = timestamps or [None] * len(elevations)
    return [
        TrackPoint(BASE_LON, lat_at(i), ele, ts)
        for i, (ele, ts) in enumerate(zip(elevations, timestamps))
    ]


def test_score_track_runs_every_metric_in_one_pass() -> None:
    points = _points(
        [100.0, 101.0, 100.5, 102.0, 101.0, 104.0],
        [1000.0, 1010.0, None, 1030.0, 1040.0, 1050.0],
    )

    metrics = score_track(points)

    assert metrics.distance_m == pytest.approx(5 * 11.1195, rel=1e-3)
    assert metrics.duration_s == pytest.approx(50.0)
    assert metrics.elevation_gain_m == pytest.approx(5.5)


def test_score_track_with_subset_of_kinds() -> None:
    metrics = score_track(_points([100.0, 110.0]), kinds=[MetricKind.ELEVATION_GAIN])

    assert metrics.elevation_gain_m == pytest.approx(10.0)
    assert metrics.distance_m == 0.0
    assert metrics.duration_s == 0.0


def test_elevation_noise_threshold_uses_hysteresis() -> None:
    points = _points([100.0, 101.0, 100.5, 102.0, 101.0, 104.0])

    metrics = score_track(points, elevation_noise_threshold_m=1.0)

    assert metrics.elevation_gain_m == pytest.approx(4.0)


def test_elevation_gain_skips_points_without_elevation() -> None:
    accumulator = ElevationGainMetric()
    for point in _points([None, 50.0, None, 55.0, 53.0, 60.0]):
        accumulator.next_point(point)
    assert accumulator.finish() == pytest.approx(12.0)


def test_duration_without_timestamps_is_zero() -> None:
    assert score_track(_points([None, None, None])).duration_s == 0.0


def test_build_accumulator_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        build_accumulator("pace")  # type: ignore[arg-type]
