"""Tests for validation, projection helpers and the segment spatial index."""

from __future__ import annotations

import math
import time

import numpy as np
import polyline
import pytest

from conftest import BASE_LAT, BASE_LON, lat_at, north_track, segment_points
from trail_segments.errors import (
    DegenerateGeometryError,
    SegmentValidationError,
    SpatialQueryError,
    SpatialQueryTimeoutError,
    TrackValidationError,
)
from trail_segments.geometry import (
    SegmentIndex,
    bbox_of,
    decode_polyline,
    expand_bbox,
    locate_visits,
    resample_by_distance,
    validate_segment_geometry,
    validate_track,
)
from trail_segments.geometry.projection import covered_share, interpolate_at_distance
from trail_segments.models import TrackPoint


def test_validate_track_returns_length() -> None:
    assert validate_track(north_track(0, 10)) == pytest.approx(111.2, rel=1e-3)


@pytest.mark.parametrize(
    "points",
    [
        [],
        [TrackPoint(BASE_LON, BASE_LAT)],
        [TrackPoint(BASE_LON, BASE_LAT), TrackPoint(BASE_LON, BASE_LAT)],
    ],
)
def test_validate_track_rejects_degenerate_geometry(points) -> None:
    with pytest.raises(DegenerateGeometryError):
        validate_track(points)


@pytest.mark.parametrize(
    "bad",
    [
        TrackPoint(math.nan, BASE_LAT),
        TrackPoint(BASE_LON, 95.0),
        TrackPoint(BASE_LON, BASE_LAT, math.inf),
        TrackPoint(BASE_LON, lat_at(1), None, 50.0),
    ],
)
def test_validate_track_rejects_bad_samples(bad: TrackPoint) -> None:
    points = [TrackPoint(BASE_LON, BASE_LAT, None, 100.0), bad]
    with pytest.raises(TrackValidationError):
        validate_track(points)


def test_validate_segment_geometry_limits() -> None:
    assert validate_segment_geometry(segment_points(20)) == pytest.approx(222.4, rel=1e-3)
    with pytest.raises(SegmentValidationError, match="at least 10 points"):
        validate_segment_geometry(segment_points(5))
    short = [TrackPoint(BASE_LON, BASE_LAT + i * 5e-5) for i in range(12)]
    with pytest.raises(SegmentValidationError, match="at least 100m"):
        validate_segment_geometry(short)


def test_decode_polyline_returns_lon_lat() -> None:
    encoded = polyline.encode([(BASE_LAT, BASE_LON), (lat_at(10), BASE_LON)])
    decoded = decode_polyline(encoded)
    assert decoded[0] == pytest.approx((BASE_LON, BASE_LAT))
    assert decoded[1] == pytest.approx((BASE_LON, lat_at(10)))
    assert decode_polyline("") == []


def test_resample_by_distance_includes_endpoint() -> None:
    resampled = resample_by_distance([(0.0, 0.0), (0.0, 12.0)], 5.0)
    assert resampled[:, 1].tolist() == pytest.approx([0.0, 5.0, 10.0, 12.0])
    with pytest.raises(ValueError):
        resample_by_distance([(0.0, 0.0), (0.0, 1.0)], 0.0)


def test_locate_visits_reports_each_pass() -> None:
    line = np.array([[0.0, 0.0], [0.0, 100.0], [10.0, 100.0], [10.0, 0.0]])
    cumulative = np.array([0.0, 100.0, 110.0, 210.0])

    visits = locate_visits(line, cumulative, (5.0, 50.0), 6.0)

    assert len(visits) == 2
    assert visits[0].distance_along_m == pytest.approx(50.0)
    assert visits[1].distance_along_m == pytest.approx(160.0)
    assert visits[0].offset_m == pytest.approx(5.0)
    assert locate_visits(line, cumulative, (100.0, 100.0), 6.0) == []


def test_covered_share_is_length_weighted() -> None:
    import shapely

    reference = np.array([[0.0, 0.0], [0.0, 50.0], [0.0, 100.0]])
    half = shapely.LineString([(1.0, 0.0), (1.0, 50.0)])

    assert covered_share(half, reference, 5.0) == pytest.approx(0.5)


def test_interpolate_at_distance_with_elevation() -> None:
    points = [(0.0, 0.0), (0.0, 1.0)]
    lon, lat, ele = interpolate_at_distance(points, np.array([0.0, 100.0]), 25.0, [10.0, 30.0])
    assert (lon, lat, ele) == pytest.approx((0.0, 0.25, 15.0))


def test_expand_bbox_grows_by_radius() -> None:
    bbox = bbox_of([(BASE_LON, BASE_LAT), (BASE_LON, lat_at(10))])
    min_lon, min_lat, max_lon, max_lat = expand_bbox(bbox, 111.32)
    assert BASE_LAT - min_lat == pytest.approx(0.001, rel=1e-6)
    assert BASE_LON - min_lon == pytest.approx(0.001 / math.cos(math.radians(BASE_LAT)), rel=1e-3)


def test_segment_index_candidates_respect_search_radius() -> None:
    index = SegmentIndex(search_radius_m=50.0)
    near = bbox_of([(BASE_LON, BASE_LAT), (BASE_LON, lat_at(20))])
    far = bbox_of([(BASE_LON + 0.01, BASE_LAT), (BASE_LON + 0.01, lat_at(20))])
    index.add("near", near)
    index.add("far", far)
    try:
        track_box = bbox_of([(BASE_LON + 0.0005, lat_at(5)), (BASE_LON + 0.0005, lat_at(6))])
        assert index.candidates(track_box) == ["near"]

        index.remove("near")
        assert index.candidates(track_box) == []
        assert len(index) == 1
    finally:
        index.close()


def test_segment_index_query_timeout() -> None:
    index = SegmentIndex(query_timeout_s=0.05)
    index._query = lambda bbox: time.sleep(0.5) or []  # type: ignore[method-assign]
    try:
        with pytest.raises(SpatialQueryTimeoutError):
            index.candidates((0.0, 0.0, 1.0, 1.0))
    finally:
        index.close()


def test_segment_index_timeout_ignores_time_spent_queued() -> None:
    index = SegmentIndex(query_timeout_s=0.2, max_workers=1)
    index.add("near", bbox_of([(BASE_LON, BASE_LAT), (BASE_LON, lat_at(20))]))
    try:
        busy = index._executor.submit(time.sleep, 0.5)
        track_box = bbox_of([(BASE_LON, lat_at(5)), (BASE_LON, lat_at(6))])
        assert index.candidates(track_box) == ["near"]
        assert busy.done()
    finally:
        index.close()


def test_segment_index_query_failure_is_wrapped() -> None:
    index = SegmentIndex()

    def _boom(bbox):
        raise RuntimeError("tree corrupted")

    index._query = _boom  # type: ignore[method-assign]
    try:
        with pytest.raises(SpatialQueryError, match="tree corrupted"):
            index.candidates((0.0, 0.0, 1.0, 1.0))
    finally:
        index.close()
