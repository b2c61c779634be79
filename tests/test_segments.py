"""Tests for the segment catalogue: stats, duplicates, slicing and soft delete."""

from __future__ import annotations

import polyline
import pytest

from conftest import BASE_LON, add_activity, lat_at, north_track, segment_points
from trail_segments.db import Segment
from trail_segments.errors import (
    ActivityNotFoundError,
    SegmentNotFoundError,
    SegmentValidationError,
    SimilarSegmentsExistError,
)
from trail_segments.geometry import SegmentIndex, bbox_of
from trail_segments.models import TrackPoint
from trail_segments.services.segments import (
    SegmentService,
    compute_segment_stats,
    elevation_change,
    grades,
    slice_track,
)
from trail_segments.services.track_store import save_track


@pytest.fixture
def index():
    idx = SegmentIndex()
    yield idx
    idx.close()


def _climb(steps: int = 20, rise_per_step: float = 1.0):
    return [
        TrackPoint(p.lon, p.lat, 100.0 + i * rise_per_step)
        for i, p in enumerate(segment_points(steps))
    ]


def test_elevation_change_and_grades() -> None:
    points = _climb()
    points[5] = TrackPoint(points[5].lon, points[5].lat, 101.0)  # dip

    gain, loss = elevation_change(points)
    average, steepest = grades(points)

    assert gain == pytest.approx(23.0)
    assert loss == pytest.approx(3.0)
    assert average == pytest.approx(20.0 / 222.39 * 100.0, rel=1e-3)
    assert steepest == pytest.approx(5.0 / 11.1195 * 100.0, rel=1e-3)
    assert elevation_change(segment_points(3)) == (None, None)
    assert grades(segment_points(3)) == (None, None)


def test_compute_segment_stats_assigns_category() -> None:
    points = [
        TrackPoint(BASE_LON, lat_at(k * 10), 100.0 + k * 20.0) for k in range(12)
    ]
    stats = compute_segment_stats(points, 1223.0)

    assert stats.elevation_gain_m == pytest.approx(220.0)
    assert stats.average_grade == pytest.approx(18.0, rel=0.01)
    # 220 m x 1.223 km x 2.8 ~ 753 points
    assert stats.climb_category == 0


def test_preview_reports_errors_without_storing(index) -> None:
    service = SegmentService(index)

    bad = service.preview(segment_points(4))
    good = service.preview(segment_points(20))

    assert not bad.is_valid
    assert "at least 10 points" in bad.errors[0]
    assert good.is_valid
    assert good.stats.distance_m == pytest.approx(222.4, rel=1e-3)
    assert len(index) == 0


def test_create_segment_stores_geometry_and_indexes_it(database, index) -> None:
    service = SegmentService(index)
    with database.session_scope() as session:
        segment = service.create_segment(
            session, creator_id="alice", name="  Meridian climb ", points=_climb()
        )
        segment_id = segment.id

    assert segment_id in index
    with database.session_scope() as session:
        stored = session.get(Segment, segment_id)
        assert stored.name == "Meridian climb"
        assert len(stored.points) == 21
        assert stored.start_lat == pytest.approx(lat_at(0))
        assert stored.end_lat == pytest.approx(lat_at(20))
        assert stored.elevation_gain_m == pytest.approx(20.0)
        assert stored.effort_count == 0
        assert stored.deleted_at is None


def test_create_segment_from_polyline(database, index) -> None:
    encoded = polyline.encode([(p.lat, p.lon) for p in segment_points(20)])
    service = SegmentService(index)
    with database.session_scope() as session:
        segment = service.create_segment(session, creator_id="alice", name="Encoded", points=encoded)
        assert segment.distance_m == pytest.approx(222.4, rel=1e-2)
        assert segment.elevation_gain_m is None
        assert segment.climb_category is None


def test_similar_segment_is_rejected_per_activity_type(database, index) -> None:
    service = SegmentService(index)
    with database.session_scope() as session:
        original = service.create_segment(
            session, creator_id="alice", name="Run", points=segment_points(20), activity_type="run"
        )
        original_id = original.id

    nudged = [TrackPoint(p.lon + 0.0001, p.lat) for p in segment_points(20)]
    with database.session_scope() as session:
        with pytest.raises(SimilarSegmentsExistError) as excinfo:
            service.create_segment(
                session, creator_id="bob", name="Copy", points=nudged, activity_type="run"
            )
        assert [s.id for s in excinfo.value.similar] == [original_id]

        ride = service.create_segment(
            session, creator_id="bob", name="Ride", points=nudged, activity_type="ride"
        )
        assert ride.id != original_id


def test_create_segment_validates_name_and_geometry(database, index) -> None:
    service = SegmentService(index)
    with database.session_scope() as session:
        with pytest.raises(SegmentValidationError):
            service.create_segment(session, creator_id="a", name=" ", points=segment_points(20))
        with pytest.raises(SegmentValidationError):
            service.create_segment(session, creator_id="a", name="Short", points=segment_points(5))
        with pytest.raises(SegmentValidationError):
            service.create_segment(session, creator_id="a", name="Junk", points="not a polyline!")


def test_slice_track_interpolates_endpoints() -> None:
    sliced = slice_track(north_track(0, 30), 0.15, 0.85)

    assert sliced[0].lat == pytest.approx(lat_at(4.5), abs=1e-7)
    assert sliced[-1].lat == pytest.approx(lat_at(25.5), abs=1e-7)
    assert len(sliced) == 2 + 21
    assert all(a.lat < b.lat for a, b in zip(sliced, sliced[1:]))


def test_create_segment_from_activity(database, index) -> None:
    service = SegmentService(index)
    with database.session_scope() as session:
        add_activity(session, "act-1", "alice", activity_type="run")
        save_track(session, "act-1", "alice", north_track(0, 30))
        segment = service.create_segment_from_activity(
            session,
            creator_id="alice",
            activity_id="act-1",
            start_fraction=0.15,
            end_fraction=0.85,
            name="From activity",
        )
        assert segment.activity_type == "run"
        assert segment.source_activity_id == "act-1"
        assert segment.distance_m == pytest.approx(0.7 * 333.6, rel=1e-2)

        with pytest.raises(ActivityNotFoundError):
            service.create_segment_from_activity(
                session,
                creator_id="alice",
                activity_id="missing",
                start_fraction=0.1,
                end_fraction=0.9,
                name="Nope",
            )
        with pytest.raises(SegmentValidationError):
            service.create_segment_from_activity(
                session,
                creator_id="alice",
                activity_id="act-1",
                start_fraction=0.6,
                end_fraction=0.4,
                name="Backwards",
            )


def test_delete_segment_soft_deletes_and_unindexes(database, index) -> None:
    service = SegmentService(index)
    with database.session_scope() as session:
        segment_id = service.create_segment(
            session, creator_id="alice", name="Temp", points=segment_points(20)
        ).id

    track_box = bbox_of([(BASE_LON, lat_at(5)), (BASE_LON, lat_at(6))])
    assert index.candidates(track_box) == [segment_id]

    with database.session_scope() as session:
        service.delete_segment(session, segment_id)

    assert index.candidates(track_box) == []
    with database.session_scope() as session:
        assert session.get(Segment, segment_id).deleted_at is not None
        with pytest.raises(SegmentNotFoundError):
            service.get_segment(session, segment_id)
        # The deleted segment no longer blocks a new one in the same place.
        service.create_segment(session, creator_id="bob", name="Again", points=segment_points(20))


def test_index_load_skips_deleted_segments(database, index) -> None:
    service = SegmentService(index)
    with database.session_scope() as session:
        keep = service.create_segment(session, creator_id="a", name="Keep", points=segment_points(20)).id
        moved = [TrackPoint(p.lon + 0.01, p.lat) for p in segment_points(20)]
        gone = service.create_segment(session, creator_id="a", name="Gone", points=moved).id
        service.delete_segment(session, gone)

    fresh = SegmentIndex()
    try:
        with database.session_scope() as session:
            assert fresh.load(session) == 1
        assert keep in fresh and gone not in fresh
    finally:
        fresh.close()
