"""Global pytest fixtures & helpers.

Adds project root to path and provides synthetic tracks, segment rows and a
throwaway SQLite database per test.
"""
from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from trail_segments.db import Activity, Database, Segment
from trail_segments.geometry.validation import path_length_m
from trail_segments.matching import SegmentShape, SegmentTiming, clear_segment_cache
from trail_segments.models import TrackPoint

# A quiet stretch of meridian; 1e-4 degrees of latitude is ~11.1 m.
BASE_LON = 7.0
BASE_LAT = 45.0
STEP_DEG = 1e-4
T0 = datetime(2024, 5, 14, 8, 0, tzinfo=timezone.utc).timestamp()


# --- Factory helpers -------------------------------------------------
def lat_at(k: float) -> float:
    return BASE_LAT + k * STEP_DEG


def timed_path(
    coords: Sequence[Tuple[float, float]],
    seconds_per_step: Sequence[float] | float = 4.0,
    *,
    start_time: Optional[float] = T0,
    elevations: Optional[Sequence[Optional[float]]] = None,
) -> List[TrackPoint]:
    """Turn (lon, lat) pairs into track points with cumulative timestamps."""

    points: List[TrackPoint] = []
    clock = start_time
    for idx, (lon, lat) in enumerate(coords):
        if idx and clock is not None:
            step = (
                seconds_per_step
                if isinstance(seconds_per_step, (int, float))
                else seconds_per_step[idx - 1]
            )
            clock += step
        elevation = elevations[idx] if elevations is not None else None
        points.append(TrackPoint(lon, lat, elevation, clock))
    return points


def north_coords(
    first: int, last: int, *, lon: float = BASE_LON
) -> List[Tuple[float, float]]:
    """Points on a meridian from step ``first`` to ``last`` inclusive (either direction)."""

    direction = 1 if last >= first else -1
    return [(lon, lat_at(k)) for k in range(first, last + direction, direction)]


def north_track(
    first: int = -5,
    last: int = 25,
    *,
    seconds_per_step: float = 4.0,
    lon: float = BASE_LON,
    start_time: Optional[float] = T0,
) -> List[TrackPoint]:
    return timed_path(
        north_coords(first, last, lon=lon),
        seconds_per_step,
        start_time=start_time,
    )


def segment_points(steps: int = 20) -> List[TrackPoint]:
    """Segment from step 0 to ``steps`` on the base meridian (no timestamps)."""

    return [TrackPoint(lon, lat) for lon, lat in north_coords(0, steps)]


def segment_shape(segment_id: str = "seg-1", steps: int = 20) -> SegmentShape:
    points = segment_points(steps)
    return SegmentShape(
        segment_id=segment_id,
        points=[(p.lon, p.lat) for p in points],
        distance_m=path_length_m(points),
    )


def make_timing(started_at: datetime, elapsed_s: float) -> SegmentTiming:
    start = started_at.timestamp()
    return SegmentTiming(
        started_at=started_at,
        elapsed_time_s=elapsed_s,
        moving_time_s=elapsed_s,
        average_speed_mps=222.0 / elapsed_s,
        max_speed_mps=None,
        start_time_s=start,
        end_time_s=start + elapsed_s,
    )


def add_activity(session, activity_id: str, user_id: str, activity_type: Optional[str] = None) -> Activity:
    activity = Activity(id=activity_id, user_id=user_id, activity_type=activity_type)
    session.add(activity)
    session.flush()
    return activity


def add_segment(session, segment_id: str = "seg-1", steps: int = 20, activity_type: Optional[str] = None) -> Segment:
    points = segment_points(steps)
    segment = Segment(
        id=segment_id,
        creator_id="creator",
        name=f"Segment {segment_id}",
        activity_type=activity_type,
        points=[[p.lon, p.lat, p.elevation] for p in points],
        start_lon=points[0].lon,
        start_lat=points[0].lat,
        end_lon=points[-1].lon,
        end_lat=points[-1].lat,
        min_lon=points[0].lon,
        min_lat=points[0].lat,
        max_lon=points[-1].lon,
        max_lat=points[-1].lat,
        distance_m=path_length_m(points),
        effort_count=0,
    )
    session.add(segment)
    session.flush()
    return segment


class FakeClock:
    """Mutable clock injected where services take a ``clock`` callable."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


# --- Fixtures --------------------------------------------------------
@pytest.fixture(autouse=True)
def _clear_prepared_segments() -> Iterator[None]:
    clear_segment_cache()
    yield
    clear_segment_cache()


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(f"sqlite:///{tmp_path / 'segments.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc))
