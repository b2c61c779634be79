"""Persistence of activity point sequences and their derived stop intervals."""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.schema import Activity, StoppedSegment, Track
from ..errors import ActivityNotFoundError, SpatialQueryError
from ..geometry.spatial_index import BBox, bbox_of
from ..models import StoppedInterval, TrackPoint

_log = logging.getLogger(__name__)


def save_track(
    session: Session, activity_id: str, user_id: str, points: Sequence[TrackPoint]
) -> Track:
    """Store the track for ``activity_id``, replacing any previous one wholesale."""

    min_lon, min_lat, max_lon, max_lat = bbox_of((p.lon, p.lat) for p in points)
    rows = [p.as_row() for p in points]
    track = session.get(Track, activity_id)
    if track is None:
        track = Track(activity_id=activity_id)
        session.add(track)
    else:
        _log.debug("Replacing stored track for activity %s", activity_id)
    track.user_id = user_id
    track.points = rows
    track.point_count = len(rows)
    track.min_lon, track.min_lat = min_lon, min_lat
    track.max_lon, track.max_lat = max_lon, max_lat
    session.flush()
    return track


def load_track(session: Session, activity_id: str) -> List[TrackPoint]:
    track = session.get(Track, activity_id)
    if track is None:
        raise ActivityNotFoundError(f"No stored track for activity {activity_id}")
    return track_points(track)


def track_points(track: Track) -> List[TrackPoint]:
    return [TrackPoint.from_row(row) for row in track.points]


def find_tracks_intersecting(
    session: Session, bbox: BBox, activity_type: str | None = None
) -> List[Tuple[str, str]]:
    """Return ``(activity_id, user_id)`` of stored tracks whose bounds meet ``bbox``."""

    min_lon, min_lat, max_lon, max_lat = bbox
    stmt = (
        select(Track.activity_id, Track.user_id)
        .where(
            Track.min_lon <= max_lon,
            Track.max_lon >= min_lon,
            Track.min_lat <= max_lat,
            Track.max_lat >= min_lat,
        )
        .order_by(Track.created_at, Track.activity_id)
    )
    if activity_type is not None:
        stmt = stmt.join(Activity, Activity.id == Track.activity_id).where(
            (Activity.activity_type == activity_type) | Activity.activity_type.is_(None)
        )
    try:
        return [(row.activity_id, row.user_id) for row in session.execute(stmt)]
    except SQLAlchemyError as exc:
        raise SpatialQueryError(f"Track bounding box query failed: {exc}") from exc


def save_stopped_segments(
    session: Session, activity_id: str, stops: Sequence[StoppedInterval]
) -> int:
    """Replace the stop intervals recorded for ``activity_id``."""

    session.execute(delete(StoppedSegment).where(StoppedSegment.activity_id == activity_id))
    for stop in stops:
        session.add(
            StoppedSegment(
                activity_id=activity_id,
                start_time=stop.start_time,
                end_time=stop.end_time,
                duration_s=stop.duration_s,
            )
        )
    session.flush()
    return len(stops)


def stopped_segments(session: Session, activity_id: str) -> List[StoppedInterval]:
    rows = session.scalars(
        select(StoppedSegment)
        .where(StoppedSegment.activity_id == activity_id)
        .order_by(StoppedSegment.start_time)
    )
    return [StoppedInterval(r.start_time, r.end_time, r.duration_s) for r in rows]


__all__ = [
    "find_tracks_intersecting",
    "load_track",
    "save_stopped_segments",
    "save_track",
    "stopped_segments",
    "track_points",
]
