"""Segment catalogue: creation, statistics, duplicate guard and soft delete."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..climb import ClimbCategorizer
from ..config import GRADE_MIN_STEP_M, SIMILAR_SEGMENT_RADIUS_M
from ..db.schema import Activity, Segment, Track
from ..errors import (
    ActivityNotFoundError,
    SegmentNotFoundError,
    SegmentValidationError,
    SimilarSegmentsExistError,
)
from ..geometry.preprocessing import decode_polyline, prepare_track
from ..geometry.projection import interpolate_at_distance
from ..geometry.spatial_index import SegmentIndex, bbox_of, expand_bbox
from ..geometry.validation import validate_segment_geometry
from ..matching import forget_segment
from ..models import TrackPoint
from ..utils import haversine_m, utcnow
from .leaderboard import LeaderboardCache
from .track_store import track_points


@dataclass(slots=True)
class SegmentStats:
    distance_m: float
    elevation_gain_m: Optional[float]
    elevation_loss_m: Optional[float]
    average_grade: Optional[float]
    max_grade: Optional[float]
    climb_category: Optional[int]


@dataclass(slots=True)
class SegmentPreview:
    point_count: int
    stats: Optional[SegmentStats]
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def elevation_change(points: Sequence[TrackPoint]) -> tuple[Optional[float], Optional[float]]:
    """Total climbing and descending between consecutive elevation samples."""

    gain = loss = 0.0
    seen = False
    for prev, curr in zip(points, points[1:]):
        if prev.elevation is None or curr.elevation is None:
            continue
        seen = True
        diff = curr.elevation - prev.elevation
        if diff > 0:
            gain += diff
        else:
            loss -= diff
    if not seen:
        return None, None
    return gain, loss


def grades(
    points: Sequence[TrackPoint], min_step_m: float = GRADE_MIN_STEP_M
) -> tuple[Optional[float], Optional[float]]:
    """Average and steepest grade in percent.

    The average is net vertical over horizontal distance. The maximum keeps
    the sign of the steepest step, so a descent reports a negative grade.
    Steps shorter than ``min_step_m`` are ignored.
    """

    total_h = total_v = 0.0
    steepest = 0.0
    seen = False
    for prev, curr in zip(points, points[1:]):
        if prev.elevation is None or curr.elevation is None:
            continue
        horizontal = haversine_m(prev.lat, prev.lon, curr.lat, curr.lon)
        if horizontal <= min_step_m:
            continue
        seen = True
        vertical = curr.elevation - prev.elevation
        grade = vertical / horizontal * 100.0
        total_h += horizontal
        total_v += vertical
        if abs(grade) > abs(steepest):
            steepest = grade
    if not seen or total_h <= 0:
        return None, None
    return total_v / total_h * 100.0, steepest


def compute_segment_stats(
    points: Sequence[TrackPoint],
    distance_m: float,
    categorizer: Optional[ClimbCategorizer] = None,
) -> SegmentStats:
    gain, loss = elevation_change(points)
    average, steepest = grades(points)
    category = (categorizer or ClimbCategorizer.from_config()).categorize(
        gain, distance_m, average
    )
    return SegmentStats(
        distance_m=distance_m,
        elevation_gain_m=gain,
        elevation_loss_m=loss,
        average_grade=average,
        max_grade=steepest,
        climb_category=category,
    )


class SegmentService:
    """Creates and retires segments, keeping the spatial index in step."""

    def __init__(
        self,
        index: SegmentIndex,
        *,
        leaderboards: Optional[LeaderboardCache] = None,
        categorizer: Optional[ClimbCategorizer] = None,
        similar_radius_m: float = SIMILAR_SEGMENT_RADIUS_M,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.index = index
        self.leaderboards = leaderboards or LeaderboardCache(clock=clock)
        self.categorizer = categorizer or ClimbCategorizer.from_config()
        self.similar_radius_m = similar_radius_m
        self._clock = clock
        self._log = logging.getLogger(self.__class__.__name__)

    def preview(self, points: Union[Sequence[TrackPoint], str]) -> SegmentPreview:
        """Validate and measure a proposed segment without storing it."""

        resolved = self._resolve_points(points)
        try:
            distance = validate_segment_geometry(resolved)
        except SegmentValidationError as exc:
            return SegmentPreview(point_count=len(resolved), stats=None, errors=[str(exc)])
        stats = compute_segment_stats(resolved, distance, self.categorizer)
        return SegmentPreview(point_count=len(resolved), stats=stats)

    def create_segment(
        self,
        session: Session,
        *,
        creator_id: str,
        name: str,
        points: Union[Sequence[TrackPoint], str],
        activity_type: Optional[str] = None,
        description: Optional[str] = None,
        visibility: str = "public",
        source_activity_id: Optional[str] = None,
    ) -> Segment:
        """Store a new segment from explicit points or an encoded polyline.

        Raises:
            SegmentValidationError: bad geometry or metadata.
            SimilarSegmentsExistError: a live segment of the same activity type
                already starts and ends at the same places.
        """

        if not name or not name.strip():
            raise SegmentValidationError("Segment name is required")
        resolved = self._resolve_points(points)
        distance = validate_segment_geometry(resolved)
        start, end = resolved[0], resolved[-1]

        similar = self.find_similar(session, start, end, activity_type)
        if similar:
            raise SimilarSegmentsExistError(similar)

        stats = compute_segment_stats(resolved, distance, self.categorizer)
        min_lon, min_lat, max_lon, max_lat = bbox_of((p.lon, p.lat) for p in resolved)
        segment = Segment(
            creator_id=creator_id,
            name=name.strip(),
            description=description,
            activity_type=activity_type,
            points=[[p.lon, p.lat, p.elevation] for p in resolved],
            start_lon=start.lon,
            start_lat=start.lat,
            end_lon=end.lon,
            end_lat=end.lat,
            min_lon=min_lon,
            min_lat=min_lat,
            max_lon=max_lon,
            max_lat=max_lat,
            distance_m=stats.distance_m,
            elevation_gain_m=stats.elevation_gain_m,
            elevation_loss_m=stats.elevation_loss_m,
            average_grade=stats.average_grade,
            max_grade=stats.max_grade,
            climb_category=stats.climb_category,
            visibility=visibility,
            effort_count=0,
            source_activity_id=source_activity_id,
            created_at=self._clock(),
        )
        session.add(segment)
        session.flush()
        self.index.add(segment.id, (min_lon, min_lat, max_lon, max_lat), activity_type)
        self._log.info(
            "Created segment %s (%s): %.0fm, category=%s",
            segment.id,
            segment.name,
            distance,
            stats.climb_category,
        )
        return segment

    def create_segment_from_activity(
        self,
        session: Session,
        *,
        creator_id: str,
        activity_id: str,
        start_fraction: float,
        end_fraction: float,
        name: str,
        description: Optional[str] = None,
        visibility: str = "public",
    ) -> Segment:
        """Cut a segment out of a stored track between two fractional positions."""

        if not 0.0 <= start_fraction < end_fraction <= 1.0:
            raise SegmentValidationError("Fractions must satisfy 0 <= start < end <= 1")
        track = session.get(Track, activity_id)
        if track is None:
            raise ActivityNotFoundError(f"No stored track for activity {activity_id}")
        activity = session.get(Activity, activity_id)
        activity_type = activity.activity_type if activity is not None else None

        sliced = slice_track(track_points(track), start_fraction, end_fraction)
        return self.create_segment(
            session,
            creator_id=creator_id,
            name=name,
            points=sliced,
            activity_type=activity_type,
            description=description,
            visibility=visibility,
            source_activity_id=activity_id,
        )

    def find_similar(
        self,
        session: Session,
        start: TrackPoint,
        end: TrackPoint,
        activity_type: Optional[str],
    ) -> List[Segment]:
        """Live segments of the same type with both endpoints within the radius."""

        min_lon, min_lat, max_lon, max_lat = expand_bbox(
            (start.lon, start.lat, start.lon, start.lat), self.similar_radius_m
        )
        stmt = select(Segment).where(
            Segment.deleted_at.is_(None),
            Segment.start_lon.between(min_lon, max_lon),
            Segment.start_lat.between(min_lat, max_lat),
        )
        if activity_type is None:
            stmt = stmt.where(Segment.activity_type.is_(None))
        else:
            stmt = stmt.where(Segment.activity_type == activity_type)
        similar = []
        for candidate in session.scalars(stmt):
            start_gap = haversine_m(start.lat, start.lon, candidate.start_lat, candidate.start_lon)
            end_gap = haversine_m(end.lat, end.lon, candidate.end_lat, candidate.end_lon)
            if start_gap <= self.similar_radius_m and end_gap <= self.similar_radius_m:
                similar.append(candidate)
        return similar

    def get_segment(self, session: Session, segment_id: str) -> Segment:
        segment = session.get(Segment, segment_id)
        if segment is None or segment.deleted_at is not None:
            raise SegmentNotFoundError(f"Segment {segment_id} not found")
        return segment

    def delete_segment(self, session: Session, segment_id: str) -> Segment:
        """Soft-delete a segment; its efforts stay but it stops matching."""

        segment = self.get_segment(session, segment_id)
        segment.deleted_at = self._clock()
        session.flush()
        self.index.remove(segment_id)
        forget_segment(segment_id)
        self.leaderboards.invalidate_segment(session, segment_id)
        self._log.info("Deleted segment %s", segment_id)
        return segment

    @staticmethod
    def _resolve_points(points: Union[Sequence[TrackPoint], str]) -> List[TrackPoint]:
        if isinstance(points, str):
            try:
                decoded = decode_polyline(points)
            except ValueError as exc:
                raise SegmentValidationError(str(exc)) from exc
            return [TrackPoint(lon, lat) for lon, lat in decoded]
        return list(points)


def slice_track(
    points: Sequence[TrackPoint], start_fraction: float, end_fraction: float
) -> List[TrackPoint]:
    """Points of ``points`` between two fractional positions, endpoints interpolated."""

    prepared = prepare_track(points)
    cumulative = prepared.cumulative_m
    total = prepared.total_length_m
    if total <= 0:
        raise SegmentValidationError("Source track has zero length")
    start_m = start_fraction * total
    end_m = end_fraction * total
    lonlat = [(p.lon, p.lat) for p in points]
    elevations = [p.elevation for p in points]

    lon, lat, ele = interpolate_at_distance(lonlat, cumulative, start_m, elevations)
    sliced = [TrackPoint(lon, lat, ele)]
    for point, along in zip(points, cumulative):
        if start_m < along < end_m:
            sliced.append(TrackPoint(point.lon, point.lat, point.elevation))
    lon, lat, ele = interpolate_at_distance(lonlat, cumulative, end_m, elevations)
    sliced.append(TrackPoint(lon, lat, ele))
    return sliced


__all__ = [
    "SegmentPreview",
    "SegmentService",
    "SegmentStats",
    "compute_segment_stats",
    "elevation_change",
    "grades",
    "slice_track",
]
