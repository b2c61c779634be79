"""Units of work run by the background queue.

``ActivityProcessor.process`` handles one submitted activity end to end in a
single transaction: metrics, track storage, stop detection, segment matching,
effort and personal-record bookkeeping, crown transitions and leaderboard
invalidation. Achievement events are published only after the commit.
``backfill_segment`` runs the matcher the other way round for a new segment.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import ELEVATION_NOISE_THRESHOLD_M, MATCHING_SEARCH_RADIUS_M
from .db.schema import Activity, Segment, Track
from .db.session import Database
from .errors import RETRYABLE_ERRORS, SegmentNotFoundError
from .events import AchievementEvent, EventPublisher, log_publisher, publish_safely
from .geometry.preprocessing import prepare_track
from .geometry.spatial_index import SegmentIndex, bbox_of, expand_bbox
from .geometry.validation import validate_track
from .matching import MatchResult, SegmentShape, Tolerances, match_track, match_track_to_segment
from .matching.timing import detect_stops
from .metrics import score_track
from .models import (
    ActivitySubmission,
    BackfillResult,
    Gender,
    ProcessingResult,
    ProcessingStatus,
    RecordedEffort,
)
from .services.achievements import AchievementEngine
from .services.leaderboard import LeaderboardCache
from .services.ledger import record_effort
from .services.profiles import get_gender
from .services.track_store import (
    find_tracks_intersecting,
    save_stopped_segments,
    save_track,
    track_points,
)
from .utils import as_utc, utcnow


class ActivityProcessor:
    def __init__(
        self,
        database: Database,
        index: SegmentIndex,
        *,
        achievements: Optional[AchievementEngine] = None,
        leaderboards: Optional[LeaderboardCache] = None,
        publisher: EventPublisher = log_publisher,
        tolerances: Optional[Tolerances] = None,
        clock: Callable[[], datetime] = utcnow,
        elevation_noise_threshold_m: float = ELEVATION_NOISE_THRESHOLD_M,
    ) -> None:
        self.database = database
        self.index = index
        self.achievements = achievements or AchievementEngine(clock=clock)
        self.leaderboards = leaderboards or LeaderboardCache(clock=clock)
        self.publisher = publisher
        self.tolerances = tolerances or Tolerances()
        self.elevation_noise_threshold_m = elevation_noise_threshold_m
        self._clock = clock
        self._log = logging.getLogger(self.__class__.__name__)

    def process(self, submission: ActivitySubmission) -> ProcessingResult:
        """Process one activity; nothing is committed unless every step succeeds."""

        validate_track(submission.points)
        prepared = prepare_track(submission.points)
        result = ProcessingResult(activity_id=submission.activity_id)
        events: List[AchievementEvent] = []

        with self.database.session_scope() as session:
            activity = self._upsert_activity(session, submission, ProcessingStatus.PROCESSING)
            metrics = score_track(
                submission.points,
                elevation_noise_threshold_m=self.elevation_noise_threshold_m,
            )
            result.metrics = metrics
            save_track(session, submission.activity_id, submission.user_id, submission.points)
            save_stopped_segments(
                session,
                submission.activity_id,
                detect_stops(prepared, stopped_speed_mps=self.tolerances.stopped_speed_mps),
            )

            shapes = self._candidate_shapes(session, submission, activity.activity_type)
            result.segments_checked = len(shapes)
            gender = get_gender(session, submission.user_id)
            for match in match_track(prepared, shapes, self.tolerances):
                recorded, new_events = self._record_match(
                    session, submission.activity_id, submission.user_id, match, gender
                )
                if recorded is not None:
                    result.efforts.append(recorded)
                    events.extend(new_events)

            activity.distance_m = metrics.distance_m
            activity.duration_s = metrics.duration_s
            activity.elevation_gain_m = metrics.elevation_gain_m
            activity.status = ProcessingStatus.PROCESSED.value
            activity.failure_reason = None
            activity.processed_at = self._clock()

        result.events = events
        publish_safely(self.publisher, events)
        self._log.info(
            "Processed activity %s: %d candidates, %d efforts, %d events",
            submission.activity_id,
            result.segments_checked,
            len(result.efforts),
            len(events),
        )
        return result

    def mark_processing(self, submission: ActivitySubmission) -> None:
        with self.database.session_scope() as session:
            self._upsert_activity(session, submission, ProcessingStatus.PROCESSING)

    def mark_failed(self, submission: ActivitySubmission, reason: str) -> None:
        with self.database.session_scope() as session:
            activity = self._upsert_activity(session, submission, ProcessingStatus.FAILED)
            activity.failure_reason = reason[:2000]
        self._log.warning("Activity %s failed: %s", submission.activity_id, reason)

    def backfill_segment(self, segment_id: str) -> BackfillResult:
        """Match a newly created segment against every stored track near it.

        Each track is handled in its own transaction; already matched
        activities are skipped by the ledger, so reruns are safe.
        """

        with self.database.session_scope() as session:
            segment = session.get(Segment, segment_id)
            if segment is None or segment.deleted_at is not None:
                raise SegmentNotFoundError(f"Segment {segment_id} not found")
            shape = SegmentShape.from_row(segment)
            search_box = expand_bbox(
                (segment.min_lon, segment.min_lat, segment.max_lon, segment.max_lat),
                MATCHING_SEARCH_RADIUS_M,
            )
            tracks = find_tracks_intersecting(session, search_box, segment.activity_type)

        result = BackfillResult(segment_id=segment_id)
        for activity_id, user_id in tracks:
            result.activities_checked += 1
            try:
                created = self._backfill_one(shape, activity_id, user_id)
            except RETRYABLE_ERRORS:
                raise
            except Exception:  # noqa: BLE001
                self._log.exception(
                    "Backfill of segment %s failed for activity %s", segment_id, activity_id
                )
                result.failed_activities.append(activity_id)
                continue
            if created:
                result.efforts_created += 1
        self._log.info(
            "Backfilled segment %s: %d activities checked, %d efforts created",
            segment_id,
            result.activities_checked,
            result.efforts_created,
        )
        return result

    def _backfill_one(self, shape: SegmentShape, activity_id: str, user_id: str) -> bool:
        events: List[AchievementEvent] = []
        recorded: Optional[RecordedEffort] = None
        with self.database.session_scope() as session:
            track = session.get(Track, activity_id)
            if track is None:
                return False
            prepared = prepare_track(track_points(track))
            match = match_track_to_segment(prepared, shape, self.tolerances)
            if not match.matched:
                self._log.debug(
                    "Activity %s does not traverse segment %s: %s",
                    activity_id,
                    shape.segment_id,
                    match.rejection_reason,
                )
                return False
            gender = get_gender(session, user_id)
            recorded, events = self._record_match(session, activity_id, user_id, match, gender)
        publish_safely(self.publisher, events)
        return recorded is not None

    def _record_match(
        self,
        session: Session,
        activity_id: str,
        user_id: str,
        match: MatchResult,
        gender: Optional[Gender],
    ) -> Tuple[Optional[RecordedEffort], List[AchievementEvent]]:
        timing = match.timing
        if timing is None or match.start_fraction is None or match.end_fraction is None:
            return None, []
        recorded = record_effort(
            session,
            segment_id=match.segment_id,
            activity_id=activity_id,
            user_id=user_id,
            timing=timing,
            start_fraction=match.start_fraction,
            end_fraction=match.end_fraction,
        )
        if recorded is None:
            return None, []
        events = self.achievements.process_effort(session, recorded, gender)
        self.leaderboards.invalidate_for_effort(session, match.segment_id, recorded.started_at)
        return recorded, events

    def _candidate_shapes(
        self,
        session: Session,
        submission: ActivitySubmission,
        activity_type: Optional[str],
    ) -> List[SegmentShape]:
        bbox = bbox_of((p.lon, p.lat) for p in submission.points)
        candidate_ids = self.index.candidates(bbox)
        if not candidate_ids:
            return []
        rows = session.scalars(
            select(Segment)
            .where(Segment.id.in_(candidate_ids), Segment.deleted_at.is_(None))
            .order_by(Segment.id)
        )
        shapes = []
        for segment in rows:
            if activity_type and segment.activity_type and segment.activity_type != activity_type:
                continue
            shapes.append(SegmentShape.from_row(segment))
        return shapes

    def _upsert_activity(
        self,
        session: Session,
        submission: ActivitySubmission,
        status: ProcessingStatus,
    ) -> Activity:
        activity = session.get(Activity, submission.activity_id)
        if activity is None:
            activity = Activity(
                id=submission.activity_id,
                user_id=submission.user_id,
                submitted_at=as_utc(submission.submitted_at) or self._clock(),
            )
            session.add(activity)
        if submission.name is not None:
            activity.name = submission.name
        if submission.activity_type is not None:
            activity.activity_type = submission.activity_type
        activity.status = status.value
        session.flush()
        return activity


__all__ = ["ActivityProcessor"]
