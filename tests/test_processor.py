"""End-to-end processing against a real SQLite database."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from conftest import T0, north_track, segment_points
from trail_segments.activity_queue import ActivityQueue
from trail_segments.db import Achievement, Activity, LeaderboardCacheEntry, Segment, SegmentEffort, Track
from trail_segments.errors import (
    SegmentNotFoundError,
    StorageUnavailableError,
    TrackValidationError,
)
from trail_segments.events import AchievementEventKind, CollectingPublisher
from trail_segments.geometry import SegmentIndex
from trail_segments.models import (
    ActivitySubmission,
    CrownType,
    LeaderboardQuery,
    ProcessingStatus,
    TrackPoint,
)
from trail_segments.processor import ActivityProcessor
from trail_segments.services.achievements import AchievementEngine
from trail_segments.services.leaderboard import LeaderboardCache
from trail_segments.services.profiles import upsert_profile
from trail_segments.services.segments import SegmentService


@pytest.fixture
def index():
    idx = SegmentIndex()
    yield idx
    idx.close()


@pytest.fixture
def publisher() -> CollectingPublisher:
    return CollectingPublisher()


@pytest.fixture
def processor(database, index, publisher, clock) -> ActivityProcessor:
    return ActivityProcessor(
        database,
        index,
        leaderboards=LeaderboardCache(clock=clock),
        publisher=publisher,
        clock=clock,
    )


def _create_segment(database, index, clock, **kwargs) -> str:
    service = SegmentService(index, clock=clock)
    with database.session_scope() as session:
        return service.create_segment(
            session, creator_id="creator", name="Meridian", points=segment_points(20), **kwargs
        ).id


def _effort_count(database) -> int:
    with database.session_scope() as session:
        return session.scalar(select(func.count(SegmentEffort.id)))


def test_process_records_effort_and_crown(database, index, processor, publisher, clock) -> None:
    segment_id = _create_segment(database, index, clock)

    result = processor.process(ActivitySubmission("act-1", "alice", north_track(), name="Morning"))

    assert result.segments_checked == 1
    assert len(result.efforts) == 1
    effort = result.efforts[0]
    assert effort.segment_id == segment_id
    assert effort.is_personal_record
    assert effort.elapsed_time_s == pytest.approx(80.0, abs=1.0)
    assert [(e.kind, e.user_id, e.crown_type) for e in publisher.events] == [
        (AchievementEventKind.EARNED, "alice", CrownType.COURSE_RECORD)
    ]

    with database.session_scope() as session:
        activity = session.get(Activity, "act-1")
        assert activity.status == ProcessingStatus.PROCESSED.value
        assert activity.name == "Morning"
        assert activity.distance_m == pytest.approx(result.metrics.distance_m)
        assert activity.duration_s == pytest.approx(120.0)
        assert activity.processed_at == clock.now


def test_reprocessing_does_not_duplicate_efforts(database, index, processor, publisher, clock) -> None:
    _create_segment(database, index, clock)
    submission = ActivitySubmission("act-1", "alice", north_track())

    processor.process(submission)
    publisher.clear()
    again = processor.process(submission)

    assert again.efforts == []
    assert publisher.events == []
    assert _effort_count(database) == 1


def test_activity_type_mismatch_skips_segment(database, index, processor, clock) -> None:
    _create_segment(database, index, clock, activity_type="ride")

    result = processor.process(
        ActivitySubmission("act-1", "alice", north_track(), activity_type="run")
    )

    assert result.segments_checked == 0
    assert _effort_count(database) == 0


def test_process_invalidates_cached_leaderboard(database, index, processor, clock) -> None:
    segment_id = _create_segment(database, index, clock)
    processor.process(ActivitySubmission("act-1", "alice", north_track(seconds_per_step=5.0)))
    with database.session_scope() as session:
        processor.leaderboards.get_leaderboard(session, LeaderboardQuery(segment_id=segment_id))

    processor.process(ActivitySubmission("act-2", "bob", north_track(seconds_per_step=3.0)))

    with database.session_scope() as session:
        assert session.scalar(select(func.count(LeaderboardCacheEntry.id))) == 0
        page = processor.leaderboards.get_leaderboard(
            session, LeaderboardQuery(segment_id=segment_id)
        )
    assert [e.user_id for e in page.entries] == ["bob", "alice"]


def test_backfill_matches_tracks_stored_before_segment(database, index, processor, publisher, clock) -> None:
    processor.process(ActivitySubmission("act-1", "alice", north_track()))
    processor.process(
        ActivitySubmission("act-far", "bob", north_track(lon=7.5))
    )
    assert _effort_count(database) == 0

    segment_id = _create_segment(database, index, clock)
    result = processor.backfill_segment(segment_id)

    assert result.activities_checked == 1
    assert result.efforts_created == 1
    assert result.failed_activities == []
    assert [e.user_id for e in publisher.events] == ["alice"]

    rerun = processor.backfill_segment(segment_id)
    assert rerun.efforts_created == 0
    assert _effort_count(database) == 1


def test_backfill_unknown_segment_raises(processor) -> None:
    with pytest.raises(SegmentNotFoundError):
        processor.backfill_segment("missing")


def test_invalid_track_is_rejected_before_storage(database, processor) -> None:
    with pytest.raises(TrackValidationError):
        processor.process(ActivitySubmission("act-1", "alice", [TrackPoint(7.0, 45.0)]))

    with database.session_scope() as session:
        assert session.get(Activity, "act-1") is None


def test_mark_failed_records_reason(database, processor) -> None:
    submission = ActivitySubmission("act-1", "alice", north_track())

    processor.mark_processing(submission)
    with database.session_scope() as session:
        assert session.get(Activity, "act-1").status == ProcessingStatus.PROCESSING.value

    processor.mark_failed(submission, "StorageUnavailableError: database is locked")
    with database.session_scope() as session:
        activity = session.get(Activity, "act-1")
        assert activity.status == ProcessingStatus.FAILED.value
        assert activity.failure_reason.startswith("StorageUnavailableError")


def test_parallel_processing_keeps_single_pr_and_single_holder(database, index, processor, clock) -> None:
    segment_id = _create_segment(database, index, clock)
    with database.session_scope() as session:
        upsert_profile(session, "user-0", gender="male")
        upsert_profile(session, "user-1", gender="female")
        upsert_profile(session, "user-2", gender="female")

    submissions = [
        ActivitySubmission(
            f"act-{idx}",
            f"user-{idx % 4}",
            north_track(seconds_per_step=6.0 - idx * 0.25, start_time=T0 + idx * 600),
        )
        for idx in range(16)
    ]
    with ActivityQueue(processor, max_workers=8, sleep=lambda _s: None) as activity_queue:
        futures = [activity_queue.submit(submission) for submission in submissions]
        outcomes = [future.result(timeout=60) for future in futures]

    assert all(outcome.ok for outcome in outcomes)
    with database.session_scope() as session:
        efforts = session.scalars(select(SegmentEffort)).all()
        assert len(efforts) == 16
        for user_id in {e.user_id for e in efforts}:
            mine = [e for e in efforts if e.user_id == user_id]
            records = [e for e in mine if e.is_personal_record]
            assert len(records) == 1
            assert records[0].elapsed_time_s == min(e.elapsed_time_s for e in mine)

        open_rows = session.scalars(
            select(Achievement).where(
                Achievement.segment_id == segment_id, Achievement.lost_at.is_(None)
            )
        ).all()
        holders = {row.crown_type: row.user_id for row in open_rows}
        assert len(open_rows) == len(holders) == 3
        # act-15 (user-3) is the fastest overall; user-2 has the fastest female effort.
        assert holders == {"course_record": "user-3", "kom": "user-0", "qom": "user-2"}
        assert session.get(Segment, segment_id).effort_count == 16


class _FailingAchievements(AchievementEngine):
    def process_effort(self, session, effort, gender):
        raise StorageUnavailableError("disk went away")


def test_failure_after_effort_insert_commits_nothing(database, index, publisher, clock) -> None:
    segment_id = _create_segment(database, index, clock)
    processor = ActivityProcessor(
        database, index, achievements=_FailingAchievements(), publisher=publisher, clock=clock
    )

    with pytest.raises(StorageUnavailableError):
        processor.process(ActivitySubmission("act-1", "alice", north_track()))

    assert _effort_count(database) == 0
    assert publisher.events == []
    with database.session_scope() as session:
        assert session.get(Activity, "act-1") is None
        assert session.get(Track, "act-1") is None
        assert session.get(Segment, segment_id).effort_count == 0
