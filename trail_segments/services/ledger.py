"""Effort ledger: persists efforts and keeps personal-record flags consistent.

Every function here runs inside the caller's transaction so that an effort,
its personal-record transition and the effort counter commit together.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.schema import Segment, SegmentEffort
from ..matching.models import SegmentTiming
from ..models import RecordedEffort

_log = logging.getLogger(__name__)


def record_effort(
    session: Session,
    *,
    segment_id: str,
    activity_id: str,
    user_id: str,
    timing: SegmentTiming,
    start_fraction: float,
    end_fraction: float,
) -> Optional[RecordedEffort]:
    """Insert an effort and update the user's personal record on the segment.

    Returns None when the activity already has an effort on the segment.
    """

    if start_fraction >= end_fraction:
        raise ValueError("start_fraction must be less than end_fraction")
    existing = session.scalar(
        select(SegmentEffort.id).where(
            SegmentEffort.segment_id == segment_id,
            SegmentEffort.activity_id == activity_id,
        )
    )
    if existing is not None:
        _log.debug(
            "Effort for activity %s on segment %s already recorded (%s)",
            activity_id,
            segment_id,
            existing,
        )
        return None

    effort = SegmentEffort(
        segment_id=segment_id,
        activity_id=activity_id,
        user_id=user_id,
        started_at=timing.started_at,
        elapsed_time_s=timing.elapsed_time_s,
        moving_time_s=timing.moving_time_s,
        average_speed_mps=timing.average_speed_mps,
        max_speed_mps=timing.max_speed_mps,
        start_fraction=start_fraction,
        end_fraction=end_fraction,
        is_personal_record=False,
    )
    session.add(effort)
    session.flush()

    previous_record_id = _claim_personal_record_if_fastest(session, effort)
    session.execute(
        update(Segment)
        .where(Segment.id == segment_id)
        .values(effort_count=Segment.effort_count + 1)
    )
    _log.info(
        "Recorded effort %s on segment %s for user %s: %.1fs%s",
        effort.id,
        segment_id,
        user_id,
        effort.elapsed_time_s,
        " (PR)" if effort.is_personal_record else "",
    )
    return RecordedEffort(
        effort_id=effort.id,
        segment_id=segment_id,
        activity_id=activity_id,
        user_id=user_id,
        started_at=effort.started_at,
        elapsed_time_s=effort.elapsed_time_s,
        is_personal_record=effort.is_personal_record,
        previous_record_id=previous_record_id,
    )


def _claim_personal_record_if_fastest(
    session: Session, effort: SegmentEffort
) -> Optional[str]:
    """Move the PR flag to ``effort`` when it beats the user's best.

    Returns the id of the effort that previously held the flag.
    """

    best_other = session.scalars(
        select(SegmentEffort)
        .where(
            SegmentEffort.segment_id == effort.segment_id,
            SegmentEffort.user_id == effort.user_id,
            SegmentEffort.id != effort.id,
        )
        .order_by(
            SegmentEffort.elapsed_time_s,
            SegmentEffort.started_at,
            SegmentEffort.id,
        )
        .limit(1)
    ).first()
    if best_other is not None and effort.elapsed_time_s >= best_other.elapsed_time_s:
        return None

    previous = session.scalar(
        select(SegmentEffort.id).where(
            SegmentEffort.segment_id == effort.segment_id,
            SegmentEffort.user_id == effort.user_id,
            SegmentEffort.is_personal_record.is_(True),
        )
    )
    # Clear before setting: at most one flagged row may exist at any moment.
    session.execute(
        update(SegmentEffort)
        .where(
            SegmentEffort.segment_id == effort.segment_id,
            SegmentEffort.user_id == effort.user_id,
            SegmentEffort.is_personal_record.is_(True),
        )
        .values(is_personal_record=False)
        .execution_options(synchronize_session="fetch")
    )
    effort.is_personal_record = True
    session.flush()
    return previous


def rebuild_personal_records(session: Session, segment_id: str, user_id: str) -> Optional[str]:
    """Recompute the PR flag for one user on one segment from scratch."""

    session.execute(
        update(SegmentEffort)
        .where(
            SegmentEffort.segment_id == segment_id,
            SegmentEffort.user_id == user_id,
            SegmentEffort.is_personal_record.is_(True),
        )
        .values(is_personal_record=False)
        .execution_options(synchronize_session="fetch")
    )
    best = session.scalars(
        select(SegmentEffort)
        .where(SegmentEffort.segment_id == segment_id, SegmentEffort.user_id == user_id)
        .order_by(
            SegmentEffort.elapsed_time_s,
            SegmentEffort.started_at,
            SegmentEffort.id,
        )
        .limit(1)
    ).first()
    if best is None:
        return None
    best.is_personal_record = True
    session.flush()
    return best.id


def personal_record(session: Session, segment_id: str, user_id: str) -> Optional[SegmentEffort]:
    return session.scalars(
        select(SegmentEffort).where(
            SegmentEffort.segment_id == segment_id,
            SegmentEffort.user_id == user_id,
            SegmentEffort.is_personal_record.is_(True),
        )
    ).first()


def efforts_for_activity(session: Session, activity_id: str) -> List[SegmentEffort]:
    return list(
        session.scalars(
            select(SegmentEffort)
            .where(SegmentEffort.activity_id == activity_id)
            .order_by(SegmentEffort.started_at)
        )
    )


def efforts_for_user(session: Session, segment_id: str, user_id: str) -> List[SegmentEffort]:
    """All of a user's efforts on a segment, fastest first."""

    return list(
        session.scalars(
            select(SegmentEffort)
            .where(SegmentEffort.segment_id == segment_id, SegmentEffort.user_id == user_id)
            .order_by(SegmentEffort.elapsed_time_s, SegmentEffort.started_at)
        )
    )


__all__ = [
    "efforts_for_activity",
    "efforts_for_user",
    "personal_record",
    "rebuild_personal_records",
    "record_effort",
]
