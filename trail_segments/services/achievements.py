"""Crown bookkeeping: one open holder per (segment, crown type)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.schema import Achievement, SegmentEffort
from ..events import AchievementEvent, AchievementEventKind
from ..models import CrownType, Gender, RecordedEffort, eligible_crowns
from ..utils import utcnow


class AchievementEngine:
    """Awards and revokes crowns as new efforts arrive.

    Events are returned to the caller rather than published so they can be
    delivered once the surrounding transaction has committed.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._log = logging.getLogger(self.__class__.__name__)

    def process_effort(
        self,
        session: Session,
        effort: RecordedEffort,
        gender: Optional[Gender],
    ) -> List[AchievementEvent]:
        now = self._clock()
        events: List[AchievementEvent] = []
        for crown in eligible_crowns(gender):
            holder = self.current_holder(session, effort.segment_id, crown)
            if holder is not None:
                holder_time = self._holder_time(session, holder)
                if holder_time is not None and effort.elapsed_time_s >= holder_time:
                    continue
                holder.lost_at = now
                # Close the old row before opening the new one.
                session.flush()
                if holder.user_id != effort.user_id:
                    events.append(
                        AchievementEvent(
                            kind=AchievementEventKind.LOST,
                            user_id=holder.user_id,
                            segment_id=effort.segment_id,
                            crown_type=crown,
                            effort_id=holder.effort_id,
                            occurred_at=now,
                            dethroned_by=effort.user_id,
                        )
                    )
            session.add(
                Achievement(
                    user_id=effort.user_id,
                    segment_id=effort.segment_id,
                    effort_id=effort.effort_id,
                    crown_type=crown.value,
                    earned_at=now,
                )
            )
            session.flush()
            self._log.info(
                "User %s earned %s on segment %s with %.1fs",
                effort.user_id,
                crown.value,
                effort.segment_id,
                effort.elapsed_time_s,
            )
            events.append(
                AchievementEvent(
                    kind=AchievementEventKind.EARNED,
                    user_id=effort.user_id,
                    segment_id=effort.segment_id,
                    crown_type=crown,
                    effort_id=effort.effort_id,
                    occurred_at=now,
                    dethroned_by=None,
                )
            )
        return events

    def current_holder(
        self, session: Session, segment_id: str, crown: CrownType
    ) -> Optional[Achievement]:
        return session.scalars(
            select(Achievement).where(
                Achievement.segment_id == segment_id,
                Achievement.crown_type == crown.value,
                Achievement.lost_at.is_(None),
            )
        ).first()

    def segment_achievements(self, session: Session, segment_id: str) -> List[Achievement]:
        """Open crowns on a segment, one row per crown type at most."""

        return list(
            session.scalars(
                select(Achievement)
                .where(Achievement.segment_id == segment_id, Achievement.lost_at.is_(None))
                .order_by(Achievement.crown_type)
            )
        )

    def user_achievements(
        self, session: Session, user_id: str, *, include_lost: bool = False
    ) -> List[Achievement]:
        stmt = select(Achievement).where(Achievement.user_id == user_id)
        if not include_lost:
            stmt = stmt.where(Achievement.lost_at.is_(None))
        return list(session.scalars(stmt.order_by(Achievement.earned_at.desc())))

    def crown_counts(
        self,
        session: Session,
        crown: Optional[CrownType] = None,
        *,
        limit: int = 50,
    ) -> List[Tuple[str, int]]:
        """Users ranked by the number of crowns they currently hold."""

        count = func.count(Achievement.id).label("crowns")
        stmt = select(Achievement.user_id, count).where(Achievement.lost_at.is_(None))
        if crown is not None:
            stmt = stmt.where(Achievement.crown_type == crown.value)
        stmt = stmt.group_by(Achievement.user_id).order_by(count.desc(), Achievement.user_id)
        return [(row.user_id, int(row.crowns)) for row in session.execute(stmt.limit(limit))]

    @staticmethod
    def _holder_time(session: Session, holder: Achievement) -> Optional[float]:
        if holder.effort_id is None:
            return None
        return session.scalar(
            select(SegmentEffort.elapsed_time_s).where(SegmentEffort.id == holder.effort_id)
        )


__all__ = ["AchievementEngine"]
