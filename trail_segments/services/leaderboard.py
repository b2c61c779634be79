"""Leaderboard cache: ranked efforts per (segment, scope, filters) with TTLs.

Rankings are recomputed synchronously on a miss or an expired row and written
back as a single cache row. Writes elsewhere delete the rows they make stale.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import (
    LEADERBOARD_DEFAULT_LIMIT,
    LEADERBOARD_MAX_LIMIT,
    LEADERBOARD_POSITION_CONTEXT,
    LEADERBOARD_TTL_ALL_TIME_S,
    LEADERBOARD_TTL_MONTH_S,
    LEADERBOARD_TTL_WEEK_S,
    LEADERBOARD_TTL_YEAR_S,
)
from ..db.schema import LeaderboardCacheEntry, Segment, SegmentEffort, User
from ..errors import SegmentNotFoundError
from ..models import (
    AGE_GROUPS,
    ALL,
    Gender,
    LeaderboardEntry,
    LeaderboardPage,
    LeaderboardPosition,
    LeaderboardQuery,
    LeaderboardScope,
)
from ..utils import as_utc, utcnow

USER_COL = "user_id"
ELAPSED_COL = "elapsed_time_s"
STARTED_COL = "started_at"
ACTIVITY_COL = "activity_id"
EFFORT_COL = "effort_id"

DEFAULT_TTLS: Dict[LeaderboardScope, int] = {
    LeaderboardScope.WEEK: LEADERBOARD_TTL_WEEK_S,
    LeaderboardScope.MONTH: LEADERBOARD_TTL_MONTH_S,
    LeaderboardScope.YEAR: LEADERBOARD_TTL_YEAR_S,
    LeaderboardScope.ALL_TIME: LEADERBOARD_TTL_ALL_TIME_S,
}

_SCOPE_PATTERNS = {
    LeaderboardScope.YEAR: re.compile(r"^(\d{4})$"),
    LeaderboardScope.MONTH: re.compile(r"^(\d{4})-(\d{2})$"),
    LeaderboardScope.WEEK: re.compile(r"^(\d{4})-W(\d{2})$"),
}


def scope_value_for(scope: LeaderboardScope, moment: datetime) -> str:
    """Return the period label of ``scope`` containing ``moment`` (UTC)."""

    moment = as_utc(moment)
    if scope is LeaderboardScope.ALL_TIME:
        return ALL
    if scope is LeaderboardScope.YEAR:
        return f"{moment.year:04d}"
    if scope is LeaderboardScope.MONTH:
        return f"{moment.year:04d}-{moment.month:02d}"
    iso_year, iso_week, _ = moment.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def scope_values_for(moment: datetime) -> Dict[LeaderboardScope, str]:
    return {scope: scope_value_for(scope, moment) for scope in LeaderboardScope}


def period_bounds(
    scope: LeaderboardScope, scope_value: str
) -> Optional[Tuple[datetime, datetime]]:
    """Return the half-open UTC interval ``[start, end)`` of a period label.

    Raises:
        ValueError: ``scope_value`` is not a valid label for ``scope``.
    """

    if scope is LeaderboardScope.ALL_TIME:
        if scope_value != ALL:
            raise ValueError(f"All-time scope value must be {ALL!r}")
        return None
    match = _SCOPE_PATTERNS[scope].match(scope_value or "")
    if match is None:
        raise ValueError(f"Invalid {scope.value} scope value: {scope_value!r}")
    year = int(match.group(1))
    try:
        if scope is LeaderboardScope.YEAR:
            start = date(year, 1, 1)
            end = date(year + 1, 1, 1)
        elif scope is LeaderboardScope.MONTH:
            month = int(match.group(2))
            start = date(year, month, 1)
            end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        else:
            start = date.fromisocalendar(year, int(match.group(2)), 1)
            end = start + timedelta(days=7)
    except ValueError as exc:
        raise ValueError(f"Invalid {scope.value} scope value: {scope_value!r}") from exc
    return _midnight(start), _midnight(end)


def _midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def rank_efforts(frame: pd.DataFrame) -> List[LeaderboardEntry]:
    """Keep each user's best effort and rank them 1..n without gaps.

    Ties on elapsed time go to the earlier effort.
    """

    if frame.empty:
        return []
    ordered = frame.sort_values(
        by=[ELAPSED_COL, STARTED_COL, EFFORT_COL], kind="mergesort"
    )
    best = ordered.drop_duplicates(subset=[USER_COL], keep="first").reset_index(drop=True)
    entries: List[LeaderboardEntry] = []
    for rank, row in enumerate(best.itertuples(index=False), start=1):
        started = getattr(row, STARTED_COL)
        if isinstance(started, pd.Timestamp):
            started = started.to_pydatetime()
        entries.append(
            LeaderboardEntry(
                rank=rank,
                user_id=str(getattr(row, USER_COL)),
                elapsed_time_s=float(getattr(row, ELAPSED_COL)),
                achieved_at=as_utc(started),
                activity_id=str(getattr(row, ACTIVITY_COL)),
                effort_id=str(getattr(row, EFFORT_COL)),
            )
        )
    return entries


@dataclass(slots=True)
class _Ranking:
    scope_value: str
    entries: List[LeaderboardEntry]
    computed_at: datetime
    expires_at: datetime
    from_cache: bool


class LeaderboardCache:
    """Serves leaderboards from ``leaderboard_cache`` rows, recomputing on miss."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        ttls: Optional[Dict[LeaderboardScope, int]] = None,
    ) -> None:
        self._clock = clock
        self._ttls = dict(DEFAULT_TTLS)
        if ttls:
            self._ttls.update(ttls)
        self._log = logging.getLogger(self.__class__.__name__)

    def ttl_for(self, scope: LeaderboardScope) -> timedelta:
        return timedelta(seconds=self._ttls[scope])

    def get_leaderboard(self, session: Session, query: LeaderboardQuery) -> LeaderboardPage:
        limit = self._validate(query)
        ranking = self._ranking(session, query)
        offset = query.offset
        return LeaderboardPage(
            query=query,
            scope_value=ranking.scope_value,
            entries=ranking.entries[offset : offset + limit],
            total_count=len(ranking.entries),
            computed_at=ranking.computed_at,
            expires_at=ranking.expires_at,
            from_cache=ranking.from_cache,
        )

    def get_user_position(
        self,
        session: Session,
        query: LeaderboardQuery,
        user_id: str,
        *,
        context: int = LEADERBOARD_POSITION_CONTEXT,
    ) -> Optional[LeaderboardPosition]:
        """Return the user's entry plus ``context`` neighbours on each side."""

        self._validate(query)
        entries = self._ranking(session, query).entries
        for index, entry in enumerate(entries):
            if entry.user_id == user_id:
                return LeaderboardPosition(
                    user_entry=entry,
                    entries_above=entries[max(0, index - context) : index],
                    entries_below=entries[index + 1 : index + 1 + context],
                    total_count=len(entries),
                )
        return None

    def invalidate_for_effort(
        self, session: Session, segment_id: str, started_at: datetime
    ) -> int:
        """Delete the segment's cache rows whose period contains ``started_at``."""

        periods = [
            and_(
                LeaderboardCacheEntry.scope == scope.value,
                LeaderboardCacheEntry.scope_value == value,
            )
            for scope, value in scope_values_for(started_at).items()
        ]
        result = session.execute(
            delete(LeaderboardCacheEntry).where(
                LeaderboardCacheEntry.segment_id == segment_id, or_(*periods)
            )
        )
        removed = result.rowcount or 0
        if removed:
            self._log.debug("Invalidated %d leaderboard rows for segment %s", removed, segment_id)
        return removed

    def invalidate_for_user(self, session: Session, user_id: str) -> int:
        """Delete every cache row of segments the user has efforts on."""

        segments = (
            select(SegmentEffort.segment_id)
            .where(SegmentEffort.user_id == user_id)
            .distinct()
        )
        result = session.execute(
            delete(LeaderboardCacheEntry).where(LeaderboardCacheEntry.segment_id.in_(segments))
        )
        return result.rowcount or 0

    def invalidate_segment(self, session: Session, segment_id: str) -> int:
        result = session.execute(
            delete(LeaderboardCacheEntry).where(LeaderboardCacheEntry.segment_id == segment_id)
        )
        return result.rowcount or 0

    def purge_expired(self, session: Session) -> int:
        result = session.execute(
            delete(LeaderboardCacheEntry).where(LeaderboardCacheEntry.expires_at <= self._clock())
        )
        removed = result.rowcount or 0
        if removed:
            self._log.info("Purged %d expired leaderboard rows", removed)
        return removed

    def compute_entries(
        self, session: Session, query: LeaderboardQuery, scope_value: str
    ) -> List[LeaderboardEntry]:
        """Rank efforts from the ledger, ignoring any cached rows."""

        stmt = (
            select(
                SegmentEffort.id.label(EFFORT_COL),
                SegmentEffort.user_id.label(USER_COL),
                SegmentEffort.elapsed_time_s.label(ELAPSED_COL),
                SegmentEffort.started_at.label(STARTED_COL),
                SegmentEffort.activity_id.label(ACTIVITY_COL),
            )
            .outerjoin(User, User.id == SegmentEffort.user_id)
            .where(SegmentEffort.segment_id == query.segment_id)
        )
        bounds = period_bounds(query.scope, scope_value)
        if bounds is not None:
            start, end = bounds
            stmt = stmt.where(SegmentEffort.started_at >= start, SegmentEffort.started_at < end)
        if query.gender != ALL:
            stmt = stmt.where(User.gender == query.gender)
        if query.age_group != ALL:
            low, high = AGE_GROUPS[query.age_group]
            ref_year = self._reference_year(query.scope, bounds)
            stmt = stmt.where(User.birth_year.is_not(None), User.birth_year <= ref_year - low)
            if high is not None:
                stmt = stmt.where(User.birth_year >= ref_year - high)

        rows = session.execute(stmt).all()
        frame = pd.DataFrame(
            [row._asdict() for row in rows],
            columns=[EFFORT_COL, USER_COL, ELAPSED_COL, STARTED_COL, ACTIVITY_COL],
        )
        return rank_efforts(frame)

    def _ranking(self, session: Session, query: LeaderboardQuery) -> _Ranking:
        now = self._clock()
        scope_value = query.scope_value or scope_value_for(query.scope, now)
        key = self._key(query, scope_value)
        row = session.scalars(select(LeaderboardCacheEntry).where(*key)).first()
        if row is not None and as_utc(row.expires_at) > now:
            return _Ranking(
                scope_value=scope_value,
                entries=[LeaderboardEntry.from_dict(item) for item in row.entries],
                computed_at=row.computed_at,
                expires_at=row.expires_at,
                from_cache=True,
            )

        if row is None and session.get(Segment, query.segment_id) is None:
            raise SegmentNotFoundError(f"Segment {query.segment_id} not found")
        entries = self.compute_entries(session, query, scope_value)
        expires_at = now + self.ttl_for(query.scope)
        self._store(session, query, scope_value, row, entries, now, expires_at)
        self._log.debug(
            "Recomputed leaderboard %s/%s/%s gender=%s age=%s: %d entries",
            query.segment_id,
            query.scope.value,
            scope_value,
            query.gender,
            query.age_group,
            len(entries),
        )
        return _Ranking(scope_value, entries, now, expires_at, from_cache=False)

    def _store(
        self,
        session: Session,
        query: LeaderboardQuery,
        scope_value: str,
        row: Optional[LeaderboardCacheEntry],
        entries: List[LeaderboardEntry],
        computed_at: datetime,
        expires_at: datetime,
    ) -> None:
        payload = [entry.to_dict() for entry in entries]
        try:
            with session.begin_nested():
                if row is None:
                    row = LeaderboardCacheEntry(
                        segment_id=query.segment_id,
                        scope=query.scope.value,
                        scope_value=scope_value,
                        gender=query.gender,
                        age_group=query.age_group,
                    )
                    session.add(row)
                self._fill(row, payload, computed_at, expires_at)
        except IntegrityError:
            # Another writer stored the same key first; last writer wins.
            existing = session.scalars(
                select(LeaderboardCacheEntry).where(*self._key(query, scope_value))
            ).first()
            if existing is None:
                raise
            self._fill(existing, payload, computed_at, expires_at)
            session.flush()

    @staticmethod
    def _fill(
        row: LeaderboardCacheEntry,
        payload: List[dict],
        computed_at: datetime,
        expires_at: datetime,
    ) -> None:
        row.entries = payload
        row.entry_count = len(payload)
        row.computed_at = computed_at
        row.expires_at = expires_at

    @staticmethod
    def _key(query: LeaderboardQuery, scope_value: str) -> tuple:
        return (
            LeaderboardCacheEntry.segment_id == query.segment_id,
            LeaderboardCacheEntry.scope == query.scope.value,
            LeaderboardCacheEntry.scope_value == scope_value,
            LeaderboardCacheEntry.gender == query.gender,
            LeaderboardCacheEntry.age_group == query.age_group,
        )

    def _reference_year(
        self, scope: LeaderboardScope, bounds: Optional[Tuple[datetime, datetime]]
    ) -> int:
        """Year against which ages are measured: the period's, or the current one."""

        if bounds is None:
            return self._clock().year
        start, end = bounds
        if scope is LeaderboardScope.WEEK:
            return (start + timedelta(days=3)).year
        return start.year

    def _validate(self, query: LeaderboardQuery) -> int:
        query.scope = LeaderboardScope(query.scope)
        query.gender = getattr(query.gender, "value", query.gender)
        if query.gender != ALL and query.gender not in {g.value for g in Gender}:
            raise ValueError(f"Unknown gender filter: {query.gender!r}")
        if query.age_group != ALL and query.age_group not in AGE_GROUPS:
            raise ValueError(f"Unknown age group filter: {query.age_group!r}")
        if query.offset < 0:
            raise ValueError("offset must not be negative")
        if query.scope_value is not None:
            period_bounds(query.scope, query.scope_value)
        limit = query.limit if query.limit is not None else LEADERBOARD_DEFAULT_LIMIT
        if limit <= 0:
            raise ValueError("limit must be positive")
        return min(limit, LEADERBOARD_MAX_LIMIT)


__all__ = [
    "DEFAULT_TTLS",
    "LeaderboardCache",
    "period_bounds",
    "rank_efforts",
    "scope_value_for",
    "scope_values_for",
]
