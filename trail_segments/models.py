"""Plain data types shared across the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"


class CrownType(str, Enum):
    KOM = "kom"
    QOM = "qom"
    COURSE_RECORD = "course_record"


# Self-identified group required for each demographic crown. Crowns missing
# from this table are open to everyone.
CROWN_ELIGIBILITY: Dict[CrownType, Gender] = {
    CrownType.KOM: Gender.MALE,
    CrownType.QOM: Gender.FEMALE,
}


def eligible_crowns(gender: Optional[Gender]) -> List[CrownType]:
    """Return the crowns an effort by a user of ``gender`` competes for."""

    crowns = []
    for crown in CrownType:
        required = CROWN_ELIGIBILITY.get(crown)
        if required is None or required == gender:
            crowns.append(crown)
    return crowns


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class LeaderboardScope(str, Enum):
    ALL_TIME = "all_time"
    YEAR = "year"
    MONTH = "month"
    WEEK = "week"


# Literal stored for "no filter" / "no period" so cache keys never hold NULL.
ALL = "all"

AGE_GROUPS: Dict[str, tuple[int, Optional[int]]] = {
    "18-24": (18, 24),
    "25-34": (25, 34),
    "35-44": (35, 44),
    "45-54": (45, 54),
    "55-64": (55, 64),
    "65+": (65, None),
}


def age_group_for(age: int) -> Optional[str]:
    """Return the age-group label containing ``age`` (None below 18)."""

    for label, (low, high) in AGE_GROUPS.items():
        if age >= low and (high is None or age <= high):
            return label
    return None


@dataclass(frozen=True, slots=True)
class TrackPoint:
    """One recorded GPS sample. ``timestamp`` is epoch seconds (UTC)."""

    lon: float
    lat: float
    elevation: Optional[float] = None
    timestamp: Optional[float] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TrackPoint":
        """Build a point from the ingestion collaborator's dictionary shape."""

        lon = payload.get("longitude", payload.get("lon"))
        lat = payload.get("latitude", payload.get("lat"))
        if lon is None or lat is None:
            raise ValueError("Track point requires longitude and latitude")
        elevation = payload.get("elevation", payload.get("ele"))
        return cls(
            lon=float(lon),
            lat=float(lat),
            elevation=None if elevation is None else float(elevation),
            timestamp=_coerce_timestamp(payload.get("timestamp", payload.get("time"))),
        )

    def as_row(self) -> List[Optional[float]]:
        return [self.lon, self.lat, self.elevation, self.timestamp]

    @classmethod
    def from_row(cls, row: Sequence[Optional[float]]) -> "TrackPoint":
        lon, lat, elevation, timestamp = (list(row) + [None, None])[:4]
        return cls(float(lon), float(lat), elevation, timestamp)


def _coerce_timestamp(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass(slots=True)
class ActivitySubmission:
    """Work item handed to the background queue by the ingestion layer."""

    activity_id: str
    user_id: str
    points: Sequence[TrackPoint]
    name: Optional[str] = None
    activity_type: Optional[str] = None
    submitted_at: Optional[datetime] = None


@dataclass(slots=True)
class ActivityMetrics:
    distance_m: float = 0.0
    duration_s: float = 0.0
    elevation_gain_m: float = 0.0


@dataclass(slots=True)
class StoppedInterval:
    start_time: datetime
    end_time: datetime
    duration_s: float


@dataclass(slots=True)
class LeaderboardEntry:
    rank: int
    user_id: str
    elapsed_time_s: float
    achieved_at: datetime
    activity_id: str
    effort_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "user_id": self.user_id,
            "elapsed_time_s": self.elapsed_time_s,
            "achieved_at": self.achieved_at.isoformat(),
            "activity_id": self.activity_id,
            "effort_id": self.effort_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LeaderboardEntry":
        achieved_at = datetime.fromisoformat(str(payload["achieved_at"]))
        if achieved_at.tzinfo is None:
            achieved_at = achieved_at.replace(tzinfo=timezone.utc)
        return cls(
            rank=int(payload["rank"]),
            user_id=str(payload["user_id"]),
            elapsed_time_s=float(payload["elapsed_time_s"]),
            achieved_at=achieved_at,
            activity_id=str(payload["activity_id"]),
            effort_id=str(payload["effort_id"]),
        )


@dataclass(slots=True)
class LeaderboardQuery:
    segment_id: str
    scope: LeaderboardScope = LeaderboardScope.ALL_TIME
    scope_value: Optional[str] = None
    gender: str = ALL
    age_group: str = ALL
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class LeaderboardPage:
    query: LeaderboardQuery
    scope_value: str
    entries: List[LeaderboardEntry]
    total_count: int
    computed_at: datetime
    expires_at: datetime
    from_cache: bool


@dataclass(slots=True)
class LeaderboardPosition:
    user_entry: LeaderboardEntry
    entries_above: List[LeaderboardEntry]
    entries_below: List[LeaderboardEntry]
    total_count: int

    @property
    def user_rank(self) -> int:
        return self.user_entry.rank


@dataclass(slots=True)
class RecordedEffort:
    """Summary of an effort written by the ledger during a unit of work."""

    effort_id: str
    segment_id: str
    activity_id: str
    user_id: str
    started_at: datetime
    elapsed_time_s: float
    is_personal_record: bool
    previous_record_id: Optional[str] = None


@dataclass(slots=True)
class ProcessingResult:
    activity_id: str
    metrics: Optional[ActivityMetrics] = None
    efforts: List[RecordedEffort] = field(default_factory=list)
    events: List[Any] = field(default_factory=list)
    segments_checked: int = 0


@dataclass(slots=True)
class BackfillResult:
    segment_id: str
    activities_checked: int = 0
    efforts_created: int = 0
    failed_activities: List[str] = field(default_factory=list)
