"""SQLAlchemy ORM tables for activities, tracks, segments, efforts and caches."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from ..utils import as_utc, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Store naive UTC, hand back aware UTC datetimes on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return as_utc(value)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    birth_year: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    weight_kg: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)  # pending, processing, processed, failed
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    distance_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    duration_s: Mapped[float | None] = mapped_column(Float, nullable=True)
    elevation_gain_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    track: Mapped[Optional["Track"]] = relationship(
        "Track", back_populates="activity", uselist=False, cascade="all, delete-orphan"
    )


class Track(Base):
    __tablename__ = "tracks"

    # One track per activity: the activity id is the primary key.
    activity_id: Mapped[str] = mapped_column(
        ForeignKey("activities.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    points: Mapped[list] = mapped_column(JSON, nullable=False)  # [[lon, lat, ele, epoch_s], ...]
    point_count: Mapped[int] = mapped_column(Integer, nullable=False)
    min_lon: Mapped[float] = mapped_column(Float, nullable=False)
    min_lat: Mapped[float] = mapped_column(Float, nullable=False)
    max_lon: Mapped[float] = mapped_column(Float, nullable=False)
    max_lat: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    activity: Mapped[Activity] = relationship("Activity", back_populates="track")

    __table_args__ = (
        Index("idx_tracks_bbox", "min_lon", "max_lon", "min_lat", "max_lat"),
    )


class StoppedSegment(Base):
    __tablename__ = "activity_stopped_segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    activity_id: Mapped[str] = mapped_column(
        ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_s: Mapped[float] = mapped_column(Float, nullable=False)


class Segment(Base):
    __tablename__ = "segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    creator_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    points: Mapped[list] = mapped_column(JSON, nullable=False)  # [[lon, lat, ele], ...]
    start_lon: Mapped[float] = mapped_column(Float, nullable=False)
    start_lat: Mapped[float] = mapped_column(Float, nullable=False)
    end_lon: Mapped[float] = mapped_column(Float, nullable=False)
    end_lat: Mapped[float] = mapped_column(Float, nullable=False)
    min_lon: Mapped[float] = mapped_column(Float, nullable=False)
    min_lat: Mapped[float] = mapped_column(Float, nullable=False)
    max_lon: Mapped[float] = mapped_column(Float, nullable=False)
    max_lat: Mapped[float] = mapped_column(Float, nullable=False)
    distance_m: Mapped[float] = mapped_column(Float, nullable=False)
    elevation_gain_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    elevation_loss_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_grade: Mapped[float | None] = mapped_column(Float, nullable=True)  # percent
    max_grade: Mapped[float | None] = mapped_column(Float, nullable=True)  # percent
    climb_category: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 = HC .. 4
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="public")
    effort_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_activity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    efforts: Mapped[List["SegmentEffort"]] = relationship(
        "SegmentEffort", back_populates="segment", cascade="all, delete-orphan"
    )


class SegmentEffort(Base):
    __tablename__ = "segment_efforts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    segment_id: Mapped[str] = mapped_column(
        ForeignKey("segments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_id: Mapped[str] = mapped_column(
        ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    elapsed_time_s: Mapped[float] = mapped_column(Float, nullable=False)
    moving_time_s: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_speed_mps: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_speed_mps: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    end_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    is_personal_record: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    segment: Mapped[Segment] = relationship("Segment", back_populates="efforts")

    __table_args__ = (
        CheckConstraint("start_fraction < end_fraction", name="ck_effort_direction"),
        UniqueConstraint("segment_id", "activity_id", name="uq_effort_segment_activity"),
        Index("idx_segment_efforts_time", "segment_id", "elapsed_time_s"),
        Index(
            "uq_effort_personal_record",
            "segment_id",
            "user_id",
            unique=True,
            sqlite_where=text("is_personal_record"),
            postgresql_where=text("is_personal_record"),
        ),
    )


class Achievement(Base):
    __tablename__ = "achievements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    segment_id: Mapped[str] = mapped_column(
        ForeignKey("segments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    effort_id: Mapped[str | None] = mapped_column(
        ForeignKey("segment_efforts.id", ondelete="SET NULL"), nullable=True
    )
    crown_type: Mapped[str] = mapped_column(String(32), nullable=False)  # kom, qom, course_record
    earned_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    lost_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    effort: Mapped[Optional[SegmentEffort]] = relationship("SegmentEffort")

    __table_args__ = (
        Index(
            "uq_achievement_current_holder",
            "segment_id",
            "crown_type",
            unique=True,
            sqlite_where=text("lost_at IS NULL"),
            postgresql_where=text("lost_at IS NULL"),
        ),
    )


class LeaderboardCacheEntry(Base):
    __tablename__ = "leaderboard_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    segment_id: Mapped[str] = mapped_column(
        ForeignKey("segments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scope: Mapped[str] = mapped_column(String(16), nullable=False)  # all_time, year, month, week
    scope_value: Mapped[str] = mapped_column(String(16), nullable=False)  # all, 2024, 2024-01, 2024-W03
    gender: Mapped[str] = mapped_column(String(32), nullable=False)
    age_group: Mapped[str] = mapped_column(String(16), nullable=False)
    entries: Mapped[list] = mapped_column(JSON, nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint(
            "segment_id", "scope", "scope_value", "gender", "age_group",
            name="leaderboard_cache_key",
        ),
    )


__all__ = [
    "Achievement",
    "Activity",
    "Base",
    "LeaderboardCacheEntry",
    "Segment",
    "SegmentEffort",
    "StoppedSegment",
    "Track",
    "User",
    "UTCDateTime",
    "new_id",
]
