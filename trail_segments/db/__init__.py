from .schema import (
    Achievement,
    Activity,
    Base,
    LeaderboardCacheEntry,
    Segment,
    SegmentEffort,
    StoppedSegment,
    Track,
    User,
)
from .session import Database, build_engine

__all__ = [
    "Achievement",
    "Activity",
    "Base",
    "Database",
    "LeaderboardCacheEntry",
    "Segment",
    "SegmentEffort",
    "StoppedSegment",
    "Track",
    "User",
    "build_engine",
]
