"""Trail segment matching, effort ledger, crowns and leaderboards."""

from .activity_queue import ActivityQueue, ProcessingOutcome
from .db import Database
from .errors import (
    SegmentValidationError,
    SimilarSegmentsExistError,
    TrackValidationError,
)
from .geometry import SegmentIndex
from .main import main
from .models import ActivitySubmission, LeaderboardQuery, TrackPoint
from .processor import ActivityProcessor
from .services import AchievementEngine, LeaderboardCache, SegmentService

__all__ = [
    "main",
    "AchievementEngine",
    "ActivityProcessor",
    "ActivityQueue",
    "ActivitySubmission",
    "Database",
    "LeaderboardCache",
    "LeaderboardQuery",
    "ProcessingOutcome",
    "SegmentIndex",
    "SegmentService",
    "SegmentValidationError",
    "SimilarSegmentsExistError",
    "TrackPoint",
    "TrackValidationError",
]
