from .achievements import AchievementEngine
from .leaderboard import LeaderboardCache
from .segments import SegmentService

__all__ = ["AchievementEngine", "LeaderboardCache", "SegmentService"]
