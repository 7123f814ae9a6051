"""
Gamification engine for the engagement-rewards system

This module implements the rules that turn user activity into rewards:
- Point ledger with level progression
- Per-activity consecutive-day streaks
- Achievement rules
- Reward catalog and redemption tokens
- Leaderboards and statistics
"""

from engagement.gamification.levels import LevelLadder, default_ladder, level_for
from engagement.gamification.ledger import Ledger
from engagement.gamification.streak_system import StreakTracker, calculate_streak_bonus
from engagement.gamification.achievement_system import ACHIEVEMENTS, AchievementEngine
from engagement.gamification.rewards import RedemptionService, RewardCatalog, load_catalog
from engagement.gamification.leaderboard import LeaderboardService

__all__ = [
    "LevelLadder",
    "default_ladder",
    "level_for",
    "Ledger",
    "StreakTracker",
    "calculate_streak_bonus",
    "ACHIEVEMENTS",
    "AchievementEngine",
    "RedemptionService",
    "RewardCatalog",
    "load_catalog",
    "LeaderboardService",
]
