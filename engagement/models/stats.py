"""Leaderboard and statistics read models"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel

from engagement.models.ledger import UserAccount
from engagement.models.level import Level
from engagement.models.streak import Streak, StreakType


class LeaderboardWindow(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all-time"


class LeaderboardEntry(BaseModel):
    user_id: str
    display_name: str
    points: int
    level: int
    rank: int
    badge: str = ""


class StreakRecord(BaseModel):
    streak_type: StreakType
    longest: int


class UserStats(BaseModel):
    account: UserAccount
    total_transactions: int
    category_breakdown: dict[str, int]
    achievements: int
    active_streaks: list[Streak]
    longest_streaks: list[StreakRecord]
    level: Level
    next_level: Optional[Level] = None
    points_to_next_level: int = 0


class SystemStats(BaseModel):
    total_users: int
    active_users: int
    total_points_awarded: int
    total_points_spent: int
    average_level: float
    total_achievements: int
    rewards_redeemed: int
