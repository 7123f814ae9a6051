"""Streak models"""
from enum import Enum
from datetime import datetime
from pydantic import BaseModel


class StreakType(str, Enum):
    """Activity types that keep a consecutive-day streak"""
    DAILY_CHECK_IN = "daily-check-in"
    ASSESSMENT = "assessment"
    LEARNING = "learning"
    PEER_SUPPORT = "peer-support"


class Streak(BaseModel):
    """Consecutive-day counter keyed by (user_id, streak_type)"""
    user_id: str
    streak_type: StreakType
    current: int = 0
    longest: int = 0
    last_activity_at: datetime
    is_active: bool = True
