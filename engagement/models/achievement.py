"""Achievement models for gamification"""
from enum import Enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from engagement.models.ledger import TransactionCategory
from engagement.models.streak import StreakType


class AchievementCategory(str, Enum):
    """Achievement categories"""
    WELLNESS = "wellness"
    SOCIAL = "social"
    LEARNING = "learning"
    CONSISTENCY = "consistency"
    MILESTONE = "milestone"


class AchievementRarity(str, Enum):
    """Rarity tier, derived from the bonus value"""
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class CriteriaType(str, Enum):
    """Rule families"""
    LIFETIME_POINTS = "lifetime_points"
    LONGEST_STREAK = "longest_streak"
    CATEGORY_COUNT = "category_count"
    CATEGORY_POINTS = "category_points"
    CONSISTENCY_WINDOW = "consistency_window"
    SOCIAL_COUNT = "social_count"


class AchievementCriteria(BaseModel):
    """Predicate over ledger and streak state"""
    model_config = ConfigDict(frozen=True)

    type: CriteriaType
    value: int
    category: Optional[TransactionCategory] = None
    streak_type: Optional[StreakType] = None


class Achievement(BaseModel):
    """Achievement definition"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    icon: str
    category: AchievementCategory
    rarity: AchievementRarity
    bonus_points: int
    criteria: AchievementCriteria


class AchievementUnlocked(BaseModel):
    """Result of a newly unlocked achievement"""
    achievement: Achievement
    user_id: str
    unlocked_at: datetime
    transaction_id: str
