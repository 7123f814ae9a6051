"""Ledger and account models"""
from enum import Enum
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class TransactionDirection(str, Enum):
    """Direction of a ledger entry; encodes the sign of its amount"""
    EARN = "earn"
    SPEND = "spend"


class TransactionCategory(str, Enum):
    """Activity or bookkeeping category of a ledger entry"""
    CHECK_IN = "check-in"
    ASSESSMENT = "assessment"
    EDUCATION = "education"
    PEER_SUPPORT = "peer-support"
    BUDDY = "buddy"
    RESOURCE = "resource"
    STREAK = "streak"
    ACHIEVEMENT = "achievement"
    LEVEL_UP = "level-up"
    REDEMPTION = "redemption"


class PointTransaction(BaseModel):
    """Immutable ledger entry; amount is signed (negative for spends)"""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    direction: TransactionDirection
    category: TransactionCategory
    amount: int
    description: str
    source: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    idempotency_key: Optional[str] = None

    @property
    def is_earn(self) -> bool:
        return self.direction == TransactionDirection.EARN


class AccountPreferences(BaseModel):
    """User preference flags"""
    share_progress: bool = True
    notifications: bool = True
    leaderboard: bool = True  # participate in leaderboard ranking


class UnlockedAchievement(BaseModel):
    """Achievement instance attached to an account"""
    achievement_id: str
    unlocked_at: datetime


class UserAccount(BaseModel):
    """Rewards account; balances are derived from the ledger"""
    user_id: str
    display_name: str
    created_at: datetime
    last_active_at: datetime
    level: int = 1
    total_points: int = 0
    available_points: int = 0
    lifetime_points: int = 0
    current_streak: int = 0  # daily check-in streak
    longest_streak: int = 0
    achievements: list[UnlockedAchievement] = Field(default_factory=list)
    preferences: AccountPreferences = Field(default_factory=AccountPreferences)

    @property
    def achievement_ids(self) -> set[str]:
        return {a.achievement_id for a in self.achievements}
