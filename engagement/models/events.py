"""Outbound engine events"""
from enum import Enum
from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field


class EventType(str, Enum):
    ACCOUNT_CREATED = "account-created"
    BALANCE_CHANGED = "balance-changed"
    LEVEL_UP = "level-up"
    ACHIEVEMENT_UNLOCKED = "achievement-unlocked"
    STREAK_UPDATED = "streak-updated"
    STREAK_BROKEN = "streak-broken"
    REWARD_REDEEMED = "reward-redeemed"
    REDEMPTION_COMPLETED = "redemption-completed"


class EngagementEvent(BaseModel):
    """Committed state transition, published after the unit of work commits"""
    event_type: EventType
    user_id: str
    occurred_at: datetime
    data: dict[str, Any] = Field(default_factory=dict)
