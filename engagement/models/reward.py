"""Reward catalog and redemption token models"""
from enum import Enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class RewardCategory(str, Enum):
    WELLNESS = "wellness"
    EDUCATION = "education"
    SOCIAL = "social"
    DIGITAL = "digital"
    PHYSICAL = "physical"


class RewardAvailability(str, Enum):
    UNLIMITED = "unlimited"
    LIMITED = "limited"
    SEASONAL = "seasonal"


class RewardRequirements(BaseModel):
    """Eligibility requirements"""
    model_config = ConfigDict(frozen=True)

    min_level: Optional[int] = None
    required_achievements: tuple[str, ...] = ()


class Reward(BaseModel):
    """
    Catalog entry

    `stock` is the initial stock for limited rewards; the live count is
    held by the storage backend.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    category: RewardCategory
    point_cost: int = Field(gt=0)
    icon: str = "🎁"
    availability: RewardAvailability = RewardAvailability.UNLIMITED
    stock: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True
    requirements: RewardRequirements = Field(default_factory=RewardRequirements)
    instructions: Optional[str] = None
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None

    @property
    def is_limited(self) -> bool:
        return self.availability == RewardAvailability.LIMITED


class RedemptionToken(BaseModel):
    """Single-use, time-limited proof of a point-to-reward exchange"""
    id: str
    user_id: str
    reward_id: str
    payload: str
    transaction_id: str
    generated_at: datetime
    expires_at: datetime
    is_redeemed: bool = False
    redeemed_at: Optional[datetime] = None
    redemption_location: Optional[str] = None
    idempotency_key: Optional[str] = None


class TokenValidation(BaseModel):
    """Outcome of validating a token payload"""
    valid: bool
    reason: str
    token: Optional[RedemptionToken] = None
