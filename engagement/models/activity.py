"""Activity payload models"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class ActivityType(str, Enum):
    """Activities an external caller can record"""
    DAILY_CHECK_IN = "daily-check-in"
    ASSESSMENT = "assessment"
    EDUCATION = "education"
    PEER_SUPPORT = "peer-support"
    BUDDY = "buddy"
    RESOURCE = "resource"


class CheckInPayload(BaseModel):
    mood: int = Field(ge=1, le=10)
    notes: Optional[str] = None


class AssessmentPayload(BaseModel):
    assessment_type: str
    score: Optional[float] = None


class EducationPayload(BaseModel):
    content_type: str
    duration_seconds: int = Field(ge=0)


class PeerSupportPayload(BaseModel):
    activity_type: str
    quality: Optional[int] = Field(default=None, ge=1, le=5)


class BuddyPayload(BaseModel):
    interaction_type: str
    quality: int = Field(ge=1, le=5)
    duration_seconds: Optional[int] = Field(default=None, ge=0)


class ResourcePayload(BaseModel):
    resource_type: str
    engagement: str


PAYLOAD_MODELS: dict[ActivityType, type[BaseModel]] = {
    ActivityType.DAILY_CHECK_IN: CheckInPayload,
    ActivityType.ASSESSMENT: AssessmentPayload,
    ActivityType.EDUCATION: EducationPayload,
    ActivityType.PEER_SUPPORT: PeerSupportPayload,
    ActivityType.BUDDY: BuddyPayload,
    ActivityType.RESOURCE: ResourcePayload,
}
