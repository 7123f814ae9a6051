"""
Activity point formulas

Turns a recorded activity into the earn it should post. Pure functions:
no storage access, no side effects.

Formulas:
- Check-in: 10, +5 at mood >= 7, +5 at mood >= 9, + min(streak, 20)
- Assessment: PHQ-4 25, mood-tracker 15, wellness-survey 20, other 15,
  + min(streak * 2, 15)
- Education: per-minute rate by content type, capped
- Peer support: flat by type, +5 for quality >= 4
- Buddy: flat by type, scaled by quality / 3
- Resource: flat by engagement kind
"""

import math
from typing import Any, Optional
import logging

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from engagement.exceptions import InvalidInputError
from engagement.models.activity import (
    PAYLOAD_MODELS,
    ActivityType,
    AssessmentPayload,
    BuddyPayload,
    CheckInPayload,
    EducationPayload,
    PeerSupportPayload,
    ResourcePayload,
)
from engagement.models.ledger import TransactionCategory
from engagement.models.streak import StreakType

logger = logging.getLogger(__name__)


ACTIVITY_CATEGORIES = {
    ActivityType.DAILY_CHECK_IN: TransactionCategory.CHECK_IN,
    ActivityType.ASSESSMENT: TransactionCategory.ASSESSMENT,
    ActivityType.EDUCATION: TransactionCategory.EDUCATION,
    ActivityType.PEER_SUPPORT: TransactionCategory.PEER_SUPPORT,
    ActivityType.BUDDY: TransactionCategory.BUDDY,
    ActivityType.RESOURCE: TransactionCategory.RESOURCE,
}

# Resource and buddy activity keep no streak
ACTIVITY_STREAKS = {
    ActivityType.DAILY_CHECK_IN: StreakType.DAILY_CHECK_IN,
    ActivityType.ASSESSMENT: StreakType.ASSESSMENT,
    ActivityType.EDUCATION: StreakType.LEARNING,
    ActivityType.PEER_SUPPORT: StreakType.PEER_SUPPORT,
}

ASSESSMENT_POINTS = {"PHQ-4": 25, "mood-tracker": 15, "wellness-survey": 20}

# (points per minute, cap); quiz is flat
EDUCATION_RATES = {"article": (2, 10), "video": (3, 15), "interactive": (4, 20)}
EDUCATION_DEFAULT_RATE = (2, 8)
QUIZ_POINTS = 15

PEER_SUPPORT_POINTS = {"group-message": 5, "group-voice": 10, "support-given": 15, "group-check-in": 12}

BUDDY_POINTS = {"text-chat": 5, "check-in": 20, "goal-update": 18}

RESOURCE_POINTS = {"view": 2, "save": 5, "share": 8, "review": 12, "contact": 15}


class ActivityAward(BaseModel):
    """Earn to post for one recorded activity"""
    category: TransactionCategory
    points: int
    description: str
    source: str
    metadata: dict[str, Any] = Field(default_factory=dict)


def parse_activity_type(activity_type: Any) -> ActivityType:
    try:
        return ActivityType(activity_type)
    except ValueError:
        raise InvalidInputError(
            f"Unknown activity type '{activity_type}'. "
            f"Must be one of: {', '.join(a.value for a in ActivityType)}",
            field="activity_type",
            value=activity_type,
        )


def parse_payload(activity_type: ActivityType, payload: Any) -> BaseModel:
    """
    Validate an activity payload

    Raises:
        InvalidInputError: Payload missing or malformed for the activity
    """
    model = PAYLOAD_MODELS[activity_type]
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise InvalidInputError(
            f"Invalid {activity_type.value} payload: {first['msg']}",
            field=field,
            value=first.get("input"),
            cause=e,
        )


def check_in_points(payload: CheckInPayload, streak: int) -> ActivityAward:
    bonus = 0
    if payload.mood >= 7:
        bonus += 5
    if payload.mood >= 9:
        bonus += 5
    if streak > 1:
        bonus += min(streak, 20)

    points = 10 + bonus
    description = f"Daily check-in completed (Mood: {payload.mood}/10)"
    if bonus:
        description += f" +{bonus} bonus"

    return ActivityAward(
        category=TransactionCategory.CHECK_IN,
        points=points,
        description=description,
        source="daily-check-in",
        metadata={"mood": payload.mood, "notes": payload.notes, "streak": streak, "bonus": bonus},
    )


def assessment_points(payload: AssessmentPayload, streak: int) -> ActivityAward:
    points = ASSESSMENT_POINTS.get(payload.assessment_type, 15)
    if streak > 1:
        points += min(streak * 2, 15)

    return ActivityAward(
        category=TransactionCategory.ASSESSMENT,
        points=points,
        description=f"{payload.assessment_type} assessment completed",
        source="assessment-system",
        metadata={"assessment_type": payload.assessment_type, "score": payload.score, "streak": streak},
    )


def education_points(payload: EducationPayload) -> ActivityAward:
    """
    Raises:
        InvalidInputError: The engagement is worth no points (e.g. under a minute)
    """
    minutes = payload.duration_seconds // 60
    if payload.content_type == "quiz":
        points = QUIZ_POINTS
    else:
        rate, cap = EDUCATION_RATES.get(payload.content_type, EDUCATION_DEFAULT_RATE)
        points = min(minutes * rate, cap)

    if points <= 0:
        raise InvalidInputError(
            f"{payload.content_type} engagement of {payload.duration_seconds}s earns no points",
            field="duration_seconds",
            value=payload.duration_seconds,
        )

    return ActivityAward(
        category=TransactionCategory.EDUCATION,
        points=points,
        description=f"Engaged with {payload.content_type} ({minutes}min)",
        source="education-system",
        metadata={"content_type": payload.content_type, "duration_seconds": payload.duration_seconds},
    )


def peer_support_points(payload: PeerSupportPayload) -> ActivityAward:
    points = PEER_SUPPORT_POINTS.get(payload.activity_type, 5)
    if payload.quality is not None and payload.quality >= 4:
        points += 5

    return ActivityAward(
        category=TransactionCategory.PEER_SUPPORT,
        points=points,
        description=f"Peer support: {payload.activity_type.replace('-', ' ')}",
        source="peer-support-system",
        metadata={"activity_type": payload.activity_type, "quality": payload.quality},
    )


def buddy_points(payload: BuddyPayload) -> ActivityAward:
    if payload.interaction_type == "voice-call":
        points = 15 + min((payload.duration_seconds or 0) // 300, 10)
    else:
        points = BUDDY_POINTS.get(payload.interaction_type, 8)

    # Half-up rounding
    points = math.floor(points * payload.quality / 3 + 0.5)

    return ActivityAward(
        category=TransactionCategory.BUDDY,
        points=points,
        description=f"Buddy {payload.interaction_type.replace('-', ' ')} ({payload.quality}⭐)",
        source="buddy-system",
        metadata={
            "interaction_type": payload.interaction_type,
            "quality": payload.quality,
            "duration_seconds": payload.duration_seconds,
        },
    )


def resource_points(payload: ResourcePayload) -> ActivityAward:
    points = RESOURCE_POINTS.get(payload.engagement, 3)
    return ActivityAward(
        category=TransactionCategory.RESOURCE,
        points=points,
        description=f"Resource {payload.engagement}: {payload.resource_type}",
        source="resource-system",
        metadata={"resource_type": payload.resource_type, "engagement": payload.engagement},
    )


def compute_award(activity_type: ActivityType, payload: BaseModel, streak: Optional[int] = None) -> ActivityAward:
    """
    Earn for an activity, given the streak length after this activity

    Args:
        activity_type: Activity being recorded
        payload: Validated payload for that activity
        streak: Current streak for the activity's streak type (0 if none)

    Returns:
        The award to post
    """
    streak = streak or 0
    if activity_type == ActivityType.DAILY_CHECK_IN:
        return check_in_points(payload, streak)
    if activity_type == ActivityType.ASSESSMENT:
        return assessment_points(payload, streak)
    if activity_type == ActivityType.EDUCATION:
        return education_points(payload)
    if activity_type == ActivityType.PEER_SUPPORT:
        return peer_support_points(payload)
    if activity_type == ActivityType.BUDDY:
        return buddy_points(payload)
    return resource_points(payload)
