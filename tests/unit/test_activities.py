"""Unit tests for activity point formulas (engagement/gamification/activities.py)"""
import pytest

from engagement.exceptions import InvalidInputError
from engagement.gamification.activities import (
    ACTIVITY_STREAKS,
    compute_award,
    parse_activity_type,
    parse_payload,
)
from engagement.models.activity import ActivityType, CheckInPayload
from engagement.models.ledger import TransactionCategory
from engagement.models.streak import StreakType


def _award(activity_type, payload, streak=0):
    activity = ActivityType(activity_type)
    return compute_award(activity, parse_payload(activity, payload), streak)


# ============================================================================
# Check-in
# ============================================================================

@pytest.mark.parametrize("mood,streak,expected", [
    (5, 0, 10),
    (7, 0, 15),
    (9, 0, 20),
    (10, 1, 20),
    (9, 2, 22),
    (6, 5, 15),
    (9, 40, 40),  # streak bonus capped at 20
])
def test_check_in_points(mood, streak, expected):
    award = _award("daily-check-in", {"mood": mood}, streak)
    assert award.points == expected
    assert award.category == TransactionCategory.CHECK_IN
    assert award.source == "daily-check-in"


@pytest.mark.parametrize("mood", [0, 11, -3])
def test_check_in_mood_out_of_range(mood):
    with pytest.raises(InvalidInputError):
        parse_payload(ActivityType.DAILY_CHECK_IN, {"mood": mood})


# ============================================================================
# Assessment
# ============================================================================

@pytest.mark.parametrize("assessment_type,streak,expected", [
    ("PHQ-4", 0, 25),
    ("mood-tracker", 0, 15),
    ("wellness-survey", 0, 20),
    ("something-else", 0, 15),
    ("PHQ-4", 2, 29),
    ("PHQ-4", 10, 40),  # streak bonus capped at 15
])
def test_assessment_points(assessment_type, streak, expected):
    assert _award("assessment", {"assessment_type": assessment_type}, streak).points == expected


# ============================================================================
# Education
# ============================================================================

@pytest.mark.parametrize("content_type,duration,expected", [
    ("article", 180, 6),
    ("article", 3600, 10),
    ("video", 240, 12),
    ("video", 3600, 15),
    ("interactive", 300, 20),
    ("interactive", 120, 8),
    ("quiz", 10, 15),
    ("podcast", 240, 8),
    ("podcast", 60, 2),
])
def test_education_points(content_type, duration, expected):
    award = _award("education", {"content_type": content_type, "duration_seconds": duration})
    assert award.points == expected
    assert award.category == TransactionCategory.EDUCATION


def test_education_under_a_minute_rejected():
    with pytest.raises(InvalidInputError):
        _award("education", {"content_type": "article", "duration_seconds": 59})


# ============================================================================
# Peer support, buddy, resource
# ============================================================================

@pytest.mark.parametrize("activity_type,quality,expected", [
    ("group-message", None, 5),
    ("group-voice", 3, 10),
    ("support-given", 4, 20),
    ("group-check-in", 5, 17),
    ("other", None, 5),
])
def test_peer_support_points(activity_type, quality, expected):
    payload = {"activity_type": activity_type}
    if quality is not None:
        payload["quality"] = quality
    assert _award("peer-support", payload).points == expected


@pytest.mark.parametrize("interaction_type,quality,duration,expected", [
    ("text-chat", 3, None, 5),
    ("text-chat", 5, None, 8),      # 8.33
    ("check-in", 5, None, 33),      # 33.33
    ("goal-update", 4, None, 24),
    ("voice-call", 3, 1800, 21),    # 15 + 6
    ("voice-call", 3, 10000, 25),   # duration bonus capped at 10
    ("other", 3, None, 8),
    ("other", 1, None, 3),          # 2.67
    ("text-chat", 3, 0, 5),
    ("goal-update", 2, None, 12),
    ("voice-call", 1, 0, 5),
])
def test_buddy_points(interaction_type, quality, duration, expected):
    payload = {"interaction_type": interaction_type, "quality": quality}
    if duration is not None:
        payload["duration_seconds"] = duration
    award = _award("buddy", payload)
    assert award.points == expected
    assert award.category == TransactionCategory.BUDDY


@pytest.mark.parametrize("engagement,expected", [
    ("view", 2), ("save", 5), ("share", 8), ("review", 12), ("contact", 15), ("print", 3),
])
def test_resource_points(engagement, expected):
    assert _award("resource", {"resource_type": "hotline", "engagement": engagement}).points == expected


# ============================================================================
# Parsing
# ============================================================================

def test_unknown_activity_rejected():
    with pytest.raises(InvalidInputError) as exc_info:
        parse_activity_type("yoga")
    assert exc_info.value.field == "activity_type"


def test_missing_payload_field_rejected():
    with pytest.raises(InvalidInputError):
        parse_payload(ActivityType.BUDDY, {"interaction_type": "text-chat"})


def test_payload_model_passes_through():
    payload = CheckInPayload(mood=8)
    assert parse_payload(ActivityType.DAILY_CHECK_IN, payload) is payload


def test_streak_mapping():
    assert ACTIVITY_STREAKS[ActivityType.EDUCATION] == StreakType.LEARNING
    assert ActivityType.BUDDY not in ACTIVITY_STREAKS
    assert ActivityType.RESOURCE not in ACTIVITY_STREAKS
