"""
Prometheus metrics definitions for the engagement engine.

Organized by component:
- Ledger: points awarded/spent, level-ups
- Streaks: bonuses, breaks
- Achievements: unlocks
- Redemption: successes and failures
- Engine: operation latency, dropped events

All metrics are recorded after the unit of work commits, so a rolled-back
operation is never counted.
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterable

from prometheus_client import Counter, Histogram

from engagement.models.events import EngagementEvent, EventType

logger = logging.getLogger(__name__)

# =============================================================================
# Ledger Metrics
# =============================================================================

points_awarded_total = Counter(
    "engagement_points_awarded_total",
    "Total points awarded",
    ["category"],
)

points_spent_total = Counter(
    "engagement_points_spent_total",
    "Total points spent",
    ["category"],
)

level_ups_total = Counter(
    "engagement_level_ups_total",
    "Total level-up transitions",
    ["new_level"],
)

# =============================================================================
# Streak Metrics
# =============================================================================

streak_bonuses_total = Counter(
    "engagement_streak_bonuses_total",
    "Streak bonus transactions posted",
    ["streak_type"],
)

streaks_broken_total = Counter(
    "engagement_streaks_broken_total",
    "Streaks deactivated or reset",
    ["streak_type"],
)

# =============================================================================
# Achievement Metrics
# =============================================================================

achievements_unlocked_total = Counter(
    "engagement_achievements_unlocked_total",
    "Achievements unlocked",
    ["achievement_id"],
)

# =============================================================================
# Redemption Metrics
# =============================================================================

rewards_redeemed_total = Counter(
    "engagement_rewards_redeemed_total",
    "Successful reward redemptions",
    ["reward_id"],
)

redemption_failures_total = Counter(
    "engagement_redemption_failures_total",
    "Rejected redemption attempts",
    ["reason"],  # reason: unavailable/ineligible/insufficient_balance/not_found
)

redemptions_completed_total = Counter(
    "engagement_redemptions_completed_total",
    "Redemption tokens marked as redeemed",
)

# =============================================================================
# Engine Metrics
# =============================================================================

operation_duration_seconds = Histogram(
    "engagement_operation_duration_seconds",
    "Public operation latency in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

events_dropped_total = Counter(
    "engagement_events_dropped_total",
    "Events dropped because a subscriber queue was full",
    ["event_type"],
)


# =============================================================================
# Helper Functions
# =============================================================================


@contextmanager
def track_operation(operation: str):
    """Observe the latency of a public engine operation"""
    start_time = time.time()
    try:
        yield
    finally:
        operation_duration_seconds.labels(operation=operation).observe(time.time() - start_time)


def record_events(events: Iterable[EngagementEvent]) -> None:
    """
    Update counters from a committed unit of work's events

    Called after commit only, so rolled-back work is never counted.
    """
    for event in events:
        data = event.data

        if event.event_type == EventType.BALANCE_CHANGED:
            amount = data["amount"]
            if amount > 0:
                points_awarded_total.labels(category=data["category"]).inc(amount)
                if data["category"] == "streak":
                    streak_type = data.get("metadata", {}).get("streak_type", "unknown")
                    streak_bonuses_total.labels(streak_type=streak_type).inc()
            else:
                points_spent_total.labels(category=data["category"]).inc(-amount)

        elif event.event_type == EventType.LEVEL_UP:
            level_ups_total.labels(new_level=str(data["new_level"])).inc()

        elif event.event_type == EventType.STREAK_BROKEN:
            streaks_broken_total.labels(streak_type=data["streak_type"]).inc()

        elif event.event_type == EventType.ACHIEVEMENT_UNLOCKED:
            achievements_unlocked_total.labels(achievement_id=data["achievement_id"]).inc()

        elif event.event_type == EventType.REWARD_REDEEMED:
            rewards_redeemed_total.labels(reward_id=data["reward_id"]).inc()

        elif event.event_type == EventType.REDEMPTION_COMPLETED:
            redemptions_completed_total.inc()
