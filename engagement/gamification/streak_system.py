"""
Streak Tracking System

Tracks consecutive-day streaks per activity type:
- daily-check-in
- assessment
- learning
- peer-support

Day differences are taken between calendar days in the configured zone
(STREAK_TIMEZONE), never from elapsed hours.

Features:
- Milestone bonuses at 3, 7, 14, 30, 100 and 365 days
- Best (longest) streak tracking
- Background deactivation of stale streaks
"""

from typing import Optional
from zoneinfo import ZoneInfo
import logging

from engagement.config import STREAK_TIMEZONE
from engagement.db.base import UserSession
from engagement.gamification.ledger import Ledger
from engagement.models.events import EngagementEvent, EventType
from engagement.models.ledger import TransactionCategory, TransactionDirection
from engagement.models.streak import Streak, StreakType
from engagement.utils.datetime_helpers import Clock, days_between, now_utc

logger = logging.getLogger(__name__)

STREAK_SOURCE = "streak-system"

# Base bonus per streak type, scaled by milestone multipliers
STREAK_BASE_BONUS = {
    StreakType.DAILY_CHECK_IN: 2,
    StreakType.ASSESSMENT: 3,
    StreakType.LEARNING: 2,
    StreakType.PEER_SUPPORT: 3,
}

# Exact-day milestones, checked before the tiered multipliers
MILESTONE_MULTIPLIERS = {
    7: 5,
    30: 15,
    100: 50,
    365: 200,
}


def calculate_streak_bonus(length: int, streak_type: StreakType) -> int:
    """
    Bonus points for reaching a streak length

    Milestone days (7, 30, 100, 365) pay a one-off multiple of the base;
    other days pay a tier based on how long the streak has run.

    Args:
        length: Current streak length in days
        streak_type: Streak the length belongs to

    Returns:
        Bonus points (0 below 3 days)
    """
    base = STREAK_BASE_BONUS[StreakType(streak_type)]

    if length in MILESTONE_MULTIPLIERS:
        return base * MILESTONE_MULTIPLIERS[length]
    if length >= 30:
        return base * 3
    if length >= 14:
        return base * 2
    if length >= 7:
        return base
    if length >= 3:
        return base // 2
    return 0


class StreakTracker:
    """Maintains per-user, per-type consecutive-day counters"""

    def __init__(
        self,
        ledger: Ledger,
        clock: Clock = now_utc,
        tz: Optional[ZoneInfo] = None,
    ):
        self.ledger = ledger
        self.clock = clock
        self.tz = tz or ZoneInfo(STREAK_TIMEZONE)

    async def touch(self, session: UserSession, streak_type: StreakType) -> Streak:
        """
        Record activity of a streak type for the session's user

        Logic:
        - First activity: streak starts at 1
        - Same calendar day: no change
        - Next calendar day: current += 1, longest = max(longest, current)
        - Gap of more than one day: current resets to 1

        Every increment beyond 1 posts the streak bonus through the ledger.

        Returns:
            Updated streak
        """
        streak_type = StreakType(streak_type)
        now = self.clock()
        streak = await session.get_streak(streak_type)

        if streak is None:
            streak = Streak(
                user_id=session.user_id,
                streak_type=streak_type,
                current=1,
                longest=1,
                last_activity_at=now,
                is_active=True,
            )
            logger.info(f"Started {streak_type.value} streak for user {session.user_id}")
            await self._save(session, streak, previous=0)
            return streak

        gap = days_between(streak.last_activity_at, now, self.tz)

        if gap <= 0:
            logger.debug(f"{streak_type.value} streak already counted today for user {session.user_id}")
            return streak

        previous = streak.current
        if gap == 1 and streak.current > 0:
            streak.current += 1
            streak.longest = max(streak.longest, streak.current)
        else:
            if streak.is_active and streak.current > 1:
                self._broken_event(session, streak, now)
            streak.current = 1
            streak.longest = max(streak.longest, 1)
            logger.info(
                f"{streak_type.value} streak reset for user {session.user_id} after {gap} day gap"
            )

        streak.last_activity_at = now
        streak.is_active = True
        await self._save(session, streak, previous=previous)

        if streak.current > 1:
            bonus = calculate_streak_bonus(streak.current, streak_type)
            if bonus > 0:
                await self.ledger.post_transaction(
                    session,
                    TransactionDirection.EARN,
                    TransactionCategory.STREAK,
                    bonus,
                    f"{streak.current}-day {streak_type.value} streak bonus",
                    STREAK_SOURCE,
                    metadata={"streak_type": streak_type.value, "streak_length": streak.current},
                )

        return streak

    async def deactivate_stale(self, session: UserSession) -> list[Streak]:
        """
        Deactivate the user's streaks last touched more than one day ago

        current drops to 0 and the active flag is cleared; longest is kept.

        Returns:
            Streaks that were deactivated
        """
        now = self.clock()
        deactivated = []

        for streak in await session.get_streaks():
            if not streak.is_active:
                continue
            if days_between(streak.last_activity_at, now, self.tz) <= 1:
                continue

            self._broken_event(session, streak, now)
            previous = streak.current
            streak.current = 0
            streak.is_active = False
            await self._save(session, streak, previous=previous, notify=False)
            deactivated.append(streak)

        if deactivated:
            logger.info(f"Deactivated {len(deactivated)} stale streak(s) for user {session.user_id}")
        return deactivated

    async def _save(self, session: UserSession, streak: Streak, previous: int, notify: bool = True) -> None:
        await session.save_streak(streak)

        # The daily check-in streak is mirrored on the account
        if streak.streak_type == StreakType.DAILY_CHECK_IN:
            account = await session.get_account()
            if account is not None:
                account.current_streak = streak.current
                account.longest_streak = max(account.longest_streak, streak.longest)
                await session.save_account(account)

        if notify:
            session.events.append(EngagementEvent(
                event_type=EventType.STREAK_UPDATED,
                user_id=session.user_id,
                occurred_at=streak.last_activity_at,
                data={
                    "streak_type": streak.streak_type.value,
                    "previous": previous,
                    "current": streak.current,
                    "longest": streak.longest,
                },
            ))

    @staticmethod
    def _broken_event(session: UserSession, streak: Streak, now) -> None:
        session.events.append(EngagementEvent(
            event_type=EventType.STREAK_BROKEN,
            user_id=session.user_id,
            occurred_at=now,
            data={
                "streak_type": streak.streak_type.value,
                "length": streak.current,
                "longest": streak.longest,
            },
        ))
