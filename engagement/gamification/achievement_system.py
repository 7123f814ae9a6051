"""
Achievement System

Evaluates unlock rules after every earn transaction:
- Milestones (lifetime points)
- Consistency (longest check-in streak, activity on 7 straight days)
- Category-specific (Nth check-in, Nth assessment, education points, ...)
- Social (combined peer-support and buddy activity)

Unlocking is idempotent per user and always posts exactly one bonus
transaction. Bonuses carry a source that never triggers evaluation, so
an unlock cannot cascade into another evaluation pass.
"""

from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo
import logging

from engagement.config import STREAK_TIMEZONE
from engagement.db.base import UserSession
from engagement.gamification.ledger import LEVEL_UP_SOURCE, Ledger
from engagement.models.achievement import (
    Achievement,
    AchievementCategory,
    AchievementCriteria,
    AchievementRarity,
    AchievementUnlocked,
    CriteriaType,
)
from engagement.models.events import EngagementEvent, EventType
from engagement.models.ledger import (
    PointTransaction,
    TransactionCategory,
    TransactionDirection,
    UnlockedAchievement,
    UserAccount,
)
from engagement.models.streak import Streak, StreakType
from engagement.utils.datetime_helpers import Clock, calendar_day, now_utc

logger = logging.getLogger(__name__)

ACHIEVEMENT_SOURCE = "achievement-system"
WELCOME_BONUS_SOURCE = "welcome-bonus"

# Transactions from these sources never trigger evaluation
NON_TRIGGERING_SOURCES = frozenset({ACHIEVEMENT_SOURCE, LEVEL_UP_SOURCE, WELCOME_BONUS_SOURCE})

CATEGORY_ICONS = {
    AchievementCategory.WELLNESS: "🌱",
    AchievementCategory.SOCIAL: "🤝",
    AchievementCategory.LEARNING: "📚",
    AchievementCategory.CONSISTENCY: "🔥",
    AchievementCategory.MILESTONE: "🏆",
}

SOCIAL_CATEGORIES = (TransactionCategory.PEER_SUPPORT, TransactionCategory.BUDDY)


def rarity_for(bonus_points: int) -> AchievementRarity:
    """Rarity tier derived from the bonus value"""
    if bonus_points >= 100:
        return AchievementRarity.LEGENDARY
    if bonus_points >= 75:
        return AchievementRarity.EPIC
    if bonus_points >= 50:
        return AchievementRarity.RARE
    return AchievementRarity.COMMON


def _define(
    id: str,
    name: str,
    description: str,
    category: AchievementCategory,
    bonus_points: int,
    criteria: AchievementCriteria,
) -> Achievement:
    return Achievement(
        id=id,
        name=name,
        description=description,
        icon=CATEGORY_ICONS[category],
        category=category,
        rarity=rarity_for(bonus_points),
        bonus_points=bonus_points,
        criteria=criteria,
    )


def _points(value: int) -> AchievementCriteria:
    return AchievementCriteria(type=CriteriaType.LIFETIME_POINTS, value=value)


def _streak(value: int) -> AchievementCriteria:
    return AchievementCriteria(
        type=CriteriaType.LONGEST_STREAK, value=value, streak_type=StreakType.DAILY_CHECK_IN
    )


def _count(category: TransactionCategory, value: int) -> AchievementCriteria:
    return AchievementCriteria(type=CriteriaType.CATEGORY_COUNT, value=value, category=category)


# Evaluation order matters: a bonus posted by one rule is visible to the
# rules after it in the same pass.
ACHIEVEMENTS: tuple[Achievement, ...] = (
    # Lifetime point milestones
    _define("first-hundred", "Century Club", "Earned your first 100 points!",
            AchievementCategory.MILESTONE, 50, _points(100)),
    _define("five-hundred", "Rising Star", "500 points earned - you're on fire!",
            AchievementCategory.MILESTONE, 50, _points(500)),
    _define("thousand", "Point Master", "1,000 points! You're dedicated to wellness.",
            AchievementCategory.MILESTONE, 50, _points(1000)),
    _define("twenty-five-hundred", "Wellness Warrior", "2,500 points - a true wellness champion!",
            AchievementCategory.MILESTONE, 50, _points(2500)),
    _define("five-thousand", "Legendary Status", "5,000 points! Legendary dedication.",
            AchievementCategory.MILESTONE, 50, _points(5000)),
    # Check-in streak milestones
    _define("three-day-streak", "Getting Started", "3-day check-in streak!",
            AchievementCategory.CONSISTENCY, 50, _streak(3)),
    _define("week-warrior", "Week Warrior", "7-day check-in streak! 🔥",
            AchievementCategory.CONSISTENCY, 50, _streak(7)),
    _define("month-master", "Monthly Master", "30-day streak - incredible consistency!",
            AchievementCategory.CONSISTENCY, 75, _streak(30)),
    _define("hundred-day-hero", "Hundred Day Hero", "100 days strong! Unstoppable!",
            AchievementCategory.CONSISTENCY, 100, _streak(100)),
    _define("year-champion", "Year Champion", "A full year of daily check-ins! 🏆",
            AchievementCategory.CONSISTENCY, 100, _streak(365)),
    # Category-specific
    _define("first-check-in", "First Steps", "Completed your first daily check-in!",
            AchievementCategory.WELLNESS, 25, _count(TransactionCategory.CHECK_IN, 1)),
    _define("check-in-master", "Check-in Master", "30 daily check-ins completed!",
            AchievementCategory.WELLNESS, 75, _count(TransactionCategory.CHECK_IN, 30)),
    _define("first-assessment", "Self-Awareness", "Completed your first assessment!",
            AchievementCategory.WELLNESS, 25, _count(TransactionCategory.ASSESSMENT, 1)),
    _define("assessment-expert", "Assessment Expert", "10 assessments completed!",
            AchievementCategory.WELLNESS, 50, _count(TransactionCategory.ASSESSMENT, 10)),
    _define("knowledge-seeker", "Knowledge Seeker", "Earned 100+ education points!",
            AchievementCategory.LEARNING, 50,
            AchievementCriteria(type=CriteriaType.CATEGORY_POINTS, value=100,
                                category=TransactionCategory.EDUCATION)),
    _define("helpful-peer", "Helpful Peer", "Actively participated in peer support!",
            AchievementCategory.SOCIAL, 40, _count(TransactionCategory.PEER_SUPPORT, 5)),
    _define("great-buddy", "Great Buddy", "Excellent buddy interactions!",
            AchievementCategory.SOCIAL, 60, _count(TransactionCategory.BUDDY, 10)),
    # Rolling window
    _define("week-consistency", "Consistency Champion", "7 days of consistent activity!",
            AchievementCategory.CONSISTENCY, 75,
            AchievementCriteria(type=CriteriaType.CONSISTENCY_WINDOW, value=7)),
    # Social aggregate
    _define("social-butterfly", "Social Butterfly", "Active in social features!",
            AchievementCategory.SOCIAL, 60,
            AchievementCriteria(type=CriteriaType.SOCIAL_COUNT, value=25)),
)

ACHIEVEMENTS_BY_ID = {a.id: a for a in ACHIEVEMENTS}


class AchievementEngine:
    """Evaluates achievement rules and unlocks what the user has earned"""

    def __init__(
        self,
        ledger: Ledger,
        clock: Clock = now_utc,
        tz: Optional[ZoneInfo] = None,
        achievements: tuple[Achievement, ...] = ACHIEVEMENTS,
    ):
        self.ledger = ledger
        self.clock = clock
        self.tz = tz or ZoneInfo(STREAK_TIMEZONE)
        self.achievements = achievements

    async def evaluate(
        self,
        session: UserSession,
        triggering_category: TransactionCategory,
        source: Optional[str] = None,
    ) -> list[AchievementUnlocked]:
        """
        Check if the user unlocked any achievements

        Args:
            session: Open unit of work for the user
            triggering_category: Category of the earn that triggered the check
            source: Source of that earn; bookkeeping sources are ignored

        Returns:
            Newly unlocked achievements, in evaluation order
        """
        if source in NON_TRIGGERING_SOURCES:
            return []

        triggering_category = TransactionCategory(triggering_category)
        newly_unlocked = []

        # Loaded on first use; account and ledger reload after each unlock
        account: Optional[UserAccount] = None
        transactions: Optional[list[PointTransaction]] = None
        streaks: Optional[list[Streak]] = None

        async def load_ledger() -> list[PointTransaction]:
            nonlocal transactions
            if transactions is None:
                transactions = await session.get_transactions()
            return transactions

        for achievement in self.achievements:
            if account is None:
                account = await session.get_account()
                if account is None:
                    return newly_unlocked
            if achievement.id in account.achievement_ids:
                continue

            criteria = achievement.criteria
            is_unlocked = False

            if criteria.type == CriteriaType.LIFETIME_POINTS:
                is_unlocked = _check_lifetime_points(account, criteria)

            elif criteria.type == CriteriaType.LONGEST_STREAK:
                if streaks is None:
                    streaks = await session.get_streaks()
                is_unlocked = _check_longest_streak(streaks, criteria)

            elif criteria.type == CriteriaType.CATEGORY_COUNT:
                if criteria.category == triggering_category:
                    is_unlocked = _check_category_count(await load_ledger(), criteria)

            elif criteria.type == CriteriaType.CATEGORY_POINTS:
                if criteria.category == triggering_category:
                    is_unlocked = _check_category_points(await load_ledger(), criteria)

            elif criteria.type == CriteriaType.CONSISTENCY_WINDOW:
                is_unlocked = self._check_consistency_window(await load_ledger(), criteria)

            elif criteria.type == CriteriaType.SOCIAL_COUNT:
                is_unlocked = _check_social_count(await load_ledger(), criteria)

            if is_unlocked:
                newly_unlocked.append(await self._unlock(session, account, achievement))
                account = None
                transactions = None

        return newly_unlocked

    async def _unlock(
        self, session: UserSession, account: UserAccount, achievement: Achievement
    ) -> AchievementUnlocked:
        now = self.clock()
        account.achievements.append(UnlockedAchievement(achievement_id=achievement.id, unlocked_at=now))
        await session.save_account(account)

        bonus = await self.ledger.post_transaction(
            session,
            TransactionDirection.EARN,
            TransactionCategory.ACHIEVEMENT,
            achievement.bonus_points,
            f"Achievement unlocked: {achievement.name}",
            ACHIEVEMENT_SOURCE,
            metadata={"achievement_id": achievement.id},
        )

        session.events.append(EngagementEvent(
            event_type=EventType.ACHIEVEMENT_UNLOCKED,
            user_id=session.user_id,
            occurred_at=now,
            data={
                "achievement_id": achievement.id,
                "name": achievement.name,
                "category": achievement.category.value,
                "rarity": achievement.rarity.value,
                "bonus_points": achievement.bonus_points,
                "transaction_id": bonus.id,
            },
        ))

        logger.info(
            f"User {session.user_id} unlocked achievement: {achievement.id} "
            f"({achievement.name}) +{achievement.bonus_points} points"
        )
        return AchievementUnlocked(
            achievement=achievement,
            user_id=session.user_id,
            unlocked_at=now,
            transaction_id=bonus.id,
        )

    def _check_consistency_window(
        self, transactions: list[PointTransaction], criteria: AchievementCriteria
    ) -> bool:
        """Earn activity on each of the last N calendar days, today included"""
        today = calendar_day(self.clock(), self.tz)
        window = {today - timedelta(days=offset) for offset in range(criteria.value)}
        active_days = {
            calendar_day(t.timestamp, self.tz)
            for t in transactions
            if t.is_earn and t.source not in NON_TRIGGERING_SOURCES
        }
        return window <= active_days


def _check_lifetime_points(account: UserAccount, criteria: AchievementCriteria) -> bool:
    return account.lifetime_points >= criteria.value


def _check_longest_streak(streaks: list[Streak], criteria: AchievementCriteria) -> bool:
    for streak in streaks:
        if streak.streak_type == criteria.streak_type:
            return streak.longest >= criteria.value
    return False


def _check_category_count(transactions: list[PointTransaction], criteria: AchievementCriteria) -> bool:
    count = sum(1 for t in transactions if t.is_earn and t.category == criteria.category)
    return count >= criteria.value


def _check_category_points(transactions: list[PointTransaction], criteria: AchievementCriteria) -> bool:
    earned = sum(t.amount for t in transactions if t.is_earn and t.category == criteria.category)
    return earned >= criteria.value


def _check_social_count(transactions: list[PointTransaction], criteria: AchievementCriteria) -> bool:
    count = sum(1 for t in transactions if t.is_earn and t.category in SOCIAL_CATEGORIES)
    return count >= criteria.value
