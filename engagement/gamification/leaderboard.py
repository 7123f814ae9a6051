"""
Leaderboard & Stats

Read-only aggregation over accounts, ledgers and streaks. Nothing here
takes a per-user lock; results reflect committed state.
"""

from collections import defaultdict
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo
import logging

from engagement.config import STREAK_TIMEZONE
from engagement.db.base import Storage
from engagement.exceptions import AccountNotFoundError, InvalidInputError
from engagement.gamification.levels import LevelLadder, default_ladder
from engagement.models.stats import (
    LeaderboardEntry,
    LeaderboardWindow,
    StreakRecord,
    SystemStats,
    UserStats,
)
from engagement.utils.datetime_helpers import Clock, now_utc, period_start

logger = logging.getLogger(__name__)

ACTIVE_USER_WINDOW = timedelta(days=7)


def dense_rank(scores: dict[str, int]) -> list[tuple[str, int, int]]:
    """
    Rank users by score, highest first

    Equal scores share a rank and the next distinct score gets the next
    rank (1, 1, 2). Ties are listed by user id.

    Returns:
        (user_id, score, rank) tuples in rank order
    """
    ordered = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    ranked = []
    rank = 0
    previous = None
    for user_id, score in ordered:
        if score != previous:
            rank += 1
            previous = score
        ranked.append((user_id, score, rank))
    return ranked


class LeaderboardService:
    """Rankings and statistics"""

    def __init__(
        self,
        storage: Storage,
        ladder: LevelLadder = default_ladder,
        clock: Clock = now_utc,
        tz: Optional[ZoneInfo] = None,
    ):
        self.storage = storage
        self.ladder = ladder
        self.clock = clock
        self.tz = tz or ZoneInfo(STREAK_TIMEZONE)

    async def get_leaderboard(
        self,
        window: LeaderboardWindow = LeaderboardWindow.ALL_TIME,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        """
        Top opted-in users for a window

        all-time ranks by total points; daily, weekly and monthly rank by
        points earned since the start of the current period.
        """
        try:
            window = LeaderboardWindow(window)
        except ValueError:
            raise InvalidInputError(f"Unknown leaderboard window '{window}'", field="window", value=window)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidInputError("Limit must be a positive integer", field="limit", value=limit)

        accounts = {a.user_id: a for a in await self.storage.list_accounts() if a.preferences.leaderboard}

        if window == LeaderboardWindow.ALL_TIME:
            scores = {user_id: a.total_points for user_id, a in accounts.items()}
        else:
            since = period_start(window.value, self.clock(), self.tz)
            earned = await self.storage.earned_since(since)
            scores = {user_id: earned.get(user_id, 0) for user_id in accounts}

        entries = []
        for user_id, points, rank in dense_rank(scores)[:limit]:
            account = accounts[user_id]
            level = self.ladder.get(account.level)
            entries.append(LeaderboardEntry(
                user_id=user_id,
                display_name=account.display_name,
                points=points,
                level=account.level,
                rank=rank,
                badge=level.badge if level else "",
            ))

        logger.debug(f"Built {window.value} leaderboard with {len(entries)} entries")
        return entries

    async def get_user_stats(self, user_id: str) -> UserStats:
        """
        Per-user statistics

        Raises:
            AccountNotFoundError: No account for user_id
        """
        account = await self.storage.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id, operation="get_stats")

        transactions = await self.storage.get_transactions(user_id)
        streaks = await self.storage.get_streaks(user_id)

        breakdown: dict[str, int] = defaultdict(int)
        for txn in transactions:
            if txn.is_earn:
                breakdown[txn.category.value] += txn.amount

        level = self.ladder.get(account.level) or self.ladder.level_for(account.total_points)
        return UserStats(
            account=account,
            total_transactions=len(transactions),
            category_breakdown=dict(breakdown),
            achievements=len(account.achievements),
            active_streaks=[s for s in streaks if s.is_active and s.current > 0],
            longest_streaks=[StreakRecord(streak_type=s.streak_type, longest=s.longest) for s in streaks],
            level=level,
            next_level=self.ladder.next_level(level.level),
            points_to_next_level=self.ladder.points_to_next_level(account.total_points),
        )

    async def get_system_stats(self) -> SystemStats:
        accounts = await self.storage.list_accounts()
        awarded, spent = await self.storage.ledger_totals()
        active_since = self.clock() - ACTIVE_USER_WINDOW

        total_users = len(accounts)
        average_level = sum(a.level for a in accounts) / total_users if total_users else 0.0

        return SystemStats(
            total_users=total_users,
            active_users=sum(1 for a in accounts if a.last_active_at >= active_since),
            total_points_awarded=awarded,
            total_points_spent=spent,
            average_level=round(average_level, 2),
            total_achievements=sum(len(a.achievements) for a in accounts),
            rewards_redeemed=await self.storage.count_redeemed_tokens(),
        )
