"""
EngagementService - Public API of the engagement-rewards engine

Every write runs in one per-user unit of work (UserSession): all reads,
balance changes, streak updates, stock reservations and tokens of a call
commit together or not at all. Events and metrics are emitted only after
the session commits.
"""

import logging
from datetime import timedelta
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from engagement.config import STREAK_TIMEZONE, WELCOME_BONUS_POINTS
from engagement.db.base import Storage, UserSession
from engagement.exceptions import (
    AccountNotFoundError,
    BusinessRuleError,
    InvalidInputError,
)
from engagement.gamification.achievement_system import WELCOME_BONUS_SOURCE, AchievementEngine
from engagement.gamification.activities import (
    ACTIVITY_CATEGORIES,
    ACTIVITY_STREAKS,
    compute_award,
    parse_activity_type,
    parse_payload,
)
from engagement.gamification.leaderboard import LeaderboardService
from engagement.gamification.ledger import Ledger, check_replay
from engagement.gamification.levels import LevelLadder, default_ladder
from engagement.gamification.rewards import RedemptionService, RewardCatalog, TokenCodec
from engagement.gamification.streak_system import StreakTracker
from engagement.models.achievement import Achievement
from engagement.models.events import EngagementEvent, EventType
from engagement.models.level import Level
from engagement.models.ledger import (
    PointTransaction,
    TransactionCategory,
    TransactionDirection,
    UserAccount,
)
from engagement.models.reward import RedemptionToken, Reward, TokenValidation
from engagement.models.stats import LeaderboardEntry, LeaderboardWindow, SystemStats, UserStats
from engagement.models.streak import Streak
from engagement.observability import metrics
from engagement.services.events import EventBus
from engagement.utils.datetime_helpers import Clock, now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANUAL_SOURCE = "manual"


def _require_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInputError("User id must be a non-empty string", field="user_id", value=user_id)
    return user_id


class EngagementService:
    """
    Service for the engagement-rewards engine.

    Responsibilities:
    - Account lifecycle (create, preferences, erasure)
    - Activity recording (points, streaks, achievements, levels)
    - Spending and reward redemption
    - Read-side queries (balances, history, leaderboards, stats)
    - Background maintenance hooks used by the scheduler
    """

    def __init__(
        self,
        storage: Storage,
        event_bus: Optional[EventBus] = None,
        clock: Clock = now_utc,
        ladder: LevelLadder = default_ladder,
        catalog: Optional[RewardCatalog] = None,
        tz: Optional[ZoneInfo] = None,
        welcome_bonus: int = WELCOME_BONUS_POINTS,
        token_codec: Optional[TokenCodec] = None,
    ):
        """
        Initialize EngagementService.

        Args:
            storage: Persistence backend
            event_bus: Outbound event channel (a private one if omitted)
            clock: Source of "now"; injectable for tests
            ladder: Level ladder
            catalog: Reward catalog (built-in rewards if omitted)
            tz: Zone defining calendar days (STREAK_TIMEZONE if omitted)
            welcome_bonus: Points posted when an account is created
            token_codec: Redemption token signer
        """
        self.storage = storage
        self.events = event_bus or EventBus()
        self.clock = clock
        self.ladder = ladder
        self.tz = tz or ZoneInfo(STREAK_TIMEZONE)
        self.welcome_bonus = welcome_bonus

        self.ledger = Ledger(ladder=ladder, clock=clock)
        self.streaks = StreakTracker(self.ledger, clock=clock, tz=self.tz)
        self.achievements = AchievementEngine(self.ledger, clock=clock, tz=self.tz)
        self.redemption = RedemptionService(
            storage, self.ledger, catalog=catalog, clock=clock, codec=token_codec
        )
        self.leaderboard = LeaderboardService(storage, ladder=ladder, clock=clock, tz=self.tz)
        logger.debug("EngagementService initialized")

    async def initialize(self) -> None:
        """Connect storage and seed stock for limited rewards"""
        await self.storage.connect()
        await self.redemption.seed_stock()
        logger.info(f"Engagement engine ready with {len(self.redemption.catalog.all())} rewards")

    async def close(self) -> None:
        await self.storage.close()

    # ------------------------------------------------------------------
    # Unit of work plumbing
    # ------------------------------------------------------------------

    async def _in_session(
        self,
        user_id: str,
        operation: str,
        work: Callable[[UserSession], Awaitable[T]],
    ) -> T:
        """Run `work` in the user's session, then publish what it committed"""
        with metrics.track_operation(operation):
            async with self.storage.session(user_id) as session:
                result = await work(session)
            self._after_commit(session.events)
        return result

    def _after_commit(self, events: list[EngagementEvent]) -> None:
        if not events:
            return
        metrics.record_events(events)
        self.events.publish_all(events)

    async def _create_in_session(self, session: UserSession, display_name: Optional[str]) -> UserAccount:
        now = self.clock()
        account = UserAccount(
            user_id=session.user_id,
            display_name=display_name or session.user_id,
            created_at=now,
            last_active_at=now,
        )
        await session.save_account(account)
        session.events.append(EngagementEvent(
            event_type=EventType.ACCOUNT_CREATED,
            user_id=session.user_id,
            occurred_at=now,
            data={"display_name": account.display_name},
        ))

        if self.welcome_bonus > 0:
            await self.ledger.post_transaction(
                session,
                TransactionDirection.EARN,
                TransactionCategory.ACHIEVEMENT,
                self.welcome_bonus,
                "Welcome bonus",
                WELCOME_BONUS_SOURCE,
            )

        logger.info(f"Created account for user {session.user_id}")
        return await session.get_account()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_account(self, user_id: str, display_name: Optional[str] = None) -> UserAccount:
        """
        Create an account and post the welcome bonus

        Idempotent: an existing account is returned unchanged.
        """
        user_id = _require_user_id(user_id)

        async def work(session: UserSession) -> UserAccount:
            existing = await session.get_account()
            if existing is not None:
                logger.debug(f"Account for user {user_id} already exists")
                return existing
            return await self._create_in_session(session, display_name)

        return await self._in_session(user_id, "create_account", work)

    async def get_account(self, user_id: str) -> UserAccount:
        """
        Raises:
            AccountNotFoundError: No account for user_id
        """
        account = await self.storage.get_account(_require_user_id(user_id))
        if account is None:
            raise AccountNotFoundError(user_id, operation="get_account")
        return account

    async def update_preferences(
        self,
        user_id: str,
        leaderboard: Optional[bool] = None,
        share_progress: Optional[bool] = None,
        notifications: Optional[bool] = None,
    ) -> UserAccount:
        """Change preference flags; None leaves a flag as it is"""
        user_id = _require_user_id(user_id)
        changes = {
            key: value for key, value in (
                ("leaderboard", leaderboard),
                ("share_progress", share_progress),
                ("notifications", notifications),
            ) if value is not None
        }

        async def work(session: UserSession) -> UserAccount:
            account = await session.get_account()
            if account is None:
                raise AccountNotFoundError(user_id, operation="update_preferences")
            account.preferences = account.preferences.model_copy(update=changes)
            await session.save_account(account)
            return account

        account = await self._in_session(user_id, "update_preferences", work)
        logger.info(f"Updated preferences for user {user_id}: {changes}")
        return account

    async def erase_account(self, user_id: str, purge: bool = False) -> int:
        """
        Remove a user's account, streaks and tokens

        Ledger rows are redacted, or deleted when purge=True.

        Returns:
            Number of ledger rows redacted or deleted

        Raises:
            AccountNotFoundError: No account for user_id
        """
        user_id = _require_user_id(user_id)

        async def work(session: UserSession) -> int:
            if await session.get_account() is None:
                raise AccountNotFoundError(user_id, operation="erase_account")
            return await session.erase(purge=purge)

        count = await self._in_session(user_id, "erase_account", work)
        logger.info(f"Erased account for user {user_id} ({'purged' if purge else 'redacted'} {count} ledger rows)")
        return count

    # ------------------------------------------------------------------
    # Earning
    # ------------------------------------------------------------------

    async def record_activity(
        self,
        user_id: str,
        activity_type: str,
        payload: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> PointTransaction:
        """
        Record a user activity and award its points

        Creates the account on first activity, updates the activity's
        streak (posting any streak bonus), posts the activity earn, then
        evaluates achievements.

        Args:
            user_id: External user id
            activity_type: One of ActivityType
            payload: Activity details (dict or payload model)
            idempotency_key: Caller key; a repeat returns the original earn

        Returns:
            The activity's earn transaction

        Raises:
            InvalidInputError: Unknown activity or malformed payload
        """
        user_id = _require_user_id(user_id)
        activity = parse_activity_type(activity_type)
        details = parse_payload(activity, payload)

        async def work(session: UserSession) -> PointTransaction:
            if idempotency_key:
                existing = await session.find_transaction(idempotency_key)
                if existing is not None:
                    logger.debug(f"Idempotent replay of {activity.value} for user {user_id}")
                    return check_replay(
                        existing, TransactionDirection.EARN, ACTIVITY_CATEGORIES[activity], idempotency_key
                    )

            if await session.get_account() is None:
                await self._create_in_session(session, None)

            streak: Optional[Streak] = None
            if activity in ACTIVITY_STREAKS:
                streak = await self.streaks.touch(session, ACTIVITY_STREAKS[activity])

            award = compute_award(activity, details, streak.current if streak else 0)
            transaction = await self.ledger.post_transaction(
                session,
                TransactionDirection.EARN,
                award.category,
                award.points,
                award.description,
                award.source,
                metadata=award.metadata,
                idempotency_key=idempotency_key,
            )
            await self.achievements.evaluate(session, award.category, award.source)
            return transaction

        return await self._in_session(user_id, "record_activity", work)

    async def award_points(
        self,
        user_id: str,
        category: str,
        amount: int,
        description: str,
        source: str = MANUAL_SOURCE,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PointTransaction:
        """
        Post an arbitrary earn (integrations, manual grants)

        Raises:
            AccountNotFoundError: No account for user_id
            InvalidInputError: Non-positive amount or unknown category
        """
        user_id = _require_user_id(user_id)

        async def work(session: UserSession) -> PointTransaction:
            transaction = await self.ledger.post_transaction(
                session,
                TransactionDirection.EARN,
                category,
                amount,
                description,
                source,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
            await self.achievements.evaluate(session, transaction.category, source)
            return transaction

        return await self._in_session(user_id, "award_points", work)

    # ------------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------------

    async def spend_points(
        self,
        user_id: str,
        amount: int,
        description: str,
        source: str = MANUAL_SOURCE,
        idempotency_key: Optional[str] = None,
    ) -> PointTransaction:
        """
        Post a redemption-category spend

        Raises:
            AccountNotFoundError: No account for user_id
            InsufficientBalanceError: amount exceeds available points
        """
        user_id = _require_user_id(user_id)

        async def work(session: UserSession) -> PointTransaction:
            return await self.ledger.post_transaction(
                session,
                TransactionDirection.SPEND,
                TransactionCategory.REDEMPTION,
                amount,
                description,
                source,
                idempotency_key=idempotency_key,
            )

        return await self._in_session(user_id, "spend_points", work)

    async def redeem_reward(
        self,
        user_id: str,
        reward_id: str,
        idempotency_key: Optional[str] = None,
    ) -> RedemptionToken:
        """
        Exchange points for a reward and mint its token

        Raises:
            RewardUnavailableError, AccountNotFoundError,
            IneligibleForRewardError, InsufficientBalanceError
        """
        user_id = _require_user_id(user_id)

        async def work(session: UserSession) -> RedemptionToken:
            return await self.redemption.redeem(session, reward_id, idempotency_key)

        try:
            return await self._in_session(user_id, "redeem_reward", work)
        except BusinessRuleError as e:
            metrics.redemption_failures_total.labels(reason=type(e).__name__).inc()
            raise

    async def validate_token(self, payload: str) -> TokenValidation:
        """Check a token payload; never changes state"""
        with metrics.track_operation("validate_token"):
            return await self.redemption.validate(payload)

    async def complete_redemption(self, token_id: str, location: Optional[str] = None) -> bool:
        """
        Mark a token redeemed

        Returns:
            True the first time for a valid token, False otherwise
        """
        token = await self.storage.get_token(token_id)
        if token is None:
            logger.info(f"Completion refused for unknown token {token_id}")
            return False

        async def work(session: UserSession) -> bool:
            return await self.redemption.complete(session, token_id, location)

        return await self._in_session(token.user_id, "complete_redemption", work)

    # ------------------------------------------------------------------
    # Read-side
    # ------------------------------------------------------------------

    async def get_transactions(self, user_id: str, limit: Optional[int] = 50) -> list[PointTransaction]:
        """User's ledger, newest first"""
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise InvalidInputError("Limit must be a positive integer", field="limit", value=limit)
        return await self.storage.get_transactions(_require_user_id(user_id), limit)

    async def get_leaderboard(
        self,
        window: LeaderboardWindow = LeaderboardWindow.ALL_TIME,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        with metrics.track_operation("get_leaderboard"):
            return await self.leaderboard.get_leaderboard(window, limit)

    async def get_stats(self, user_id: str) -> UserStats:
        return await self.leaderboard.get_user_stats(_require_user_id(user_id))

    async def get_system_stats(self) -> SystemStats:
        return await self.leaderboard.get_system_stats()

    def get_level_info(self, level: int) -> Optional[Level]:
        return self.ladder.get(level)

    def list_levels(self) -> list[Level]:
        return list(self.ladder.levels)

    def list_rewards(self) -> list[Reward]:
        return self.redemption.catalog.all()

    async def list_eligible_rewards(self, user_id: str) -> list[Reward]:
        """Rewards the user could redeem now, ignoring balance"""
        account = await self.get_account(user_id)
        return await self.redemption.list_eligible(account)

    def list_achievements(self) -> list[Achievement]:
        return list(self.achievements.achievements)

    async def get_achievements(self, user_id: str, include_locked: bool = False) -> dict[str, Any]:
        """
        Get user's achievements

        Returns:
            {
                'unlocked': [achievement dicts with 'unlocked_at'], most recent first,
                'locked': [achievement dicts] (if include_locked=True),
                'total_unlocked': int,
                'total_achievements': int,
                'total_bonus_points': int
            }
        """
        account = await self.get_account(user_id)
        by_id = {a.id: a for a in self.achievements.achievements}

        unlocked = []
        for instance in account.achievements:
            definition = by_id.get(instance.achievement_id)
            if definition is None:
                continue
            unlocked.append({**_dump(definition), "unlocked_at": instance.unlocked_at})
        unlocked.sort(key=lambda a: a["unlocked_at"], reverse=True)

        result = {
            "unlocked": unlocked,
            "total_unlocked": len(unlocked),
            "total_achievements": len(by_id),
            "total_bonus_points": sum(a["bonus_points"] for a in unlocked),
        }
        if include_locked:
            result["locked"] = [
                _dump(a) for a in self.achievements.achievements if a.id not in account.achievement_ids
            ]
        return result

    # ------------------------------------------------------------------
    # Maintenance (called by the scheduler, one user at a time)
    # ------------------------------------------------------------------

    async def deactivate_stale_streaks(self, user_id: str) -> list[Streak]:
        async def work(session: UserSession) -> list[Streak]:
            return await self.streaks.deactivate_stale(session)

        return await self._in_session(user_id, "deactivate_stale_streaks", work)

    async def cleanup_expired_tokens(self, user_id: str, retention: timedelta) -> int:
        async def work(session: UserSession) -> int:
            return await self.redemption.cleanup_expired(session, retention)

        return await self._in_session(user_id, "cleanup_expired_tokens", work)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")

