"""
Ledger Store

Append-only point-transaction log plus the balances derived from it.

Balance rules:
- earn:  available += amount, total += amount, lifetime += amount
- spend: available -= amount (never below 0)
- After an earn, the level is recomputed; a level gain posts ONE
  level-up bonus earn (25 points per level gained) and the stored level
  becomes level_for(total) including that bonus. The bonus never
  triggers a second bonus.

All calls run inside a UserSession, which serializes writers per user.
"""

from typing import Any, Optional
import logging

from engagement.config import LEVEL_UP_BONUS_PER_LEVEL
from engagement.db.base import UserSession
from engagement.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidInputError,
)
from engagement.gamification.levels import LevelLadder, default_ladder
from engagement.models.events import EngagementEvent, EventType
from engagement.models.ledger import (
    PointTransaction,
    TransactionCategory,
    TransactionDirection,
    UserAccount,
)
from engagement.utils.datetime_helpers import Clock, now_utc
from engagement.utils.ids import new_transaction_id

logger = logging.getLogger(__name__)

LEVEL_UP_SOURCE = "level-up"


def _coerce_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(
            f"Unknown {field} '{value}'. Must be one of: {', '.join(e.value for e in enum_cls)}",
            field=field,
            value=value,
        )


def validate_amount(amount: Any) -> int:
    """Amounts are positive integers; the direction encodes the sign"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInputError("Amount must be an integer", field="amount", value=amount)
    if amount <= 0:
        raise InvalidInputError("Amount must be positive", field="amount", value=amount)
    return amount


def check_replay(
    existing: PointTransaction,
    direction: TransactionDirection,
    category: TransactionCategory,
    idempotency_key: str,
) -> PointTransaction:
    """A replayed key must name the same kind of entry it was first used for"""
    if existing.direction != direction or existing.category != category:
        raise InvalidInputError(
            f"Idempotency key '{idempotency_key}' was already used for a "
            f"{existing.direction.value} of {existing.category.value}",
            field="idempotency_key",
            value=idempotency_key,
        )
    return existing


class Ledger:
    """Posts transactions and keeps balances and level in step with them"""

    def __init__(
        self,
        ladder: LevelLadder = default_ladder,
        clock: Clock = now_utc,
        level_up_bonus_per_level: int = LEVEL_UP_BONUS_PER_LEVEL,
    ):
        self.ladder = ladder
        self.clock = clock
        self.level_up_bonus_per_level = level_up_bonus_per_level

    async def post_transaction(
        self,
        session: UserSession,
        direction: TransactionDirection,
        category: TransactionCategory,
        amount: int,
        description: str,
        source: str,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PointTransaction:
        """
        Append a transaction and update balances

        Args:
            session: Open unit of work for the user
            direction: earn or spend
            category: Activity or bookkeeping category
            amount: Positive number of points
            description: Human-readable description
            source: Component that originated the transaction
            metadata: Arbitrary context stored with the entry
            idempotency_key: Caller key; a repeat returns the original entry

        Returns:
            The posted (or previously posted) transaction

        Raises:
            InvalidInputError: Non-positive amount, unknown direction/category
            AccountNotFoundError: No account for the session's user
            InsufficientBalanceError: Spend exceeds available points
        """
        direction = _coerce_enum(TransactionDirection, direction, "direction")
        category = _coerce_enum(TransactionCategory, category, "category")
        amount = validate_amount(amount)

        if idempotency_key:
            existing = await session.find_transaction(idempotency_key)
            if existing is not None:
                logger.debug(f"Idempotent replay of {existing.id} for user {session.user_id}")
                return check_replay(existing, direction, category, idempotency_key)

        account = await session.get_account()
        if account is None:
            raise AccountNotFoundError(session.user_id, operation="post_transaction")

        if direction == TransactionDirection.SPEND and account.available_points < amount:
            raise InsufficientBalanceError(
                session.user_id,
                required=amount,
                available=account.available_points,
                operation="post_transaction",
            )

        transaction = self._append(
            account, direction, category, amount, description, source, metadata, idempotency_key
        )
        await session.add_transaction(transaction)

        old_level = account.level
        level_up_txn = None
        if direction == TransactionDirection.EARN:
            level_up_txn = self._apply_level_progression(account)
            if level_up_txn is not None:
                await session.add_transaction(level_up_txn)

        await session.save_account(account)

        session.events.append(self._balance_event(account, transaction))
        if level_up_txn is not None:
            session.events.append(self._balance_event(account, level_up_txn))
        if account.level > old_level:
            session.events.append(EngagementEvent(
                event_type=EventType.LEVEL_UP,
                user_id=account.user_id,
                occurred_at=account.last_active_at,
                data={
                    "old_level": old_level,
                    "new_level": account.level,
                    "bonus": level_up_txn.amount if level_up_txn else 0,
                    "level_info": self.ladder.get(account.level).model_dump(),
                },
            ))

        logger.info(
            f"Posted {direction.value} of {amount} points ({category.value}) for user {account.user_id}. "
            f"Available: {account.available_points}, Lifetime: {account.lifetime_points}, Level: {account.level}"
        )
        return transaction

    def _append(
        self,
        account: UserAccount,
        direction: TransactionDirection,
        category: TransactionCategory,
        amount: int,
        description: str,
        source: str,
        metadata: Optional[dict[str, Any]],
        idempotency_key: Optional[str],
    ) -> PointTransaction:
        """Build the entry and apply it to the in-session account"""
        now = self.clock()
        signed = amount if direction == TransactionDirection.EARN else -amount

        if direction == TransactionDirection.EARN:
            account.total_points += amount
            account.lifetime_points += amount
        account.available_points += signed
        account.last_active_at = now

        return PointTransaction(
            id=new_transaction_id(),
            user_id=account.user_id,
            direction=direction,
            category=category,
            amount=signed,
            description=description,
            source=source,
            metadata=metadata or {},
            timestamp=now,
            idempotency_key=idempotency_key,
        )

    def _apply_level_progression(self, account: UserAccount) -> Optional[PointTransaction]:
        """Raise the stored level and build the single level-up bonus, if any"""
        reached = self.ladder.level_for(account.total_points).level
        old_level = account.level
        if reached <= old_level:
            return None

        bonus = (reached - old_level) * self.level_up_bonus_per_level
        bonus_txn = None
        if bonus > 0:
            bonus_txn = self._append(
                account,
                TransactionDirection.EARN,
                TransactionCategory.LEVEL_UP,
                bonus,
                f"Level up! Reached level {reached}",
                LEVEL_UP_SOURCE,
                {"old_level": old_level, "reached_level": reached},
                None,
            )
        # The bonus itself may cross another threshold; level follows the total
        account.level = self.ladder.level_for(account.total_points).level

        logger.info(f"User {account.user_id} leveled up from {old_level} to {account.level}!")
        return bonus_txn

    @staticmethod
    def _balance_event(account: UserAccount, transaction: PointTransaction) -> EngagementEvent:
        return EngagementEvent(
            event_type=EventType.BALANCE_CHANGED,
            user_id=account.user_id,
            occurred_at=transaction.timestamp,
            data={
                "transaction_id": transaction.id,
                "category": transaction.category.value,
                "source": transaction.source,
                "amount": transaction.amount,
                "metadata": transaction.metadata,
                "available_points": account.available_points,
                "total_points": account.total_points,
                "lifetime_points": account.lifetime_points,
            },
        )
