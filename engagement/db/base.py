"""
Persistence interface

The engine is storage-agnostic: every component talks to a `Storage` and,
for writes, to a per-user `UserSession`.

A UserSession is the per-user serialization boundary and unit of work:
- Opening it blocks other sessions for the same user (different users
  proceed in parallel)
- Reads inside the session see the session's own writes
- Writes become visible to others only when the session exits cleanly
- Any exception rolls back every write made through the session,
  including stock reservations
- Events appended to `session.events` are published by the caller
  after commit
"""

import hashlib
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Optional

from engagement.models.events import EngagementEvent
from engagement.models.ledger import PointTransaction, UserAccount
from engagement.models.reward import RedemptionToken
from engagement.models.streak import Streak, StreakType


class UserSession(ABC):
    """Unit of work scoped to one user"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.events: list[EngagementEvent] = []

    # Accounts
    @abstractmethod
    async def get_account(self) -> Optional[UserAccount]:
        """Fresh copy of the account, or None"""

    @abstractmethod
    async def save_account(self, account: UserAccount) -> None:
        """Insert or replace the account"""

    # Ledger
    @abstractmethod
    async def add_transaction(self, transaction: PointTransaction) -> None:
        """Append an immutable ledger entry"""

    @abstractmethod
    async def get_transactions(self, limit: Optional[int] = None) -> list[PointTransaction]:
        """User's ledger entries, newest first"""

    @abstractmethod
    async def find_transaction(self, idempotency_key: str) -> Optional[PointTransaction]:
        """Ledger entry previously posted with this idempotency key"""

    # Streaks
    @abstractmethod
    async def get_streak(self, streak_type: StreakType) -> Optional[Streak]:
        pass

    @abstractmethod
    async def get_streaks(self) -> list[Streak]:
        pass

    @abstractmethod
    async def save_streak(self, streak: Streak) -> None:
        pass

    # Redemption tokens
    @abstractmethod
    async def get_token(self, token_id: str) -> Optional[RedemptionToken]:
        pass

    @abstractmethod
    async def get_tokens(self) -> list[RedemptionToken]:
        pass

    @abstractmethod
    async def find_token(self, idempotency_key: str) -> Optional[RedemptionToken]:
        pass

    @abstractmethod
    async def save_token(self, token: RedemptionToken) -> None:
        pass

    @abstractmethod
    async def delete_token(self, token_id: str) -> None:
        pass

    # Shared stock
    @abstractmethod
    async def reserve_stock(self, reward_id: str) -> bool:
        """
        Atomic decrement-if-positive on a reward's stock

        Independent of the per-user lock; released again if the session
        rolls back.

        Returns:
            True if a unit was taken, False if stock was already 0
        """

    # Erasure
    @abstractmethod
    async def erase(self, purge: bool = False) -> int:
        """
        Remove the user's account, streaks and tokens

        Ledger rows are redacted (pseudonymous user id, no description or
        metadata) or, with purge=True, deleted.

        Returns:
            Number of ledger rows redacted or deleted
        """


class Storage(ABC):
    """Backend-neutral persistence"""

    async def connect(self) -> None:
        """Open connections / create schema"""

    async def close(self) -> None:
        """Release connections"""

    @abstractmethod
    def session(self, user_id: str) -> AbstractAsyncContextManager[UserSession]:
        """Open the per-user unit of work"""

    # Read-side (no lock)
    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[UserAccount]:
        pass

    @abstractmethod
    async def list_accounts(self) -> list[UserAccount]:
        pass

    @abstractmethod
    async def get_transactions(self, user_id: str, limit: Optional[int] = None) -> list[PointTransaction]:
        pass

    @abstractmethod
    async def get_streaks(self, user_id: str) -> list[Streak]:
        pass

    @abstractmethod
    async def get_token(self, token_id: str) -> Optional[RedemptionToken]:
        pass

    @abstractmethod
    async def list_user_ids_with_active_streaks(self) -> list[str]:
        pass

    @abstractmethod
    async def list_user_ids_with_tokens(self) -> list[str]:
        pass

    @abstractmethod
    async def earned_since(self, since: datetime) -> dict[str, int]:
        """Sum of earn amounts per user with timestamp >= since"""

    @abstractmethod
    async def ledger_totals(self) -> tuple[int, int]:
        """(points awarded, points spent) across all users"""

    @abstractmethod
    async def count_redeemed_tokens(self) -> int:
        pass

    # Reward stock
    @abstractmethod
    async def get_stock(self, reward_id: str) -> Optional[int]:
        """Live stock, or None if the reward has no stock record"""

    @abstractmethod
    async def seed_stock(self, reward_id: str, stock: int) -> None:
        """Create the stock record if it does not exist yet"""


def redacted_user_id(user_id: str) -> str:
    """Pseudonymous id used for redacted ledger rows"""
    return "erased_" + hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]
