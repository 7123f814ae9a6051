"""
In-memory storage backend

Dictionaries keyed by user id, with a per-user asyncio.Lock as the
serialization boundary. Sessions stage deep copies and write them back on
commit, so a rolled-back operation leaves no trace. Nothing is persisted
across restarts.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from engagement.db.base import Storage, UserSession, redacted_user_id
from engagement.models.ledger import PointTransaction, TransactionDirection, UserAccount
from engagement.models.reward import RedemptionToken
from engagement.models.streak import Streak, StreakType

logger = logging.getLogger(__name__)


class InMemorySession(UserSession):
    """Staged unit of work over InMemoryStorage"""

    def __init__(self, store: "InMemoryStorage", user_id: str):
        super().__init__(user_id)
        self._store = store
        self._account: Optional[UserAccount] = store._accounts.get(user_id)
        self._account_dirty = False
        self._new_transactions: list[PointTransaction] = []
        self._streaks: dict[StreakType, Streak] = {
            k: v.model_copy(deep=True) for k, v in store._streaks.get(user_id, {}).items()
        }
        self._streaks_dirty = False
        self._saved_tokens: dict[str, RedemptionToken] = {}
        self._deleted_tokens: set[str] = set()
        self._reservations: list[str] = []
        self._erase: Optional[bool] = None

    # Accounts
    async def get_account(self) -> Optional[UserAccount]:
        return self._account.model_copy(deep=True) if self._account else None

    async def save_account(self, account: UserAccount) -> None:
        self._account = account.model_copy(deep=True)
        self._account_dirty = True

    # Ledger
    async def add_transaction(self, transaction: PointTransaction) -> None:
        self._new_transactions.append(transaction)

    async def get_transactions(self, limit: Optional[int] = None) -> list[PointTransaction]:
        if self._erase is not None:
            return []
        combined = self._store._transactions.get(self.user_id, []) + self._new_transactions
        newest_first = sorted(combined, key=lambda t: t.id, reverse=True)
        return newest_first[:limit] if limit is not None else newest_first

    async def find_transaction(self, idempotency_key: str) -> Optional[PointTransaction]:
        for txn in await self.get_transactions():
            if txn.idempotency_key == idempotency_key:
                return txn
        return None

    # Streaks
    async def get_streak(self, streak_type: StreakType) -> Optional[Streak]:
        streak = self._streaks.get(StreakType(streak_type))
        return streak.model_copy(deep=True) if streak else None

    async def get_streaks(self) -> list[Streak]:
        return [s.model_copy(deep=True) for s in self._streaks.values()]

    async def save_streak(self, streak: Streak) -> None:
        self._streaks[streak.streak_type] = streak.model_copy(deep=True)
        self._streaks_dirty = True

    # Tokens
    async def get_token(self, token_id: str) -> Optional[RedemptionToken]:
        if token_id in self._deleted_tokens:
            return None
        token = self._saved_tokens.get(token_id) or self._store._tokens.get(token_id)
        if token is None or token.user_id != self.user_id:
            return None
        return token.model_copy(deep=True)

    async def get_tokens(self) -> list[RedemptionToken]:
        ids = {t.id for t in self._store._tokens.values() if t.user_id == self.user_id}
        ids.update(self._saved_tokens)
        tokens = [await self.get_token(token_id) for token_id in sorted(ids)]
        return [t for t in tokens if t is not None]

    async def find_token(self, idempotency_key: str) -> Optional[RedemptionToken]:
        for token in await self.get_tokens():
            if token.idempotency_key == idempotency_key:
                return token
        return None

    async def save_token(self, token: RedemptionToken) -> None:
        self._deleted_tokens.discard(token.id)
        self._saved_tokens[token.id] = token.model_copy(deep=True)

    async def delete_token(self, token_id: str) -> None:
        self._saved_tokens.pop(token_id, None)
        self._deleted_tokens.add(token_id)

    # Stock
    async def reserve_stock(self, reward_id: str) -> bool:
        # No await between check and decrement: atomic on the event loop
        remaining = self._store._stock.get(reward_id, 0)
        if remaining <= 0:
            return False
        self._store._stock[reward_id] = remaining - 1
        self._reservations.append(reward_id)
        return True

    # Erasure
    async def erase(self, purge: bool = False) -> int:
        count = len(await self.get_transactions())
        self._erase = purge
        self._account = None
        self._streaks = {}
        self._saved_tokens = {}
        return count

    # Commit / rollback
    def _commit(self) -> None:
        store = self._store
        if self._erase is not None:
            store._erase_user(self.user_id, purge=self._erase)
            return
        if self._account_dirty and self._account is not None:
            store._accounts[self.user_id] = self._account
        if self._new_transactions:
            store._transactions.setdefault(self.user_id, []).extend(self._new_transactions)
        if self._streaks_dirty:
            store._streaks[self.user_id] = self._streaks
        for token_id in self._deleted_tokens:
            store._tokens.pop(token_id, None)
        store._tokens.update(self._saved_tokens)

    def _rollback(self) -> None:
        for reward_id in self._reservations:
            self._store._stock[reward_id] = self._store._stock.get(reward_id, 0) + 1
        if self._reservations:
            logger.debug(f"Released {len(self._reservations)} stock reservation(s) for user {self.user_id}")


class InMemoryStorage(Storage):
    """In-process storage for tests and single-node deployments"""

    def __init__(self):
        self._accounts: dict[str, UserAccount] = {}
        self._transactions: dict[str, list[PointTransaction]] = {}
        self._streaks: dict[str, dict[StreakType, Streak]] = {}
        self._tokens: dict[str, RedemptionToken] = {}
        self._stock: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        logger.info("InMemoryStorage initialized - state is NOT persisted across restarts")

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def session(self, user_id: str) -> AsyncIterator[InMemorySession]:
        async with self._lock_for(user_id):
            session = InMemorySession(self, user_id)
            try:
                yield session
            except BaseException:
                session._rollback()
                raise
            session._commit()

    def _erase_user(self, user_id: str, purge: bool) -> None:
        self._accounts.pop(user_id, None)
        self._streaks.pop(user_id, None)
        for token_id in [t.id for t in self._tokens.values() if t.user_id == user_id]:
            del self._tokens[token_id]
        rows = self._transactions.pop(user_id, [])
        if purge:
            return
        pseudonym = redacted_user_id(user_id)
        self._transactions.setdefault(pseudonym, []).extend(
            t.model_copy(update={"user_id": pseudonym, "description": "", "metadata": {}, "idempotency_key": None})
            for t in rows
        )

    # Read-side
    async def get_account(self, user_id: str) -> Optional[UserAccount]:
        account = self._accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def list_accounts(self) -> list[UserAccount]:
        return [a.model_copy(deep=True) for a in self._accounts.values()]

    async def get_transactions(self, user_id: str, limit: Optional[int] = None) -> list[PointTransaction]:
        newest_first = sorted(self._transactions.get(user_id, []), key=lambda t: t.id, reverse=True)
        return newest_first[:limit] if limit is not None else newest_first

    async def get_streaks(self, user_id: str) -> list[Streak]:
        return [s.model_copy(deep=True) for s in self._streaks.get(user_id, {}).values()]

    async def get_token(self, token_id: str) -> Optional[RedemptionToken]:
        token = self._tokens.get(token_id)
        return token.model_copy(deep=True) if token else None

    async def list_user_ids_with_active_streaks(self) -> list[str]:
        return sorted(
            user_id for user_id, streaks in self._streaks.items()
            if any(s.is_active for s in streaks.values())
        )

    async def list_user_ids_with_tokens(self) -> list[str]:
        return sorted({t.user_id for t in self._tokens.values()})

    async def earned_since(self, since: datetime) -> dict[str, int]:
        totals: dict[str, int] = {}
        for user_id, rows in self._transactions.items():
            earned = sum(
                t.amount for t in rows
                if t.direction == TransactionDirection.EARN and t.timestamp >= since
            )
            if earned:
                totals[user_id] = earned
        return totals

    async def ledger_totals(self) -> tuple[int, int]:
        awarded = spent = 0
        for rows in self._transactions.values():
            for t in rows:
                if t.direction == TransactionDirection.EARN:
                    awarded += t.amount
                else:
                    spent += -t.amount
        return awarded, spent

    async def count_redeemed_tokens(self) -> int:
        return sum(1 for t in self._tokens.values() if t.is_redeemed)

    # Stock
    async def get_stock(self, reward_id: str) -> Optional[int]:
        return self._stock.get(reward_id)

    async def seed_stock(self, reward_id: str, stock: int) -> None:
        self._stock.setdefault(reward_id, stock)
