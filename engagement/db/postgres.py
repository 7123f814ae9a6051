"""
PostgreSQL storage backend

Each UserSession is one database transaction that first takes
pg_advisory_xact_lock on the user id, so concurrent writers for the same
user queue behind each other while different users run in parallel.
Reward stock is decremented with a conditional UPDATE, independent of the
user lock. All calls are bounded by the pool checkout timeout and the
server-side statement_timeout.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, AsyncIterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from engagement.config import DATABASE_URL, STORAGE_TIMEOUT_SECONDS
from engagement.db.base import Storage, UserSession, redacted_user_id
from engagement.exceptions import EngagementError, wrap_storage_exception
from engagement.models.ledger import (
    AccountPreferences,
    PointTransaction,
    UnlockedAchievement,
    UserAccount,
)
from engagement.models.reward import RedemptionToken
from engagement.models.streak import Streak, StreakType

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS engagement_accounts (
    user_id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    last_active_at TIMESTAMPTZ NOT NULL,
    level INTEGER NOT NULL DEFAULT 1,
    total_points INTEGER NOT NULL DEFAULT 0,
    available_points INTEGER NOT NULL DEFAULT 0 CHECK (available_points >= 0),
    lifetime_points INTEGER NOT NULL DEFAULT 0,
    current_streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    achievements JSONB NOT NULL DEFAULT '[]'::jsonb,
    preferences JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS engagement_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    direction TEXT NOT NULL,
    category TEXT NOT NULL,
    amount INTEGER NOT NULL,
    description TEXT NOT NULL,
    source TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    timestamp TIMESTAMPTZ NOT NULL,
    idempotency_key TEXT
);
CREATE INDEX IF NOT EXISTS idx_engagement_transactions_user ON engagement_transactions (user_id, id DESC);
CREATE INDEX IF NOT EXISTS idx_engagement_transactions_time ON engagement_transactions (timestamp);
CREATE UNIQUE INDEX IF NOT EXISTS idx_engagement_transactions_key
    ON engagement_transactions (user_id, idempotency_key) WHERE idempotency_key IS NOT NULL;

CREATE TABLE IF NOT EXISTS engagement_streaks (
    user_id TEXT NOT NULL,
    streak_type TEXT NOT NULL,
    current INTEGER NOT NULL,
    longest INTEGER NOT NULL,
    last_activity_at TIMESTAMPTZ NOT NULL,
    is_active BOOLEAN NOT NULL,
    PRIMARY KEY (user_id, streak_type)
);

CREATE TABLE IF NOT EXISTS engagement_reward_stock (
    reward_id TEXT PRIMARY KEY,
    stock INTEGER NOT NULL CHECK (stock >= 0)
);

CREATE TABLE IF NOT EXISTS engagement_redemption_tokens (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    reward_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    transaction_id TEXT NOT NULL,
    generated_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    is_redeemed BOOLEAN NOT NULL DEFAULT FALSE,
    redeemed_at TIMESTAMPTZ,
    redemption_location TEXT,
    idempotency_key TEXT
);
CREATE INDEX IF NOT EXISTS idx_engagement_tokens_user ON engagement_redemption_tokens (user_id);
"""

_ACCOUNT_COLUMNS = (
    "user_id, display_name, created_at, last_active_at, level, total_points, available_points, "
    "lifetime_points, current_streak, longest_streak, achievements, preferences"
)
_TXN_COLUMNS = "id, user_id, direction, category, amount, description, source, metadata, timestamp, idempotency_key"
_TOKEN_COLUMNS = (
    "id, user_id, reward_id, payload, transaction_id, generated_at, expires_at, "
    "is_redeemed, redeemed_at, redemption_location, idempotency_key"
)


def _account_from_row(row: dict) -> UserAccount:
    return UserAccount(
        user_id=row["user_id"],
        display_name=row["display_name"],
        created_at=row["created_at"],
        last_active_at=row["last_active_at"],
        level=row["level"],
        total_points=row["total_points"],
        available_points=row["available_points"],
        lifetime_points=row["lifetime_points"],
        current_streak=row["current_streak"],
        longest_streak=row["longest_streak"],
        achievements=[UnlockedAchievement(**a) for a in row["achievements"]],
        preferences=AccountPreferences(**row["preferences"]),
    )


def _streak_from_row(row: dict) -> Streak:
    return Streak(**row)


class PostgresSession(UserSession):
    """One transaction on one pooled connection"""

    def __init__(self, conn: psycopg.AsyncConnection, user_id: str):
        super().__init__(user_id)
        self._conn = conn

    async def _fetchone(self, query: str, params: tuple) -> Optional[dict]:
        async with self._conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()

    async def _fetchall(self, query: str, params: tuple) -> list[dict]:
        async with self._conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    async def _execute(self, query: str, params: tuple) -> int:
        async with self._conn.cursor() as cur:
            await cur.execute(query, params)
            return cur.rowcount

    # Accounts
    async def get_account(self) -> Optional[UserAccount]:
        row = await self._fetchone(
            f"SELECT {_ACCOUNT_COLUMNS} FROM engagement_accounts WHERE user_id = %s",
            (self.user_id,)
        )
        return _account_from_row(row) if row else None

    async def save_account(self, account: UserAccount) -> None:
        await self._execute(
            f"""
            INSERT INTO engagement_accounts ({_ACCOUNT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                last_active_at = EXCLUDED.last_active_at,
                level = EXCLUDED.level,
                total_points = EXCLUDED.total_points,
                available_points = EXCLUDED.available_points,
                lifetime_points = EXCLUDED.lifetime_points,
                current_streak = EXCLUDED.current_streak,
                longest_streak = EXCLUDED.longest_streak,
                achievements = EXCLUDED.achievements,
                preferences = EXCLUDED.preferences
            """,
            (
                account.user_id,
                account.display_name,
                account.created_at,
                account.last_active_at,
                account.level,
                account.total_points,
                account.available_points,
                account.lifetime_points,
                account.current_streak,
                account.longest_streak,
                Jsonb([a.model_dump(mode="json") for a in account.achievements]),
                Jsonb(account.preferences.model_dump()),
            )
        )

    # Ledger
    async def add_transaction(self, transaction: PointTransaction) -> None:
        await self._execute(
            f"""
            INSERT INTO engagement_transactions ({_TXN_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                transaction.id,
                transaction.user_id,
                transaction.direction.value,
                transaction.category.value,
                transaction.amount,
                transaction.description,
                transaction.source,
                Jsonb(transaction.metadata),
                transaction.timestamp,
                transaction.idempotency_key,
            )
        )

    async def get_transactions(self, limit: Optional[int] = None) -> list[PointTransaction]:
        rows = await self._fetchall(
            f"""
            SELECT {_TXN_COLUMNS} FROM engagement_transactions
            WHERE user_id = %s
            ORDER BY id DESC
            LIMIT %s
            """,
            (self.user_id, limit)
        )
        return [PointTransaction(**row) for row in rows]

    async def find_transaction(self, idempotency_key: str) -> Optional[PointTransaction]:
        row = await self._fetchone(
            f"SELECT {_TXN_COLUMNS} FROM engagement_transactions WHERE user_id = %s AND idempotency_key = %s",
            (self.user_id, idempotency_key)
        )
        return PointTransaction(**row) if row else None

    # Streaks
    async def get_streak(self, streak_type: StreakType) -> Optional[Streak]:
        row = await self._fetchone(
            "SELECT * FROM engagement_streaks WHERE user_id = %s AND streak_type = %s",
            (self.user_id, StreakType(streak_type).value)
        )
        return _streak_from_row(row) if row else None

    async def get_streaks(self) -> list[Streak]:
        rows = await self._fetchall(
            "SELECT * FROM engagement_streaks WHERE user_id = %s ORDER BY streak_type",
            (self.user_id,)
        )
        return [_streak_from_row(row) for row in rows]

    async def save_streak(self, streak: Streak) -> None:
        await self._execute(
            """
            INSERT INTO engagement_streaks (user_id, streak_type, current, longest, last_activity_at, is_active)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, streak_type) DO UPDATE SET
                current = EXCLUDED.current,
                longest = EXCLUDED.longest,
                last_activity_at = EXCLUDED.last_activity_at,
                is_active = EXCLUDED.is_active
            """,
            (
                streak.user_id,
                streak.streak_type.value,
                streak.current,
                streak.longest,
                streak.last_activity_at,
                streak.is_active,
            )
        )

    # Tokens
    async def get_token(self, token_id: str) -> Optional[RedemptionToken]:
        row = await self._fetchone(
            f"SELECT {_TOKEN_COLUMNS} FROM engagement_redemption_tokens WHERE id = %s AND user_id = %s",
            (token_id, self.user_id)
        )
        return RedemptionToken(**row) if row else None

    async def get_tokens(self) -> list[RedemptionToken]:
        rows = await self._fetchall(
            f"SELECT {_TOKEN_COLUMNS} FROM engagement_redemption_tokens WHERE user_id = %s ORDER BY id",
            (self.user_id,)
        )
        return [RedemptionToken(**row) for row in rows]

    async def find_token(self, idempotency_key: str) -> Optional[RedemptionToken]:
        row = await self._fetchone(
            f"""
            SELECT {_TOKEN_COLUMNS} FROM engagement_redemption_tokens
            WHERE user_id = %s AND idempotency_key = %s
            """,
            (self.user_id, idempotency_key)
        )
        return RedemptionToken(**row) if row else None

    async def save_token(self, token: RedemptionToken) -> None:
        await self._execute(
            f"""
            INSERT INTO engagement_redemption_tokens ({_TOKEN_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                is_redeemed = EXCLUDED.is_redeemed,
                redeemed_at = EXCLUDED.redeemed_at,
                redemption_location = EXCLUDED.redemption_location
            """,
            (
                token.id,
                token.user_id,
                token.reward_id,
                token.payload,
                token.transaction_id,
                token.generated_at,
                token.expires_at,
                token.is_redeemed,
                token.redeemed_at,
                token.redemption_location,
                token.idempotency_key,
            )
        )

    async def delete_token(self, token_id: str) -> None:
        await self._execute(
            "DELETE FROM engagement_redemption_tokens WHERE id = %s AND user_id = %s",
            (token_id, self.user_id)
        )

    # Stock
    async def reserve_stock(self, reward_id: str) -> bool:
        row = await self._fetchone(
            """
            UPDATE engagement_reward_stock
            SET stock = stock - 1
            WHERE reward_id = %s AND stock > 0
            RETURNING stock
            """,
            (reward_id,)
        )
        return row is not None

    # Erasure
    async def erase(self, purge: bool = False) -> int:
        if purge:
            affected = await self._execute(
                "DELETE FROM engagement_transactions WHERE user_id = %s", (self.user_id,)
            )
        else:
            affected = await self._execute(
                """
                UPDATE engagement_transactions
                SET user_id = %s, description = '', metadata = '{}'::jsonb, idempotency_key = NULL
                WHERE user_id = %s
                """,
                (redacted_user_id(self.user_id), self.user_id)
            )
        for table in ("engagement_redemption_tokens", "engagement_streaks", "engagement_accounts"):
            await self._execute(f"DELETE FROM {table} WHERE user_id = %s", (self.user_id,))
        return affected


class PostgresStorage(Storage):
    """PostgreSQL persistence over an async connection pool"""

    def __init__(
        self,
        connection_string: str = DATABASE_URL,
        timeout: float = STORAGE_TIMEOUT_SECONDS,
        min_size: int = 2,
        max_size: int = 10,
    ):
        self.connection_string = connection_string
        self.timeout = timeout
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None

    async def connect(self) -> None:
        """Initialize connection pool and create schema"""
        logger.info("Initializing database connection pool")
        statement_timeout_ms = int(self.timeout * 1000)
        self._pool = AsyncConnectionPool(
            self.connection_string,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.timeout,
            kwargs={"options": f"-c statement_timeout={statement_timeout_ms}"},
            open=False,
        )
        await self._pool.open()
        await self.create_schema()

    async def close(self) -> None:
        """Close connection pool"""
        if self._pool:
            logger.info("Closing database connection pool")
            await self._pool.close()

    async def create_schema(self) -> None:
        async with self._connection("create_schema") as conn:
            await conn.execute(SCHEMA)
            await conn.commit()

    @asynccontextmanager
    async def _connection(self, operation: str, user_id: Optional[str] = None) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Get database connection from pool, translating driver errors"""
        if not self._pool:
            raise RuntimeError("Database pool not initialized")
        try:
            async with self._pool.connection() as conn:
                conn.row_factory = dict_row
                yield conn
        except EngagementError:
            raise
        except (psycopg.Error, TimeoutError) as e:
            raise wrap_storage_exception(e, operation=operation, user_id=user_id) from e

    @asynccontextmanager
    async def session(self, user_id: str) -> AsyncIterator[PostgresSession]:
        async with self._connection("session", user_id) as conn:
            # Pool connections return to idle state; conn.transaction() commits on
            # clean exit and rolls back on any exception
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))", (user_id,)
                )
                yield PostgresSession(conn, user_id)

    async def _fetchall(self, operation: str, query: str, params: tuple = ()) -> list[dict]:
        async with self._connection(operation) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    async def _fetchone(self, operation: str, query: str, params: tuple = ()) -> Optional[dict]:
        rows = await self._fetchall(operation, query, params)
        return rows[0] if rows else None

    # Read-side
    async def get_account(self, user_id: str) -> Optional[UserAccount]:
        row = await self._fetchone(
            "get_account",
            f"SELECT {_ACCOUNT_COLUMNS} FROM engagement_accounts WHERE user_id = %s",
            (user_id,)
        )
        return _account_from_row(row) if row else None

    async def list_accounts(self) -> list[UserAccount]:
        rows = await self._fetchall(
            "list_accounts", f"SELECT {_ACCOUNT_COLUMNS} FROM engagement_accounts ORDER BY user_id"
        )
        return [_account_from_row(row) for row in rows]

    async def get_transactions(self, user_id: str, limit: Optional[int] = None) -> list[PointTransaction]:
        rows = await self._fetchall(
            "get_transactions",
            f"""
            SELECT {_TXN_COLUMNS} FROM engagement_transactions
            WHERE user_id = %s
            ORDER BY id DESC
            LIMIT %s
            """,
            (user_id, limit)
        )
        return [PointTransaction(**row) for row in rows]

    async def get_streaks(self, user_id: str) -> list[Streak]:
        rows = await self._fetchall(
            "get_streaks",
            "SELECT * FROM engagement_streaks WHERE user_id = %s ORDER BY streak_type",
            (user_id,)
        )
        return [_streak_from_row(row) for row in rows]

    async def get_token(self, token_id: str) -> Optional[RedemptionToken]:
        row = await self._fetchone(
            "get_token",
            f"SELECT {_TOKEN_COLUMNS} FROM engagement_redemption_tokens WHERE id = %s",
            (token_id,)
        )
        return RedemptionToken(**row) if row else None

    async def list_user_ids_with_active_streaks(self) -> list[str]:
        rows = await self._fetchall(
            "list_user_ids_with_active_streaks",
            "SELECT DISTINCT user_id FROM engagement_streaks WHERE is_active ORDER BY user_id"
        )
        return [row["user_id"] for row in rows]

    async def list_user_ids_with_tokens(self) -> list[str]:
        rows = await self._fetchall(
            "list_user_ids_with_tokens",
            "SELECT DISTINCT user_id FROM engagement_redemption_tokens ORDER BY user_id"
        )
        return [row["user_id"] for row in rows]

    async def earned_since(self, since: datetime) -> dict[str, int]:
        rows = await self._fetchall(
            "earned_since",
            """
            SELECT user_id, SUM(amount)::int AS earned
            FROM engagement_transactions
            WHERE direction = 'earn' AND timestamp >= %s
            GROUP BY user_id
            """,
            (since,)
        )
        return {row["user_id"]: row["earned"] for row in rows}

    async def ledger_totals(self) -> tuple[int, int]:
        row = await self._fetchone(
            "ledger_totals",
            """
            SELECT
                COALESCE(SUM(amount) FILTER (WHERE direction = 'earn'), 0)::int AS awarded,
                COALESCE(-SUM(amount) FILTER (WHERE direction = 'spend'), 0)::int AS spent
            FROM engagement_transactions
            """
        )
        return row["awarded"], row["spent"]

    async def count_redeemed_tokens(self) -> int:
        row = await self._fetchone(
            "count_redeemed_tokens",
            "SELECT COUNT(*)::int AS n FROM engagement_redemption_tokens WHERE is_redeemed"
        )
        return row["n"]

    # Stock
    async def get_stock(self, reward_id: str) -> Optional[int]:
        row = await self._fetchone(
            "get_stock",
            "SELECT stock FROM engagement_reward_stock WHERE reward_id = %s",
            (reward_id,)
        )
        return row["stock"] if row else None

    async def seed_stock(self, reward_id: str, stock: int) -> None:
        async with self._connection("seed_stock") as conn:
            await conn.execute(
                """
                INSERT INTO engagement_reward_stock (reward_id, stock)
                VALUES (%s, %s)
                ON CONFLICT (reward_id) DO NOTHING
                """,
                (reward_id, stock)
            )
            await conn.commit()
