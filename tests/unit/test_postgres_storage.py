"""Unit tests for the PostgreSQL backend (engagement/db/postgres.py) with a mocked driver"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest

from engagement.db.base import redacted_user_id
from engagement.db.postgres import PostgresSession, PostgresStorage
from engagement.exceptions import TransientStorageError
from engagement.models.ledger import UserAccount


NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _mock_conn(fetchone=None, fetchall=None, rowcount=1):
    mock_cursor = AsyncMock()
    mock_cursor.execute = AsyncMock()
    mock_cursor.fetchone = AsyncMock(return_value=fetchone)
    mock_cursor.fetchall = AsyncMock(return_value=fetchall or [])
    mock_cursor.rowcount = rowcount

    mock_conn = MagicMock()
    mock_conn.cursor.return_value.__aenter__.return_value = mock_cursor
    return mock_conn, mock_cursor


def _account_row(**overrides):
    row = {
        "user_id": "u1",
        "display_name": "Alex",
        "created_at": NOW,
        "last_active_at": NOW,
        "level": 2,
        "total_points": 150,
        "available_points": 120,
        "lifetime_points": 150,
        "current_streak": 3,
        "longest_streak": 5,
        "achievements": [{"achievement_id": "first-check-in", "unlocked_at": NOW.isoformat()}],
        "preferences": {"leaderboard": False, "share_progress": True, "notifications": True},
    }
    row.update(overrides)
    return row


# ============================================================================
# Session Tests
# ============================================================================

@pytest.mark.asyncio
async def test_get_account_maps_row():
    mock_conn, mock_cursor = _mock_conn(fetchone=_account_row())
    session = PostgresSession(mock_conn, "u1")

    account = await session.get_account()

    assert account.level == 2
    assert account.achievement_ids == {"first-check-in"}
    assert account.preferences.leaderboard is False
    query, params = mock_cursor.execute.call_args[0]
    assert "FROM engagement_accounts" in query
    assert params == ("u1",)


@pytest.mark.asyncio
async def test_get_account_missing():
    mock_conn, _ = _mock_conn(fetchone=None)
    assert await PostgresSession(mock_conn, "u1").get_account() is None


@pytest.mark.asyncio
async def test_save_account_upserts():
    mock_conn, mock_cursor = _mock_conn()
    account = UserAccount(user_id="u1", display_name="Alex", created_at=NOW, last_active_at=NOW)

    await PostgresSession(mock_conn, "u1").save_account(account)

    query, params = mock_cursor.execute.call_args[0]
    assert "INSERT INTO engagement_accounts" in query
    assert "ON CONFLICT (user_id) DO UPDATE" in query
    assert params[0] == "u1"
    assert len(params) == 12


@pytest.mark.asyncio
async def test_reserve_stock_is_conditional_update():
    mock_conn, mock_cursor = _mock_conn(fetchone={"stock": 4})
    assert await PostgresSession(mock_conn, "u1").reserve_stock("wellness-journal") is True

    query, params = mock_cursor.execute.call_args[0]
    assert "stock > 0" in query
    assert params == ("wellness-journal",)


@pytest.mark.asyncio
async def test_reserve_stock_sold_out():
    mock_conn, _ = _mock_conn(fetchone=None)
    assert await PostgresSession(mock_conn, "u1").reserve_stock("wellness-journal") is False


@pytest.mark.asyncio
async def test_erase_redacts_then_deletes():
    mock_conn, mock_cursor = _mock_conn(rowcount=4)

    assert await PostgresSession(mock_conn, "u1").erase() == 4

    calls = [c[0] for c in mock_cursor.execute.call_args_list]
    assert "UPDATE engagement_transactions" in calls[0][0]
    assert calls[0][1] == (redacted_user_id("u1"), "u1")
    assert [c[0].split()[2] for c in calls[1:]] == [
        "engagement_redemption_tokens", "engagement_streaks", "engagement_accounts",
    ]


@pytest.mark.asyncio
async def test_erase_purge_deletes_ledger():
    mock_conn, mock_cursor = _mock_conn(rowcount=2)

    assert await PostgresSession(mock_conn, "u1").erase(purge=True) == 2

    first_query = mock_cursor.execute.call_args_list[0][0][0]
    assert first_query.startswith("DELETE FROM engagement_transactions")


# ============================================================================
# Storage Tests
# ============================================================================

@pytest.mark.asyncio
async def test_pool_not_initialized():
    storage = PostgresStorage("postgresql://localhost/test")
    with pytest.raises(RuntimeError):
        await storage.get_account("u1")


@pytest.mark.asyncio
async def test_driver_errors_become_transient_storage_errors():
    storage = PostgresStorage("postgresql://localhost/test")
    storage._pool = MagicMock()
    storage._pool.connection.return_value.__aenter__.side_effect = psycopg.OperationalError("server closed")

    with pytest.raises(TransientStorageError) as exc_info:
        await storage.get_account("u1")

    assert isinstance(exc_info.value.cause, psycopg.OperationalError)
    assert exc_info.value.operation == "get_account"


@pytest.mark.asyncio
async def test_earned_since_maps_rows():
    storage = PostgresStorage("postgresql://localhost/test")
    storage._fetchall = AsyncMock(return_value=[{"user_id": "u1", "earned": 40}, {"user_id": "u2", "earned": 5}])

    assert await storage.earned_since(NOW) == {"u1": 40, "u2": 5}
