"""Unit tests for the in-memory storage backend (engagement/db/memory.py)"""
import asyncio
from datetime import timedelta

import pytest

from engagement.db.base import redacted_user_id
from engagement.models.ledger import (
    PointTransaction,
    TransactionCategory,
    TransactionDirection,
    UserAccount,
)
from engagement.models.reward import RedemptionToken
from engagement.models.streak import Streak, StreakType
from engagement.utils.ids import new_transaction_id


def _account(clock, user_id="u1", **fields):
    return UserAccount(user_id=user_id, display_name=user_id, created_at=clock(), last_active_at=clock(), **fields)


def _txn(clock, user_id="u1", amount=10, **fields):
    return PointTransaction(
        id=new_transaction_id(),
        user_id=user_id,
        direction=TransactionDirection.EARN if amount > 0 else TransactionDirection.SPEND,
        category=fields.pop("category", TransactionCategory.RESOURCE),
        amount=amount,
        description=fields.pop("description", "entry"),
        source="test",
        timestamp=clock(),
        **fields,
    )


def _token(clock, token_id="RDM-1", user_id="u1"):
    return RedemptionToken(
        id=token_id,
        user_id=user_id,
        reward_id="wellness-tea",
        payload="body.sig",
        transaction_id="TXN-1",
        generated_at=clock(),
        expires_at=clock() + timedelta(days=30),
    )


# ============================================================================
# Commit & Rollback
# ============================================================================

@pytest.mark.asyncio
async def test_writes_visible_only_after_commit(storage, clock):
    async with storage.session("u1") as session:
        await session.save_account(_account(clock))
        await session.add_transaction(_txn(clock))
        assert await session.get_account() is not None
        assert len(await session.get_transactions()) == 1
        assert await storage.get_account("u1") is None
        assert await storage.get_transactions("u1") == []

    assert (await storage.get_account("u1")).user_id == "u1"
    assert len(await storage.get_transactions("u1")) == 1


@pytest.mark.asyncio
async def test_exception_rolls_back_everything(storage, clock):
    await storage.seed_stock("wellness-journal", 2)

    with pytest.raises(RuntimeError):
        async with storage.session("u1") as session:
            await session.save_account(_account(clock))
            await session.add_transaction(_txn(clock))
            await session.save_token(_token(clock))
            await session.save_streak(Streak(
                user_id="u1", streak_type=StreakType.DAILY_CHECK_IN, current=1, longest=1,
                last_activity_at=clock(),
            ))
            assert await session.reserve_stock("wellness-journal")
            raise RuntimeError("boom")

    assert await storage.get_account("u1") is None
    assert await storage.get_transactions("u1") == []
    assert await storage.get_token("RDM-1") is None
    assert await storage.get_streaks("u1") == []
    assert await storage.get_stock("wellness-journal") == 2


@pytest.mark.asyncio
async def test_returned_models_are_copies(storage, clock):
    async with storage.session("u1") as session:
        await session.save_account(_account(clock))

    account = await storage.get_account("u1")
    account.available_points = 999

    assert (await storage.get_account("u1")).available_points == 0


@pytest.mark.asyncio
async def test_transactions_newest_first_with_limit(storage, clock):
    async with storage.session("u1") as session:
        first = _txn(clock, amount=1)
        second = _txn(clock, amount=2)
        third = _txn(clock, amount=3)
        for txn in (first, second, third):
            await session.add_transaction(txn)

    assert [t.id for t in await storage.get_transactions("u1")] == [third.id, second.id, first.id]
    assert [t.id for t in await storage.get_transactions("u1", limit=2)] == [third.id, second.id]


# ============================================================================
# Locking & Stock
# ============================================================================

@pytest.mark.asyncio
async def test_sessions_for_same_user_are_serialized(storage):
    order = []

    async def worker(name):
        async with storage.session("u1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (["a-start", "a-end", "b-start", "b-end"], ["b-start", "b-end", "a-start", "a-end"])


@pytest.mark.asyncio
async def test_sessions_for_different_users_overlap(storage):
    order = []

    async def worker(user_id):
        async with storage.session(user_id):
            order.append(f"{user_id}-start")
            await asyncio.sleep(0.01)
            order.append(f"{user_id}-end")

    await asyncio.gather(worker("u1"), worker("u2"))

    assert order[:2] == ["u1-start", "u2-start"]


@pytest.mark.asyncio
async def test_reserve_stock_never_goes_negative(storage):
    await storage.seed_stock("mug", 1)

    async with storage.session("u1") as session:
        assert await session.reserve_stock("mug")
    async with storage.session("u2") as session:
        assert not await session.reserve_stock("mug")
        assert not await session.reserve_stock("no-record")

    assert await storage.get_stock("mug") == 0


@pytest.mark.asyncio
async def test_seed_stock_keeps_existing_count(storage):
    await storage.seed_stock("mug", 5)
    async with storage.session("u1") as session:
        await session.reserve_stock("mug")

    await storage.seed_stock("mug", 5)

    assert await storage.get_stock("mug") == 4
    assert await storage.get_stock("unknown") is None


# ============================================================================
# Tokens
# ============================================================================

@pytest.mark.asyncio
async def test_tokens_scoped_to_owner(storage, clock):
    async with storage.session("u1") as session:
        await session.save_token(_token(clock))

    async with storage.session("u2") as session:
        assert await session.get_token("RDM-1") is None
        assert await session.get_tokens() == []
    async with storage.session("u1") as session:
        assert (await session.get_token("RDM-1")).user_id == "u1"

    assert await storage.list_user_ids_with_tokens() == ["u1"]


@pytest.mark.asyncio
async def test_delete_token(storage, clock):
    async with storage.session("u1") as session:
        await session.save_token(_token(clock))
    async with storage.session("u1") as session:
        await session.delete_token("RDM-1")
        assert await session.get_token("RDM-1") is None
        assert await storage.get_token("RDM-1") is not None

    assert await storage.get_token("RDM-1") is None


# ============================================================================
# Erasure
# ============================================================================

async def _seed_user(storage, clock, user_id="u1"):
    async with storage.session(user_id) as session:
        await session.save_account(_account(clock, user_id))
        await session.add_transaction(_txn(clock, user_id, 40, description="Check-in", metadata={"mood": 8}))
        await session.add_transaction(_txn(clock, user_id, -10, category=TransactionCategory.REDEMPTION))
        await session.save_token(_token(clock, user_id=user_id))


@pytest.mark.asyncio
async def test_erase_redacts_ledger(storage, clock):
    await _seed_user(storage, clock)

    async with storage.session("u1") as session:
        assert await session.erase() == 2

    assert await storage.get_account("u1") is None
    assert await storage.get_transactions("u1") == []
    assert await storage.get_token("RDM-1") is None

    redacted = await storage.get_transactions(redacted_user_id("u1"))
    assert len(redacted) == 2
    assert all(t.description == "" and t.metadata == {} for t in redacted)
    assert await storage.ledger_totals() == (40, 10)


@pytest.mark.asyncio
async def test_erase_purge_deletes_ledger(storage, clock):
    await _seed_user(storage, clock)

    async with storage.session("u1") as session:
        assert await session.erase(purge=True) == 2

    assert await storage.get_transactions(redacted_user_id("u1")) == []
    assert await storage.ledger_totals() == (0, 0)


def test_redacted_user_id_is_stable():
    assert redacted_user_id("u1") == redacted_user_id("u1")
    assert redacted_user_id("u1") != redacted_user_id("u2")
    assert redacted_user_id("u1").startswith("erased_")


# ============================================================================
# Aggregates
# ============================================================================

@pytest.mark.asyncio
async def test_earned_since_ignores_spends_and_older_rows(storage, clock):
    async with storage.session("u1") as session:
        await session.add_transaction(_txn(clock, amount=15))
    since = clock.advance(days=1)
    async with storage.session("u1") as session:
        await session.add_transaction(_txn(clock, amount=25))
        await session.add_transaction(_txn(clock, amount=-5))
    async with storage.session("u2") as session:
        await session.add_transaction(_txn(clock, "u2", amount=-5))

    assert await storage.earned_since(since) == {"u1": 25}


@pytest.mark.asyncio
async def test_active_streak_user_listing(storage, clock):
    async with storage.session("u1") as session:
        await session.save_streak(Streak(
            user_id="u1", streak_type=StreakType.LEARNING, current=2, longest=2, last_activity_at=clock(),
        ))
    async with storage.session("u2") as session:
        await session.save_streak(Streak(
            user_id="u2", streak_type=StreakType.LEARNING, current=0, longest=2,
            last_activity_at=clock(), is_active=False,
        ))

    assert await storage.list_user_ids_with_active_streaks() == ["u1"]
