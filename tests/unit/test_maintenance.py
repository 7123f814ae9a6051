"""Unit tests for background maintenance sweeps (engagement/scheduler/maintenance.py)"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from engagement.exceptions import TransientStorageError
from engagement.models.streak import StreakType
from engagement.scheduler.maintenance import MaintenanceScheduler


@pytest.fixture
def scheduler(service):
    return MaintenanceScheduler(service, streak_interval=3600, token_interval=3600, token_retention_days=7)


@pytest.mark.asyncio
async def test_streak_sweep_deactivates_stale_streaks(service, storage, clock, scheduler):
    await service.record_activity("u1", "daily-check-in", {"mood": 6})
    await service.record_activity("u2", "daily-check-in", {"mood": 6})
    clock.advance(days=1)
    await service.record_activity("u2", "daily-check-in", {"mood": 6})

    # u1 last checked in two days ago, u2 yesterday
    clock.advance(days=1)
    assert await scheduler.sweep_streaks() == 1

    u1 = {s.streak_type: s for s in await storage.get_streaks("u1")}[StreakType.DAILY_CHECK_IN]
    u2 = {s.streak_type: s for s in await storage.get_streaks("u2")}[StreakType.DAILY_CHECK_IN]
    assert not u1.is_active and u1.current == 0
    assert u2.is_active and u2.current == 2
    assert (await storage.get_account("u1")).current_streak == 0

    assert await storage.list_user_ids_with_active_streaks() == ["u2"]


@pytest.mark.asyncio
async def test_streak_sweep_is_noop_when_nothing_stale(service, scheduler):
    await service.record_activity("u1", "assessment", {"assessment_type": "PHQ-4"})
    assert await scheduler.sweep_streaks() == 0


@pytest.mark.asyncio
async def test_token_cleanup(service, storage, clock, scheduler):
    await service.create_account("u1")
    await service.award_points("u1", "resource", 500, "Grant")
    token = await service.redeem_reward("u1", "wellness-tea")

    clock.advance(days=36)
    assert await scheduler.cleanup_expired_tokens() == 0

    clock.advance(days=2)
    assert await scheduler.cleanup_expired_tokens() == 1
    assert await storage.get_token(token.id) is None


@pytest.mark.asyncio
async def test_failure_for_one_user_does_not_stop_sweep(service, storage, clock, scheduler):
    await service.record_activity("u1", "daily-check-in", {"mood": 6})
    await service.record_activity("u2", "daily-check-in", {"mood": 6})
    clock.advance(days=3)

    original = service.deactivate_stale_streaks

    async def flaky(user_id):
        if user_id == "u1":
            raise TransientStorageError("database unavailable", user_id=user_id)
        return await original(user_id)

    service.deactivate_stale_streaks = flaky

    assert await scheduler.sweep_streaks() == 1
    assert await storage.list_user_ids_with_active_streaks() == ["u1"]


@pytest.mark.asyncio
async def test_start_and_stop(service):
    scheduler = MaintenanceScheduler(service, streak_interval=3600, token_interval=3600)
    scheduler.sweep_streaks = AsyncMock(return_value=0)
    scheduler.cleanup_expired_tokens = AsyncMock(return_value=0)

    await scheduler.start()
    await scheduler.start()  # second start is ignored
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    scheduler.sweep_streaks.assert_awaited_once()
    scheduler.cleanup_expired_tokens.assert_awaited_once()

    await scheduler.stop()
    assert scheduler._tasks == []
    await scheduler.stop()
