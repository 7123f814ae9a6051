"""Global test fixtures and utilities for engagement engine tests"""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from engagement.db.memory import InMemoryStorage
from engagement.gamification.ledger import Ledger
from engagement.gamification.rewards import TokenCodec
from engagement.models.ledger import UserAccount
from engagement.services.engagement_service import EngagementService
from engagement.services.events import EventBus


UTC = ZoneInfo("UTC")


class FakeClock:
    """Controllable clock; call it to get 'now'"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0, minutes: int = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours, minutes=minutes)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


# ============================================================================
# Clock & Storage Fixtures
# ============================================================================

@pytest.fixture
def clock():
    """Clock fixed at noon UTC on a Monday"""
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger(clock):
    return Ledger(clock=clock)


@pytest.fixture
def event_bus():
    return EventBus(maxsize=100)


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def service(storage, clock, event_bus):
    """In-memory engine with the default catalog, seeded and ready"""
    engine = EngagementService(
        storage,
        event_bus=event_bus,
        clock=clock,
        tz=UTC,
        token_codec=TokenCodec("test-secret"),
    )
    await engine.initialize()
    return engine


@pytest.fixture
def test_user_id():
    """Standard test user ID"""
    return "u1"


# ============================================================================
# Helpers
# ============================================================================

@pytest.fixture
def make_account(storage, clock):
    """Store an account directly, bypassing the welcome bonus"""

    async def _make(user_id="u1", **fields):
        account = UserAccount(
            user_id=user_id,
            display_name=fields.pop("display_name", user_id),
            created_at=clock(),
            last_active_at=clock(),
            **fields,
        )
        async with storage.session(user_id) as session:
            await session.save_account(account)
        return account

    return _make


@pytest.fixture
def drain():
    """Collects all events currently in a subscriber queue"""

    def _drain(queue):
        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return events

    return _drain
