"""Unit tests for the outbound event channel (engagement/services/events.py)"""
from datetime import datetime, timezone

from prometheus_client import REGISTRY

from engagement.models.events import EngagementEvent, EventType
from engagement.services.events import EventBus


def _event(event_type=EventType.BALANCE_CHANGED, user_id="u1", **data):
    return EngagementEvent(
        event_type=event_type,
        user_id=user_id,
        occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        data=data,
    )


def _dropped():
    return REGISTRY.get_sample_value(
        "engagement_events_dropped_total", {"event_type": "balance-changed"}
    ) or 0


def test_every_subscriber_gets_a_copy(drain):
    bus = EventBus(maxsize=10)
    first = bus.subscribe()
    second = bus.subscribe()

    bus.publish(_event())

    assert len(drain(first)) == 1
    assert len(drain(second)) == 1


def test_subscription_filter(drain):
    bus = EventBus(maxsize=10)
    levels = bus.subscribe({EventType.LEVEL_UP})

    bus.publish_all([_event(), _event(EventType.LEVEL_UP, new_level=2), _event(EventType.STREAK_BROKEN)])

    received = drain(levels)
    assert [e.event_type for e in received] == [EventType.LEVEL_UP]
    assert received[0].data == {"new_level": 2}


def test_full_queue_drops_oldest(drain):
    bus = EventBus(maxsize=2)
    queue = bus.subscribe()
    before = _dropped()

    bus.publish_all([_event(n=1), _event(n=2), _event(n=3)])

    assert [e.data["n"] for e in drain(queue)] == [2, 3]
    assert _dropped() == before + 1


def test_slow_consumer_does_not_affect_others(drain):
    bus = EventBus(maxsize=1)
    slow = bus.subscribe()
    fast = bus.subscribe()

    bus.publish(_event(n=1))
    assert drain(fast)[0].data["n"] == 1
    bus.publish(_event(n=2))

    assert [e.data["n"] for e in drain(slow)] == [2]
    assert [e.data["n"] for e in drain(fast)] == [2]


def test_unsubscribe(drain):
    bus = EventBus(maxsize=10)
    queue = bus.subscribe()
    bus.unsubscribe(queue)

    bus.publish(_event())

    assert drain(queue) == []


def test_publish_without_subscribers():
    EventBus().publish(_event())
