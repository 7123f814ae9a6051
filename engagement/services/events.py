"""
Outbound event channel

The engine publishes an EngagementEvent after every committed state
transition. Consumers (UI, notification bridge) subscribe independently
and each get their own bounded queue; a slow consumer loses its oldest
events instead of blocking the engine.

Example:
    queue = bus.subscribe({EventType.LEVEL_UP, EventType.ACHIEVEMENT_UNLOCKED})
    event = await queue.get()
"""

import asyncio
import logging
from typing import Iterable, Optional

from engagement.config import EVENT_QUEUE_MAXSIZE
from engagement.models.events import EngagementEvent, EventType
from engagement.observability import metrics

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer's bounded queue plus its event filter"""

    def __init__(self, event_types: Optional[set[EventType]], maxsize: int):
        self.event_types = event_types
        self.queue: asyncio.Queue[EngagementEvent] = asyncio.Queue(maxsize=maxsize)

    def wants(self, event: EngagementEvent) -> bool:
        return self.event_types is None or event.event_type in self.event_types


class EventBus:
    """Pub/sub fan-out of engine events"""

    def __init__(self, maxsize: int = EVENT_QUEUE_MAXSIZE):
        self.maxsize = maxsize
        self._subscriptions: list[Subscription] = []

    def subscribe(self, event_types: Optional[Iterable[EventType]] = None) -> asyncio.Queue:
        """
        Register a consumer

        Args:
            event_types: Only deliver these types (default: all)

        Returns:
            Queue the consumer reads events from
        """
        subscription = Subscription(
            set(event_types) if event_types is not None else None, self.maxsize
        )
        self._subscriptions.append(subscription)
        return subscription.queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.queue is not queue]

    def publish(self, event: EngagementEvent) -> None:
        """Deliver to every interested subscriber without blocking"""
        for subscription in self._subscriptions:
            if not subscription.wants(event):
                continue
            queue = subscription.queue
            if queue.full():
                dropped = queue.get_nowait()
                metrics.events_dropped_total.labels(event_type=dropped.event_type.value).inc()
                logger.warning(
                    f"Event queue full, dropped oldest {dropped.event_type.value} event "
                    f"for user {dropped.user_id}"
                )
            queue.put_nowait(event)

    def publish_all(self, events: Iterable[EngagementEvent]) -> None:
        for event in events:
            self.publish(event)
