"""
Service Layer Package

- EngagementService: public API of the engagement-rewards engine
- EventBus: outbound event channel for UI and notification consumers
"""

from engagement.services.events import EventBus
from engagement.services.engagement_service import EngagementService

__all__ = [
    "EventBus",
    "EngagementService",
]
