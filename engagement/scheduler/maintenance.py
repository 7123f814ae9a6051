"""
Background maintenance sweeps

Two periodic jobs, independent of request handling:
- Streak sweep: deactivates streaks more than one calendar day stale
- Token cleanup: deletes unredeemed tokens expired longer than the
  retention window

Each sweep walks users one at a time, opening that user's session for
just that user's records, so foreground writes for other users are never
blocked for the length of a sweep.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from engagement.config import (
    EXPIRED_TOKEN_RETENTION_DAYS,
    STREAK_SWEEP_INTERVAL_SECONDS,
    TOKEN_CLEANUP_INTERVAL_SECONDS,
)
from engagement.exceptions import EngagementError
from engagement.services.engagement_service import EngagementService

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Runs streak and token sweeps on fixed intervals.
    """

    def __init__(
        self,
        service: EngagementService,
        streak_interval: int = STREAK_SWEEP_INTERVAL_SECONDS,
        token_interval: int = TOKEN_CLEANUP_INTERVAL_SECONDS,
        token_retention_days: int = EXPIRED_TOKEN_RETENTION_DAYS,
    ):
        self.service = service
        self.streak_interval = streak_interval
        self.token_interval = token_interval
        self.token_retention = timedelta(days=token_retention_days)
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        """Start both sweep loops as background tasks"""
        if self._running:
            logger.warning("Maintenance scheduler is already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop(self.sweep_streaks, self.streak_interval), name="streak-sweep"),
            asyncio.create_task(self._loop(self.cleanup_expired_tokens, self.token_interval), name="token-cleanup"),
        ]
        logger.info(
            f"Maintenance scheduler started (streaks every {self.streak_interval}s, "
            f"tokens every {self.token_interval}s)"
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        logger.info("Maintenance scheduler stopped")

    async def _loop(self, job, interval: int) -> None:
        while self._running:
            try:
                await job()
            except Exception as e:
                logger.error(f"Error in maintenance job {job.__name__}: {e}", exc_info=True)

            await asyncio.sleep(interval)

    async def sweep_streaks(self) -> int:
        """
        Deactivate stale streaks for every user with an active streak

        Returns:
            Number of streaks deactivated
        """
        user_ids = await self.service.storage.list_user_ids_with_active_streaks()
        total = 0
        for user_id in user_ids:
            deactivated = await self._for_user(self.service.deactivate_stale_streaks, user_id)
            total += len(deactivated or [])

        logger.info(f"Streak sweep checked {len(user_ids)} users, deactivated {total} streaks")
        return total

    async def cleanup_expired_tokens(self) -> int:
        """
        Delete long-expired unredeemed tokens for every user holding tokens

        Returns:
            Number of tokens deleted
        """
        user_ids = await self.service.storage.list_user_ids_with_tokens()
        total = 0
        for user_id in user_ids:
            removed = await self._for_user(self.service.cleanup_expired_tokens, user_id, self.token_retention)
            total += removed or 0

        logger.info(f"Token cleanup checked {len(user_ids)} users, deleted {total} tokens")
        return total

    @staticmethod
    async def _for_user(job, user_id: str, *args) -> Optional[object]:
        """One user's slice of a sweep; a failure skips that user only"""
        try:
            return await job(user_id, *args)
        except EngagementError as e:
            logger.warning(f"Maintenance for user {user_id} failed: {e.message}")
            return None
