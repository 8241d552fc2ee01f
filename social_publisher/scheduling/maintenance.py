"""
Recurring maintenance jobs for the publishing pipeline.

``MaintenanceScheduler`` runs as an asyncio background task next to the
publishing worker and triggers:

    - the proactive token sweep (``refresh_expiring``) once a day at
      ``tokens.refresh_hour_utc``, or every ``dev_refresh_interval_minutes``
      in development;
    - the posts sync (``sync_scheduled_posts``) every
      ``queue.sync_interval_minutes`` (``dev_sync_interval_minutes`` in
      development), starting right after boot.

A sweep where more than ``tokens.alert_failure_rate`` of the profiles fail
is logged at CRITICAL level.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from social_publisher.config import Settings
from social_publisher.logging.component_logger import ComponentLogger
from social_publisher.logging.models import LogComponent
from social_publisher.scheduling.jobs import SyncSummary
from social_publisher.scheduling.publishing_queue import PublishingQueue
from social_publisher.tokens.manager import RefreshSummary, TokenLifecycleManager
from social_publisher.utils import utc_now

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Background loop for the token sweep and the posts sync.

    Args:
        queue: Publishing queue whose scheduled posts are synced.
        token_manager: Runs the token sweep.
        settings: Cadence and alert threshold.
        log: Structured logger for sweep summaries and alerts.
        clock: Returns the current aware UTC time.
        check_interval_seconds: How often the loop checks for due work.
    """

    def __init__(
        self,
        queue: PublishingQueue,
        token_manager: TokenLifecycleManager,
        settings: Optional[Settings] = None,
        log: Optional[ComponentLogger] = None,
        clock: Callable[[], datetime] = utc_now,
        check_interval_seconds: int = 30,
    ) -> None:
        self.queue = queue
        self.token_manager = token_manager
        self.settings = settings or Settings()
        self.log = log or ComponentLogger(LogComponent.MAINTENANCE)
        self.check_interval_seconds = check_interval_seconds
        self._clock = clock
        self._running: bool = False
        self._next_refresh: Optional[datetime] = None
        self._next_sync: Optional[datetime] = None

    # ================================================================
    # CADENCE
    # ================================================================

    def next_refresh_at(self, after: datetime) -> datetime:
        """When the token sweep runs next, strictly after *after*."""
        tokens = self.settings.tokens
        if self.settings.is_development:
            return after + timedelta(minutes=tokens.dev_refresh_interval_minutes)

        candidate = after.replace(
            hour=tokens.refresh_hour_utc, minute=0, second=0, microsecond=0
        )
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate

    def next_sync_at(self, after: datetime) -> datetime:
        queue = self.settings.queue
        minutes = (
            queue.dev_sync_interval_minutes
            if self.settings.is_development
            else queue.sync_interval_minutes
        )
        return after + timedelta(minutes=minutes)

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run the maintenance loop until :meth:`stop` is called."""
        self._running = True
        now = self._clock()
        self._next_refresh = self.next_refresh_at(now)
        self._next_sync = now
        logger.info(
            "[MAINTENANCE] Maintenance scheduler started (next token sweep %s)",
            self._next_refresh.isoformat(),
        )

        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                logger.info("[MAINTENANCE] Maintenance scheduler cancelled")
                break
            except Exception:
                logger.exception(
                    "[MAINTENANCE] Unexpected error in maintenance scheduler loop"
                )

            try:
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[MAINTENANCE] Maintenance scheduler sleep cancelled")
                break

        logger.info("[MAINTENANCE] Maintenance scheduler stopped")

    async def stop(self) -> None:
        self._running = False
        logger.info("[MAINTENANCE] Maintenance scheduler stop requested")

    async def run_due(self) -> None:
        """Run whichever jobs are due now and book their next run."""
        now = self._clock()
        if self._next_sync is None or now >= self._next_sync:
            self._next_sync = self.next_sync_at(now)
            await self.run_posts_sync()
        if self._next_refresh is None or now >= self._next_refresh:
            self._next_refresh = self.next_refresh_at(now)
            await self.run_token_refresh()

    # ================================================================
    # JOBS
    # ================================================================

    async def run_token_refresh(self) -> RefreshSummary:
        """Run the proactive token sweep and alert on a high failure rate."""
        async with self.log.timed("Token refresh sweep"):
            summary = await self.token_manager.refresh_expiring()

        threshold = self.settings.tokens.alert_failure_rate
        if summary.total and summary.failure_rate > threshold:
            await self.log.critical(
                f"High token refresh failure rate: {summary.failed}/{summary.total} "
                f"profiles failed ({summary.failure_rate:.0%})",
                data={
                    "total": summary.total,
                    "refreshed": summary.refreshed,
                    "failed": summary.failed,
                    "threshold": threshold,
                    "failed_profiles": [
                        r.profile_id for r in summary.results if not r.success
                    ],
                },
            )
        return summary

    async def run_posts_sync(self) -> SyncSummary:
        """Re-enqueue scheduled posts that lost their job."""
        summary = await self.queue.sync_scheduled_posts()
        if summary.errors:
            await self.log.warning(
                f"Posts sync finished with {len(summary.errors)} error(s)",
                data={"errors": summary.errors[:10]},
            )
        return summary


__all__ = ["MaintenanceScheduler"]
