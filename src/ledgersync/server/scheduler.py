"""Scheduler for background sync maintenance.

This module provides:
- Proactive token refresh every few minutes
- Daily sync log cleanup at 3:30 AM
- Optional periodic push of pending payments
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ledgersync.core.types import EntityType
from ledgersync.remote.errors import AuthExpiredError

if TYPE_CHECKING:
    from ledgersync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the periodic sync jobs inside the server's event loop."""

    def __init__(
        self,
        engine: SyncEngine,
        cleanup_hour: int = 3,
        cleanup_minute: int = 30,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Sync engine whose components the jobs call.
            cleanup_hour: Hour to run the log cleanup (0-23).
            cleanup_minute: Minute to run the log cleanup (0-59).
        """
        self._engine = engine
        self._settings = engine.settings
        self._cleanup_hour = cleanup_hour
        self._cleanup_minute = cleanup_minute
        self._scheduler: AsyncIOScheduler | None = None

    async def _refresh_tokens_job(self) -> None:
        """Job function for proactive token refresh."""
        try:
            results = await self._engine.tokens.refresh_all()
            for tenant_id, ok in results.items():
                if not ok:
                    logger.warning("Tenant %s needs a manual reconnect", tenant_id)
        except Exception:
            logger.exception("Error during scheduled token refresh")

    def _cleanup_logs_job(self) -> None:
        """Job function for scheduled sync log cleanup."""
        logger.info(
            "Starting scheduled sync log cleanup (retention: %d days)",
            self._settings.log_retention_days,
        )
        try:
            deleted = self._engine.audit.cleanup(self._settings.log_retention_days)
            if deleted == 0:
                logger.debug(
                    "Sync log cleanup: no entries older than %d days",
                    self._settings.log_retention_days,
                )
        except Exception:
            logger.exception("Error during scheduled sync log cleanup")

    async def _auto_push_job(self) -> None:
        """Job function pushing pending payments for every connected tenant."""
        for credential in self._engine.db.list_active_credentials():
            try:
                result = await self._engine.push_pending(EntityType.PAYMENT, credential.tenant_id)
            except AuthExpiredError as e:
                logger.warning("Auto-push skipped for tenant %s: %s", credential.tenant_id, e)
                continue
            except Exception:
                logger.exception("Error during auto-push for tenant %s", credential.tenant_id)
                continue
            if result.attempted:
                logger.info(
                    "Auto-push for tenant %s: %d pushed, %d failed",
                    credential.tenant_id,
                    len(result.success),
                    len(result.failed),
                )

    def start(self) -> None:
        """Start the scheduler (must be called from a running event loop)."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self._refresh_tokens_job,
            trigger=IntervalTrigger(minutes=self._settings.token_refresh_interval_minutes),
            id="token_refresh",
            name="Proactive token refresh",
            replace_existing=True,
        )

        self._scheduler.add_job(
            self._cleanup_logs_job,
            trigger=CronTrigger(hour=self._cleanup_hour, minute=self._cleanup_minute),
            id="sync_log_cleanup",
            name="Daily sync log cleanup",
            replace_existing=True,
        )

        if self._settings.auto_push_interval_minutes > 0:
            self._scheduler.add_job(
                self._auto_push_job,
                trigger=IntervalTrigger(minutes=self._settings.auto_push_interval_minutes),
                id="payment_auto_push",
                name="Pending payment auto-push",
                replace_existing=True,
            )

        self._scheduler.start()
        logger.info(
            "Sync scheduler started (token refresh every %d min, log cleanup daily at %02d:%02d)",
            self._settings.token_refresh_interval_minutes,
            self._cleanup_hour,
            self._cleanup_minute,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    async def refresh_tokens_now(self) -> None:
        """Run the token refresh immediately (manual trigger)."""
        await self._refresh_tokens_job()

    def cleanup_logs_now(self) -> int:
        """Run the sync log cleanup immediately (manual trigger).

        Returns:
            Number of log entries deleted.
        """
        return self._engine.audit.cleanup(self._settings.log_retention_days)
