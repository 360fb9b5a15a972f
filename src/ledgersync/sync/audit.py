"""Audit/log sink for sync attempts, outcomes and operator actions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ledgersync.core.types import (
    EntityType,
    LogStatus,
    SyncDirection,
    SyncOperation,
    ensure_utc,
    utcnow,
)

if TYPE_CHECKING:
    from ledgersync.server.database import Database
    from ledgersync.server.models import SyncLog

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


@dataclass
class LogPage:
    """One page of audit records."""

    items: list[SyncLog]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class AuditLog:
    """Writes every sync outcome to the sync_logs table and the logger."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def record(
        self,
        operation: SyncOperation,
        status: LogStatus,
        *,
        entity_type: EntityType | None = None,
        entity_id: int | None = None,
        remote_id: str | None = None,
        direction: SyncDirection = SyncDirection.NONE,
        correlation_id: str | None = None,
        tenant_id: str | None = None,
        error_kind: str | None = None,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> SyncLog:
        """Record one audit entry.

        Returns:
            The stored SyncLog.
        """
        entry = self._db.add_sync_log(
            operation=operation.value,
            status=status.value,
            entity_type=entity_type.value if entity_type else None,
            entity_id=entity_id,
            remote_id=remote_id,
            direction=direction.value,
            correlation_id=correlation_id,
            tenant_id=tenant_id,
            error_kind=error_kind,
            message=message,
            details=details,
            actor=actor,
        )
        level = logging.INFO if status is LogStatus.SUCCESS else logging.WARNING
        logger.log(
            level,
            "%s %s %s#%s%s%s",
            operation.value,
            status.value,
            entity_type.value if entity_type else "-",
            entity_id if entity_id is not None else "-",
            f" [{error_kind}]" if error_kind else "",
            f": {message}" if message else "",
        )
        return entry

    def list_logs(
        self,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        entity_type: EntityType | None = None,
        entity_id: int | None = None,
        status: LogStatus | None = None,
        direction: SyncDirection | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> LogPage:
        """List audit entries newest first.

        Args:
            page: 1-based page number.
            limit: Page size, capped at MAX_PAGE_SIZE.
            entity_type: Filter by entity type.
            entity_id: Filter by local entity id.
            status: Filter by outcome.
            direction: Filter by push/pull.
            date_from: Only entries at or after this time.
            date_to: Only entries at or before this time.

        Returns:
            LogPage with the entries and the total count.
        """
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        items, total = self._db.list_sync_logs(
            offset=(page - 1) * limit,
            limit=limit,
            entity_type=entity_type.value if entity_type else None,
            entity_id=entity_id,
            status=status.value if status else None,
            direction=direction.value if direction else None,
            date_from=ensure_utc(date_from),
            date_to=ensure_utc(date_to),
        )
        return LogPage(items=items, total=total, page=page, limit=limit)

    def cleanup(self, older_than_days: int = 90) -> int:
        """Delete entries older than the retention window."""
        deleted = self._db.cleanup_old_logs(older_than_days)
        if deleted:
            logger.info("Sync log cleanup: %d entries older than %d days deleted", deleted, older_than_days)
        return deleted

    def stats(self, days: int = 7) -> dict[str, Any]:
        """Summarize recent activity for the status endpoint."""
        since = utcnow() - timedelta(days=days)
        recent_errors, _ = self._db.list_sync_logs(
            limit=10, status=LogStatus.FAILED.value, date_from=since
        )
        return {
            "period_days": days,
            "by_status": self._db.count_sync_logs_by("status", since),
            "by_entity_type": self._db.count_sync_logs_by("entity_type", since),
            "recent_errors": [
                {
                    "id": entry.id,
                    "entity_type": entry.entity_type,
                    "entity_id": entry.entity_id,
                    "error_kind": entry.error_kind,
                    "message": entry.message,
                    "created_at": entry.created_at.isoformat(),
                }
                for entry in recent_errors
            ],
        }
