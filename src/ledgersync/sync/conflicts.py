"""Conflict review and resolution for operators."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ledgersync.core.types import (
    EntityType,
    LogStatus,
    Resolution,
    SyncOperation,
    SyncStatus,
    utcnow,
)
from ledgersync.remote.errors import is_retryable_kind
from ledgersync.sync.mapping import local_fields
from ledgersync.sync.state import InvalidTransitionError, check_transition

if TYPE_CHECKING:
    from ledgersync.server.database import Database
    from ledgersync.server.models import SyncState
    from ledgersync.sync.audit import AuditLog
    from ledgersync.sync.reconciler import Reconciler

logger = logging.getLogger(__name__)


def state_to_dict(state: SyncState) -> dict[str, Any]:
    return {
        "id": state.id,
        "entity_type": state.entity_type,
        "entity_id": state.entity_id,
        "remote_id": state.remote_id,
        "status": state.status,
        "last_synced_at": state.last_synced_at,
        "last_local_modified_at": state.last_local_modified_at,
        "last_remote_modified_at": state.last_remote_modified_at,
        "conflict_snapshot": state.conflict_snapshot,
        "last_error": state.last_error,
        "last_error_kind": state.last_error_kind,
        "attempts": state.attempts,
    }


class ConflictService:
    """Lists conflicts and applies operator decisions."""

    def __init__(self, db: Database, reconciler: Reconciler, audit: AuditLog) -> None:
        self._db = db
        self._reconciler = reconciler
        self._audit = audit

    def _summary(self, state: SyncState) -> dict[str, Any] | None:
        entity_type = EntityType(state.entity_type)
        entity = self._db.get_entity(entity_type, state.entity_id)
        if entity is None:
            return None
        return local_fields(entity_type, entity)

    def list_conflicts(
        self,
        status: SyncStatus = SyncStatus.CONFLICT,
        entity_type: EntityType | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """List states in the given status with a summary of the local entity."""
        conflicts = []
        for state in self._db.list_sync_states(status, entity_type, limit):
            item = state_to_dict(state)
            item["summary"] = self._summary(state)
            conflicts.append(item)
        return conflicts

    async def resolve(
        self,
        conflict_id: int,
        resolution: Resolution,
        *,
        tenant_id: str,
        notes: str | None = None,
        actor: str | None = None,
    ) -> SyncState:
        """Apply an operator decision to a conflicted state.

        Args:
            conflict_id: SyncState id.
            resolution: keep-local pushes, keep-remote pulls, ignore only marks synced.
            tenant_id: Remote tenant used for keep-local/keep-remote.
            notes: Free text stored in the audit record.
            actor: Operator recorded in the audit record.

        Returns:
            The updated SyncState.

        Raises:
            LookupError: If the state does not exist.
            InvalidTransitionError: If the state is not in CONFLICT.
            SyncError: If the remote call fails (the conflict stays open).
        """
        state = self._db.get_sync_state_by_id(conflict_id)
        if state is None:
            raise LookupError(f"Conflict {conflict_id} not found")
        if state.status != SyncStatus.CONFLICT.value:
            raise InvalidTransitionError(f"State {conflict_id} is {state.status}, not CONFLICT")

        entity_type = EntityType(state.entity_type)
        if resolution is Resolution.KEEP_LOCAL:
            await self._reconciler.force_push(
                entity_type, state.entity_id, tenant_id=tenant_id, actor=actor
            )
        elif resolution is Resolution.KEEP_REMOTE:
            await self._reconciler.force_pull(
                entity_type, state.entity_id, tenant_id=tenant_id, actor=actor
            )

        resolved = self._db.save_sync_state(
            entity_type,
            state.entity_id,
            status=SyncStatus.SYNCED,
            conflict_snapshot=None,
            last_synced_at=utcnow(),
            last_error=None,
            last_error_kind=None,
        )
        self._audit.record(
            SyncOperation.RESOLVE,
            LogStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=state.entity_id,
            remote_id=resolved.remote_id,
            tenant_id=tenant_id,
            message=notes,
            details={
                "resolution": resolution.value,
                "fields": sorted((state.conflict_snapshot or {}).get("fields") or {}),
            },
            actor=actor,
        )
        logger.info(
            "Conflict %s (%s %s) resolved with %s",
            conflict_id,
            entity_type.value,
            state.entity_id,
            resolution.value,
        )
        return resolved

    def request_retry(
        self,
        state_id: int | None = None,
        log_id: int | None = None,
        actor: str | None = None,
    ) -> SyncState:
        """Move a failed or conflicted entity back to PENDING.

        Raises:
            ValueError: If neither id is given.
            LookupError: If the state or log entry does not exist.
            InvalidTransitionError: If the failure is not retryable.
        """
        if state_id is None and log_id is None:
            raise ValueError("state_id or log_id is required")

        if state_id is not None:
            state = self._db.get_sync_state_by_id(state_id)
        else:
            log = self._db.get_sync_log(log_id)  # type: ignore[arg-type]
            if log is None or log.entity_type is None or log.entity_id is None:
                raise LookupError(f"Log entry {log_id} has no entity to retry")
            state = self._db.get_sync_state(EntityType(log.entity_type), log.entity_id)
        if state is None:
            raise LookupError("Sync state not found")

        if state.status == SyncStatus.FAILED.value and not is_retryable_kind(state.last_error_kind):
            raise InvalidTransitionError(
                f"{state.last_error_kind or 'unknown'} failures are not retried; fix the data first"
            )
        if state.status not in (SyncStatus.FAILED.value, SyncStatus.CONFLICT.value):
            raise InvalidTransitionError(f"State {state.id} is {state.status}, nothing to retry")

        entity_type = EntityType(state.entity_type)
        updated = self._db.save_sync_state(
            entity_type,
            state.entity_id,
            status=check_transition(state.status, SyncStatus.PENDING),
            conflict_snapshot=None,
        )
        self._audit.record(
            SyncOperation.RETRY,
            LogStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=state.entity_id,
            remote_id=state.remote_id,
            details={"previous_status": state.status},
            actor=actor,
        )
        return updated
