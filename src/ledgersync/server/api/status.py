"""Sync status API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ledgersync.core.types import JobStatus
from ledgersync.server.api.deps import get_engine, require_sync_caller
from ledgersync.server.models import ApiToken
from ledgersync.server.schemas import StatusResponse
from ledgersync.sync.engine import SyncEngine

router = APIRouter(prefix="/api/sync", tags=["status"])


@router.get("/status", response_model=StatusResponse)
def sync_status(
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> StatusResponse:
    """Connection status, per-entity sync summary and recent log stats."""
    active = [
        job["job_id"]
        for job in engine.backfill.list_jobs()
        if job["tenant_id"] == caller.tenant_id and JobStatus(job["status"]).is_active
    ]
    return StatusResponse(
        tenant_id=caller.tenant_id,
        connection=engine.tokens.connection_status(caller.tenant_id),
        sync=engine.db.sync_summary(),
        logs=engine.audit.stats(),
        active_backfills=active,
    )
