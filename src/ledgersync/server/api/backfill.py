"""Backfill API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ledgersync.core.config import SyncSettings
from ledgersync.remote.errors import AuthExpiredError
from ledgersync.server.api.deps import (
    get_engine,
    get_settings,
    reconnect_required,
    require_sync_caller,
)
from ledgersync.server.models import ApiToken
from ledgersync.server.schemas import (
    BackfillJobResponse,
    BackfillRequest,
    BackfillStartedResponse,
)
from ledgersync.sync.backfill import BackfillInProgressError, BackfillOptions
from ledgersync.sync.engine import SyncEngine

router = APIRouter(prefix="/api/sync/backfill", tags=["backfill"])


@router.post(
    "",
    response_model=BackfillStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_backfill(
    request: BackfillRequest,
    engine: SyncEngine = Depends(get_engine),
    settings: SyncSettings = Depends(get_settings),
    caller: ApiToken = Depends(require_sync_caller),
) -> BackfillStartedResponse:
    """Start a full-history import for the caller's tenant.

    Returns immediately; poll the status url for progress.
    """
    try:
        await engine.tokens.require_credential(caller.tenant_id)
    except AuthExpiredError as e:
        raise reconnect_required() from e

    options = BackfillOptions(
        tenant_id=caller.tenant_id,
        sync_contacts=request.sync_contacts,
        sync_invoices=request.sync_invoices,
        sync_payments=request.sync_payments,
        force_refresh=request.force_refresh,
        page_size=request.page_size,
        modified_since=request.modified_since,
        include_archived=request.include_archived,
        max_pages=settings.max_pages,
    )
    try:
        job_id = engine.backfill.start_backfill(options)
    except BackfillInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return BackfillStartedResponse(job_id=job_id, status_url=f"/api/sync/backfill/{job_id}")


@router.get("", response_model=list[BackfillJobResponse])
def list_backfills(
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> list[BackfillJobResponse]:
    """List backfill jobs of the caller's tenant, newest first."""
    return [
        BackfillJobResponse(**job)
        for job in engine.backfill.list_jobs()
        if job["tenant_id"] == caller.tenant_id
    ]


@router.get("/{job_id}", response_model=BackfillJobResponse)
def get_backfill(
    job_id: str,
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> BackfillJobResponse:
    """Get the status of one backfill job."""
    job = engine.backfill.get_job_status(job_id)
    if job is None or job["tenant_id"] != caller.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Backfill job not found: {job_id}",
        )
    return BackfillJobResponse(**job)
