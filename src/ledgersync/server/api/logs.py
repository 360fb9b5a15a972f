"""Sync log API routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ledgersync.core.types import EntityType, LogStatus, SyncDirection
from ledgersync.server.api.deps import get_engine, require_sync_caller
from ledgersync.server.models import ApiToken
from ledgersync.server.schemas import LogPageResponse, log_to_response
from ledgersync.sync.engine import SyncEngine

router = APIRouter(prefix="/api/sync", tags=["logs"])


@router.get("/logs", response_model=LogPageResponse)
def list_logs(
    engine: SyncEngine = Depends(get_engine),
    _caller: ApiToken = Depends(require_sync_caller),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    entity_type: EntityType | None = None,
    entity_id: int | None = None,
    status: LogStatus | None = None,
    direction: SyncDirection | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> LogPageResponse:
    """List sync log entries, newest first."""
    result = engine.audit.list_logs(
        page=page,
        limit=limit,
        entity_type=entity_type,
        entity_id=entity_id,
        status=status,
        direction=direction,
        date_from=date_from,
        date_to=date_to,
    )
    return LogPageResponse(
        items=[log_to_response(entry) for entry in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
    )
