"""Conflict review, resolution and retry API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledgersync.core.types import EntityType, SyncStatus
from ledgersync.remote.errors import AuthExpiredError, SyncError
from ledgersync.server.api.deps import get_engine, reconnect_required, require_sync_caller
from ledgersync.server.models import ApiToken
from ledgersync.server.schemas import (
    ResolveRequest,
    RetryRequest,
    SyncStateResponse,
    state_to_response,
)
from ledgersync.sync.engine import SyncEngine
from ledgersync.sync.state import InvalidTransitionError

router = APIRouter(prefix="/api/sync", tags=["conflicts"])


@router.get("/conflicts", response_model=list[SyncStateResponse])
def list_conflicts(
    engine: SyncEngine = Depends(get_engine),
    _caller: ApiToken = Depends(require_sync_caller),
    status_filter: SyncStatus = Query(SyncStatus.CONFLICT, alias="status"),
    entity_type: EntityType | None = None,
    limit: int = 50,
) -> list[SyncStateResponse]:
    """List entities in conflict (or another status) with a local summary."""
    conflicts = engine.conflicts.list_conflicts(status_filter, entity_type, min(limit, 200))
    return [SyncStateResponse(**item) for item in conflicts]


@router.post("/conflicts/{conflict_id}/resolve", response_model=SyncStateResponse)
async def resolve_conflict(
    conflict_id: int,
    request: ResolveRequest,
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> SyncStateResponse:
    """Resolve a conflict with keep-local, keep-remote or ignore."""
    try:
        state = await engine.conflicts.resolve(
            conflict_id,
            request.resolution,
            tenant_id=caller.tenant_id,
            notes=request.notes,
            actor=caller.subject,
        )
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except AuthExpiredError as e:
        raise reconnect_required() from e
    except SyncError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Remote call failed ({e.kind}): {e}",
        ) from e
    return state_to_response(state)


@router.post("/retry", response_model=SyncStateResponse)
def request_retry(
    request: RetryRequest,
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> SyncStateResponse:
    """Move a failed or conflicted entity back to pending."""
    try:
        state = engine.conflicts.request_retry(
            state_id=request.state_id, log_id=request.log_id, actor=caller.subject
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return state_to_response(state)
