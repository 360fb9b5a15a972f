"""Payment and invoice push API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ledgersync.core.types import EntityType
from ledgersync.remote.errors import AuthExpiredError, ValidationError
from ledgersync.server.api.deps import get_engine, reconnect_required, require_sync_caller
from ledgersync.server.models import ApiToken
from ledgersync.server.schemas import (
    InvoicePushRequest,
    PaymentPushRequest,
    PushResponse,
    batch_to_response,
)
from ledgersync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["push"])


async def _push(
    engine: SyncEngine,
    entity_type: EntityType,
    ids: list[int] | None,
    caller: ApiToken,
    dry_run: bool,
) -> PushResponse:
    if ids is None:
        ids = engine.reconciler.pending_ids(entity_type)
    try:
        result = await engine.reconciler.push_batch(
            entity_type,
            ids,
            tenant_id=caller.tenant_id,
            dry_run=dry_run,
            actor=caller.subject,
        )
    except AuthExpiredError as e:
        raise reconnect_required() from e

    response = batch_to_response(result)
    # Every requested entity was rejected before reaching the remote
    if result.failed and len(result.failed) == result.attempted and all(
        f.kind == ValidationError.kind for f in result.failed
    ):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[f.model_dump() for f in response.failed],
        )
    return response


@router.post("/payments/push", response_model=PushResponse)
async def push_payments(
    request: PaymentPushRequest,
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> PushResponse:
    """Push payments to the remote platform.

    Without ids, every pending (or transiently failed) payment is pushed.
    """
    return await _push(engine, EntityType.PAYMENT, request.ids(), caller, request.dry_run)


@router.post("/invoices/push", response_model=PushResponse)
async def push_invoices(
    request: InvoicePushRequest,
    engine: SyncEngine = Depends(get_engine),
    caller: ApiToken = Depends(require_sync_caller),
) -> PushResponse:
    """Push customer or supplier invoices to the remote platform."""
    return await _push(
        engine, request.direction.entity_type, request.ids(), caller, request.dry_run
    )
