"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ledgersync.core.types import EntityType, InvoiceDirection, Resolution, SyncStatus
from ledgersync.server.models import SyncLog, SyncState
from ledgersync.sync.reconciler import BatchResult

# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Backfill schemas ===


class BackfillRequest(BaseModel):
    """Request body for starting a backfill."""

    model_config = ConfigDict(populate_by_name=True)

    sync_contacts: bool = Field(True, alias="syncContacts")
    sync_invoices: bool = Field(True, alias="syncInvoices")
    sync_payments: bool = Field(True, alias="syncPayments")
    force_refresh: bool = Field(False, alias="forceRefresh")
    page_size: int = Field(100, alias="pageSize", ge=1, le=1000)
    modified_since: datetime | None = Field(None, alias="modifiedSince")
    include_archived: bool = Field(True, alias="includeArchived")


class BackfillStartedResponse(BaseModel):
    """Response for an accepted backfill."""

    job_id: str
    status_url: str


class BackfillJobResponse(BaseModel):
    """Backfill job status."""

    job_id: str
    tenant_id: str
    status: str
    options: dict[str, Any]
    progress: dict[str, Any]
    failures: list[dict[str, Any]]
    error: str | None = None
    started_at: str
    finished_at: str | None = None


# === Push schemas ===


class PaymentPushRequest(BaseModel):
    """Request body for pushing payments."""

    dry_run: bool = False
    payment_ids: list[int] | None = None
    payment_id: int | None = None

    def ids(self) -> list[int] | None:
        if self.payment_id is not None:
            return [self.payment_id]
        return self.payment_ids


class InvoicePushRequest(BaseModel):
    """Request body for pushing invoices of one direction."""

    direction: InvoiceDirection = InvoiceDirection.OUTBOUND
    dry_run: bool = False
    invoice_ids: list[int] | None = None
    invoice_id: int | None = None

    def ids(self) -> list[int] | None:
        if self.invoice_id is not None:
            return [self.invoice_id]
        return self.invoice_ids


class PushFailure(BaseModel):
    """One entity that was not pushed."""

    id: int
    error: str
    kind: str


class PushResponse(BaseModel):
    """Per-entity outcome of a push batch."""

    success: bool
    dry_run: bool
    pushed: list[int]
    failed: list[PushFailure]
    skipped: list[PushFailure]
    conflicts: list[int]
    details: dict[int, str]


def batch_to_response(result: BatchResult) -> PushResponse:
    """Convert BatchResult to response model."""
    return PushResponse(
        success=not result.failed,
        dry_run=result.dry_run,
        pushed=result.success,
        failed=[PushFailure(id=f.id, error=f.error, kind=f.kind) for f in result.failed],
        skipped=[PushFailure(id=f.id, error=f.error, kind=f.kind) for f in result.skipped],
        conflicts=result.conflicts,
        details=result.actions,
    )


# === Conflict schemas ===


class SyncStateResponse(BaseModel):
    """SyncState data in responses."""

    id: int
    entity_type: EntityType
    entity_id: int
    remote_id: str | None
    status: SyncStatus
    last_synced_at: datetime | None
    last_local_modified_at: datetime | None
    last_remote_modified_at: datetime | None
    conflict_snapshot: dict[str, Any] | None
    last_error: str | None
    last_error_kind: str | None
    attempts: int
    summary: dict[str, Any] | None = None


class ResolveRequest(BaseModel):
    """Request body for resolving a conflict."""

    resolution: Resolution
    notes: str | None = None


class RetryRequest(BaseModel):
    """Request body for an operator retry."""

    state_id: int | None = None
    log_id: int | None = None


def state_to_response(state: SyncState, summary: dict[str, Any] | None = None) -> SyncStateResponse:
    """Convert SyncState to response model."""
    return SyncStateResponse(
        id=state.id,
        entity_type=EntityType(state.entity_type),
        entity_id=state.entity_id,
        remote_id=state.remote_id,
        status=SyncStatus(state.status),
        last_synced_at=state.last_synced_at,
        last_local_modified_at=state.last_local_modified_at,
        last_remote_modified_at=state.last_remote_modified_at,
        conflict_snapshot=state.conflict_snapshot,
        last_error=state.last_error,
        last_error_kind=state.last_error_kind,
        attempts=state.attempts,
        summary=summary,
    )


# === Log schemas ===


class SyncLogResponse(BaseModel):
    """Single audit entry in responses."""

    id: int
    correlation_id: str | None
    tenant_id: str | None
    entity_type: str | None
    entity_id: int | None
    remote_id: str | None
    operation: str
    direction: str
    status: str
    error_kind: str | None
    message: str | None
    details: dict[str, Any] | None
    actor: str | None
    created_at: str


class LogPageResponse(BaseModel):
    """Response for /api/sync/logs."""

    items: list[SyncLogResponse]
    total: int
    page: int
    limit: int
    pages: int


def log_to_response(entry: SyncLog) -> SyncLogResponse:
    """Convert SyncLog to response model."""
    return SyncLogResponse(
        id=entry.id,
        correlation_id=entry.correlation_id,
        tenant_id=entry.tenant_id,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        remote_id=entry.remote_id,
        operation=entry.operation,
        direction=entry.direction,
        status=entry.status,
        error_kind=entry.error_kind,
        message=entry.message,
        details=entry.details,
        actor=entry.actor,
        created_at=entry.created_at.isoformat(),
    )


# === Status schema ===


class StatusResponse(BaseModel):
    """Connection and sync overview for one tenant."""

    tenant_id: str
    connection: dict[str, Any]
    sync: dict[str, dict[str, int]]
    logs: dict[str, Any]
    active_backfills: list[str]
