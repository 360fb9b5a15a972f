"""Push/pull reconciler for contacts, invoices and payments.

This module provides:
- Reconciler.push_batch: sequential per-entity sync that never aborts early
- Reconciler.sync_entity: one state machine step for one entity
- Reconciler.force_push / force_pull: operator-driven overwrites
- Reconciler.ingest_remote: create or update local records from remote data

Every outcome is written to the audit log. Remote mutations carry the
entity's correlation id as idempotency key; an attempt that did not complete
keeps its key so the retry is de-duplicated by the remote platform.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ledgersync.core.types import (
    ContactRole,
    EntityType,
    InvoiceDirection,
    LogStatus,
    SyncDirection,
    SyncOperation,
    SyncStatus,
)
from ledgersync.remote.api import RemoteContact, RemoteInvoice, RemotePayment
from ledgersync.remote.errors import (
    AuthExpiredError,
    DuplicateRemoteInvoiceError,
    NotFoundError,
    PreconditionError,
    SyncError,
    ValidationError,
    is_retryable_kind,
)
from ledgersync.sync.mapping import (
    REMOTE_KINDS,
    change_hash,
    contact_payload,
    invoice_payload,
    local_fields,
    local_values,
    payment_payload,
    remote_fields,
    remote_id_field,
    remote_id_of,
    remote_record_id,
    validate_payment,
)
from ledgersync.sync.state import (
    SyncAction,
    Timestamps,
    check_transition,
    decide,
    field_diff,
    reconciled_at,
)

if TYPE_CHECKING:
    from ledgersync.remote.api import AccountingClient
    from ledgersync.server.database import Database
    from ledgersync.server.models import Credential, SyncState
    from ledgersync.sync.audit import AuditLog
    from ledgersync.sync.contacts import ContactLinker
    from ledgersync.sync.tokens import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class BatchFailure:
    """One entity that could not be synced."""

    id: int
    error: str
    kind: str


@dataclass
class BatchResult:
    """Per-entity outcome of a push batch."""

    dry_run: bool = False
    success: list[int] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)
    skipped: list[BatchFailure] = field(default_factory=list)
    conflicts: list[int] = field(default_factory=list)
    actions: dict[int, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.success) + len(self.failed) + len(self.skipped) + len(self.conflicts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class IngestOutcome(str, Enum):
    """What ingesting one remote record did locally."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def _correlation_for(state: SyncState | None) -> str:
    """Reuse the key of an attempt that did not complete, else mint a new one."""
    if state is not None and state.correlation_id and state.attempts > 0:
        return state.correlation_id
    return new_correlation_id()


class Reconciler:
    """Bidirectional sync of local entities with the remote platform."""

    def __init__(
        self,
        db: Database,
        api: AccountingClient,
        tokens: TokenManager,
        audit: AuditLog,
        contacts: ContactLinker,
    ) -> None:
        self._db = db
        self._api = api
        self._tokens = tokens
        self._audit = audit
        self._contacts = contacts
        self._getters = {
            "contacts": api.get_contact,
            "invoices": api.get_invoice,
            "payments": api.get_payment,
        }
        self._savers = {
            "contacts": api.save_contact,
            "invoices": api.save_invoice,
            "payments": api.save_payment,
        }

    # === Batches ===

    async def push_batch(
        self,
        entity_type: EntityType,
        entity_ids: list[int],
        *,
        tenant_id: str,
        dry_run: bool = False,
        correlation_ids: dict[int, str] | None = None,
        actor: str | None = None,
    ) -> BatchResult:
        """Sync a list of entities one after another.

        Args:
            entity_type: Kind of every entity in the batch.
            entity_ids: Local ids, processed in order.
            tenant_id: Remote tenant.
            dry_run: Resolve and validate only; no remote mutation, no state writes.
            correlation_ids: Explicit idempotency keys per entity id.
            actor: Caller recorded in the audit log.

        Returns:
            BatchResult with per-entity outcomes.

        Raises:
            AuthExpiredError: If no usable credential exists (nothing attempted).
        """
        await self._tokens.require_credential(tenant_id)
        correlation_ids = correlation_ids or {}
        result = BatchResult(dry_run=dry_run)

        for entity_id in entity_ids:
            try:
                action = await self.sync_entity(
                    entity_type,
                    entity_id,
                    tenant_id=tenant_id,
                    dry_run=dry_run,
                    correlation_id=correlation_ids.get(entity_id),
                    actor=actor,
                )
            except NotFoundError as e:
                result.skipped.append(BatchFailure(entity_id, str(e), e.kind))
            except SyncError as e:
                result.failed.append(BatchFailure(entity_id, str(e), e.kind))
            except Exception as e:
                logger.exception("Unexpected error syncing %s %s", entity_type.value, entity_id)
                result.failed.append(BatchFailure(entity_id, str(e), "internal"))
            else:
                result.actions[entity_id] = action.name.lower()
                if action is SyncAction.CONFLICT:
                    result.conflicts.append(entity_id)
                else:
                    result.success.append(entity_id)

        logger.info(
            "Push batch %s%s: %d ok, %d failed, %d skipped, %d conflicts",
            entity_type.value,
            " (dry run)" if dry_run else "",
            len(result.success),
            len(result.failed),
            len(result.skipped),
            len(result.conflicts),
        )
        return result

    def pending_ids(self, entity_type: EntityType) -> list[int]:
        """Entities waiting for a push: PENDING, or FAILED with a transient error."""
        ids = [s.entity_id for s in self._db.list_sync_states(SyncStatus.PENDING, entity_type)]
        ids += [
            s.entity_id
            for s in self._db.list_sync_states(SyncStatus.FAILED, entity_type)
            if is_retryable_kind(s.last_error_kind)
        ]
        return sorted(ids)

    # === Single entity ===

    async def sync_entity(
        self,
        entity_type: EntityType,
        entity_id: int,
        *,
        tenant_id: str,
        dry_run: bool = False,
        correlation_id: str | None = None,
        actor: str | None = None,
        force: SyncAction | None = None,
    ) -> SyncAction:
        """Run one state machine step for one entity.

        Args:
            entity_type: Kind of entity.
            entity_id: Local id.
            tenant_id: Remote tenant.
            dry_run: Resolve and validate only.
            correlation_id: Explicit idempotency key.
            actor: Caller recorded in the audit log.
            force: PUSH or PULL regardless of timestamps (conflict resolution).

        Returns:
            The action taken (or that would be taken in dry run).

        Raises:
            SyncError: Classified failure, already recorded in state and audit.
        """
        entity = self._db.get_entity(entity_type, entity_id)
        state = self._db.get_sync_state(entity_type, entity_id)
        correlation_id = correlation_id or _correlation_for(state)

        try:
            if entity is None:
                raise NotFoundError(f"{entity_type.value} {entity_id} not found")
            credential = await self._tokens.require_credential(tenant_id)
            return await self._sync(
                entity_type, entity, state, credential, correlation_id, dry_run, actor, force
            )
        except SyncError as e:
            self._record_failure(
                entity_type, entity_id, state, e, correlation_id, tenant_id, dry_run, actor
            )
            raise

    async def force_push(
        self, entity_type: EntityType, entity_id: int, *, tenant_id: str, actor: str | None = None
    ) -> SyncAction:
        """Overwrite the remote copy with local data."""
        return await self.sync_entity(
            entity_type, entity_id, tenant_id=tenant_id, actor=actor, force=SyncAction.PUSH
        )

    async def force_pull(
        self, entity_type: EntityType, entity_id: int, *, tenant_id: str, actor: str | None = None
    ) -> SyncAction:
        """Overwrite local data with the remote copy."""
        return await self.sync_entity(
            entity_type, entity_id, tenant_id=tenant_id, actor=actor, force=SyncAction.PULL
        )

    async def _sync(
        self,
        entity_type: EntityType,
        entity: Any,
        state: SyncState | None,
        credential: Credential,
        correlation_id: str,
        dry_run: bool,
        actor: str | None,
        force: SyncAction | None,
    ) -> SyncAction:
        if force is None and state is not None:
            if state.status == SyncStatus.CONFLICT.value:
                return SyncAction.CONFLICT
            if state.status == SyncStatus.FAILED.value and not is_retryable_kind(
                state.last_error_kind
            ):
                raise ValidationError(
                    state.last_error or "Previous attempt was rejected", status_code=None
                )

        if entity_type is EntityType.CONTACT and not entity.remote_contact_id:
            # Linking by name (or creating) is the push of a new contact
            await self._contacts.ensure_remote_link(
                entity, credential, None, correlation_id, dry_run=dry_run
            )
            return SyncAction.PUSH

        remote_id = remote_id_of(entity_type, entity)
        remote = None
        if remote_id:
            remote = await self._getters[REMOTE_KINDS[entity_type]](credential, remote_id)

        if force is not None:
            action = force
        else:
            stored = Timestamps.of(state)
            stamps = Timestamps(
                stored.last_synced_at,
                stored.last_local_modified_at,
                remote.updated_at if remote else stored.last_remote_modified_at,
            )
            action = decide(stamps, has_local=True, has_remote=remote is not None)

        if action is SyncAction.NOOP:
            return action
        if action is SyncAction.CONFLICT:
            if not dry_run:
                self._record_conflict(
                    entity_type,
                    entity.id,
                    local_fields(entity_type, entity),
                    remote_fields(entity_type, remote),
                    remote_record_id(remote),
                    remote.updated_at,
                    correlation_id,
                    credential.tenant_id,
                )
            return action
        if action is SyncAction.PULL:
            if remote is None:
                raise NotFoundError(f"{entity_type.value} {entity.id} has no remote copy to pull")
            if not dry_run:
                self._apply_pull(entity_type, entity, state, remote, correlation_id, credential, actor)
            return action

        # Preconditions and contact links only matter for an actual push
        refs = await self._resolve_references(
            entity_type, entity, credential, correlation_id, dry_run
        )
        payload = self._payload(entity_type, entity, refs)
        if dry_run:
            self._audit.record(
                SyncOperation.PUSH,
                LogStatus.SKIPPED,
                entity_type=entity_type,
                entity_id=entity.id,
                remote_id=remote_id,
                direction=SyncDirection.PUSH,
                correlation_id=correlation_id,
                tenant_id=credential.tenant_id,
                message="Dry run",
                details={"dry_run": True, "payload": payload},
                actor=actor,
            )
            return action
        await self._push(
            entity_type, entity, state, payload, remote_id, correlation_id, credential, actor
        )
        return action

    async def _resolve_references(
        self,
        entity_type: EntityType,
        entity: Any,
        credential: Credential,
        correlation_id: str,
        dry_run: bool,
    ) -> dict[str, str | None]:
        """Validate the entity and resolve the remote ids its payload needs."""
        if entity_type is EntityType.PAYMENT:
            invoice = self._db.get_invoice(InvoiceDirection(entity.invoice_direction), entity.invoice_id)
            validate_payment(entity, invoice)
            return {"remote_invoice_id": invoice.remote_invoice_id}

        if entity_type is EntityType.CONTACT:
            return {}

        contact = self._db.get_contact(entity.contact_id)
        if contact is None:
            raise PreconditionError(f"Contact {entity.contact_id} of invoice {entity.id} not found")
        role = ContactRole.for_direction(InvoiceDirection(entity.remote_direction))
        remote_contact_id = await self._contacts.ensure_remote_link(
            contact, credential, role, correlation_id, dry_run=dry_run
        )
        return {"remote_contact_id": remote_contact_id}

    def _payload(self, entity_type: EntityType, entity: Any, refs: dict[str, str | None]) -> dict[str, Any]:
        if entity_type is EntityType.PAYMENT:
            return payment_payload(entity, refs["remote_invoice_id"] or "")
        if entity_type is EntityType.CONTACT:
            return contact_payload(entity)
        return invoice_payload(entity, refs.get("remote_contact_id") or "")

    async def _push(
        self,
        entity_type: EntityType,
        entity: Any,
        state: SyncState | None,
        payload: dict[str, Any],
        remote_id: str | None,
        correlation_id: str,
        credential: Credential,
        actor: str | None,
    ) -> None:
        payload_hash = change_hash(payload)
        # The remote may have settled this key with an older payload
        stale_key = (
            state is not None
            and state.attempts > 0
            and state.correlation_id == correlation_id
            and state.attempt_hash is not None
            and state.attempt_hash != payload_hash
        )
        # Persist the key before the call so a retry after a timeout reuses it
        self._db.save_sync_state(
            entity_type,
            entity.id,
            correlation_id=correlation_id,
            attempts=(state.attempts if state else 0) + 1,
            attempt_hash=payload_hash,
        )
        saver = self._savers[REMOTE_KINDS[entity_type]]
        saved = await saver(credential, payload, correlation_id, remote_id)
        saved_id = remote_record_id(saved)

        if saved_id != remote_id:
            self._db.update_entity(
                entity_type, entity.id, local_change=False, **{remote_id_field(entity_type): saved_id}
            )

        if stale_key:
            correlation_id = new_correlation_id()
            logger.info(
                "Re-sending %s %s to %s: payload changed since key was first used",
                entity_type.value,
                entity.id,
                saved_id,
            )
            self._db.save_sync_state(entity_type, entity.id, correlation_id=correlation_id)
            saved = await saver(credential, payload, correlation_id, saved_id)
        self._mark_synced(entity_type, entity.id, state, saved_id, saved.updated_at,
                          local_fields(entity_type, entity))
        self._audit.record(
            SyncOperation.PUSH,
            LogStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=entity.id,
            remote_id=saved_id,
            direction=SyncDirection.PUSH,
            correlation_id=correlation_id,
            tenant_id=credential.tenant_id,
            actor=actor,
        )

    def _apply_pull(
        self,
        entity_type: EntityType,
        entity: Any,
        state: SyncState | None,
        remote: Any,
        correlation_id: str,
        credential: Credential,
        actor: str | None,
    ) -> None:
        values = local_values(entity_type, remote)
        if isinstance(remote, RemoteInvoice) and remote.contact.contact_id:
            role = ContactRole.for_direction(InvoiceDirection(entity.remote_direction))
            contact, _ = self._contacts.resolve_remote(remote.contact, role, credential.tenant_id)
            values["contact_id"] = contact.id
        self._db.update_entity(entity_type, entity.id, local_change=False, **values)
        self._mark_synced(entity_type, entity.id, state, remote_record_id(remote),
                          remote.updated_at, remote_fields(entity_type, remote))
        self._audit.record(
            SyncOperation.PULL,
            LogStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=entity.id,
            remote_id=remote_record_id(remote),
            direction=SyncDirection.PULL,
            correlation_id=correlation_id,
            tenant_id=credential.tenant_id,
            actor=actor,
        )

    def _mark_synced(
        self,
        entity_type: EntityType,
        entity_id: int,
        state: SyncState | None,
        remote_id: str,
        remote_updated_at: Any,
        fields: dict[str, Any],
    ) -> None:
        if state is not None:
            check_transition(state.status, SyncStatus.SYNCED)
        stamps = Timestamps.of(state)
        self._db.save_sync_state(
            entity_type,
            entity_id,
            remote_id=remote_id,
            status=SyncStatus.SYNCED,
            last_remote_modified_at=remote_updated_at,
            last_synced_at=reconciled_at(remote_updated_at, stamps.last_local_modified_at),
            conflict_snapshot=None,
            last_error=None,
            last_error_kind=None,
            attempts=0,
            attempt_hash=None,
            content_hash=change_hash(fields),
        )

    def _record_conflict(
        self,
        entity_type: EntityType,
        entity_id: int,
        local: dict[str, Any],
        remote: dict[str, Any],
        remote_id: str,
        remote_updated_at: Any,
        correlation_id: str | None,
        tenant_id: str,
    ) -> None:
        snapshot = field_diff(local, remote)
        self._db.save_sync_state(
            entity_type,
            entity_id,
            remote_id=remote_id,
            status=SyncStatus.CONFLICT,
            last_remote_modified_at=remote_updated_at,
            conflict_snapshot=snapshot,
        )
        self._audit.record(
            SyncOperation.CONFLICT,
            LogStatus.CONFLICT,
            entity_type=entity_type,
            entity_id=entity_id,
            remote_id=remote_id,
            correlation_id=correlation_id,
            tenant_id=tenant_id,
            message=f"Both sides changed: {', '.join(snapshot['fields']) or 'timestamps only'}",
            details={"fields": snapshot["fields"]},
        )

    def _record_failure(
        self,
        entity_type: EntityType,
        entity_id: int,
        state: SyncState | None,
        error: SyncError,
        correlation_id: str,
        tenant_id: str,
        dry_run: bool,
        actor: str | None,
    ) -> None:
        status = LogStatus.SKIPPED if isinstance(error, NotFoundError) else LogStatus.FAILED
        self._audit.record(
            SyncOperation.PUSH,
            status,
            entity_type=entity_type,
            entity_id=entity_id,
            direction=SyncDirection.PUSH,
            correlation_id=correlation_id,
            tenant_id=tenant_id,
            error_kind=error.kind,
            message=str(error),
            details={"dry_run": True} if dry_run else None,
            actor=actor,
        )
        if dry_run or isinstance(error, (NotFoundError, AuthExpiredError)):
            return

        fields: dict[str, Any] = {"last_error": str(error), "last_error_kind": error.kind}
        unresolved = state is not None and state.status == SyncStatus.CONFLICT.value
        # Local preconditions keep the entity pending; remote rejections fail it
        if not unresolved and not isinstance(error, PreconditionError):
            current = state.status if state is not None else SyncStatus.PENDING
            fields["status"] = check_transition(current, SyncStatus.FAILED)
        self._db.save_sync_state(entity_type, entity_id, **fields)

    # === Remote ingest (backfill) ===

    def ingest_remote(
        self,
        remote: RemoteContact | RemoteInvoice | RemotePayment,
        *,
        tenant_id: str,
        force_refresh: bool = False,
        correlation_id: str | None = None,
    ) -> IngestOutcome:
        """Create or update the local record for one remote record.

        Args:
            remote: Record from a remote listing page.
            tenant_id: Remote tenant.
            force_refresh: Apply even when the change hash is unchanged.
            correlation_id: Backfill job id recorded on audit entries.

        Returns:
            What happened locally.

        Raises:
            SyncError: If the record cannot be stored (recorded by the caller).
        """
        if isinstance(remote, RemoteContact):
            return self._ingest_contact(remote, tenant_id, force_refresh, correlation_id)
        if isinstance(remote, RemoteInvoice):
            return self._ingest_invoice(remote, tenant_id, force_refresh, correlation_id)
        return self._ingest_payment(remote, tenant_id, force_refresh, correlation_id)

    def _ingest_contact(
        self, remote: RemoteContact, tenant_id: str, force_refresh: bool, correlation_id: str | None
    ) -> IngestOutcome:
        if not (remote.is_customer or remote.is_supplier):
            return IngestOutcome.SKIPPED
        existing = self._db.get_contact_by_remote_id(remote.contact_id)
        if existing is None:
            _, outcome = self._contacts.resolve_remote(remote, None, tenant_id)
            return IngestOutcome.CREATED if outcome.value == "created" else IngestOutcome.UPDATED
        return self._ingest_existing(
            EntityType.CONTACT, existing, remote, tenant_id, force_refresh, correlation_id
        )

    def _ingest_invoice(
        self, remote: RemoteInvoice, tenant_id: str, force_refresh: bool, correlation_id: str | None
    ) -> IngestOutcome:
        try:
            direction = InvoiceDirection.from_remote_type(remote.invoice_type)
        except ValueError as e:
            raise ValidationError(str(e), status_code=None) from e

        values = local_values(direction.entity_type, remote)
        role = ContactRole.for_direction(direction)
        contact, _ = self._contacts.resolve_remote(remote.contact, role, tenant_id)

        existing = self._db.get_invoice_by_remote_id(remote.invoice_id)
        if existing is not None:
            if existing.remote_direction != direction.value:
                raise DuplicateRemoteInvoiceError(
                    remote.invoice_id, f"{existing.remote_direction} invoice {existing.id}"
                )
            return self._ingest_existing(
                direction.entity_type, existing, remote, tenant_id, force_refresh, correlation_id
            )

        invoice = self._db.create_invoice(
            direction,
            contact.id,
            remote_invoice_id=remote.invoice_id,
            local_change=False,
            **values,
        )
        self._mark_synced(direction.entity_type, invoice.id, None, remote.invoice_id,
                          remote.updated_at, remote_fields(direction.entity_type, remote))
        return IngestOutcome.CREATED

    def _ingest_payment(
        self, remote: RemotePayment, tenant_id: str, force_refresh: bool, correlation_id: str | None
    ) -> IngestOutcome:
        if remote.status == "DELETED":
            return IngestOutcome.SKIPPED
        existing = self._db.get_payment_by_remote_id(remote.payment_id)
        if existing is not None:
            return self._ingest_existing(
                EntityType.PAYMENT, existing, remote, tenant_id, force_refresh, correlation_id
            )

        invoice = self._db.get_invoice_by_remote_id(remote.invoice_id)
        if invoice is None:
            logger.info(
                "Skipping payment %s: invoice %s not imported", remote.payment_id, remote.invoice_id
            )
            return IngestOutcome.SKIPPED
        payment = self._db.create_payment(
            InvoiceDirection(invoice.remote_direction),
            invoice.id,
            remote_payment_id=remote.payment_id,
            local_change=False,
            **local_values(EntityType.PAYMENT, remote),
        )
        self._mark_synced(EntityType.PAYMENT, payment.id, None, remote.payment_id,
                          remote.updated_at, remote_fields(EntityType.PAYMENT, remote))
        return IngestOutcome.CREATED

    def _ingest_existing(
        self,
        entity_type: EntityType,
        entity: Any,
        remote: Any,
        tenant_id: str,
        force_refresh: bool,
        correlation_id: str | None,
    ) -> IngestOutcome:
        state = self._db.get_sync_state(entity_type, entity.id)
        if state is not None and state.status == SyncStatus.CONFLICT.value:
            return IngestOutcome.CONFLICT

        fields = remote_fields(entity_type, remote)
        stored = Timestamps.of(state)
        action = decide(
            Timestamps(stored.last_synced_at, stored.last_local_modified_at, remote.updated_at),
            has_local=True,
            has_remote=True,
        )
        if action is SyncAction.CONFLICT:
            self._record_conflict(
                entity_type,
                entity.id,
                local_fields(entity_type, entity),
                fields,
                remote_record_id(remote),
                remote.updated_at,
                correlation_id,
                tenant_id,
            )
            return IngestOutcome.CONFLICT
        if action is SyncAction.PUSH:
            # Local edits are newer; they go out with the next push
            return IngestOutcome.SKIPPED

        unchanged = state is not None and state.content_hash == change_hash(fields)
        if unchanged and not force_refresh:
            return IngestOutcome.SKIPPED

        values = local_values(entity_type, remote)
        if isinstance(remote, RemoteInvoice):
            role = ContactRole.for_direction(InvoiceDirection(entity.remote_direction))
            contact, _ = self._contacts.resolve_remote(remote.contact, role, tenant_id)
            values["contact_id"] = contact.id
        self._db.update_entity(entity_type, entity.id, local_change=False, **values)
        self._mark_synced(entity_type, entity.id, state, remote_record_id(remote),
                          remote.updated_at, fields)
        return IngestOutcome.UPDATED
