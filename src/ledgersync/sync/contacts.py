"""Contact reconciliation between local contacts and remote contacts.

One remote contact id maps to exactly one local Contact. When a remote
contact matches an existing local contact at exact or high confidence the
remote id is attached to that contact and the matching role flag switched on,
so a counterparty that is both customer and supplier stays one record.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from ledgersync.core.types import (
    ContactRole,
    EntityType,
    LogStatus,
    SyncOperation,
    SyncStatus,
)
from ledgersync.remote.errors import ValidationError
from ledgersync.sync.mapping import change_hash, contact_payload, remote_contact_fields
from ledgersync.sync.matcher import ContactMatcher, MatchResult
from ledgersync.sync.state import reconciled_at

if TYPE_CHECKING:
    from ledgersync.remote.api import AccountingClient, RemoteContact
    from ledgersync.server.database import Database
    from ledgersync.server.models import Contact, Credential
    from ledgersync.sync.audit import AuditLog

logger = logging.getLogger(__name__)


class LinkOutcome(str, Enum):
    """How a remote contact was resolved to a local one."""

    EXISTING = "existing"
    MATCHED = "matched"
    CREATED = "created"


def _has_role(contact: Contact, role: ContactRole | None) -> bool:
    if role is ContactRole.CUSTOMER:
        return contact.acts_as_customer
    if role is ContactRole.SUPPLIER:
        return contact.acts_as_supplier
    return True


class ContactLinker:
    """Resolves remote contacts to local ones and local contacts to remote ones."""

    def __init__(
        self,
        db: Database,
        api: AccountingClient,
        audit: AuditLog,
        matcher: ContactMatcher | None = None,
    ) -> None:
        self._db = db
        self._api = api
        self._audit = audit
        self._matcher = matcher or ContactMatcher()
        self._remote_matcher = ContactMatcher(
            is_linked=lambda c: False, identity=lambda c: c.contact_id
        )

    def match_local(self, name: str) -> MatchResult[Contact]:
        """Match a name against active local contacts."""
        return self._matcher.match(name, self._db.list_active_contacts())

    def resolve_remote(
        self,
        remote: RemoteContact,
        role: ContactRole | None = None,
        tenant_id: str | None = None,
    ) -> tuple[Contact, LinkOutcome]:
        """Find or create the local contact for a remote contact.

        Args:
            remote: Remote contact (may carry only id and name).
            role: Role implied by the record being imported, if any.
            tenant_id: Tenant recorded in the audit log.

        Returns:
            Tuple of (local contact, how it was resolved).
        """
        existing = self._db.get_contact_by_remote_id(remote.contact_id)
        if existing is not None:
            if not _has_role(existing, role):
                existing = self._db.link_contact(existing.id, remote.contact_id, role)
            return existing, LinkOutcome.EXISTING

        result = self.match_local(remote.name)
        if result.is_linkable and result.candidate is not None:
            candidate = result.candidate
            if candidate.remote_contact_id is None:
                contact = self._db.link_contact(candidate.id, remote.contact_id, role)
                self._mark_synced(contact, remote)
                self._audit.record(
                    SyncOperation.LINK,
                    LogStatus.SUCCESS,
                    entity_type=EntityType.CONTACT,
                    entity_id=contact.id,
                    remote_id=remote.contact_id,
                    tenant_id=tenant_id,
                    message=f"Linked '{remote.name}' to '{contact.name}'",
                    details={"confidence": result.confidence.value, "score": result.score},
                )
                return contact, LinkOutcome.MATCHED
            logger.info(
                "Remote contact %s matches contact %s, which is linked to %s; creating a new contact",
                remote.contact_id,
                candidate.id,
                candidate.remote_contact_id,
            )

        contact = self._db.create_contact(
            name=remote.name,
            email=remote.email,
            phone=remote.phone,
            acts_as_customer=remote.is_customer or role is ContactRole.CUSTOMER,
            acts_as_supplier=remote.is_supplier or role is ContactRole.SUPPLIER,
            remote_contact_id=remote.contact_id,
            local_change=False,
        )
        self._mark_synced(contact, remote)
        return contact, LinkOutcome.CREATED

    def _mark_synced(self, contact: Contact, remote: RemoteContact) -> None:
        state = self._db.get_sync_state(EntityType.CONTACT, contact.id)
        self._db.save_sync_state(
            EntityType.CONTACT,
            contact.id,
            remote_id=remote.contact_id,
            status=SyncStatus.SYNCED,
            last_remote_modified_at=remote.updated_at,
            last_synced_at=reconciled_at(
                remote.updated_at, state.last_local_modified_at if state else None
            ),
            content_hash=change_hash(remote_contact_fields(remote)) if remote.updated_at else None,
        )

    async def ensure_remote_link(
        self,
        contact: Contact,
        credential: Credential,
        role: ContactRole | None,
        correlation_id: str,
        dry_run: bool = False,
    ) -> str | None:
        """Make sure a local contact is linked to a remote contact before a push.

        Searches the remote by name and links an exact/high match, otherwise
        creates the remote contact. In dry run nothing is written and None is
        returned when a remote contact would have to be created.

        Returns:
            The remote contact id, or None in dry run without a match.

        Raises:
            ValidationError: If the matching remote contact is already linked
                to another local contact.
        """
        if contact.remote_contact_id:
            if not dry_run and not _has_role(contact, role):
                self._db.link_contact(contact.id, contact.remote_contact_id, role)
            return contact.remote_contact_id

        candidates = await self._api.search_contacts(credential, contact.name)
        result = self._remote_matcher.match(contact.name, candidates)
        if result.is_linkable and result.candidate is not None:
            remote = result.candidate
            owner = self._db.get_contact_by_remote_id(remote.contact_id)
            if owner is not None and owner.id != contact.id:
                raise ValidationError(
                    f"Remote contact {remote.contact_id} is already linked to contact {owner.id}",
                    status_code=None,
                )
            if dry_run:
                return remote.contact_id
            linked = self._db.link_contact(contact.id, remote.contact_id, role)
            self._mark_synced(linked, remote)
            self._audit.record(
                SyncOperation.LINK,
                LogStatus.SUCCESS,
                entity_type=EntityType.CONTACT,
                entity_id=contact.id,
                remote_id=remote.contact_id,
                tenant_id=credential.tenant_id,
                correlation_id=correlation_id,
                details={"confidence": result.confidence.value, "score": result.score},
            )
            return remote.contact_id

        if dry_run:
            return None

        created = await self._api.save_contact(
            credential, contact_payload(contact), idempotency_key=f"{correlation_id}:contact"
        )
        linked = self._db.link_contact(contact.id, created.contact_id, role)
        self._mark_synced(linked, created)
        self._audit.record(
            SyncOperation.PUSH,
            LogStatus.SUCCESS,
            entity_type=EntityType.CONTACT,
            entity_id=contact.id,
            remote_id=created.contact_id,
            tenant_id=credential.tenant_id,
            correlation_id=correlation_id,
            message="Created remote contact",
        )
        return created.contact_id
