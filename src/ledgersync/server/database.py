"""Store for local accounting entities and sync state, using SQLAlchemy with SQLite.

This module provides:
- Caller API tokens with roles
- Tenant OAuth credentials (encrypted at rest when a key is configured)
- Contacts, customer/supplier invoices and payments
- Per-entity SyncState rows and local-modification tracking
- Remote invoice id claims across both invoice representations
- Sync log (audit) storage, pagination and cleanup
- Durable backfill job records
"""

from __future__ import annotations

import hashlib
import secrets
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, delete, event, func, select, update
from sqlalchemy.orm import Session

from ledgersync.core.crypto import TokenCipher
from ledgersync.core.types import (
    ContactRole,
    EntityType,
    InvoiceDirection,
    SyncStatus,
    ensure_utc,
    utcnow,
)
from ledgersync.remote.errors import DuplicateRemoteInvoiceError
from ledgersync.server.models import (
    ApiToken,
    BackfillJobRecord,
    Base,
    Contact,
    Credential,
    CustomerInvoice,
    Payment,
    RemoteInvoiceLink,
    SupplierInvoice,
    SyncLog,
    SyncState,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    Invoice = CustomerInvoice | SupplierInvoice

# Prefix of raw caller tokens
API_TOKEN_PREFIX = "ls_"


def hash_token(token: str) -> str:
    """Hash a token using SHA-256.

    Args:
        token: Raw token string.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def invoice_model(direction: InvoiceDirection) -> type[CustomerInvoice] | type[SupplierInvoice]:
    """ORM class holding invoices of one direction."""
    if direction is InvoiceDirection.OUTBOUND:
        return CustomerInvoice
    return SupplierInvoice


_ENTITY_MODELS: dict[EntityType, type[Base]] = {
    EntityType.CONTACT: Contact,
    EntityType.CUSTOMER_INVOICE: CustomerInvoice,
    EntityType.SUPPLIER_INVOICE: SupplierInvoice,
    EntityType.PAYMENT: Payment,
}


class Database:
    """SQLAlchemy database for local entities and sync bookkeeping.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    Every method opens its own session and returns detached objects.
    """

    def __init__(self, db_path: Path, token_key: bytes | None = None) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
            token_key: Optional 32-byte key used to encrypt stored OAuth tokens.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._cipher = TokenCipher(token_key)

        # Create engine with check_same_thread=False for multi-threaded access
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        # SQLite enforces foreign keys per connection
        @event.listens_for(self._engine, "connect")
        def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        # Enable WAL mode
        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def encrypts_tokens(self) -> bool:
        return self._cipher.enabled

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Caller token operations ===

    def create_api_token(
        self,
        subject: str,
        role: str,
        tenant_id: str,
        expires_in_days: int | None = None,
    ) -> tuple[str, ApiToken]:
        """Create a bearer token for an inbound caller.

        Args:
            subject: Who the token belongs to (user name or service).
            role: Caller role checked by the authorization gate.
            tenant_id: Remote tenant the caller operates on.
            expires_in_days: Optional lifetime.

        Returns:
            Tuple of (raw_token, ApiToken). The raw token is not stored.
        """
        raw_token = API_TOKEN_PREFIX + secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
        with self._session() as session:
            token = ApiToken(
                token_hash=hash_token(raw_token),
                subject=subject,
                role=role.upper(),
                tenant_id=tenant_id,
                expires_at=expires_at,
            )
            session.add(token)
            session.commit()
            session.refresh(token)
            session.expunge(token)
            return raw_token, token

    def validate_api_token(self, raw_token: str) -> ApiToken | None:
        """Validate a raw caller token.

        Returns:
            ApiToken if valid, unexpired and not revoked, None otherwise.
        """
        with self._session() as session:
            token = session.scalar(
                select(ApiToken).where(ApiToken.token_hash == hash_token(raw_token))
            )
            if token is None or token.revoked:
                return None
            expires_at = ensure_utc(token.expires_at)
            if expires_at is not None and expires_at < utcnow():
                return None
            session.expunge(token)
            return token

    def revoke_api_token(self, token_id: int) -> bool:
        """Revoke a caller token.

        Returns:
            True if a token was revoked.
        """
        with self._session() as session:
            token = session.get(ApiToken, token_id)
            if token is None:
                return False
            token.revoked = True
            session.commit()
            return True

    # === Credential operations ===

    def _reveal(self, credential: Credential) -> Credential:
        credential.access_token = self._cipher.decrypt(credential.access_token)
        credential.refresh_token = self._cipher.decrypt(credential.refresh_token)
        return credential

    def save_credential(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        tenant_name: str | None = None,
    ) -> Credential:
        """Store a new active credential, deactivating any previous one.

        Args:
            tenant_id: Remote tenant identifier.
            access_token: OAuth access token.
            refresh_token: OAuth refresh token.
            expires_at: Access token expiry.
            tenant_name: Optional display name of the tenant.

        Returns:
            The new active Credential (tokens in clear text).
        """
        with self._session() as session:
            session.execute(
                update(Credential)
                .where(Credential.tenant_id == tenant_id, Credential.is_active.is_(True))
                .values(is_active=False)
            )
            credential = Credential(
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                access_token=self._cipher.encrypt(access_token),
                refresh_token=self._cipher.encrypt(refresh_token),
                expires_at=expires_at,
                is_active=True,
            )
            session.add(credential)
            session.commit()
            session.refresh(credential)
            session.expunge(credential)
            return self._reveal(credential)

    def update_credential_tokens(
        self,
        credential_id: int,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Credential | None:
        """Persist the result of a refresh exchange.

        Returns:
            Updated Credential, or None if it no longer exists.
        """
        with self._session() as session:
            credential = session.get(Credential, credential_id)
            if credential is None:
                return None
            credential.access_token = self._cipher.encrypt(access_token)
            credential.refresh_token = self._cipher.encrypt(refresh_token)
            credential.expires_at = expires_at
            credential.last_refresh_error = None
            session.commit()
            session.refresh(credential)
            session.expunge(credential)
            return self._reveal(credential)

    def get_active_credential(self, tenant_id: str) -> Credential | None:
        """Get the active credential of a tenant, tokens decrypted."""
        with self._session() as session:
            credential = session.scalar(
                select(Credential).where(
                    Credential.tenant_id == tenant_id, Credential.is_active.is_(True)
                )
            )
            if credential is None:
                return None
            session.expunge(credential)
            return self._reveal(credential)

    def list_active_credentials(self) -> list[Credential]:
        """List active credentials of every tenant."""
        with self._session() as session:
            credentials = list(
                session.scalars(select(Credential).where(Credential.is_active.is_(True)))
            )
            for credential in credentials:
                session.expunge(credential)
            return [self._reveal(c) for c in credentials]

    def deactivate_credential(self, credential_id: int, error: str | None = None) -> bool:
        """Mark a credential inactive (manual reconnect required).

        Returns:
            True if the credential existed.
        """
        with self._session() as session:
            credential = session.get(Credential, credential_id)
            if credential is None:
                return False
            credential.is_active = False
            credential.last_refresh_error = error
            session.commit()
            return True

    def record_credential_error(self, credential_id: int, error: str) -> None:
        """Store a transient refresh error without deactivating."""
        with self._session() as session:
            credential = session.get(Credential, credential_id)
            if credential is not None:
                credential.last_refresh_error = error
                session.commit()

    # === Sync state tracking ===

    def _touch_local(
        self, session: Session, entity_type: EntityType, entity_id: int
    ) -> None:
        """Record a local modification on the entity's SyncState."""
        state = session.scalar(
            select(SyncState).where(
                SyncState.entity_type == entity_type.value,
                SyncState.entity_id == entity_id,
            )
        )
        if state is None:
            state = SyncState(
                entity_type=entity_type.value,
                entity_id=entity_id,
                status=SyncStatus.PENDING.value,
            )
            session.add(state)
        state.last_local_modified_at = utcnow()
        # A local edit re-arms synced and failed entities; conflicts wait for an operator
        if state.status in (SyncStatus.SYNCED.value, SyncStatus.FAILED.value):
            state.status = SyncStatus.PENDING.value

    def get_sync_state(self, entity_type: EntityType, entity_id: int) -> SyncState | None:
        """Get the SyncState of one entity."""
        with self._session() as session:
            state = session.scalar(
                select(SyncState).where(
                    SyncState.entity_type == entity_type.value,
                    SyncState.entity_id == entity_id,
                )
            )
            if state:
                session.expunge(state)
            return state

    def get_sync_state_by_id(self, state_id: int) -> SyncState | None:
        """Get a SyncState by primary key."""
        with self._session() as session:
            state = session.get(SyncState, state_id)
            if state:
                session.expunge(state)
            return state

    def get_sync_state_by_remote_id(
        self, entity_type: EntityType, remote_id: str
    ) -> SyncState | None:
        """Get the SyncState linked to a remote id."""
        with self._session() as session:
            state = session.scalar(
                select(SyncState).where(
                    SyncState.entity_type == entity_type.value,
                    SyncState.remote_id == remote_id,
                )
            )
            if state:
                session.expunge(state)
            return state

    def save_sync_state(
        self, entity_type: EntityType, entity_id: int, **fields: Any
    ) -> SyncState:
        """Create or update the SyncState of one entity.

        Args:
            entity_type: Kind of entity.
            entity_id: Local entity id.
            **fields: SyncState columns to set (enum values are stored by value).

        Returns:
            The updated SyncState.
        """
        with self._session() as session:
            state = session.scalar(
                select(SyncState).where(
                    SyncState.entity_type == entity_type.value,
                    SyncState.entity_id == entity_id,
                )
            )
            if state is None:
                state = SyncState(
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    status=SyncStatus.PENDING.value,
                )
                session.add(state)
            for name, value in fields.items():
                if isinstance(value, SyncStatus):
                    value = value.value
                setattr(state, name, value)
            session.commit()
            session.refresh(state)
            session.expunge(state)
            return state

    def list_sync_states(
        self,
        status: SyncStatus | None = None,
        entity_type: EntityType | None = None,
        limit: int | None = None,
    ) -> list[SyncState]:
        """List SyncState rows, most recently updated first."""
        with self._session() as session:
            query = select(SyncState)
            if status is not None:
                query = query.where(SyncState.status == status.value)
            if entity_type is not None:
                query = query.where(SyncState.entity_type == entity_type.value)
            query = query.order_by(SyncState.updated_at.desc(), SyncState.id.desc())
            if limit is not None:
                query = query.limit(limit)
            states = list(session.scalars(query))
            for state in states:
                session.expunge(state)
            return states

    def sync_summary(self) -> dict[str, dict[str, int]]:
        """Count SyncState rows per entity type and status."""
        summary: dict[str, dict[str, int]] = defaultdict(dict)
        with self._session() as session:
            rows = session.execute(
                select(SyncState.entity_type, SyncState.status, func.count()).group_by(
                    SyncState.entity_type, SyncState.status
                )
            )
            for entity_type, status, count in rows:
                summary[entity_type][status] = count
        return dict(summary)

    # === Contact operations ===

    def create_contact(
        self,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        acts_as_customer: bool = False,
        acts_as_supplier: bool = False,
        remote_contact_id: str | None = None,
        local_change: bool = True,
    ) -> Contact:
        """Create a contact.

        Args:
            name: Display name.
            email: Optional email address.
            phone: Optional phone number.
            acts_as_customer: Customer role flag.
            acts_as_supplier: Supplier role flag.
            remote_contact_id: Remote id when the contact came from the remote.
            local_change: Track the creation as a local modification.

        Returns:
            Created Contact.

        Raises:
            IntegrityError: If remote_contact_id is already linked.
        """
        with self._session() as session:
            contact = Contact(
                name=name,
                email=email,
                phone=phone,
                acts_as_customer=acts_as_customer,
                acts_as_supplier=acts_as_supplier,
                remote_contact_id=remote_contact_id,
            )
            session.add(contact)
            session.flush()
            if local_change:
                self._touch_local(session, EntityType.CONTACT, contact.id)
            session.commit()
            session.refresh(contact)
            session.expunge(contact)
            return contact

    def get_contact(self, contact_id: int) -> Contact | None:
        """Get a contact by ID."""
        with self._session() as session:
            contact = session.get(Contact, contact_id)
            if contact:
                session.expunge(contact)
            return contact

    def get_contact_by_remote_id(self, remote_contact_id: str) -> Contact | None:
        """Get the contact linked to a remote contact id."""
        with self._session() as session:
            contact = session.scalar(
                select(Contact).where(Contact.remote_contact_id == remote_contact_id)
            )
            if contact:
                session.expunge(contact)
            return contact

    def list_active_contacts(self) -> list[Contact]:
        """List active contacts ordered by id."""
        with self._session() as session:
            contacts = list(
                session.scalars(
                    select(Contact).where(Contact.is_active.is_(True)).order_by(Contact.id)
                )
            )
            for contact in contacts:
                session.expunge(contact)
            return contacts

    def link_contact(
        self,
        contact_id: int,
        remote_contact_id: str,
        role: ContactRole | None = None,
    ) -> Contact:
        """Attach a remote contact id and switch on a role flag.

        Raises:
            LookupError: If the contact does not exist.
            IntegrityError: If the remote id is linked to another contact.
        """
        with self._session() as session:
            contact = session.get(Contact, contact_id)
            if contact is None:
                raise LookupError(f"Contact {contact_id} not found")
            contact.remote_contact_id = remote_contact_id
            if role is ContactRole.CUSTOMER:
                contact.acts_as_customer = True
            elif role is ContactRole.SUPPLIER:
                contact.acts_as_supplier = True
            session.commit()
            session.refresh(contact)
            session.expunge(contact)
            return contact

    def find_split_dual_role_contacts(self) -> list[list[Contact]]:
        """Find groups of active contacts sharing a name with split roles.

        A group is reported when one record only acts as customer and another
        only as supplier: these should be a single dual-role contact.
        """
        groups: dict[str, list[Contact]] = defaultdict(list)
        for contact in self.list_active_contacts():
            groups[" ".join(contact.name.lower().split())].append(contact)

        findings = []
        for contacts in groups.values():
            if len(contacts) < 2:
                continue
            customers = [c for c in contacts if c.acts_as_customer and not c.acts_as_supplier]
            suppliers = [c for c in contacts if c.acts_as_supplier and not c.acts_as_customer]
            if customers and suppliers:
                findings.append(contacts)
        return findings

    # === Invoice operations ===

    def _claim_remote_invoice(
        self,
        session: Session,
        remote_invoice_id: str,
        direction: InvoiceDirection,
        invoice_id: int,
    ) -> None:
        """Claim a remote invoice id for one local invoice.

        Raises:
            DuplicateRemoteInvoiceError: If another invoice owns the id.
        """
        link = session.get(RemoteInvoiceLink, remote_invoice_id)
        if link is not None:
            if link.direction != direction.value or link.invoice_id != invoice_id:
                raise DuplicateRemoteInvoiceError(
                    remote_invoice_id, f"{link.direction} invoice {link.invoice_id}"
                )
            return

        # Historical rows written before links existed
        for other in InvoiceDirection:
            model = invoice_model(other)
            owners = session.scalars(
                select(model.id).where(model.remote_invoice_id == remote_invoice_id)
            ).all()
            for owner in owners:
                if other is not direction or owner != invoice_id:
                    raise DuplicateRemoteInvoiceError(
                        remote_invoice_id, f"{other.value} invoice {owner}"
                    )

        session.add(
            RemoteInvoiceLink(
                remote_invoice_id=remote_invoice_id,
                direction=direction.value,
                invoice_id=invoice_id,
            )
        )

    def create_invoice(
        self,
        direction: InvoiceDirection,
        contact_id: int,
        invoice_number: str,
        total: Decimal,
        amount_due: Decimal | None = None,
        currency: str = "USD",
        status: str = "DRAFT",
        issue_date: Any = None,
        due_date: Any = None,
        reference: str | None = None,
        remote_invoice_id: str | None = None,
        local_change: bool = True,
    ) -> Invoice:
        """Create an invoice in the representation matching its direction.

        Args:
            direction: OUTBOUND (customer invoice) or INBOUND (supplier invoice).
            contact_id: Counterparty contact id.
            invoice_number: Invoice number.
            total: Invoice total.
            amount_due: Outstanding amount (defaults to total).
            currency: ISO currency code.
            status: Invoice status.
            issue_date: Issue date.
            due_date: Due date.
            reference: Free-text reference.
            remote_invoice_id: Remote id when the invoice came from the remote.
            local_change: Track the creation as a local modification.

        Returns:
            Created invoice.

        Raises:
            DuplicateRemoteInvoiceError: If remote_invoice_id is already claimed.
        """
        model = invoice_model(direction)
        with self._session() as session:
            invoice = model(
                contact_id=contact_id,
                invoice_number=invoice_number,
                total=total,
                amount_due=total if amount_due is None else amount_due,
                currency=currency,
                status=status,
                issue_date=issue_date,
                due_date=due_date,
                reference=reference,
                remote_invoice_id=remote_invoice_id,
                remote_direction=direction.value,
            )
            session.add(invoice)
            session.flush()
            if remote_invoice_id:
                self._claim_remote_invoice(session, remote_invoice_id, direction, invoice.id)
            if local_change:
                self._touch_local(session, direction.entity_type, invoice.id)
            session.commit()
            session.refresh(invoice)
            session.expunge(invoice)
            return invoice

    def get_invoice(self, direction: InvoiceDirection, invoice_id: int) -> Invoice | None:
        """Get an invoice by direction and ID."""
        with self._session() as session:
            invoice = session.get(invoice_model(direction), invoice_id)
            if invoice:
                session.expunge(invoice)
            return invoice

    def get_invoice_by_remote_id(self, remote_invoice_id: str) -> Invoice | None:
        """Get the invoice (of either direction) owning a remote id."""
        with self._session() as session:
            link = session.get(RemoteInvoiceLink, remote_invoice_id)
            if link is None:
                return None
            invoice = session.get(
                invoice_model(InvoiceDirection(link.direction)), link.invoice_id
            )
            if invoice:
                session.expunge(invoice)
            return invoice

    def find_duplicate_remote_invoices(self) -> list[dict[str, Any]]:
        """Report remote invoice ids stored more than once across both representations.

        Returns:
            One entry per duplicated remote id with the local ids per direction.
        """
        owners: dict[str, dict[str, list[int]]] = defaultdict(
            lambda: {"outbound": [], "inbound": []}
        )
        with self._session() as session:
            for direction in InvoiceDirection:
                model = invoice_model(direction)
                rows = session.execute(
                    select(model.remote_invoice_id, model.id).where(
                        model.remote_invoice_id.is_not(None)
                    )
                )
                for remote_id, local_id in rows:
                    owners[remote_id][direction.value].append(local_id)

        findings = []
        for remote_id, by_direction in sorted(owners.items()):
            count = len(by_direction["outbound"]) + len(by_direction["inbound"])
            if count > 1:
                findings.append(
                    {
                        "remote_invoice_id": remote_id,
                        "customer_invoice_ids": by_direction["outbound"],
                        "supplier_invoice_ids": by_direction["inbound"],
                    }
                )
        return findings

    # === Payment operations ===

    def create_payment(
        self,
        invoice_direction: InvoiceDirection,
        invoice_id: int,
        amount: Decimal,
        payment_date: Any,
        currency: str = "USD",
        reference: str | None = None,
        account_code: str | None = None,
        payment_number: str | None = None,
        remote_payment_id: str | None = None,
        local_change: bool = True,
    ) -> Payment:
        """Create a payment against an invoice.

        Returns:
            Created Payment.
        """
        with self._session() as session:
            payment = Payment(
                invoice_direction=invoice_direction.value,
                invoice_id=invoice_id,
                amount=amount,
                payment_date=payment_date,
                currency=currency,
                reference=reference,
                account_code=account_code,
                payment_number=payment_number,
                remote_payment_id=remote_payment_id,
            )
            session.add(payment)
            session.flush()
            if local_change:
                self._touch_local(session, EntityType.PAYMENT, payment.id)
            session.commit()
            session.refresh(payment)
            session.expunge(payment)
            return payment

    def get_payment(self, payment_id: int) -> Payment | None:
        """Get a payment by ID."""
        with self._session() as session:
            payment = session.get(Payment, payment_id)
            if payment:
                session.expunge(payment)
            return payment

    def get_payment_by_remote_id(self, remote_payment_id: str) -> Payment | None:
        """Get the payment linked to a remote payment id."""
        with self._session() as session:
            payment = session.scalar(
                select(Payment).where(Payment.remote_payment_id == remote_payment_id)
            )
            if payment:
                session.expunge(payment)
            return payment

    # === Generic entity operations ===

    def get_entity(self, entity_type: EntityType, entity_id: int) -> Any | None:
        """Get any tracked entity by type and id."""
        with self._session() as session:
            entity = session.get(_ENTITY_MODELS[entity_type], entity_id)
            if entity:
                session.expunge(entity)
            return entity

    def update_entity(
        self,
        entity_type: EntityType,
        entity_id: int,
        local_change: bool = True,
        **fields: Any,
    ) -> Any:
        """Update columns of a tracked entity.

        Args:
            entity_type: Kind of entity.
            entity_id: Local id.
            local_change: Track the update as a local modification.
            **fields: Columns to set.

        Returns:
            Updated entity.

        Raises:
            LookupError: If the entity does not exist.
            DuplicateRemoteInvoiceError: If an invoice's remote id is already claimed.
        """
        with self._session() as session:
            entity = session.get(_ENTITY_MODELS[entity_type], entity_id)
            if entity is None:
                raise LookupError(f"{entity_type.value} {entity_id} not found")
            for name, value in fields.items():
                setattr(entity, name, value)
            remote_invoice_id = fields.get("remote_invoice_id")
            if remote_invoice_id and entity_type in (
                EntityType.CUSTOMER_INVOICE,
                EntityType.SUPPLIER_INVOICE,
            ):
                self._claim_remote_invoice(
                    session,
                    remote_invoice_id,
                    InvoiceDirection(entity.remote_direction),
                    entity.id,
                )
            if local_change:
                self._touch_local(session, entity_type, entity_id)
            session.commit()
            session.refresh(entity)
            session.expunge(entity)
            return entity

    # === Sync log operations ===

    def add_sync_log(self, **fields: Any) -> SyncLog:
        """Insert an audit record."""
        with self._session() as session:
            entry = SyncLog(**fields)
            session.add(entry)
            session.commit()
            session.refresh(entry)
            session.expunge(entry)
            return entry

    def get_sync_log(self, log_id: int) -> SyncLog | None:
        """Get an audit record by ID."""
        with self._session() as session:
            entry = session.get(SyncLog, log_id)
            if entry:
                session.expunge(entry)
            return entry

    def list_sync_logs(
        self,
        offset: int = 0,
        limit: int = 50,
        entity_type: str | None = None,
        entity_id: int | None = None,
        status: str | None = None,
        direction: str | None = None,
        operation: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> tuple[list[SyncLog], int]:
        """List audit records newest first with filters.

        Returns:
            Tuple of (page of entries, total matching count).
        """
        conditions = []
        if entity_type is not None:
            conditions.append(SyncLog.entity_type == entity_type)
        if entity_id is not None:
            conditions.append(SyncLog.entity_id == entity_id)
        if status is not None:
            conditions.append(SyncLog.status == status)
        if direction is not None:
            conditions.append(SyncLog.direction == direction)
        if operation is not None:
            conditions.append(SyncLog.operation == operation)
        if date_from is not None:
            conditions.append(SyncLog.created_at >= date_from)
        if date_to is not None:
            conditions.append(SyncLog.created_at <= date_to)

        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(SyncLog).where(*conditions))
            entries = list(
                session.scalars(
                    select(SyncLog)
                    .where(*conditions)
                    .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            )
            for entry in entries:
                session.expunge(entry)
            return entries, total or 0

    def count_sync_logs_by(self, column: str, since: datetime) -> dict[str, int]:
        """Count audit records since a date grouped by one column."""
        attribute = getattr(SyncLog, column)
        with self._session() as session:
            rows = session.execute(
                select(attribute, func.count())
                .where(SyncLog.created_at >= since)
                .group_by(attribute)
            )
            return {key: count for key, count in rows if key is not None}

    def cleanup_old_logs(self, older_than_days: int = 90) -> int:
        """Delete audit records older than the retention window.

        Args:
            older_than_days: Delete entries older than this many days.

        Returns:
            Number of entries deleted.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._session() as session:
            result = session.execute(delete(SyncLog).where(SyncLog.created_at < cutoff))
            session.commit()
            return result.rowcount or 0

    # === Backfill job operations ===

    def save_backfill_job(
        self, job_id: str, tenant_id: str, status: str, payload: dict[str, Any]
    ) -> None:
        """Insert or replace a durable backfill job record."""
        with self._session() as session:
            record = session.get(BackfillJobRecord, job_id)
            if record is None:
                record = BackfillJobRecord(job_id=job_id, tenant_id=tenant_id)
                session.add(record)
            record.status = status
            record.payload = payload
            session.commit()

    def get_backfill_job(self, job_id: str) -> BackfillJobRecord | None:
        """Get a durable backfill job record."""
        with self._session() as session:
            record = session.get(BackfillJobRecord, job_id)
            if record:
                session.expunge(record)
            return record

    def list_backfill_jobs(self) -> list[BackfillJobRecord]:
        """List durable backfill job records, newest first."""
        with self._session() as session:
            records = list(
                session.scalars(
                    select(BackfillJobRecord).order_by(BackfillJobRecord.updated_at.desc())
                )
            )
            for record in records:
                session.expunge(record)
            return records
