"""Shared types for ledgersync.

This module defines the enums used by the store, the sync engine and the
HTTP layer, plus the UTC clock helpers every component uses.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum


class EntityType(str, Enum):
    """Kind of local entity tracked by a SyncState row."""

    CONTACT = "contact"
    CUSTOMER_INVOICE = "customer_invoice"
    SUPPLIER_INVOICE = "supplier_invoice"
    PAYMENT = "payment"


class SyncStatus(str, Enum):
    """Reconciliation status of one local entity."""

    PENDING = "PENDING"
    SYNCED = "SYNCED"
    CONFLICT = "CONFLICT"
    FAILED = "FAILED"


class InvoiceDirection(str, Enum):
    """Direction of an invoice as seen from the local business.

    OUTBOUND invoices are issued by us (money owed to us, remote type ACCREC).
    INBOUND invoices are bills we received (money owed by us, remote type ACCPAY).
    """

    OUTBOUND = "outbound"
    INBOUND = "inbound"

    @property
    def remote_type(self) -> str:
        return "ACCREC" if self is InvoiceDirection.OUTBOUND else "ACCPAY"

    @property
    def entity_type(self) -> EntityType:
        if self is InvoiceDirection.OUTBOUND:
            return EntityType.CUSTOMER_INVOICE
        return EntityType.SUPPLIER_INVOICE

    @classmethod
    def from_remote_type(cls, remote_type: str) -> InvoiceDirection:
        """Map a remote invoice type (ACCREC/ACCPAY) to a direction.

        Raises:
            ValueError: If the remote type is unknown.
        """
        value = (remote_type or "").upper()
        if value == "ACCREC":
            return cls.OUTBOUND
        if value == "ACCPAY":
            return cls.INBOUND
        raise ValueError(f"Unknown remote invoice type: {remote_type!r}")


class ContactRole(str, Enum):
    """Role a contact plays for one invoice direction."""

    CUSTOMER = "customer"
    SUPPLIER = "supplier"

    @classmethod
    def for_direction(cls, direction: InvoiceDirection) -> ContactRole:
        if direction is InvoiceDirection.OUTBOUND:
            return cls.CUSTOMER
        return cls.SUPPLIER


class SyncDirection(str, Enum):
    """Direction of data movement recorded in the audit log."""

    PUSH = "push"
    PULL = "pull"
    NONE = "none"


class SyncOperation(str, Enum):
    """Operation recorded in the audit log."""

    PUSH = "PUSH"
    PULL = "PULL"
    CONFLICT = "CONFLICT"
    RESOLVE = "RESOLVE"
    RETRY = "RETRY"
    LINK = "LINK"
    BACKFILL = "BACKFILL"
    TOKEN_REFRESH = "TOKEN_REFRESH"


class LogStatus(str, Enum):
    """Outcome recorded in the audit log."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CONFLICT = "CONFLICT"
    SKIPPED = "SKIPPED"


class Resolution(str, Enum):
    """Operator choice when resolving a conflict."""

    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    IGNORE = "ignore"


class JobStatus(str, Enum):
    """Lifecycle of a backfill job."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.STARTING, JobStatus.RUNNING)


# Invoice statuses a payment cannot be applied to
UNPAYABLE_INVOICE_STATUSES = frozenset({"DRAFT", "DELETED", "VOIDED"})


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from the remote API into aware UTC.

    Accepts a trailing ``Z`` and the ``/Date(1700000000000+0000)/`` form some
    accounting platforms still return.
    """
    if not value:
        return None
    if value.startswith("/Date("):
        millis = value[6:].split(")")[0].split("+")[0].split("-")[0]
        return datetime.fromtimestamp(int(millis) / 1000, tz=UTC)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))
