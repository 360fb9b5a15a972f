"""Mapping between local entities and remote accounting records.

Each entity type has three views:
- comparable fields (used for conflict diffs and change hashes)
- the remote payload submitted on push
- local column values written on pull
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ledgersync.core.types import UNPAYABLE_INVOICE_STATUSES, EntityType, InvoiceDirection
from ledgersync.remote.api import RemoteContact, RemoteInvoice, RemotePayment
from ledgersync.remote.errors import NotFoundError, PreconditionError, ValidationError

if TYPE_CHECKING:
    from ledgersync.server.models import Contact, CustomerInvoice, Payment, SupplierInvoice

    Invoice = CustomerInvoice | SupplierInvoice

CENTS = Decimal("0.01")

# Remote collection used for each entity type
REMOTE_KINDS = {
    EntityType.CONTACT: "contacts",
    EntityType.CUSTOMER_INVOICE: "invoices",
    EntityType.SUPPLIER_INVOICE: "invoices",
    EntityType.PAYMENT: "payments",
}


def money(value: Any) -> str | None:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(CENTS))


def iso_date(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date {value!r}", status_code=None) from e


def change_hash(fields: dict[str, Any]) -> str:
    """md5 of the sorted JSON of the comparable fields."""
    encoded = json.dumps(fields, sort_keys=True, default=str).encode("utf-8")
    return hashlib.md5(encoded).hexdigest()


def remote_id_of(entity_type: EntityType, entity: Any) -> str | None:
    """Remote id stored on a local entity."""
    if entity_type is EntityType.CONTACT:
        return entity.remote_contact_id
    if entity_type is EntityType.PAYMENT:
        return entity.remote_payment_id
    return entity.remote_invoice_id


def remote_id_field(entity_type: EntityType) -> str:
    """Column holding the remote id of a local entity."""
    if entity_type is EntityType.CONTACT:
        return "remote_contact_id"
    if entity_type is EntityType.PAYMENT:
        return "remote_payment_id"
    return "remote_invoice_id"


# === Contacts ===


def contact_fields(contact: Contact) -> dict[str, Any]:
    return {
        "name": contact.name,
        "email": contact.email or None,
        "phone": contact.phone or None,
        "is_customer": bool(contact.acts_as_customer),
        "is_supplier": bool(contact.acts_as_supplier),
    }


def remote_contact_fields(remote: RemoteContact) -> dict[str, Any]:
    return {
        "name": remote.name,
        "email": remote.email or None,
        "phone": remote.phone or None,
        "is_customer": remote.is_customer,
        "is_supplier": remote.is_supplier,
    }


def contact_payload(contact: Contact) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": contact.name}
    if contact.email:
        payload["emailAddress"] = contact.email
    if contact.phone:
        payload["phone"] = contact.phone
    return payload


def contact_values(remote: RemoteContact) -> dict[str, Any]:
    """Local column values for a pulled contact.

    Role flags are only switched on here; a contact never loses a role because
    the remote stopped reporting it.
    """
    values: dict[str, Any] = {
        "name": remote.name,
        "email": remote.email,
        "phone": remote.phone,
    }
    if remote.is_customer:
        values["acts_as_customer"] = True
    if remote.is_supplier:
        values["acts_as_supplier"] = True
    return values


# === Invoices ===


def invoice_fields(invoice: Invoice) -> dict[str, Any]:
    return {
        "invoice_number": invoice.invoice_number,
        "currency": invoice.currency,
        "total": money(invoice.total),
        "amount_due": money(invoice.amount_due),
        "status": invoice.status,
        "issue_date": iso_date(invoice.issue_date),
        "due_date": iso_date(invoice.due_date),
        "reference": invoice.reference or None,
    }


def remote_invoice_fields(remote: RemoteInvoice) -> dict[str, Any]:
    return {
        "invoice_number": remote.invoice_number,
        "currency": remote.currency,
        "total": money(remote.total),
        "amount_due": money(remote.amount_due),
        "status": remote.status,
        "issue_date": iso_date(remote.issue_date),
        "due_date": iso_date(remote.due_date),
        "reference": remote.reference or None,
    }


def invoice_payload(invoice: Invoice, remote_contact_id: str) -> dict[str, Any]:
    direction = InvoiceDirection(invoice.remote_direction)
    payload: dict[str, Any] = {
        "type": direction.remote_type,
        "invoiceNumber": invoice.invoice_number,
        "contact": {"contactId": remote_contact_id},
        "currencyCode": invoice.currency,
        "total": float(invoice.total),
        "status": invoice.status,
    }
    if invoice.issue_date:
        payload["date"] = iso_date(invoice.issue_date)
    if invoice.due_date:
        payload["dueDate"] = iso_date(invoice.due_date)
    if invoice.reference:
        payload["reference"] = invoice.reference
    return payload


def invoice_values(remote: RemoteInvoice) -> dict[str, Any]:
    """Local column values for a pulled invoice."""
    return {
        "invoice_number": remote.invoice_number,
        "currency": remote.currency,
        "total": remote.total,
        "amount_due": remote.amount_due,
        "status": remote.status,
        "issue_date": parse_date(remote.issue_date),
        "due_date": parse_date(remote.due_date),
        "reference": remote.reference,
    }


# === Payments ===


def payment_fields(payment: Payment) -> dict[str, Any]:
    return {
        "amount": money(payment.amount),
        "currency": payment.currency,
        "payment_date": iso_date(payment.payment_date),
        "reference": payment.reference or None,
        "account_code": payment.account_code or None,
    }


def remote_payment_fields(remote: RemotePayment) -> dict[str, Any]:
    return {
        "amount": money(remote.amount),
        "currency": remote.currency,
        "payment_date": iso_date(remote.payment_date),
        "reference": remote.reference or None,
        "account_code": remote.account_code or None,
    }


def payment_payload(payment: Payment, remote_invoice_id: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "invoice": {"invoiceId": remote_invoice_id},
        "amount": float(payment.amount),
        "currencyCode": payment.currency,
        "date": iso_date(payment.payment_date),
    }
    if payment.reference:
        payload["reference"] = payment.reference
    if payment.account_code:
        payload["account"] = {"code": payment.account_code}
    return payload


def payment_values(remote: RemotePayment) -> dict[str, Any]:
    """Local column values for a pulled payment."""
    return {
        "amount": remote.amount,
        "currency": remote.currency,
        "payment_date": parse_date(remote.payment_date),
        "reference": remote.reference,
        "account_code": remote.account_code,
    }


def validate_payment(payment: Payment, invoice: Invoice | None) -> None:
    """Check a payment can be pushed before calling the remote.

    Raises:
        NotFoundError: If the linked invoice does not exist locally.
        PreconditionError: With every problem found, joined in the message.
    """
    if invoice is None:
        raise NotFoundError(
            f"Invoice {payment.invoice_id} for payment {payment.id} not found"
        )

    errors = []
    if not invoice.remote_invoice_id:
        errors.append(f"Invoice {invoice.invoice_number} is not synced to the remote yet")
    if payment.amount is None or Decimal(payment.amount) <= 0:
        errors.append("Payment amount must be greater than 0")
    if payment.currency != invoice.currency:
        errors.append(
            f"Payment currency {payment.currency} does not match invoice currency {invoice.currency}"
        )
    if payment.amount is not None and Decimal(payment.amount) > Decimal(invoice.amount_due):
        errors.append(
            f"Payment amount {money(payment.amount)} exceeds amount due {money(invoice.amount_due)}"
        )
    if invoice.status in UNPAYABLE_INVOICE_STATUSES:
        errors.append(f"Cannot apply payment to {invoice.status} invoice")

    if errors:
        raise PreconditionError("; ".join(errors), errors=errors)


# === Dispatch by entity type ===

_LOCAL_FIELDS = {
    EntityType.CONTACT: contact_fields,
    EntityType.CUSTOMER_INVOICE: invoice_fields,
    EntityType.SUPPLIER_INVOICE: invoice_fields,
    EntityType.PAYMENT: payment_fields,
}

_REMOTE_FIELDS = {
    EntityType.CONTACT: remote_contact_fields,
    EntityType.CUSTOMER_INVOICE: remote_invoice_fields,
    EntityType.SUPPLIER_INVOICE: remote_invoice_fields,
    EntityType.PAYMENT: remote_payment_fields,
}

_LOCAL_VALUES = {
    EntityType.CONTACT: contact_values,
    EntityType.CUSTOMER_INVOICE: invoice_values,
    EntityType.SUPPLIER_INVOICE: invoice_values,
    EntityType.PAYMENT: payment_values,
}


def local_fields(entity_type: EntityType, entity: Any) -> dict[str, Any]:
    """Comparable fields of a local entity."""
    return _LOCAL_FIELDS[entity_type](entity)


def remote_fields(entity_type: EntityType, remote: Any) -> dict[str, Any]:
    """Comparable fields of a remote record."""
    return _REMOTE_FIELDS[entity_type](remote)


def local_values(entity_type: EntityType, remote: Any) -> dict[str, Any]:
    """Local column values to write when pulling a remote record."""
    return _LOCAL_VALUES[entity_type](remote)


def remote_record_id(remote: RemoteContact | RemoteInvoice | RemotePayment) -> str:
    if isinstance(remote, RemoteContact):
        return remote.contact_id
    if isinstance(remote, RemoteInvoice):
        return remote.invoice_id
    return remote.payment_id
