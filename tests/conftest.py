"""Shared fixtures: isolated database, settings and an in-memory remote platform."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Generator
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from ledgersync.core.config import SyncSettings
from ledgersync.core.types import InvoiceDirection, utcnow
from ledgersync.remote.api import RemoteContact, RemoteInvoice, RemotePayment, TokenSet
from ledgersync.remote.errors import NotFoundError, SyncError, TransientNetworkError
from ledgersync.server.database import Database
from ledgersync.server.models import Contact, Credential
from ledgersync.sync.engine import SyncEngine, build_engine

TENANT = "tenant-1"

_PARSERS = {
    "contacts": ("contactId", RemoteContact.from_dict),
    "invoices": ("invoiceId", RemoteInvoice.from_dict),
    "payments": ("paymentId", RemotePayment.from_dict),
}


def remote_timestamp(minutes_ago: float = 0) -> str:
    return (utcnow() - timedelta(minutes=minutes_ago)).isoformat()


class FakeRemote:
    """In-memory accounting platform with the AccountingClient interface.

    Mutations are de-duplicated by idempotency key like the real platform.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = {kind: {} for kind in _PARSERS}
        self.keys: dict[str, tuple[str, str]] = {}
        self.mutations: list[tuple[str, str, dict[str, Any]]] = []
        self.list_calls: list[tuple[str, int]] = []
        self.page_errors: dict[tuple[str, int], SyncError] = {}
        self.save_errors: list[SyncError] = []
        self.fail_after_commit = False
        self.closed = False
        self._ids = itertools.count(1)

    # === Test helpers ===

    def add(self, kind: str, data: dict[str, Any], minutes_ago: float = 0) -> dict[str, Any]:
        id_field, _ = _PARSERS[kind]
        record = {"updatedDateUTC": remote_timestamp(minutes_ago), **data}
        self.records[kind][record[id_field]] = record
        return record

    def touch(self, kind: str, remote_id: str, **changes: Any) -> None:
        """Simulate an edit made on the remote platform."""
        self.records[kind][remote_id].update(changes, updatedDateUTC=remote_timestamp())

    def add_pages(self, kind: str, make: Any, count: int) -> None:
        for n in range(count):
            self.add(kind, make(n))

    # === Client interface ===

    async def _list(self, kind: str, page: int, page_size: int) -> list[Any]:
        self.list_calls.append((kind, page))
        error = self.page_errors.get((kind, page))
        if error is not None:
            raise error
        _, parse = _PARSERS[kind]
        items = list(self.records[kind].values())
        start = (page - 1) * page_size
        return [parse(item) for item in items[start : start + page_size]]

    async def list_contacts(self, credential: Any, page: int = 1, page_size: int = 100,
                            modified_since: Any = None, include_archived: bool = True) -> list[Any]:
        return await self._list("contacts", page, page_size)

    async def list_invoices(self, credential: Any, page: int = 1, page_size: int = 100,
                            modified_since: Any = None, include_archived: bool = True) -> list[Any]:
        return await self._list("invoices", page, page_size)

    async def list_payments(self, credential: Any, page: int = 1, page_size: int = 100,
                            modified_since: Any = None, include_archived: bool = True) -> list[Any]:
        return await self._list("payments", page, page_size)

    async def search_contacts(self, credential: Any, name: str) -> list[RemoteContact]:
        return [RemoteContact.from_dict(c) for c in self.records["contacts"].values()]

    async def _get(self, kind: str, remote_id: str) -> Any:
        record = self.records[kind].get(remote_id)
        if record is None:
            raise NotFoundError(f"Remote {kind} {remote_id} not found", 404)
        return _PARSERS[kind][1](record)

    async def get_contact(self, credential: Any, contact_id: str) -> Any:
        return await self._get("contacts", contact_id)

    async def get_invoice(self, credential: Any, invoice_id: str) -> Any:
        return await self._get("invoices", invoice_id)

    async def get_payment(self, credential: Any, payment_id: str) -> Any:
        return await self._get("payments", payment_id)

    async def _save(self, kind: str, payload: dict[str, Any], key: str, remote_id: str | None) -> Any:
        id_field, parse = _PARSERS[kind]
        if key in self.keys:
            stored_kind, stored_id = self.keys[key]
            return parse(self.records[stored_kind][stored_id])
        if self.save_errors:
            raise self.save_errors.pop(0)

        remote_id = remote_id or f"{kind[0].upper()}-{next(self._ids)}"
        record = {**self.records[kind].get(remote_id, {}), **payload}
        record[id_field] = remote_id
        record["updatedDateUTC"] = remote_timestamp()
        if kind == "invoices":
            record.setdefault("amountDue", record.get("total"))
        self.records[kind][remote_id] = record
        self.keys[key] = (kind, remote_id)
        self.mutations.append((kind, key, payload))

        if self.fail_after_commit:
            # The platform stored the record but the response never arrived
            self.fail_after_commit = False
            raise TransientNetworkError("Read timed out")
        return parse(record)

    async def save_contact(self, credential: Any, payload: dict[str, Any], idempotency_key: str,
                           contact_id: str | None = None) -> Any:
        return await self._save("contacts", payload, idempotency_key, contact_id)

    async def save_invoice(self, credential: Any, payload: dict[str, Any], idempotency_key: str,
                           invoice_id: str | None = None) -> Any:
        return await self._save("invoices", payload, idempotency_key, invoice_id)

    async def save_payment(self, credential: Any, payload: dict[str, Any], idempotency_key: str,
                           payment_id: str | None = None) -> Any:
        return await self._save("payments", payload, idempotency_key, payment_id)

    async def aclose(self) -> None:
        self.closed = True


class FakeOAuth:
    """Token endpoint double counting refresh exchanges."""

    def __init__(self, expires_in_minutes: int = 30) -> None:
        self.calls: list[str] = []
        self.error: SyncError | None = None
        self._expires_in = expires_in_minutes

    async def refresh(self, refresh_token: str) -> TokenSet:
        self.calls.append(refresh_token)
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return TokenSet(
            access_token=f"access-{n}",
            refresh_token=f"refresh-{n}",
            expires_at=utcnow() + timedelta(minutes=self._expires_in),
        )

    async def aclose(self) -> None:
        pass


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    """Settings pointing at the test database."""
    return SyncSettings(db_path=tmp_path / "test.db", log_path=tmp_path / "test.log")


@pytest.fixture
def remote() -> FakeRemote:
    """In-memory remote platform."""
    return FakeRemote()


@pytest.fixture
def oauth() -> FakeOAuth:
    """Token endpoint double."""
    return FakeOAuth()


@pytest.fixture
def credential(db: Database) -> Credential:
    """Active credential valid for another hour."""
    return db.save_credential(
        TENANT, "access-0", "refresh-0", utcnow() + timedelta(hours=1), tenant_name="Acme Group"
    )


@pytest.fixture
def engine(
    db: Database, settings: SyncSettings, remote: FakeRemote, oauth: FakeOAuth
) -> SyncEngine:
    """Sync engine wired to the fake remote."""
    return build_engine(db, settings, api=remote, oauth=oauth)


@pytest.fixture
def customer(db: Database) -> Contact:
    """Local customer contact already linked to the remote."""
    contact = db.create_contact(
        "Acme Pte Ltd", acts_as_customer=True, remote_contact_id="C-acme", local_change=False
    )
    return contact


@pytest.fixture
def make_invoice(db: Database) -> Any:
    """Factory for invoices, by default already present on the remote."""

    def factory(
        contact: Contact,
        direction: InvoiceDirection = InvoiceDirection.OUTBOUND,
        number: str = "INV-001",
        total: str = "100.00",
        status: str = "AUTHORISED",
        remote_invoice_id: str | None = "I-100",
    ) -> Any:
        return db.create_invoice(
            direction,
            contact.id,
            number,
            Decimal(total),
            currency="USD",
            status=status,
            remote_invoice_id=remote_invoice_id,
            local_change=remote_invoice_id is None,
        )

    return factory
