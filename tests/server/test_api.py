"""Tests for FastAPI server endpoints."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient

from ledgersync.core.types import EntityType, InvoiceDirection, SyncStatus, utcnow
from ledgersync.server.app import create_app
from ledgersync.server.database import Database
from ledgersync.server.models import Contact, Credential
from ledgersync.sync.engine import SyncEngine
from ledgersync.sync.tokens import RECONNECT_REQUIRED


@pytest.fixture
def client(db: Database, engine: SyncEngine) -> Generator[TestClient, None, None]:
    """Create a test client around the fake-wired engine."""
    app = create_app(db, engine=engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(db: Database) -> dict[str, str]:
    """Auth headers of a finance user on tenant-1."""
    raw_token, _ = db.create_api_token("alice", "FINANCE", "tenant-1")
    return {"Authorization": f"Bearer {raw_token}"}


@pytest.fixture
def invoice(db: Database, customer: Contact, make_invoice: Any, remote: Any) -> Any:
    """Customer invoice present on both sides, amount due 100.00."""
    remote.add(
        "invoices",
        {
            "invoiceId": "I-100",
            "type": "ACCREC",
            "invoiceNumber": "INV-001",
            "contact": {"contactId": "C-acme", "name": "Acme Pte Ltd"},
            "currencyCode": "USD",
            "total": 100.0,
            "amountDue": 100.0,
            "status": "AUTHORISED",
        },
        minutes_ago=60,
    )
    return make_invoice(customer)


def create_payment(db: Database, invoice: Any, amount: str) -> Any:
    return db.create_payment(
        InvoiceDirection.OUTBOUND, invoice.id, Decimal(amount), date(2024, 3, 1)
    )


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client: TestClient) -> None:
        """Health endpoint should return OK without authentication."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestAuthentication:
    """Tests for caller authentication and roles."""

    def test_missing_token(self, client: TestClient) -> None:
        """Requests without a bearer token are rejected."""
        response = client.get("/api/sync/status")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token(self, client: TestClient) -> None:
        """Unknown tokens are rejected."""
        response = client.get(
            "/api/sync/status", headers={"Authorization": "Bearer ls_invalid"}
        )
        assert response.status_code == 401

    def test_role_not_allowed(self, client: TestClient, db: Database) -> None:
        """Roles outside the sync roles get 403."""
        raw_token, _ = db.create_api_token("victor", "VIEWER", "tenant-1")

        response = client.get(
            "/api/sync/status", headers={"Authorization": f"Bearer {raw_token}"}
        )

        assert response.status_code == 403
        assert "VIEWER" in response.json()["detail"]

    def test_engine_not_configured(self, db: Database, auth_headers: dict[str, str]) -> None:
        """Without an engine the sync routes are unavailable."""
        with TestClient(create_app(db)) as bare:
            response = bare.get("/api/sync/status", headers=auth_headers)
        assert response.status_code == 503


class TestBackfillEndpoints:
    """Tests for /api/sync/backfill."""

    def test_start_poll_and_refuse_second_job(
        self,
        client: TestClient,
        remote: Any,
        credential: Credential,
        auth_headers: dict[str, str],
    ) -> None:
        """A job is accepted, a concurrent one refused, and the first completes."""
        release = threading.Event()

        async def gated_list(kind: str, page: int, page_size: int) -> list[Any]:
            while not release.is_set():
                await asyncio.sleep(0.01)
            return []

        remote._list = gated_list

        response = client.post(
            "/api/sync/backfill", json={"syncPayments": False, "pageSize": 50}, headers=auth_headers
        )
        assert response.status_code == 202
        job_id = response.json()["job_id"]
        assert response.json()["status_url"] == f"/api/sync/backfill/{job_id}"

        second = client.post("/api/sync/backfill", json={}, headers=auth_headers)
        assert second.status_code == 409

        release.set()
        deadline = time.monotonic() + 5
        job = client.get(f"/api/sync/backfill/{job_id}", headers=auth_headers).json()
        while job["status"] in ("starting", "running") and time.monotonic() < deadline:
            time.sleep(0.02)
            job = client.get(f"/api/sync/backfill/{job_id}", headers=auth_headers).json()

        assert job["status"] == "completed"
        assert job["options"]["page_size"] == 50
        listed = client.get("/api/sync/backfill", headers=auth_headers).json()
        assert [j["job_id"] for j in listed] == [job_id]

    def test_requires_connection(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Without a tenant credential the caller must reconnect."""
        response = client.post("/api/sync/backfill", json={}, headers=auth_headers)

        assert response.status_code == 401
        assert response.json()["detail"] == RECONNECT_REQUIRED

    def test_invalid_page_size(
        self, client: TestClient, credential: Credential, auth_headers: dict[str, str]
    ) -> None:
        response = client.post("/api/sync/backfill", json={"pageSize": 0}, headers=auth_headers)
        assert response.status_code == 422

    def test_unknown_job(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Unknown job ids return 404."""
        response = client.get("/api/sync/backfill/nope", headers=auth_headers)
        assert response.status_code == 404


class TestPushEndpoints:
    """Tests for payment and invoice pushes."""

    def test_push_payment(
        self,
        client: TestClient,
        db: Database,
        invoice: Any,
        credential: Credential,
        auth_headers: dict[str, str],
    ) -> None:
        """A valid payment is pushed and reported."""
        payment = create_payment(db, invoice, "10.00")

        response = client.post(
            "/api/sync/payments/push", json={"payment_id": payment.id}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["pushed"] == [payment.id]
        state = db.get_sync_state(EntityType.PAYMENT, payment.id)
        assert state.status == SyncStatus.SYNCED.value

    def test_push_pending_without_ids(
        self,
        client: TestClient,
        db: Database,
        invoice: Any,
        credential: Credential,
        auth_headers: dict[str, str],
    ) -> None:
        """Without ids every pending payment is pushed."""
        first = create_payment(db, invoice, "10.00")
        second = create_payment(db, invoice, "20.00")

        response = client.post("/api/sync/payments/push", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert sorted(response.json()["pushed"]) == [first.id, second.id]

    def test_all_invalid_is_unprocessable(
        self,
        client: TestClient,
        db: Database,
        invoice: Any,
        credential: Credential,
        auth_headers: dict[str, str],
        remote: Any,
    ) -> None:
        """A batch where every entity fails validation answers 422."""
        payment = create_payment(db, invoice, "500.00")

        response = client.post(
            "/api/sync/payments/push", json={"payment_ids": [payment.id]}, headers=auth_headers
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail[0]["id"] == payment.id
        assert detail[0]["kind"] == "validation"
        assert remote.records["payments"] == {}

    def test_dry_run(
        self,
        client: TestClient,
        db: Database,
        invoice: Any,
        credential: Credential,
        auth_headers: dict[str, str],
        remote: Any,
    ) -> None:
        """Dry runs report without calling the remote."""
        payment = create_payment(db, invoice, "10.00")

        response = client.post(
            "/api/sync/payments/push",
            json={"payment_id": payment.id, "dry_run": True},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert remote.mutations == []

    def test_push_requires_connection(
        self, client: TestClient, db: Database, invoice: Any, auth_headers: dict[str, str]
    ) -> None:
        """Without a credential the caller must reconnect."""
        payment = create_payment(db, invoice, "10.00")

        response = client.post(
            "/api/sync/payments/push", json={"payment_id": payment.id}, headers=auth_headers
        )

        assert response.status_code == 401
        assert response.json()["detail"] == RECONNECT_REQUIRED


class TestConflictEndpoints:
    """Tests for conflict review, resolution and retry."""

    @pytest.fixture
    def conflict_id(
        self,
        client: TestClient,
        db: Database,
        invoice: Any,
        remote: Any,
        credential: Credential,
        auth_headers: dict[str, str],
    ) -> int:
        """Push an invoice edited on both sides since the last sync."""
        db.save_sync_state(
            EntityType.CUSTOMER_INVOICE,
            invoice.id,
            remote_id="I-100",
            status=SyncStatus.SYNCED,
            last_synced_at=utcnow() - timedelta(minutes=30),
        )
        db.update_entity(EntityType.CUSTOMER_INVOICE, invoice.id, reference="local-ref")
        remote.touch("invoices", "I-100", reference="remote-ref")

        response = client.post(
            "/api/sync/invoices/push",
            json={"direction": "outbound", "invoice_id": invoice.id},
            headers=auth_headers,
        )
        assert response.json()["conflicts"] == [invoice.id]
        return db.get_sync_state(EntityType.CUSTOMER_INVOICE, invoice.id).id

    def test_list_conflicts(
        self, client: TestClient, conflict_id: int, auth_headers: dict[str, str]
    ) -> None:
        """Conflicts are listed with their snapshot and local summary."""
        response = client.get("/api/sync/conflicts", headers=auth_headers)

        assert response.status_code == 200
        items = response.json()
        assert [item["id"] for item in items] == [conflict_id]
        assert items[0]["status"] == "CONFLICT"
        assert items[0]["summary"]["invoice_number"] == "INV-001"
        assert items[0]["conflict_snapshot"]["fields"]["reference"] == {
            "local": "local-ref",
            "remote": "remote-ref",
        }

    def test_resolve_keep_remote(
        self, client: TestClient, db: Database, conflict_id: int, auth_headers: dict[str, str]
    ) -> None:
        """Keeping the remote version resolves the conflict."""
        response = client.post(
            f"/api/sync/conflicts/{conflict_id}/resolve",
            json={"resolution": "keep-remote", "notes": "remote is right"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "SYNCED"
        again = client.post(
            f"/api/sync/conflicts/{conflict_id}/resolve",
            json={"resolution": "ignore"},
            headers=auth_headers,
        )
        assert again.status_code == 409

    def test_resolve_unknown(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(
            "/api/sync/conflicts/999/resolve", json={"resolution": "ignore"}, headers=auth_headers
        )
        assert response.status_code == 404

    def test_resolve_invalid_resolution(
        self, client: TestClient, conflict_id: int, auth_headers: dict[str, str]
    ) -> None:
        """Unknown resolutions are rejected by validation."""
        response = client.post(
            f"/api/sync/conflicts/{conflict_id}/resolve",
            json={"resolution": "merge"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_retry_conflict(
        self, client: TestClient, conflict_id: int, auth_headers: dict[str, str]
    ) -> None:
        """A conflict can be sent back to pending."""
        response = client.post(
            "/api/sync/retry", json={"state_id": conflict_id}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"

    def test_retry_requires_an_id(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post("/api/sync/retry", json={}, headers=auth_headers)
        assert response.status_code == 400


class TestLogAndStatusEndpoints:
    """Tests for /api/sync/logs and /api/sync/status."""

    def test_logs_after_push(
        self,
        client: TestClient,
        db: Database,
        invoice: Any,
        credential: Credential,
        auth_headers: dict[str, str],
    ) -> None:
        """Pushes are visible in the sync log with filters and paging."""
        payment = create_payment(db, invoice, "10.00")
        client.post("/api/sync/payments/push", json={"payment_id": payment.id}, headers=auth_headers)

        response = client.get(
            "/api/sync/logs",
            params={"entity_type": "payment", "status": "SUCCESS", "limit": 10},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["pages"] == 1
        entry = data["items"][0]
        assert entry["entity_id"] == payment.id
        assert entry["operation"] == "PUSH"
        assert entry["direction"] == "push"
        assert entry["actor"] == "alice"

    def test_logs_reject_bad_page(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.get("/api/sync/logs", params={"page": 0}, headers=auth_headers)
        assert response.status_code == 422

    def test_status(
        self,
        client: TestClient,
        db: Database,
        credential: Credential,
        auth_headers: dict[str, str],
    ) -> None:
        """Status reports the connection and the sync summary."""
        db.create_contact("New Customer", acts_as_customer=True)

        response = client.get("/api/sync/status", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["tenant_id"] == "tenant-1"
        assert data["connection"]["connected"] is True
        assert data["sync"] == {"contact": {"PENDING": 1}}
        assert data["active_backfills"] == []
        assert data["logs"]["period_days"] == 7

    def test_status_disconnected(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Without a credential the status asks for a reconnect."""
        data = client.get("/api/sync/status", headers=auth_headers).json()
        assert data["connection"] == {"connected": False, "reconnect_required": True}
