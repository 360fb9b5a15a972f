"""Tests for the sync maintenance scheduler."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from ledgersync.core.config import SyncSettings
from ledgersync.core.types import EntityType, InvoiceDirection, SyncStatus, utcnow
from ledgersync.server.database import Database
from ledgersync.server.models import Contact, Credential
from ledgersync.server.scheduler import SyncScheduler
from ledgersync.sync.engine import SyncEngine, build_engine


class TestSchedulerLifecycle:
    """Tests for starting and stopping the scheduler."""

    @pytest.mark.asyncio
    async def test_registers_jobs(self, engine: SyncEngine) -> None:
        """Token refresh and log cleanup are scheduled; auto-push is off by default."""
        scheduler = SyncScheduler(engine)
        scheduler.start()
        try:
            assert scheduler.running
            assert sorted(scheduler.job_ids()) == ["sync_log_cleanup", "token_refresh"]
        finally:
            scheduler.stop()

        assert not scheduler.running
        assert scheduler.job_ids() == []

    @pytest.mark.asyncio
    async def test_auto_push_job_when_enabled(
        self,
        db: Database,
        settings: SyncSettings,
        remote: Any,
        oauth: Any,
    ) -> None:
        """A positive interval adds the payment auto-push job."""
        engine = build_engine(
            db, replace(settings, auto_push_interval_minutes=5), api=remote, oauth=oauth
        )
        scheduler = SyncScheduler(engine)
        scheduler.start()
        try:
            assert "payment_auto_push" in scheduler.job_ids()
        finally:
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, engine: SyncEngine) -> None:
        """A second start keeps the running scheduler."""
        scheduler = SyncScheduler(engine)
        scheduler.start()
        first = scheduler._scheduler
        scheduler.start()
        try:
            assert scheduler._scheduler is first
        finally:
            scheduler.stop()


class TestManualTriggers:
    """Tests for running the jobs on demand."""

    @pytest.mark.asyncio
    async def test_refresh_tokens_now(self, engine: SyncEngine, db: Database, oauth: Any) -> None:
        """Expiring credentials are refreshed."""
        db.save_credential("tenant-1", "access-0", "refresh-0", utcnow() + timedelta(minutes=5))

        await SyncScheduler(engine).refresh_tokens_now()

        assert oauth.calls == ["refresh-0"]

    @pytest.mark.asyncio
    async def test_refresh_errors_are_logged(
        self, engine: SyncEngine, caplog: pytest.LogCaptureFixture
    ) -> None:
        """An unexpected error does not escape the job."""
        scheduler = SyncScheduler(engine)
        with patch.object(
            engine.tokens, "refresh_all", AsyncMock(side_effect=RuntimeError("db locked"))
        ), caplog.at_level(logging.ERROR, logger="ledgersync.server.scheduler"):
            await scheduler.refresh_tokens_now()

        assert "Error during scheduled token refresh" in caplog.text

    def test_cleanup_logs_now(self, engine: SyncEngine, db: Database) -> None:
        """Entries past the retention window are deleted."""
        db.add_sync_log(operation="PUSH", status="SUCCESS", created_at=utcnow() - timedelta(days=100))
        db.add_sync_log(operation="PUSH", status="SUCCESS")

        assert SyncScheduler(engine).cleanup_logs_now() == 1

    @pytest.mark.asyncio
    async def test_auto_push_pushes_pending_payments(
        self,
        engine: SyncEngine,
        db: Database,
        customer: Contact,
        make_invoice: Any,
        remote: Any,
        credential: Credential,
    ) -> None:
        """Pending payments of connected tenants are pushed."""
        remote.add(
            "invoices",
            {
                "invoiceId": "I-100",
                "type": "ACCREC",
                "contact": {"contactId": "C-acme", "name": "Acme Pte Ltd"},
                "total": 100.0,
                "amountDue": 100.0,
                "status": "AUTHORISED",
            },
            minutes_ago=60,
        )
        invoice = make_invoice(customer)
        payment = db.create_payment(
            InvoiceDirection.OUTBOUND, invoice.id, Decimal("25.00"), date(2024, 3, 1)
        )

        await SyncScheduler(engine)._auto_push_job()

        state = db.get_sync_state(EntityType.PAYMENT, payment.id)
        assert state.status == SyncStatus.SYNCED.value
        assert len(remote.records["payments"]) == 1
