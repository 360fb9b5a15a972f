"""Tests for CLI commands - tokens, connect, backfill, push, conflicts, audit."""

from __future__ import annotations

import json
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from ledgersync.cli import cli
from ledgersync.core.types import EntityType, InvoiceDirection, SyncStatus
from ledgersync.server.database import Database
from ledgersync.server.models import Contact
from ledgersync.sync.engine import build_engine


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    """Create a CLI test runner with no settings leaking from the environment."""
    monkeypatch.delenv("LEDGERSYNC_TOKEN_KEY", raising=False)
    monkeypatch.delenv("LEDGERSYNC_DB_PATH", raising=False)
    return CliRunner()


@pytest.fixture
def db_args(db: Database) -> list[str]:
    """--db-path pointing at the test database."""
    return ["--db-path", str(db.path)]


@pytest.fixture
def fake_engine(remote: Any, oauth: Any) -> Generator[None, None, None]:
    """Make CLI commands build their engine around the fake remote."""

    def factory(db: Database, settings: Any) -> Any:
        return build_engine(db, settings, api=remote, oauth=oauth)

    with patch("ledgersync.sync.engine.build_engine", side_effect=factory):
        yield


@pytest.fixture
def payment(db: Database, customer: Contact, make_invoice: Any, remote: Any) -> Any:
    """Pending payment on an invoice known to the remote (amount due 100.00)."""
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
    return db.create_payment(
        InvoiceDirection.OUTBOUND, invoice.id, Decimal("40.00"), date(2024, 3, 1)
    )


class TestTokenCommands:
    """Tests for 'ledgersync token'."""

    def test_create_prints_raw_token(
        self, runner: CliRunner, db: Database, db_args: list[str]
    ) -> None:
        """The raw token is printed once and validates."""
        result = runner.invoke(
            cli,
            ["token", "create", "--subject", "alice", "--role", "finance", "--tenant", "tenant-1", *db_args],
        )

        assert result.exit_code == 0
        raw = result.output.strip().splitlines()[-1]
        assert raw.startswith("ls_")
        token = db.validate_api_token(raw)
        assert token is not None
        assert token.role == "FINANCE"

    def test_create_warns_for_non_sync_role(self, runner: CliRunner, db_args: list[str]) -> None:
        """Roles outside the sync roles get a warning."""
        result = runner.invoke(
            cli,
            ["token", "create", "--subject", "viewer", "--role", "VIEWER", "--tenant", "t", *db_args],
        )

        assert result.exit_code == 0
        assert "cannot call the sync API" in result.output

    def test_revoke(self, runner: CliRunner, db: Database, db_args: list[str]) -> None:
        """Revoking works once, unknown ids fail."""
        raw, token = db.create_api_token("alice", "ADMIN", "tenant-1")

        result = runner.invoke(cli, ["token", "revoke", str(token.id), *db_args])
        assert result.exit_code == 0
        assert db.validate_api_token(raw) is None

        missing = runner.invoke(cli, ["token", "revoke", "999", *db_args])
        assert missing.exit_code == 1
        assert "not found" in missing.output

    def test_missing_database(self, runner: CliRunner, tmp_path: Path) -> None:
        """Commands needing an existing store exit with an error."""
        result = runner.invoke(
            cli, ["token", "revoke", "1", "--db-path", str(tmp_path / "absent.db")]
        )

        assert result.exit_code == 1
        assert "Database not found" in result.output


class TestConnectAndLogs:
    """Tests for 'ledgersync connect' and 'ledgersync logs'."""

    def test_connect_stores_credential(
        self, runner: CliRunner, db: Database, db_args: list[str]
    ) -> None:
        """The credential becomes the tenant's active one."""
        result = runner.invoke(
            cli,
            [
                "connect",
                "--tenant", "tenant-9",
                "--tenant-name", "Nine Ltd",
                "--access-token", "a",
                "--refresh-token", "r",
                *db_args,
            ],
        )

        assert result.exit_code == 0
        assert "plaintext" in result.output
        credential = db.get_active_credential("tenant-9")
        assert credential.tenant_name == "Nine Ltd"
        assert credential.refresh_token == "r"

    def test_logs_cleanup(self, runner: CliRunner, db: Database, db_args: list[str]) -> None:
        """Nothing old means nothing deleted."""
        db.add_sync_log(operation="PUSH", status="SUCCESS")

        result = runner.invoke(cli, ["logs", "cleanup", "-d", "30", *db_args])

        assert result.exit_code == 0
        assert "No log entries to delete." in result.output


class TestPushCommands:
    """Tests for 'ledgersync push'."""

    @pytest.mark.usefixtures("fake_engine", "credential")
    def test_push_pending_payments(
        self, runner: CliRunner, db: Database, db_args: list[str], payment: Any
    ) -> None:
        """Pending payments are pushed and summarized."""
        result = runner.invoke(cli, ["push", "payments", "--tenant", "tenant-1", *db_args])

        assert result.exit_code == 0, result.output
        assert "1 pushed, 0 failed" in result.output
        state = db.get_sync_state(EntityType.PAYMENT, payment.id)
        assert state.status == SyncStatus.SYNCED.value

    @pytest.mark.usefixtures("fake_engine", "credential")
    def test_failed_push_exits_nonzero(
        self, runner: CliRunner, db: Database, db_args: list[str], payment: Any
    ) -> None:
        """Validation failures are listed and the exit code is 1."""
        db.update_entity(EntityType.PAYMENT, payment.id, amount=Decimal("250.00"))

        result = runner.invoke(
            cli, ["push", "payments", "--tenant", "tenant-1", str(payment.id), *db_args]
        )

        assert result.exit_code == 1
        assert "[validation]" in result.output

    @pytest.mark.usefixtures("fake_engine")
    def test_push_without_connection(
        self, runner: CliRunner, db_args: list[str], payment: Any
    ) -> None:
        """A missing credential exits with status 2."""
        result = runner.invoke(cli, ["push", "payments", "--tenant", "tenant-1", *db_args])

        assert result.exit_code == 2
        assert "reconnect required" in result.output


class TestBackfillCommand:
    @pytest.mark.usefixtures("fake_engine", "credential")
    def test_backfill_runs_to_completion(
        self, runner: CliRunner, db: Database, db_args: list[str], remote: Any
    ) -> None:
        """The foreground backfill prints the final counters."""
        remote.add("contacts", {"contactId": "C-1", "name": "Alpha Holdings", "isCustomer": True})

        result = runner.invoke(
            cli, ["backfill", "--tenant", "tenant-1", "--no-payments", *db_args]
        )

        assert result.exit_code == 0, result.output
        assert "Backfill completed: 1 processed, 1 created" in result.output
        assert db.get_contact_by_remote_id("C-1").acts_as_customer


class TestConflictsCommands:
    """Tests for 'ledgersync conflicts'."""

    def test_no_conflicts(self, runner: CliRunner, db_args: list[str]) -> None:
        result = runner.invoke(cli, ["conflicts", "list", *db_args])
        assert result.exit_code == 0
        assert "No conflicts." in result.output

    def test_lists_conflicting_fields(
        self, runner: CliRunner, db: Database, db_args: list[str], customer: Contact
    ) -> None:
        """Each conflict is printed with its differing fields."""
        state = db.save_sync_state(
            EntityType.CONTACT,
            customer.id,
            remote_id="C-acme",
            status=SyncStatus.CONFLICT,
            conflict_snapshot={"fields": {"phone": {}, "email": {}}},
        )

        result = runner.invoke(cli, ["conflicts", "list", *db_args])

        assert result.exit_code == 0
        assert f"#{state.id} contact {customer.id} (remote C-acme): email, phone" in result.output

    @pytest.mark.usefixtures("fake_engine", "credential")
    def test_resolve_unknown_conflict(self, runner: CliRunner, db_args: list[str]) -> None:
        """Unknown ids are reported as errors."""
        result = runner.invoke(
            cli,
            ["conflicts", "resolve", "42", "--resolution", "ignore", "--tenant", "tenant-1", *db_args],
        )

        assert result.exit_code == 1
        assert "42" in result.output


class TestAuditInvoices:
    """Tests for 'ledgersync audit-invoices'."""

    def test_clean_store(self, runner: CliRunner, db_args: list[str]) -> None:
        result = runner.invoke(cli, ["audit-invoices", *db_args])
        assert result.exit_code == 0
        assert "No duplicates found." in result.output

    def test_split_contacts_fail_the_audit(
        self, runner: CliRunner, db: Database, db_args: list[str]
    ) -> None:
        """A contact split into customer and supplier records is reported."""
        db.create_contact("Acme Ltd", acts_as_customer=True)
        db.create_contact("Acme Ltd", acts_as_supplier=True)

        result = runner.invoke(cli, ["audit-invoices", "--json", *db_args])

        assert result.exit_code == 1
        report = json.loads(result.output)
        assert report["duplicate_invoices"] == []
        assert [c["name"] for c in report["split_contacts"][0]] == ["Acme Ltd", "Acme Ltd"]
