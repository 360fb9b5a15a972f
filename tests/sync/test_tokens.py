"""Tests for the token lifecycle manager."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from ledgersync.core.types import LogStatus, SyncOperation, utcnow
from ledgersync.remote.errors import AuthExpiredError, TransientNetworkError
from ledgersync.server.database import Database
from ledgersync.server.models import Credential
from ledgersync.sync.engine import SyncEngine
from ledgersync.sync.tokens import RECONNECT_REQUIRED


def expiring(db: Database, minutes: float, tenant_id: str = "tenant-1") -> Credential:
    return db.save_credential(
        tenant_id, "access-0", "refresh-0", utcnow() + timedelta(minutes=minutes)
    )


class TestEnsureFresh:
    """Tests for TokenManager.ensure_fresh."""

    @pytest.mark.asyncio
    async def test_valid_token_is_not_refreshed(
        self, engine: SyncEngine, oauth: Any, credential: Credential
    ) -> None:
        """Plenty of validity left means no exchange."""
        assert await engine.tokens.ensure_fresh(credential.tenant_id) is True
        assert oauth.calls == []

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_once(
        self, engine: SyncEngine, db: Database, oauth: Any
    ) -> None:
        """Ten minutes left is below the minimum, so one refresh happens."""
        expiring(db, 10)

        assert await engine.tokens.ensure_fresh("tenant-1") is True

        assert oauth.calls == ["refresh-0"]
        stored = db.get_active_credential("tenant-1")
        assert stored.access_token == "access-1"
        assert stored.refresh_token == "refresh-1"
        entries, _ = db.list_sync_logs(operation=SyncOperation.TOKEN_REFRESH.value)
        assert entries[0].status == LogStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_exchange(
        self, engine: SyncEngine, db: Database, oauth: Any
    ) -> None:
        """Two callers racing on an expiring token cause a single refresh."""
        expiring(db, 10)

        results = await asyncio.gather(
            engine.tokens.ensure_fresh("tenant-1"), engine.tokens.ensure_fresh("tenant-1")
        )

        assert results == [True, True]
        assert len(oauth.calls) == 1

    @pytest.mark.asyncio
    async def test_custom_minimum(self, engine: SyncEngine, oauth: Any, credential: Credential) -> None:
        """A caller can ask for a longer validity window."""
        assert await engine.tokens.ensure_fresh(credential.tenant_id, min_validity_minutes=90)
        assert len(oauth.calls) == 1

    @pytest.mark.asyncio
    async def test_revoked_refresh_token_requires_reconnect(
        self, engine: SyncEngine, db: Database, oauth: Any
    ) -> None:
        """A permanent refusal deactivates the credential."""
        expiring(db, 10)
        oauth.error = AuthExpiredError("Refresh token rejected (invalid_grant)", 400)

        assert await engine.tokens.ensure_fresh("tenant-1") is False

        assert db.get_active_credential("tenant-1") is None
        entries, _ = db.list_sync_logs(operation=SyncOperation.TOKEN_REFRESH.value)
        assert entries[0].status == LogStatus.FAILED.value
        assert RECONNECT_REQUIRED in entries[0].message
        with pytest.raises(AuthExpiredError):
            await engine.tokens.require_credential("tenant-1")

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_usable_token(
        self, engine: SyncEngine, db: Database, oauth: Any
    ) -> None:
        """An outage at the token endpoint does not block a still-valid token."""
        expiring(db, 10)
        oauth.error = TransientNetworkError("Token endpoint error (503)", 503)

        assert await engine.tokens.ensure_fresh("tenant-1") is True

        stored = db.get_active_credential("tenant-1")
        assert stored is not None
        assert stored.last_refresh_error == "Token endpoint error (503)"

    @pytest.mark.asyncio
    async def test_transient_failure_with_expired_token(
        self, engine: SyncEngine, db: Database, oauth: Any
    ) -> None:
        """An expired token that cannot be refreshed is not usable, but stays active."""
        expiring(db, -5)
        oauth.error = TransientNetworkError("Token endpoint unreachable", None)

        assert await engine.tokens.ensure_fresh("tenant-1") is False
        assert db.get_active_credential("tenant-1") is not None

    @pytest.mark.asyncio
    async def test_no_credential(self, engine: SyncEngine, oauth: Any) -> None:
        """Unknown tenants are never refreshed."""
        assert await engine.tokens.ensure_fresh("nobody") is False
        assert oauth.calls == []


class TestRefreshAll:
    """Tests for the proactive refresh sweep."""

    @pytest.mark.asyncio
    async def test_refreshes_only_expiring_tenants(
        self, engine: SyncEngine, db: Database, oauth: Any, credential: Credential
    ) -> None:
        """Each active tenant is checked; only the expiring one is refreshed."""
        expiring(db, 5, tenant_id="tenant-2")

        results = await engine.tokens.refresh_all()

        assert results == {"tenant-1": True, "tenant-2": True}
        assert oauth.calls == ["refresh-0"]


class TestConnectionStatus:
    """Tests for connection_status."""

    def test_connected(self, engine: SyncEngine, credential: Credential) -> None:
        """An active credential is reported with its remaining validity."""
        status = engine.tokens.connection_status(credential.tenant_id)

        assert status["connected"] is True
        assert status["tenant_name"] == "Acme Group"
        assert 55 < status["minutes_remaining"] <= 60

    def test_disconnected(self, engine: SyncEngine) -> None:
        """No credential means a reconnect is required."""
        assert engine.tokens.connection_status("nobody") == {
            "connected": False,
            "reconnect_required": True,
        }
