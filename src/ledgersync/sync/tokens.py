"""Token lifecycle manager.

Keeps one valid access credential per remote tenant. A refresh exchange
invalidates the previous refresh token, so refreshes for one tenant are
serialized with a per-tenant asyncio.Lock and the expiry is checked again
once the lock is held.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ledgersync.core.types import LogStatus, SyncOperation, ensure_utc, utcnow
from ledgersync.remote.errors import AuthExpiredError, SyncError

if TYPE_CHECKING:
    from ledgersync.remote.api import OAuthClient
    from ledgersync.server.database import Database
    from ledgersync.server.models import Credential
    from ledgersync.sync.audit import AuditLog

logger = logging.getLogger(__name__)

DEFAULT_MIN_VALIDITY_MINUTES = 20

RECONNECT_REQUIRED = "Remote connection expired, manual reconnect required"


def remaining_minutes(credential: Credential) -> float:
    """Minutes until the access token expires (negative once expired)."""
    expires_at = ensure_utc(credential.expires_at)
    return (expires_at - utcnow()).total_seconds() / 60  # type: ignore[operator]


class TokenManager:
    """Guarantees a fresh access token before any remote call."""

    def __init__(
        self,
        db: Database,
        oauth: OAuthClient,
        audit: AuditLog,
        min_validity_minutes: int = DEFAULT_MIN_VALIDITY_MINUTES,
    ) -> None:
        """Initialize the manager.

        Args:
            db: Store holding the credentials.
            oauth: Client performing refresh exchanges.
            audit: Audit sink for refresh outcomes.
            min_validity_minutes: Default minimum remaining validity.
        """
        self._db = db
        self._oauth = oauth
        self._audit = audit
        self._min_validity = min_validity_minutes
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def ensure_fresh(
        self, tenant_id: str, min_validity_minutes: int | None = None
    ) -> bool:
        """Make sure the tenant's access token stays valid long enough.

        Args:
            tenant_id: Remote tenant.
            min_validity_minutes: Refresh when fewer minutes remain.

        Returns:
            True when a valid credential is available (refreshed if needed).
            False when there is no active credential or it can no longer be
            refreshed; the caller must surface a reconnect request.
        """
        minimum = self._min_validity if min_validity_minutes is None else min_validity_minutes

        credential = self._db.get_active_credential(tenant_id)
        if credential is None:
            return False
        if remaining_minutes(credential) > minimum:
            return True

        async with self._lock_for(tenant_id):
            # Another caller may have refreshed while we waited
            credential = self._db.get_active_credential(tenant_id)
            if credential is None:
                return False
            if remaining_minutes(credential) > minimum:
                return True
            return await self._refresh(credential)

    async def _refresh(self, credential: Credential) -> bool:
        logger.info(
            "Refreshing access token for tenant %s (%.1f minutes left)",
            credential.tenant_id,
            remaining_minutes(credential),
        )
        try:
            tokens = await self._oauth.refresh(credential.refresh_token)
        except AuthExpiredError as e:
            self._db.deactivate_credential(credential.id, str(e))
            self._audit.record(
                SyncOperation.TOKEN_REFRESH,
                LogStatus.FAILED,
                tenant_id=credential.tenant_id,
                error_kind=e.kind,
                message=f"{RECONNECT_REQUIRED}: {e}",
            )
            logger.error("Tenant %s requires reconnect: %s", credential.tenant_id, e)
            return False
        except SyncError as e:
            self._db.record_credential_error(credential.id, str(e))
            self._audit.record(
                SyncOperation.TOKEN_REFRESH,
                LogStatus.FAILED,
                tenant_id=credential.tenant_id,
                error_kind=e.kind,
                message=str(e),
            )
            logger.warning("Token refresh for tenant %s failed: %s", credential.tenant_id, e)
            # The current token may still cover the next calls
            return remaining_minutes(credential) > 0

        self._db.update_credential_tokens(
            credential.id, tokens.access_token, tokens.refresh_token, tokens.expires_at
        )
        self._audit.record(
            SyncOperation.TOKEN_REFRESH,
            LogStatus.SUCCESS,
            tenant_id=credential.tenant_id,
            details={"expires_at": tokens.expires_at.isoformat()},
        )
        return True

    async def require_credential(
        self, tenant_id: str, min_validity_minutes: int | None = None
    ) -> Credential:
        """Return a fresh credential for a remote call.

        Raises:
            AuthExpiredError: If no usable credential exists.
        """
        if not await self.ensure_fresh(tenant_id, min_validity_minutes):
            raise AuthExpiredError(RECONNECT_REQUIRED)
        credential = self._db.get_active_credential(tenant_id)
        if credential is None:
            raise AuthExpiredError(RECONNECT_REQUIRED)
        return credential

    async def refresh_all(self, min_validity_minutes: int | None = None) -> dict[str, bool]:
        """Proactively refresh every active tenant.

        Returns:
            Mapping of tenant id to ensure_fresh result.
        """
        results = {}
        for credential in self._db.list_active_credentials():
            results[credential.tenant_id] = await self.ensure_fresh(
                credential.tenant_id, min_validity_minutes
            )
        return results

    def connection_status(self, tenant_id: str) -> dict[str, Any]:
        """Describe the tenant's connection for status endpoints."""
        credential = self._db.get_active_credential(tenant_id)
        if credential is None:
            return {"connected": False, "reconnect_required": True}
        minutes = remaining_minutes(credential)
        return {
            "connected": True,
            "reconnect_required": False,
            "tenant_name": credential.tenant_name,
            "expires_at": ensure_utc(credential.expires_at).isoformat(),  # type: ignore[union-attr]
            "minutes_remaining": round(minutes, 1),
            "last_refresh_error": credential.last_refresh_error,
        }
