"""Wiring of the sync components around one Database and one remote API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ledgersync.core.types import EntityType
from ledgersync.remote.api import AccountingClient, OAuthClient
from ledgersync.remote.retry import RetryPolicy
from ledgersync.sync.audit import AuditLog
from ledgersync.sync.backfill import BackfillOrchestrator, DatabaseJobStore, InMemoryJobStore
from ledgersync.sync.conflicts import ConflictService
from ledgersync.sync.contacts import ContactLinker
from ledgersync.sync.reconciler import BatchResult, Reconciler
from ledgersync.sync.tokens import TokenManager

if TYPE_CHECKING:
    from ledgersync.core.config import SyncSettings
    from ledgersync.server.database import Database

logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    """All sync components sharing one store, one API client and one audit sink."""

    db: Database
    settings: SyncSettings
    api: Any
    oauth: Any
    audit: AuditLog
    tokens: TokenManager
    contacts: ContactLinker
    reconciler: Reconciler
    backfill: BackfillOrchestrator
    conflicts: ConflictService

    async def push_pending(self, entity_type: EntityType, tenant_id: str) -> BatchResult:
        """Push every pending (or transiently failed) entity of one type."""
        ids = self.reconciler.pending_ids(entity_type)
        return await self.reconciler.push_batch(entity_type, ids, tenant_id=tenant_id)

    async def aclose(self) -> None:
        await self.api.aclose()
        await self.oauth.aclose()


def build_engine(
    db: Database,
    settings: SyncSettings,
    api: Any | None = None,
    oauth: Any | None = None,
) -> SyncEngine:
    """Create the sync engine.

    Args:
        db: Store shared by every component.
        settings: Runtime settings.
        api: Remote API client; built from settings when omitted.
        oauth: Token exchange client; built from settings when omitted.

    Returns:
        The wired SyncEngine.
    """
    if api is None:
        api = AccountingClient(
            settings.api_base_url,
            timeout=settings.request_timeout,
            retry_policy=RetryPolicy(
                max_rate_limit_retries=settings.max_rate_limit_retries,
                max_network_retries=settings.max_network_retries,
                initial_backoff=settings.initial_backoff,
                max_backoff=settings.max_backoff,
            ),
        )
    if oauth is None:
        oauth = OAuthClient(
            settings.token_url,
            settings.client_id,
            settings.client_secret,
            timeout=settings.request_timeout,
        )

    audit = AuditLog(db)
    tokens = TokenManager(db, oauth, audit, settings.min_token_validity_minutes)
    contacts = ContactLinker(db, api, audit)
    reconciler = Reconciler(db, api, tokens, audit, contacts)
    store = DatabaseJobStore(db) if settings.job_store == "database" else InMemoryJobStore()
    backfill = BackfillOrchestrator(api, tokens, reconciler, audit, store)
    conflicts = ConflictService(db, reconciler, audit)

    logger.debug("Sync engine built (job store: %s)", settings.job_store)
    return SyncEngine(
        db=db,
        settings=settings,
        api=api,
        oauth=oauth,
        audit=audit,
        tokens=tokens,
        contacts=contacts,
        reconciler=reconciler,
        backfill=backfill,
        conflicts=conflicts,
    )
