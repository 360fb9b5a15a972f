"""Sync module - Reconciliation, backfill, conflicts and audit."""

from ledgersync.sync.audit import AuditLog, LogPage
from ledgersync.sync.backfill import (
    BackfillInProgressError,
    BackfillJob,
    BackfillOptions,
    BackfillOrchestrator,
    DatabaseJobStore,
    InMemoryJobStore,
)
from ledgersync.sync.conflicts import ConflictService
from ledgersync.sync.contacts import ContactLinker, LinkOutcome
from ledgersync.sync.engine import SyncEngine, build_engine
from ledgersync.sync.matcher import ContactMatcher, MatchConfidence, MatchResult
from ledgersync.sync.reconciler import BatchResult, IngestOutcome, Reconciler
from ledgersync.sync.state import InvalidTransitionError, SyncAction, decide
from ledgersync.sync.tokens import TokenManager

__all__ = [
    # Audit
    "AuditLog",
    "LogPage",
    # Backfill
    "BackfillInProgressError",
    "BackfillJob",
    "BackfillOptions",
    "BackfillOrchestrator",
    "DatabaseJobStore",
    "InMemoryJobStore",
    # Conflicts
    "ConflictService",
    # Contacts
    "ContactLinker",
    "ContactMatcher",
    "LinkOutcome",
    "MatchConfidence",
    "MatchResult",
    # Engine
    "SyncEngine",
    "build_engine",
    # Reconciler
    "BatchResult",
    "IngestOutcome",
    "Reconciler",
    # State
    "InvalidTransitionError",
    "SyncAction",
    "decide",
    # Tokens
    "TokenManager",
]
