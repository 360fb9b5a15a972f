"""Core module - Shared settings, types and token crypto."""

from ledgersync.core.config import SyncSettings
from ledgersync.core.crypto import TokenCipher, generate_key
from ledgersync.core.types import (
    ContactRole,
    EntityType,
    InvoiceDirection,
    JobStatus,
    LogStatus,
    Resolution,
    SyncDirection,
    SyncOperation,
    SyncStatus,
    ensure_utc,
    parse_timestamp,
    utcnow,
)

__all__ = [
    # Config
    "SyncSettings",
    # Crypto
    "TokenCipher",
    "generate_key",
    # Types
    "ContactRole",
    "EntityType",
    "InvoiceDirection",
    "JobStatus",
    "LogStatus",
    "Resolution",
    "SyncDirection",
    "SyncOperation",
    "SyncStatus",
    "ensure_utc",
    "parse_timestamp",
    "utcnow",
]
