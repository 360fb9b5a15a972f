"""Configuration for ledgersync.

Settings are read from ``LEDGERSYNC_*`` environment variables with defaults,
and passed explicitly to every component that needs them.
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SYNC_ROLES = ("SUPERADMIN", "ADMIN", "FINANCE")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


@dataclass
class SyncSettings:
    """Runtime settings for the sync engine and its HTTP surface.

    Attributes:
        db_path: SQLite database file.
        log_path: Log file written next to stdout logging.
        api_base_url: Base URL of the remote accounting API.
        token_url: OAuth token endpoint of the remote platform.
        client_id: OAuth client id used for refresh exchanges.
        client_secret: OAuth client secret used for refresh exchanges.
        token_key: Optional 32-byte key used to encrypt stored OAuth tokens.
        min_token_validity_minutes: Refresh when fewer minutes remain.
        page_size: Default backfill page size.
        max_pages: Hard stop for one backfill stage.
        max_rate_limit_retries: Retries after a 429 before giving up.
        max_network_retries: Retries after a connection-level failure.
        initial_backoff: First backoff delay in seconds.
        max_backoff: Backoff ceiling in seconds.
        request_timeout: Remote request timeout in seconds.
        sync_roles: Caller roles allowed to use the sync API.
        log_retention_days: Sync log entries older than this are purged.
        token_refresh_interval_minutes: Period of the proactive refresh job.
        auto_push_interval_minutes: Period of pending payment auto-push (0 disables).
        job_store: "memory" or "database".
    """

    db_path: Path = Path("ledgersync.db")
    log_path: Path = Path("ledgersync.log")
    api_base_url: str = "https://api.accounting.example.com/api.xro/2.0"
    token_url: str = "https://identity.accounting.example.com/connect/token"
    client_id: str = ""
    client_secret: str = ""
    token_key: bytes | None = None
    min_token_validity_minutes: int = 20
    page_size: int = 100
    max_pages: int = 2000
    max_rate_limit_retries: int = 5
    max_network_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    request_timeout: float = 30.0
    sync_roles: tuple[str, ...] = field(default=DEFAULT_SYNC_ROLES)
    log_retention_days: int = 90
    token_refresh_interval_minutes: int = 10
    auto_push_interval_minutes: int = 0
    job_store: str = "memory"

    def __post_init__(self) -> None:
        """Normalize URLs, paths and role names."""
        self.db_path = Path(self.db_path)
        self.log_path = Path(self.log_path)
        self.api_base_url = self.api_base_url.rstrip("/")
        self.sync_roles = tuple(role.strip().upper() for role in self.sync_roles if role.strip())
        if self.token_key is not None and len(self.token_key) != 32:
            raise ValueError("token_key must be 32 bytes (AES-256)")
        if self.job_store not in ("memory", "database"):
            raise ValueError(f"Unknown job store: {self.job_store}")

    @classmethod
    def from_env(cls) -> SyncSettings:
        """Build settings from environment variables."""
        raw_key = os.environ.get("LEDGERSYNC_TOKEN_KEY")
        roles = os.environ.get("LEDGERSYNC_SYNC_ROLES")
        return cls(
            db_path=Path(os.environ.get("LEDGERSYNC_DB_PATH", "ledgersync.db")),
            log_path=Path(os.environ.get("LEDGERSYNC_LOG_PATH", "ledgersync.log")),
            api_base_url=os.environ.get("LEDGERSYNC_API_BASE_URL", cls.api_base_url),
            token_url=os.environ.get("LEDGERSYNC_TOKEN_URL", cls.token_url),
            client_id=os.environ.get("LEDGERSYNC_CLIENT_ID", ""),
            client_secret=os.environ.get("LEDGERSYNC_CLIENT_SECRET", ""),
            token_key=base64.b64decode(raw_key) if raw_key else None,
            min_token_validity_minutes=_env_int("LEDGERSYNC_MIN_TOKEN_VALIDITY_MINUTES", 20),
            page_size=_env_int("LEDGERSYNC_PAGE_SIZE", 100),
            max_pages=_env_int("LEDGERSYNC_MAX_PAGES", 2000),
            max_rate_limit_retries=_env_int("LEDGERSYNC_MAX_RATE_LIMIT_RETRIES", 5),
            max_network_retries=_env_int("LEDGERSYNC_MAX_NETWORK_RETRIES", 3),
            initial_backoff=_env_float("LEDGERSYNC_INITIAL_BACKOFF", 1.0),
            max_backoff=_env_float("LEDGERSYNC_MAX_BACKOFF", 60.0),
            request_timeout=_env_float("LEDGERSYNC_REQUEST_TIMEOUT", 30.0),
            sync_roles=tuple(roles.split(",")) if roles else DEFAULT_SYNC_ROLES,
            log_retention_days=_env_int("LEDGERSYNC_LOG_RETENTION_DAYS", 90),
            token_refresh_interval_minutes=_env_int(
                "LEDGERSYNC_TOKEN_REFRESH_INTERVAL_MINUTES", 10
            ),
            auto_push_interval_minutes=_env_int("LEDGERSYNC_AUTO_PUSH_INTERVAL_MINUTES", 0),
            job_store=os.environ.get("LEDGERSYNC_JOB_STORE", "memory"),
        )
