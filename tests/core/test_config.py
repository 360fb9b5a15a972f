"""Tests for SyncSettings."""

from __future__ import annotations

import base64
from pathlib import Path

import pytest

from ledgersync.core.config import DEFAULT_SYNC_ROLES, SyncSettings


class TestSyncSettings:
    """Tests for SyncSettings class."""

    def test_defaults(self) -> None:
        """Should carry the documented defaults."""
        settings = SyncSettings()
        assert settings.min_token_validity_minutes == 20
        assert settings.page_size == 100
        assert settings.max_pages == 2000
        assert settings.max_rate_limit_retries == 5
        assert settings.max_network_retries == 3
        assert settings.log_retention_days == 90
        assert settings.sync_roles == DEFAULT_SYNC_ROLES
        assert settings.job_store == "memory"

    def test_url_trailing_slash_removed(self) -> None:
        """Should strip trailing slash from the API base URL."""
        settings = SyncSettings(api_base_url="https://api.example.com/v2/")
        assert settings.api_base_url == "https://api.example.com/v2"

    def test_roles_normalized(self) -> None:
        """Roles are upper-cased and blanks dropped."""
        settings = SyncSettings(sync_roles=(" finance", "admin ", ""))
        assert settings.sync_roles == ("FINANCE", "ADMIN")

    def test_paths_coerced(self) -> None:
        """String paths become Path objects."""
        settings = SyncSettings(db_path="data/sync.db")  # type: ignore[arg-type]
        assert settings.db_path == Path("data/sync.db")

    def test_token_key_length_checked(self) -> None:
        """A token key must be 32 bytes."""
        with pytest.raises(ValueError, match="32 bytes"):
            SyncSettings(token_key=b"short")

    def test_unknown_job_store(self) -> None:
        """Only memory and database job stores exist."""
        with pytest.raises(ValueError, match="Unknown job store"):
            SyncSettings(job_store="redis")


class TestFromEnv:
    """Tests for SyncSettings.from_env."""

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Values come from LEDGERSYNC_* variables."""
        key = bytes(range(32))
        monkeypatch.setenv("LEDGERSYNC_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("LEDGERSYNC_TOKEN_KEY", base64.b64encode(key).decode())
        monkeypatch.setenv("LEDGERSYNC_PAGE_SIZE", "25")
        monkeypatch.setenv("LEDGERSYNC_INITIAL_BACKOFF", "0.5")
        monkeypatch.setenv("LEDGERSYNC_SYNC_ROLES", "finance,ops")
        monkeypatch.setenv("LEDGERSYNC_JOB_STORE", "database")

        settings = SyncSettings.from_env()

        assert settings.db_path == tmp_path / "x.db"
        assert settings.token_key == key
        assert settings.page_size == 25
        assert settings.initial_backoff == 0.5
        assert settings.sync_roles == ("FINANCE", "OPS")
        assert settings.job_store == "database"

    def test_defaults_without_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Unset variables fall back to defaults."""
        for name in ("LEDGERSYNC_PAGE_SIZE", "LEDGERSYNC_SYNC_ROLES", "LEDGERSYNC_TOKEN_KEY"):
            monkeypatch.delenv(name, raising=False)

        settings = SyncSettings.from_env()

        assert settings.page_size == 100
        assert settings.token_key is None
        assert settings.sync_roles == DEFAULT_SYNC_ROLES
