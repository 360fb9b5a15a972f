"""Settings and store helpers shared by CLI commands."""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import click

from ledgersync.core.config import SyncSettings
from ledgersync.server.database import Database

db_path_option = click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: LEDGERSYNC_DB_PATH or ./ledgersync.db).",
)


def load_settings(db_path: str | None = None) -> SyncSettings:
    """Settings from the environment, with an optional database override."""
    settings = SyncSettings.from_env()
    if db_path:
        settings = dataclasses.replace(settings, db_path=Path(db_path))
    return settings


def open_database(settings: SyncSettings, must_exist: bool = True) -> Database:
    """Open the store, exiting with an error when it has never been created."""
    if must_exist and not settings.db_path.exists():
        click.echo(f"Error: Database not found: {settings.db_path}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)
    return Database(settings.db_path, token_key=settings.token_key)
