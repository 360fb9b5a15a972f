"""Server administration commands for the ledgersync CLI.

Commands:
- serve: Run the HTTP server
- token create / token revoke: Manage caller bearer tokens
- connect: Store a remote tenant credential
- logs cleanup: Purge old sync log entries
"""

from __future__ import annotations

from datetime import timedelta

import click

from ledgersync.cli.config import db_path_option, load_settings, open_database
from ledgersync.core.types import utcnow


@click.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
@click.option("--reload", is_flag=True, help="Reload on code changes (development).")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the ledgersync HTTP server.

    Settings come from LEDGERSYNC_* environment variables.
    """
    import uvicorn

    uvicorn.run(
        "ledgersync.server.app:app_factory",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@click.group()
def token() -> None:
    """Caller token management."""


@token.command("create")
@click.option("--subject", required=True, help="Who the token belongs to.")
@click.option("--role", required=True, help="Caller role (e.g. ADMIN, FINANCE).")
@click.option("--tenant", "tenant_id", required=True, help="Remote tenant id.")
@click.option("--expires-in-days", type=int, default=None, help="Token lifetime.")
@db_path_option
def token_create(
    subject: str,
    role: str,
    tenant_id: str,
    expires_in_days: int | None,
    db_path: str | None,
) -> None:
    """Create a bearer token; the raw value is printed once."""
    settings = load_settings(db_path)
    db = open_database(settings, must_exist=False)
    try:
        raw, api_token = db.create_api_token(subject, role, tenant_id, expires_in_days)
    finally:
        db.close()

    click.echo(f"Token id: {api_token.id} ({api_token.role} on {api_token.tenant_id})")
    if api_token.role not in settings.sync_roles:
        click.echo(f"Warning: role {api_token.role} cannot call the sync API.", err=True)
    click.echo(raw)


@token.command("revoke")
@click.argument("token_id", type=int)
@db_path_option
def token_revoke(token_id: int, db_path: str | None) -> None:
    """Revoke a bearer token."""
    db = open_database(load_settings(db_path))
    try:
        revoked = db.revoke_api_token(token_id)
    finally:
        db.close()
    if not revoked:
        raise click.ClickException(f"Token {token_id} not found")
    click.echo(f"Token {token_id} revoked.")


@click.command()
@click.option("--tenant", "tenant_id", required=True, help="Remote tenant id.")
@click.option("--tenant-name", default=None, help="Display name of the tenant.")
@click.option("--access-token", required=True, help="OAuth access token.")
@click.option("--refresh-token", required=True, help="OAuth refresh token.")
@click.option(
    "--expires-in",
    type=int,
    default=1800,
    show_default=True,
    help="Access token lifetime in seconds.",
)
@db_path_option
def connect(
    tenant_id: str,
    tenant_name: str | None,
    access_token: str,
    refresh_token: str,
    expires_in: int,
    db_path: str | None,
) -> None:
    """Store the credential of a remote tenant.

    Replaces any previous credential of the tenant.
    """
    settings = load_settings(db_path)
    db = open_database(settings, must_exist=False)
    try:
        credential = db.save_credential(
            tenant_id,
            access_token,
            refresh_token,
            utcnow() + timedelta(seconds=expires_in),
            tenant_name=tenant_name,
        )
    finally:
        db.close()
    click.echo(
        f"Connected tenant {credential.tenant_id} "
        f"(tokens {'encrypted' if settings.token_key else 'stored in plaintext'})."
    )


@click.group()
def logs() -> None:
    """Sync log maintenance."""


@logs.command("cleanup")
@click.option(
    "--older-than-days",
    "-d",
    type=int,
    default=None,
    help="Delete entries older than N days (default: LEDGERSYNC_LOG_RETENTION_DAYS).",
)
@db_path_option
def logs_cleanup(older_than_days: int | None, db_path: str | None) -> None:
    """Delete sync log entries older than the retention window."""
    settings = load_settings(db_path)
    days = older_than_days if older_than_days is not None else settings.log_retention_days
    db = open_database(settings)
    try:
        deleted = db.cleanup_old_logs(days)
    finally:
        db.close()
    if deleted:
        click.echo(f"Deleted {deleted} log entries older than {days} days.")
    else:
        click.echo("No log entries to delete.")
