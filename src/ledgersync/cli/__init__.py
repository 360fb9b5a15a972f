"""Command-line interface for ledgersync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- serve: Run the HTTP server
- token: Create or revoke caller tokens
- connect: Store a remote tenant credential
- backfill: Import remote history
- push: Push payments or invoices
- conflicts: List or resolve conflicts
- logs: Sync log maintenance
- audit-invoices: Duplication audit
"""

from __future__ import annotations

import click

from ledgersync.cli.server import connect, logs, serve, token
from ledgersync.cli.sync import audit_invoices, backfill, conflicts, push


@click.group()
@click.version_option(package_name="ledgersync")
def cli() -> None:
    """LedgerSync - External accounting sync engine."""


# Server commands
cli.add_command(serve)
cli.add_command(token)
cli.add_command(connect)
cli.add_command(logs)

# Sync commands
cli.add_command(backfill)
cli.add_command(push)
cli.add_command(conflicts)
cli.add_command(audit_invoices)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
]
