"""Sync commands for the ledgersync CLI.

Commands:
- backfill: Import remote history for a tenant
- push payments / push invoices: Push local entities to the remote
- conflicts list / conflicts resolve: Review and resolve conflicts
- audit-invoices: Report duplicated invoices and split dual-role contacts
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import click

from ledgersync.cli.config import db_path_option, load_settings, open_database
from ledgersync.core.types import EntityType, InvoiceDirection, Resolution, SyncStatus
from ledgersync.remote.errors import AuthExpiredError, SyncError
from ledgersync.sync.state import InvalidTransitionError

T = TypeVar("T")


def _run_with_engine(db_path: str | None, func: Callable[[Any], Awaitable[T]]) -> T:
    """Build the engine, run one coroutine against it and close everything."""
    from ledgersync.sync.engine import build_engine

    settings = load_settings(db_path)
    db = open_database(settings)

    async def main() -> T:
        engine = build_engine(db, settings)
        try:
            return await func(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(main())
    except AuthExpiredError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    finally:
        db.close()


@click.command()
@click.option("--tenant", "tenant_id", required=True, help="Remote tenant id.")
@click.option("--no-contacts", is_flag=True, help="Skip the contacts stage.")
@click.option("--no-invoices", is_flag=True, help="Skip the invoices stage.")
@click.option("--no-payments", is_flag=True, help="Skip the payments stage.")
@click.option("--force-refresh", is_flag=True, help="Re-apply records whose hash is unchanged.")
@click.option("--page-size", type=int, default=None, help="Records per page.")
@click.option(
    "--modified-since",
    type=click.DateTime(),
    default=None,
    help="Only records modified after this time.",
)
@db_path_option
def backfill(
    tenant_id: str,
    no_contacts: bool,
    no_invoices: bool,
    no_payments: bool,
    force_refresh: bool,
    page_size: int | None,
    modified_since: datetime | None,
    db_path: str | None,
) -> None:
    """Import contacts, invoices and payments from the remote platform.

    Runs in the foreground and prints the job summary when done.
    """
    from ledgersync.sync.backfill import BackfillOptions

    async def run(engine: Any) -> dict[str, Any] | None:
        options = BackfillOptions(
            tenant_id=tenant_id,
            sync_contacts=not no_contacts,
            sync_invoices=not no_invoices,
            sync_payments=not no_payments,
            force_refresh=force_refresh,
            page_size=page_size or engine.settings.page_size,
            modified_since=modified_since,
            max_pages=engine.settings.max_pages,
        )
        job_id = engine.backfill.start_backfill(options)
        click.echo(f"Backfill {job_id} started.")
        return await engine.backfill.wait(job_id)

    job = _run_with_engine(db_path, run)
    if job is None:
        raise click.ClickException("Backfill job was lost")

    progress = job["progress"]
    click.echo(
        f"Backfill {job['status']}: {progress['processed']} processed, "
        f"{progress['created']} created, {progress['updated']} updated, "
        f"{progress['skipped']} skipped, {progress['conflicts']} conflicts, "
        f"{progress['errored']} errors."
    )
    for failure in job["failures"]:
        click.echo(f"  {json.dumps(failure)}", err=True)
    if job["status"] != "completed":
        click.echo(f"Error: {job['error']}", err=True)
        sys.exit(1)


@click.group()
def push() -> None:
    """Push local entities to the remote platform."""


def _report_batch(result: Any) -> None:
    prefix = "[dry run] " if result.dry_run else ""
    click.echo(
        f"{prefix}{len(result.success)} pushed, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped, {len(result.conflicts)} conflicts."
    )
    for failure in result.failed:
        click.echo(f"  #{failure.id} [{failure.kind}] {failure.error}", err=True)
    for failure in result.skipped:
        click.echo(f"  #{failure.id} skipped: {failure.error}")


@push.command("payments")
@click.option("--tenant", "tenant_id", required=True, help="Remote tenant id.")
@click.option("--dry-run", is_flag=True, help="Validate without pushing.")
@click.argument("ids", nargs=-1, type=int)
@db_path_option
def push_payments(
    tenant_id: str, dry_run: bool, ids: tuple[int, ...], db_path: str | None
) -> None:
    """Push payments (all pending ones when no IDS are given)."""

    async def run(engine: Any) -> Any:
        entity_ids = list(ids) or engine.reconciler.pending_ids(EntityType.PAYMENT)
        return await engine.reconciler.push_batch(
            EntityType.PAYMENT, entity_ids, tenant_id=tenant_id, dry_run=dry_run, actor="cli"
        )

    result = _run_with_engine(db_path, run)
    _report_batch(result)
    if result.failed:
        sys.exit(1)


@push.command("invoices")
@click.option("--tenant", "tenant_id", required=True, help="Remote tenant id.")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in InvoiceDirection]),
    default=InvoiceDirection.OUTBOUND.value,
    show_default=True,
    help="Customer (outbound) or supplier (inbound) invoices.",
)
@click.option("--dry-run", is_flag=True, help="Validate without pushing.")
@click.argument("ids", nargs=-1, type=int)
@db_path_option
def push_invoices(
    tenant_id: str,
    direction: str,
    dry_run: bool,
    ids: tuple[int, ...],
    db_path: str | None,
) -> None:
    """Push invoices (all pending ones when no IDS are given)."""
    entity_type = InvoiceDirection(direction).entity_type

    async def run(engine: Any) -> Any:
        entity_ids = list(ids) or engine.reconciler.pending_ids(entity_type)
        return await engine.reconciler.push_batch(
            entity_type, entity_ids, tenant_id=tenant_id, dry_run=dry_run, actor="cli"
        )

    result = _run_with_engine(db_path, run)
    _report_batch(result)
    if result.failed:
        sys.exit(1)


@click.group()
def conflicts() -> None:
    """Conflict review and resolution."""


@conflicts.command("list")
@click.option(
    "--entity-type",
    type=click.Choice([e.value for e in EntityType]),
    default=None,
    help="Only this entity type.",
)
@click.option("--limit", type=int, default=50, show_default=True)
@db_path_option
def conflicts_list(entity_type: str | None, limit: int, db_path: str | None) -> None:
    """List entities in conflict."""
    db = open_database(load_settings(db_path))
    try:
        states = db.list_sync_states(
            SyncStatus.CONFLICT, EntityType(entity_type) if entity_type else None, limit
        )
    finally:
        db.close()

    if not states:
        click.echo("No conflicts.")
        return
    for state in states:
        fields = sorted((state.conflict_snapshot or {}).get("fields") or {})
        click.echo(
            f"#{state.id} {state.entity_type} {state.entity_id} "
            f"(remote {state.remote_id}): {', '.join(fields) or 'timestamps only'}"
        )


@conflicts.command("resolve")
@click.argument("conflict_id", type=int)
@click.option(
    "--resolution",
    type=click.Choice([r.value for r in Resolution]),
    required=True,
    help="keep-local pushes, keep-remote pulls, ignore marks synced.",
)
@click.option("--tenant", "tenant_id", required=True, help="Remote tenant id.")
@click.option("--notes", default=None, help="Free text stored in the audit log.")
@db_path_option
def conflicts_resolve(
    conflict_id: int,
    resolution: str,
    tenant_id: str,
    notes: str | None,
    db_path: str | None,
) -> None:
    """Resolve one conflict."""

    async def run(engine: Any) -> Any:
        return await engine.conflicts.resolve(
            conflict_id, Resolution(resolution), tenant_id=tenant_id, notes=notes, actor="cli"
        )

    try:
        state = _run_with_engine(db_path, run)
    except (LookupError, InvalidTransitionError, SyncError) as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Conflict {conflict_id} resolved ({resolution}); status {state.status}.")


@click.command("audit-invoices")
@click.option("--json", "as_json", is_flag=True, help="Print findings as JSON.")
@db_path_option
def audit_invoices(as_json: bool, db_path: str | None) -> None:
    """Report invoice duplication and split dual-role contacts.

    Exits with status 1 when anything is found.
    """
    db = open_database(load_settings(db_path))
    try:
        duplicates = db.find_duplicate_remote_invoices()
        split = db.find_split_dual_role_contacts()
    finally:
        db.close()

    split_groups = [
        [{"id": c.id, "name": c.name, "remote_contact_id": c.remote_contact_id} for c in group]
        for group in split
    ]
    if as_json:
        click.echo(
            json.dumps({"duplicate_invoices": duplicates, "split_contacts": split_groups}, indent=2)
        )
    else:
        for item in duplicates:
            click.echo(
                f"Remote invoice {item['remote_invoice_id']}: "
                f"customer {item['customer_invoice_ids']}, supplier {item['supplier_invoice_ids']}"
            )
        for group in split_groups:
            names = ", ".join(f"#{c['id']} {c['name']}" for c in group)
            click.echo(f"Contact split by role: {names}")
        if not duplicates and not split_groups:
            click.echo("No duplicates found.")

    if duplicates or split_groups:
        sys.exit(1)
