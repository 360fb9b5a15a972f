"""Backfill orchestrator for importing remote history.

This module provides:
- BackfillOrchestrator: starts paginated imports as detached asyncio tasks
- JobStore implementations (in-memory default, database optional)
- Progress tracking polled through get_job_status

Stages run in order contacts, invoices, payments. A failing page is recorded
and skipped; only an expired credential stops the whole job.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from ledgersync.core.types import JobStatus, LogStatus, SyncOperation, utcnow
from ledgersync.remote.errors import AuthExpiredError, SyncError
from ledgersync.sync.mapping import remote_record_id
from ledgersync.sync.reconciler import IngestOutcome

if TYPE_CHECKING:
    from ledgersync.remote.api import AccountingClient
    from ledgersync.server.database import Database
    from ledgersync.server.models import Credential
    from ledgersync.sync.audit import AuditLog
    from ledgersync.sync.reconciler import Reconciler
    from ledgersync.sync.tokens import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 2000
MAX_EMPTY_PAGES = 3
MAX_FAILED_PAGES = 3

STAGES = ("contacts", "invoices", "payments")


class BackfillInProgressError(Exception):
    """A backfill is already running for the tenant."""

    def __init__(self, tenant_id: str, job_id: str) -> None:
        super().__init__(f"Backfill {job_id} is already running for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.job_id = job_id


@dataclass
class BackfillOptions:
    """What to import and how."""

    tenant_id: str
    sync_contacts: bool = True
    sync_invoices: bool = True
    sync_payments: bool = True
    force_refresh: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    modified_since: datetime | None = None
    include_archived: bool = True
    max_pages: int = DEFAULT_MAX_PAGES

    def stages(self) -> list[str]:
        enabled = {
            "contacts": self.sync_contacts,
            "invoices": self.sync_invoices,
            "payments": self.sync_payments,
        }
        return [stage for stage in STAGES if enabled[stage]]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["modified_since"] = self.modified_since.isoformat() if self.modified_since else None
        return data


@dataclass
class BackfillProgress:
    """Counters updated after every page."""

    stage: str | None = None
    current_page: int = 0
    pages_processed: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errored: int = 0

    def count(self, outcome: IngestOutcome) -> None:
        self.processed += 1
        if outcome is IngestOutcome.CREATED:
            self.created += 1
        elif outcome is IngestOutcome.UPDATED:
            self.updated += 1
        elif outcome is IngestOutcome.CONFLICT:
            self.conflicts += 1
        else:
            self.skipped += 1


@dataclass
class BackfillJob:
    """State of one backfill run."""

    job_id: str
    options: BackfillOptions
    status: JobStatus = JobStatus.STARTING
    progress: BackfillProgress = field(default_factory=BackfillProgress)
    failures: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def tenant_id(self) -> str:
        return self.options.tenant_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "options": self.options.to_dict(),
            "progress": asdict(self.progress),
            "failures": list(self.failures),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobStore(Protocol):
    """Where backfill jobs are kept between polls."""

    def save(self, job: BackfillJob) -> None: ...

    def get(self, job_id: str) -> dict[str, Any] | None: ...

    def list(self) -> list[dict[str, Any]]: ...


class InMemoryJobStore:
    """Process-local job registry; jobs are lost on restart."""

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}

    def save(self, job: BackfillJob) -> None:
        self._jobs[job.job_id] = job.to_dict()

    def get(self, job_id: str) -> dict[str, Any] | None:
        return self._jobs.get(job_id)

    def list(self) -> list[dict[str, Any]]:
        return sorted(self._jobs.values(), key=lambda j: j["started_at"], reverse=True)


class DatabaseJobStore:
    """Job registry persisted in the backfill_jobs table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def save(self, job: BackfillJob) -> None:
        self._db.save_backfill_job(job.job_id, job.tenant_id, job.status.value, job.to_dict())

    def get(self, job_id: str) -> dict[str, Any] | None:
        record = self._db.get_backfill_job(job_id)
        return record.payload if record else None

    def list(self) -> list[dict[str, Any]]:
        return [record.payload for record in self._db.list_backfill_jobs()]


class BackfillOrchestrator:
    """Runs backfill jobs in the background and reports their progress."""

    def __init__(
        self,
        api: AccountingClient,
        tokens: TokenManager,
        reconciler: Reconciler,
        audit: AuditLog,
        store: JobStore | None = None,
    ) -> None:
        self._api = api
        self._tokens = tokens
        self._reconciler = reconciler
        self._audit = audit
        self._store: JobStore = store or InMemoryJobStore()
        self._active: dict[str, BackfillJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._listers = {
            "contacts": api.list_contacts,
            "invoices": api.list_invoices,
            "payments": api.list_payments,
        }

    def start_backfill(self, options: BackfillOptions) -> str:
        """Create a job and launch it; returns the job id immediately.

        Raises:
            BackfillInProgressError: If the tenant already has an active job.
        """
        for job in self._active.values():
            if job.tenant_id == options.tenant_id and job.status.is_active:
                raise BackfillInProgressError(options.tenant_id, job.job_id)

        job = BackfillJob(job_id=uuid.uuid4().hex, options=options)
        self._active[job.job_id] = job
        self._store.save(job)

        task = asyncio.create_task(self._run(job), name=f"backfill-{job.job_id}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.job_id, None))
        logger.info("Backfill %s started for tenant %s", job.job_id, options.tenant_id)
        return job.job_id

    def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        job = self._active.get(job_id)
        if job is not None:
            return job.to_dict()
        return self._store.get(job_id)

    def list_jobs(self) -> list[dict[str, Any]]:
        return self._store.list()

    async def wait(self, job_id: str) -> dict[str, Any] | None:
        """Wait for a job started by this process to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_job_status(job_id)

    async def _run(self, job: BackfillJob) -> None:
        options = job.options
        try:
            credential = await self._tokens.require_credential(options.tenant_id)
            job.status = JobStatus.RUNNING
            self._store.save(job)

            for stage in options.stages():
                job.progress.stage = stage
                credential = await self._run_stage(job, stage, credential)

            job.status = JobStatus.COMPLETED
        except AuthExpiredError as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            logger.warning("Backfill %s stopped: %s", job.job_id, e)
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            logger.exception("Backfill %s failed", job.job_id)
        finally:
            job.finished_at = utcnow()
            self._store.save(job)
            self._active.pop(job.job_id, None)

        self._audit.record(
            SyncOperation.BACKFILL,
            LogStatus.SUCCESS if job.status is JobStatus.COMPLETED else LogStatus.FAILED,
            correlation_id=job.job_id,
            tenant_id=job.tenant_id,
            message=job.error,
            details={"progress": asdict(job.progress), "failures": len(job.failures)},
        )

    async def _run_stage(
        self, job: BackfillJob, stage: str, credential: Credential
    ) -> Credential:
        options = job.options
        progress = job.progress
        lister = self._listers[stage]
        empty_pages = 0
        failed_pages = 0

        for page in range(1, options.max_pages + 1):
            progress.current_page = page
            # Long imports outlive a token; keep it fresh between pages
            credential = await self._tokens.require_credential(options.tenant_id)
            try:
                records = await lister(
                    credential,
                    page=page,
                    page_size=options.page_size,
                    modified_since=options.modified_since,
                    include_archived=options.include_archived,
                )
            except AuthExpiredError:
                raise
            except SyncError as e:
                logger.warning("Backfill %s: %s page %d failed: %s", job.job_id, stage, page, e)
                job.failures.append({"stage": stage, "page": page, "error": str(e)})
                progress.pages_processed += 1
                failed_pages += 1
                if failed_pages >= MAX_FAILED_PAGES:
                    message = f"Stopped after {failed_pages} failed pages in a row"
                    logger.error("Backfill %s: %s %s", job.job_id, stage, message.lower())
                    job.failures.append({"stage": stage, "page": page, "error": message})
                    self._store.save(job)
                    break
                self._store.save(job)
                continue
            failed_pages = 0

            if not records:
                empty_pages += 1
                progress.pages_processed += 1
                self._store.save(job)
                if empty_pages >= MAX_EMPTY_PAGES:
                    break
                continue
            empty_pages = 0

            for remote in records:
                try:
                    outcome = self._reconciler.ingest_remote(
                        remote,
                        tenant_id=options.tenant_id,
                        force_refresh=options.force_refresh,
                        correlation_id=job.job_id,
                    )
                except Exception as e:
                    logger.warning(
                        "Backfill %s: cannot import %s %s: %s",
                        job.job_id,
                        stage,
                        remote_record_id(remote),
                        e,
                    )
                    progress.processed += 1
                    progress.errored += 1
                    job.failures.append(
                        {
                            "stage": stage,
                            "page": page,
                            "remote_id": remote_record_id(remote),
                            "error": str(e),
                        }
                    )
                else:
                    progress.count(outcome)

            progress.pages_processed += 1
            self._store.save(job)
            logger.info(
                "Backfill %s: %s page %d done (%d records)", job.job_id, stage, page, len(records)
            )
            if len(records) < options.page_size:
                break

        return credential
