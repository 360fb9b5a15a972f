"""FastAPI application for the ledgersync server.

This module creates and configures the FastAPI application with:
- REST API for backfills, pushes, conflicts, logs and status
- Background scheduler for token refresh and log cleanup

Usage:
    uvicorn ledgersync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from ledgersync.core.config import SyncSettings
from ledgersync.server.api.router import router as api_router
from ledgersync.server.database import Database
from ledgersync.server.scheduler import SyncScheduler
from ledgersync.sync.engine import SyncEngine, build_engine

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for ledgersync
    root_logger = logging.getLogger("ledgersync")
    root_logger.setLevel(logging.INFO)
    if root_logger.handlers:
        return  # Already configured

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(
    db: Database,
    engine: SyncEngine | None = None,
    settings: SyncSettings | None = None,
    start_scheduler: bool = False,
) -> FastAPI:
    """Create FastAPI application with a custom database and engine.

    Args:
        db: Database instance.
        engine: Sync engine; when omitted every /api/sync route answers 503.
        settings: Runtime settings (engine settings, or defaults).
        start_scheduler: Start the background jobs in the lifespan.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or (engine.settings if engine else SyncSettings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("LedgerSync Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:  %s", db.path)
        logger.info("  Remote:    %s", settings.api_base_url)
        logger.info("  Jobs:      %s store", settings.job_store)
        logger.info("  Tokens:    %s", "encrypted" if db.encrypts_tokens else "plaintext")
        logger.info("  Logs:      %s", settings.log_path.absolute())
        logger.info("=" * 60)

        scheduler = None
        if engine is not None and start_scheduler:
            scheduler = SyncScheduler(engine)
            scheduler.start()
        app.state.scheduler = scheduler

        yield

        # Shutdown
        if scheduler is not None:
            scheduler.stop()
        if engine is not None:
            await engine.aclose()
        logger.info("LedgerSync Server shutting down")

    application = FastAPI(
        title="LedgerSync Server",
        description="External accounting sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.engine = engine
    application.state.settings = settings
    application.state.scheduler = None

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    settings = SyncSettings.from_env()
    setup_logging(settings.log_path)
    db = Database(settings.db_path, token_key=settings.token_key)
    return create_app(
        db=db,
        engine=build_engine(db, settings),
        settings=settings,
        start_scheduler=True,
    )
