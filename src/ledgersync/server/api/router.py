"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from ledgersync.server.api import backfill, conflicts, health, logs, push, status

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(backfill.router)
router.include_router(push.router)
router.include_router(conflicts.router)
router.include_router(logs.router)
router.include_router(status.router)
