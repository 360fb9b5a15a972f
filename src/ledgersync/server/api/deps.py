"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ledgersync.core.config import SyncSettings
from ledgersync.server.database import Database
from ledgersync.server.models import ApiToken
from ledgersync.sync.engine import SyncEngine
from ledgersync.sync.tokens import RECONNECT_REQUIRED

# Security scheme
security = HTTPBearer(auto_error=False)


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_settings(request: Request) -> SyncSettings:
    """Get settings from app state."""
    settings: SyncSettings = request.app.state.settings
    return settings


def get_engine(request: Request) -> SyncEngine:
    """Get sync engine from app state."""
    engine: SyncEngine | None = request.app.state.engine
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not configured",
        )
    return engine


def get_current_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> ApiToken:
    """Validate bearer token and return the caller's ApiToken."""
    db = get_db(request)
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = db.validate_api_token(credentials.credentials)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


def require_sync_caller(
    caller: ApiToken = Depends(get_current_caller),
    settings: SyncSettings = Depends(get_settings),
) -> ApiToken:
    """Allow only callers whose role may run sync operations."""
    if caller.role.upper() not in settings.sync_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role {caller.role} is not allowed to run sync operations",
        )
    return caller


def reconnect_required() -> HTTPException:
    """401 raised when the remote credential can no longer be refreshed."""
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=RECONNECT_REQUIRED,
    )
