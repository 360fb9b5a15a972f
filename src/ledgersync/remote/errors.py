"""Error taxonomy for remote accounting API calls.

Every failure the sync engine can observe is mapped to one of these classes.
Each carries a ``kind`` (written to the audit log and SyncState) and a
``retryable`` flag used by the retry helper and by operator retries.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base exception for sync errors."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthExpiredError(SyncError):
    """Credential missing, revoked or rejected; a manual reconnect is required."""

    kind = "auth_expired"


class RateLimitedError(SyncError):
    """Remote platform throttled the request."""

    kind = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ValidationError(SyncError):
    """Remote platform rejected the payload."""

    kind = "validation"

    def __init__(
        self,
        message: str,
        status_code: int | None = 400,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.errors = errors or [message]


class RemoteConflictError(ValidationError):
    """Remote refused the write because of its own state (HTTP 409)."""


class PreconditionError(ValidationError):
    """Local data is not ready to be pushed (checked before any remote call)."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, status_code=None, errors=errors)


class DuplicateRemoteInvoiceError(ValidationError):
    """A remote invoice id is already stored in the other invoice representation."""

    def __init__(self, remote_invoice_id: str, owner: str) -> None:
        super().__init__(
            f"Remote invoice {remote_invoice_id} is already linked to {owner}",
            status_code=None,
        )
        self.remote_invoice_id = remote_invoice_id
        self.owner = owner


class NotFoundError(SyncError):
    """Referenced local or remote entity does not exist."""

    kind = "not_found"


class TransientNetworkError(SyncError):
    """Connection-level failure or remote 5xx."""

    kind = "transient"
    retryable = True


TRANSIENT_KINDS = frozenset({RateLimitedError.kind, TransientNetworkError.kind})


def classify(exc: BaseException) -> str:
    """Return the error kind for any exception."""
    if isinstance(exc, SyncError):
        return exc.kind
    return "internal"


def is_retryable_kind(kind: str | None) -> bool:
    """Whether a stored error kind allows an operator retry."""
    return kind in TRANSIENT_KINDS


def extract_validation_errors(body: Any) -> list[str]:
    """Pull human readable messages out of a 400 response body.

    Understands ``Elements[].ValidationErrors[].Message`` (accounting platform
    style), a top-level ``ValidationErrors`` list, and plain ``message`` /
    ``detail`` / ``Detail`` fields.
    """
    if not isinstance(body, dict):
        return [str(body)] if body else []

    messages: list[str] = []
    for element in body.get("Elements") or []:
        for item in element.get("ValidationErrors") or []:
            message = item.get("Message")
            if message:
                messages.append(message)
    for item in body.get("ValidationErrors") or []:
        message = item.get("Message") if isinstance(item, dict) else item
        if message:
            messages.append(str(message))
    if messages:
        return messages

    for key in ("message", "Message", "detail", "Detail"):
        if body.get(key):
            return [str(body[key])]
    return []
