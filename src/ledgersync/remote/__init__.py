"""Remote accounting API client, error taxonomy and retry policy."""

from ledgersync.remote.api import (
    AccountingClient,
    OAuthClient,
    RemoteContact,
    RemoteInvoice,
    RemotePayment,
    TokenSet,
)
from ledgersync.remote.errors import (
    AuthExpiredError,
    DuplicateRemoteInvoiceError,
    NotFoundError,
    PreconditionError,
    RateLimitedError,
    RemoteConflictError,
    SyncError,
    TransientNetworkError,
    ValidationError,
    classify,
    is_retryable_kind,
)
from ledgersync.remote.retry import RetryPolicy, retry_with_backoff

__all__ = [
    # api
    "AccountingClient",
    "OAuthClient",
    "RemoteContact",
    "RemoteInvoice",
    "RemotePayment",
    "TokenSet",
    # errors
    "AuthExpiredError",
    "DuplicateRemoteInvoiceError",
    "NotFoundError",
    "PreconditionError",
    "RateLimitedError",
    "RemoteConflictError",
    "SyncError",
    "TransientNetworkError",
    "ValidationError",
    "classify",
    "is_retryable_kind",
    # retry
    "RetryPolicy",
    "retry_with_backoff",
]
