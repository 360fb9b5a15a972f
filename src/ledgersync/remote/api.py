"""Async HTTP client for the remote accounting API.

This module provides:
- RemoteContact / RemoteInvoice / RemotePayment: parsed remote records
- AccountingClient: list/get/create/update for contacts, invoices and payments
- OAuthClient: refresh-token exchange against the platform token endpoint

Every response is mapped onto the error taxonomy in ``ledgersync.remote.errors``.
Mutations carry an ``Idempotency-Key`` header so a retried request is
de-duplicated by the remote platform.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

import httpx

from ledgersync.core.types import ensure_utc, parse_timestamp, utcnow
from ledgersync.remote.errors import (
    AuthExpiredError,
    NotFoundError,
    RateLimitedError,
    RemoteConflictError,
    SyncError,
    TransientNetworkError,
    ValidationError,
    extract_validation_errors,
)
from ledgersync.remote.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

# OAuth error codes meaning the refresh token can never be used again
PERMANENT_OAUTH_ERRORS = frozenset({"invalid_grant", "unauthorized_client", "invalid_client"})


class RemoteCredential(Protocol):
    """What the client needs from a stored credential."""

    tenant_id: str
    access_token: str


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


@dataclass
class RemoteContact:
    """Contact record from the remote platform."""

    contact_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    is_customer: bool = False
    is_supplier: bool = False
    archived: bool = False
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteContact:
        """Create from API response dictionary."""
        return cls(
            contact_id=data["contactId"],
            name=data.get("name") or "",
            email=data.get("emailAddress"),
            phone=data.get("phone"),
            is_customer=bool(data.get("isCustomer")),
            is_supplier=bool(data.get("isSupplier")),
            archived=data.get("contactStatus") == "ARCHIVED",
            updated_at=parse_timestamp(data.get("updatedDateUTC")),
        )


@dataclass
class RemoteInvoice:
    """Invoice record from the remote platform (ACCREC or ACCPAY)."""

    invoice_id: str
    invoice_type: str
    invoice_number: str
    contact: RemoteContact
    currency: str
    total: Decimal
    amount_due: Decimal
    status: str
    issue_date: str | None = None
    due_date: str | None = None
    reference: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteInvoice:
        """Create from API response dictionary."""
        contact_data = data.get("contact") or {}
        return cls(
            invoice_id=data["invoiceId"],
            invoice_type=data.get("type", "ACCREC"),
            invoice_number=data.get("invoiceNumber") or "",
            contact=RemoteContact(
                contact_id=contact_data.get("contactId", ""),
                name=contact_data.get("name") or "",
            ),
            currency=data.get("currencyCode") or "USD",
            total=_decimal(data.get("total")),
            amount_due=_decimal(data.get("amountDue")),
            status=data.get("status") or "DRAFT",
            issue_date=data.get("date"),
            due_date=data.get("dueDate"),
            reference=data.get("reference"),
            updated_at=parse_timestamp(data.get("updatedDateUTC")),
        )


@dataclass
class RemotePayment:
    """Payment record from the remote platform."""

    payment_id: str
    invoice_id: str
    amount: Decimal
    currency: str
    payment_date: str | None = None
    reference: str | None = None
    account_code: str | None = None
    status: str = "AUTHORISED"
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemotePayment:
        """Create from API response dictionary."""
        return cls(
            payment_id=data["paymentId"],
            invoice_id=(data.get("invoice") or {}).get("invoiceId", ""),
            amount=_decimal(data.get("amount")),
            currency=data.get("currencyCode") or "USD",
            payment_date=data.get("date"),
            reference=data.get("reference"),
            account_code=(data.get("account") or {}).get("code"),
            status=data.get("status") or "AUTHORISED",
            updated_at=parse_timestamp(data.get("updatedDateUTC")),
        )


@dataclass
class TokenSet:
    """Result of a refresh-token exchange."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenSet:
        """Create from a token endpoint response."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=utcnow() + timedelta(seconds=int(data.get("expires_in", 1800))),
            scope=(data.get("scope") or "").split(),
        )


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


# Remote resource kinds: (path, list envelope key, record parser)
_RESOURCES: dict[str, tuple[str, str, Callable[[dict[str, Any]], Any]]] = {
    "contacts": ("/contacts", "contacts", RemoteContact.from_dict),
    "invoices": ("/invoices", "invoices", RemoteInvoice.from_dict),
    "payments": ("/payments", "payments", RemotePayment.from_dict),
}


class AccountingClient:
    """Async HTTP client for the remote accounting API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the accounting API.
            timeout: Request timeout in seconds.
            retry_policy: Backoff limits for 429 and transient failures.
            transport: Optional httpx transport (tests).
            sleep: Awaitable sleep used between retries.
        """
        self._base_url = base_url.rstrip("/")
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AccountingClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status_code = response.status_code
        if status_code in (401, 403):
            raise AuthExpiredError("Remote API rejected the access token", status_code)
        if status_code == 404:
            raise NotFoundError("Remote resource not found", 404)
        if status_code == 429:
            raise RateLimitedError(retry_after=_retry_after(response))
        if status_code == 409:
            messages = extract_validation_errors(_json_body(response)) or ["Conflict"]
            raise RemoteConflictError("; ".join(messages), 409, messages)
        if status_code >= 500:
            raise TransientNetworkError(f"Remote server error ({status_code})", status_code)
        if status_code >= 400:
            messages = extract_validation_errors(_json_body(response)) or [
                f"Request rejected ({status_code})"
            ]
            raise ValidationError("; ".join(messages), status_code, messages)
        return response

    def _headers(
        self,
        credential: RemoteCredential,
        idempotency_key: str | None = None,
        modified_since: datetime | None = None,
    ) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Tenant-Id": credential.tenant_id,
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        if modified_since is not None:
            headers["If-Modified-Since"] = ensure_utc(modified_since).strftime(  # type: ignore[union-attr]
                "%Y-%m-%dT%H:%M:%S"
            )
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        credential: RemoteCredential,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        modified_since: datetime | None = None,
    ) -> Any:
        headers = self._headers(credential, idempotency_key, modified_since)

        async def send() -> Any:
            try:
                response = await self._client.request(
                    method, url, params=params, json=json, headers=headers
                )
            except httpx.TransportError as e:
                raise TransientNetworkError(f"{method} {url}: {e}") from e
            return self._handle_response(response).json()

        return await retry_with_backoff(
            send, self._retry_policy, self._sleep, description=f"{method} {url}"
        )

    # === Generic resource operations ===

    async def _list(
        self,
        kind: str,
        credential: RemoteCredential,
        page: int,
        page_size: int,
        modified_since: datetime | None,
        include_archived: bool,
        extra: dict[str, Any] | None = None,
    ) -> list[Any]:
        path, key, parse = _RESOURCES[kind]
        params: dict[str, Any] = {
            "page": page,
            "pageSize": page_size,
            "includeArchived": "true" if include_archived else "false",
        }
        if extra:
            params.update(extra)
        data = await self._request(
            "GET", path, credential, params=params, modified_since=modified_since
        )
        return [parse(item) for item in data.get(key) or []]

    async def _get(self, kind: str, credential: RemoteCredential, remote_id: str) -> Any:
        path, key, parse = _RESOURCES[kind]
        data = await self._request("GET", f"{path}/{remote_id}", credential)
        items = data.get(key) or []
        if not items:
            raise NotFoundError(f"Remote {kind[:-1]} {remote_id} not found", 404)
        return parse(items[0])

    async def _save(
        self,
        kind: str,
        credential: RemoteCredential,
        payload: dict[str, Any],
        idempotency_key: str,
        remote_id: str | None = None,
    ) -> Any:
        path, key, parse = _RESOURCES[kind]
        url = f"{path}/{remote_id}" if remote_id else path
        data = await self._request(
            "POST", url, credential, json={key: [payload]}, idempotency_key=idempotency_key
        )
        items = data.get(key) or []
        if not items:
            raise ValidationError(f"Remote API returned no {kind} for the request")
        return parse(items[0])

    # === Contacts ===

    async def list_contacts(
        self,
        credential: RemoteCredential,
        page: int = 1,
        page_size: int = 100,
        modified_since: datetime | None = None,
        include_archived: bool = True,
    ) -> list[RemoteContact]:
        """List one page of contacts."""
        return await self._list(
            "contacts", credential, page, page_size, modified_since, include_archived
        )

    async def search_contacts(
        self, credential: RemoteCredential, name: str
    ) -> list[RemoteContact]:
        """Search active contacts by name."""
        return await self._list(
            "contacts", credential, 1, 100, None, False, extra={"searchTerm": name}
        )

    async def get_contact(self, credential: RemoteCredential, contact_id: str) -> RemoteContact:
        return await self._get("contacts", credential, contact_id)

    async def save_contact(
        self,
        credential: RemoteCredential,
        payload: dict[str, Any],
        idempotency_key: str,
        contact_id: str | None = None,
    ) -> RemoteContact:
        """Create (no contact_id) or update a contact."""
        return await self._save("contacts", credential, payload, idempotency_key, contact_id)

    # === Invoices ===

    async def list_invoices(
        self,
        credential: RemoteCredential,
        page: int = 1,
        page_size: int = 100,
        modified_since: datetime | None = None,
        include_archived: bool = True,
    ) -> list[RemoteInvoice]:
        """List one page of invoices of both types."""
        return await self._list(
            "invoices", credential, page, page_size, modified_since, include_archived
        )

    async def get_invoice(self, credential: RemoteCredential, invoice_id: str) -> RemoteInvoice:
        return await self._get("invoices", credential, invoice_id)

    async def save_invoice(
        self,
        credential: RemoteCredential,
        payload: dict[str, Any],
        idempotency_key: str,
        invoice_id: str | None = None,
    ) -> RemoteInvoice:
        """Create (no invoice_id) or update an invoice."""
        return await self._save("invoices", credential, payload, idempotency_key, invoice_id)

    # === Payments ===

    async def list_payments(
        self,
        credential: RemoteCredential,
        page: int = 1,
        page_size: int = 100,
        modified_since: datetime | None = None,
        include_archived: bool = True,
    ) -> list[RemotePayment]:
        """List one page of payments."""
        return await self._list(
            "payments", credential, page, page_size, modified_since, include_archived
        )

    async def get_payment(self, credential: RemoteCredential, payment_id: str) -> RemotePayment:
        return await self._get("payments", credential, payment_id)

    async def save_payment(
        self,
        credential: RemoteCredential,
        payload: dict[str, Any],
        idempotency_key: str,
        payment_id: str | None = None,
    ) -> RemotePayment:
        """Create (no payment_id) or update a payment."""
        return await self._save("payments", credential, payload, idempotency_key, payment_id)


class OAuthClient:
    """Refresh-token exchange against the platform token endpoint."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_url = token_url
        self._client = httpx.AsyncClient(
            timeout=timeout,
            auth=httpx.BasicAuth(client_id, client_secret),
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Exchange a refresh token for a new token set.

        Raises:
            AuthExpiredError: Refresh token revoked/expired or client rejected.
            TransientNetworkError: Connection failure or token endpoint 5xx.
            SyncError: Any other unexpected token endpoint response.
        """
        try:
            response = await self._client.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {e}") from e

        if response.status_code == 200:
            return TokenSet.from_dict(response.json())

        body = _json_body(response)
        error_code = body.get("error") if isinstance(body, dict) else None
        if error_code in PERMANENT_OAUTH_ERRORS or response.status_code in (401, 403):
            raise AuthExpiredError(
                f"Refresh token rejected ({error_code or response.status_code})",
                response.status_code,
            )
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientNetworkError(
                f"Token endpoint error ({response.status_code})", response.status_code
            )
        raise SyncError(
            f"Unexpected token endpoint response ({error_code or response.status_code})",
            response.status_code,
        )
