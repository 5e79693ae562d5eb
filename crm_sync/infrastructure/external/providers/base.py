"""Shared plumbing for provider adapters: HTTP calls and per-object decoding."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, ClassVar, TypeVar

import httpx

from crm_sync.domain.canonical import Decoded
from crm_sync.domain.enums import Provider, RecordKind
from crm_sync.domain.exceptions import ProviderApiError
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Errors a decoder raises on a payload of the wrong shape.
DECODE_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError)


def decode_or_raise(
    provider: Provider, operation: str, payload: Any, decode: Callable[[Any], T]
) -> T:
    try:
        return decode(payload)
    except DECODE_ERRORS as exc:
        raise ProviderApiError.malformed(
            provider.value, operation, str(exc) or type(exc).__name__
        ) from exc


def decode_item(
    provider: Provider, operation: str, payload: Any, decode: Callable[[Any], T]
) -> Decoded[T]:
    """Decode one listing item; failures are carried in the result."""
    external_id = payload.get("id") if isinstance(payload, dict) else None
    try:
        value = decode_or_raise(provider, operation, payload, decode)
    except ProviderApiError as exc:
        logger.warning(
            "%s %s: skipping malformed object %s: %s",
            provider.value,
            operation,
            external_id,
            exc.message,
        )
        return Decoded(external_id, error=exc)
    return Decoded(getattr(value, "external_id", external_id), value)


def kinds_from_scopes(
    scopes: Sequence[str], calendar_markers: Sequence[str], mail_markers: Sequence[str]
) -> frozenset[RecordKind]:
    """Map granted scopes to record kinds; no scope information means both."""
    if not scopes:
        return frozenset(RecordKind)
    kinds: set[RecordKind] = set()
    for scope in scopes:
        if any(marker in scope for marker in calendar_markers):
            kinds.add(RecordKind.APPOINTMENT)
        if any(marker in scope for marker in mail_markers):
            kinds.add(RecordKind.MESSAGE)
    return frozenset(kinds)


class HttpProviderAdapter:
    """Base for adapters that talk JSON over httpx.

    A shared ``httpx.AsyncClient`` may be passed in; otherwise each call opens
    a short-lived client. Every failure becomes a ProviderApiError.
    """

    provider: ClassVar[Provider]

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._shared_http = http_client
        self._timeout = timeout

    @asynccontextmanager
    async def _http_cm(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._shared_http is not None:
            yield self._shared_http
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    def _headers(self, access_token: str) -> list[tuple[str, str]]:
        return [("Authorization", f"Bearer {access_token}"), ("Accept", "application/json")]

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        operation: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        extra_headers: Sequence[tuple[str, str]] = (),
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON object ({} for empty bodies)."""
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        headers = httpx.Headers([*self._headers(access_token), *extra_headers])
        try:
            async with self._http_cm() as client:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            logger.warning("%s %s transport error: %s", self.provider.value, operation, exc)
            raise ProviderApiError(self.provider.value, operation) from exc
        if response.status_code >= 300:
            logger.warning(
                "%s %s failed: status=%d body=%s",
                self.provider.value,
                operation,
                response.status_code,
                response.text[:200],
            )
            raise ProviderApiError(self.provider.value, operation, response.status_code)
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderApiError.malformed(self.provider.value, operation, "invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderApiError.malformed(self.provider.value, operation, "expected an object")
        return payload
