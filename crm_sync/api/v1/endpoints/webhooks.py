"""Provider push notifications.

Handshakes (Nylas ``?challenge=``, Graph ``?validationToken=``) are echoed
as text/plain without touching the database. Notifications are applied
delta by delta; one bad delta never fails the batch.
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from crm_sync.api.v1.dependencies import (
    WebhookProcessorOpener,
    get_runtime,
    get_webhook_processors,
)
from crm_sync.application.dtos.delta import WebhookChallenge
from crm_sync.core.limiter import limit_webhooks
from crm_sync.core.runtime import SyncRuntime
from crm_sync.domain.enums import Provider
from crm_sync.domain.exceptions import UnsupportedProviderException, ValidationException
from crm_sync.infrastructure.external.providers.nylas import SIGNATURE_HEADER, verify_signature
from crm_sync.schemas.webhook import WebhookResultResponse
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _provider(value: str) -> Provider:
    try:
        return Provider(value.lower())
    except ValueError:
        raise UnsupportedProviderException(value) from None


def _parse_body(raw: bytes) -> dict[str, Any] | None:
    if not raw.strip():
        return None
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationException(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValidationException("Webhook body must be a JSON object")
    return body


def _check_nylas_signature(runtime: SyncRuntime, request: Request, raw: bytes) -> JSONResponse | None:
    """Return an error response when the signature requirement is not met."""
    settings = runtime.settings
    secret = settings.nylas_webhook_secret.get_secret_value() if settings.nylas_webhook_secret else ""
    if not secret:
        if settings.nylas_webhook_require_signature:
            logger.error("Nylas webhook signature required but NYLAS_WEBHOOK_SECRET is not set")
            return JSONResponse(
                status_code=503,
                content={"error": "SERVICE_UNAVAILABLE", "message": "Webhook verification not configured"},
            )
        return None
    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("Rejected Nylas webhook with invalid signature")
        return JSONResponse(
            status_code=401,
            content={"error": "INVALID_SIGNATURE", "message": "Invalid webhook signature"},
        )
    return None


@router.api_route(
    "/{provider}",
    methods=["GET", "POST"],
    response_model=WebhookResultResponse,
    responses={
        200: {"content": {"text/plain": {}}, "description": "Challenge echo or batch result"},
        401: {"description": "Invalid signature"},
        503: {"description": "Signature verification configured without a secret"},
    },
)
@limit_webhooks
async def receive_webhook(
    request: Request,
    provider: str,
    runtime: Annotated[SyncRuntime, Depends(get_runtime)],
    open_processor: Annotated[WebhookProcessorOpener, Depends(get_webhook_processors)],
):
    resolved = _provider(provider)
    raw = await request.body()
    query = dict(request.query_params)
    if resolved is Provider.NYLAS and request.method == "POST" and "challenge" not in query:
        rejected = _check_nylas_signature(runtime, request, raw)
        if rejected is not None:
            return rejected

    body = _parse_body(raw)
    async with open_processor() as processor:
        result = await processor.handle_delta(resolved, body, query)
    if isinstance(result, WebhookChallenge):
        return PlainTextResponse(result.value)
    return WebhookResultResponse(
        processed=result.processed, skipped=result.skipped, failed=result.failed
    )
