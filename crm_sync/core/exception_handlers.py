"""Centralized exception handlers for the FastAPI app.

Register with register_exception_handlers(app). Maps domain error codes to
HTTP status; anything unmapped is a 400.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm_sync.core.config import get_settings
from crm_sync.domain.exceptions import CrmSyncException, OAuthTokenError

logger = logging.getLogger(__name__)

_ERROR_CODE_STATUS: dict[str, int] = {
    "NO_CREDENTIAL": 404,
    "REAUTH_REQUIRED": 409,
    "PROVIDER_REFRESH_FAILED": 502,
    "PROVIDER_API_ERROR": 502,
    "OAUTH_TOKEN_ERROR": 502,
    "MAPPING_CONFLICT": 409,
    "SYNC_IN_PROGRESS": 409,
    "RESOURCE_NOT_FOUND": 404,
    "VALIDATION_ERROR": 400,
    "UNSUPPORTED_PROVIDER": 400,
    "SERVICE_UNAVAILABLE": 503,
}


def status_for(exc: CrmSyncException) -> int:
    # A rejected authorization code is the caller's fault, not the provider's.
    if isinstance(exc, OAuthTokenError) and exc.status is not None and 400 <= exc.status < 500:
        return 400
    return _ERROR_CODE_STATUS.get(exc.error_code, 400)


def _crm_sync_exception_handler(request: Request, exc: CrmSyncException) -> JSONResponse:
    """Return JSON from CrmSyncException.to_dict() with the mapped status code."""
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 422 with validation error details."""
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": exc.errors(),
        },
    )


def _http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "HTTP_ERROR", "message": exc.detail},
    )


def _generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 500; include detail only when debug is True."""
    logger.exception("Unhandled exception: %s", exc)
    detail: Any = str(exc) if get_settings().debug else "Internal server error"
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": detail},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""
    app.add_exception_handler(CrmSyncException, _crm_sync_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(Exception, _generic_exception_handler)
