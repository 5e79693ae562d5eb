"""Health check endpoints used for liveness and readiness checks."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from crm_sync.core.config import get_settings
from crm_sync.infrastructure.persistence.database import open_session
from crm_sync.schemas.health import HealthResponse, ReadinessResponse
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Return simple ok status for liveness."""
    return HealthResponse()


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={503: {"description": "Database not configured or unreachable", "model": ReadinessResponse}},
)
async def readiness_check() -> ReadinessResponse | JSONResponse:
    """Return 200 when the database answers ``SELECT 1``; 503 otherwise."""
    if not get_settings().sql_configured:
        return JSONResponse(
            status_code=503,
            content=ReadinessResponse(status="not_ready", database="not_configured").model_dump(),
        )
    try:
        async with open_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check failed")
        return JSONResponse(
            status_code=503,
            content=ReadinessResponse(status="not_ready", database="unavailable").model_dump(),
        )
    return ReadinessResponse()
