"""API v1 router aggregation.

Includes all endpoint modules with consistent prefix and tags. Routes get
their collaborators from crm_sync.api.v1.dependencies.
"""

from fastapi import APIRouter

from crm_sync.api.v1.endpoints import accounts, health, records, webhooks

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
api_router.include_router(records.router, tags=["records"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
