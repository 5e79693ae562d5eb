"""Webhook API schemas."""

from pydantic import BaseModel


class WebhookResultResponse(BaseModel):
    """Outcome of one notification batch."""

    success: bool = True
    processed: int = 0
    skipped: int = 0
    failed: int = 0
