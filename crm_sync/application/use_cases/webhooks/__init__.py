from crm_sync.application.use_cases.webhooks.handle_delta import WebhookDeltaProcessor

__all__ = ["WebhookDeltaProcessor"]
