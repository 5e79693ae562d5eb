"""Rate limiter instance for SlowAPI, shared by main and the route modules."""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

WRITE_ENDPOINT_LIMIT = "120/minute"
SYNC_LIMIT = "10/minute"
WEBHOOK_LIMIT = "600/minute"

limit_writes = limiter.limit(WRITE_ENDPOINT_LIMIT)
limit_sync = limiter.limit(SYNC_LIMIT)
limit_webhooks = limiter.limit(WEBHOOK_LIMIT)
