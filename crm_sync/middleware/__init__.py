"""HTTP middleware: request ID and timeout. Order matters (first added = outermost)."""

from crm_sync.middleware.request_id import RequestIDMiddleware
from crm_sync.middleware.timeout import TimeoutMiddleware

__all__ = ["RequestIDMiddleware", "TimeoutMiddleware"]
