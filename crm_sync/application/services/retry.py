"""Retry policy for idempotent provider reads and token refresh (tenacity)."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from crm_sync.domain.exceptions import OAuthTokenError, ProviderApiError
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def is_transient(exc: BaseException) -> bool:
    """True for provider or token endpoint errors marked retryable (transport, 429, 5xx)."""
    return isinstance(exc, (ProviderApiError, OAuthTokenError)) and exc.retryable


def transient_retrying(
    *,
    max_attempts: int,
    base_delay: float,
    sleep: Sleep = asyncio.sleep,
) -> AsyncRetrying:
    """Exponential backoff (base, 2*base, 4*base...) over transient errors only.

    The last error is re-raised as-is once ``max_attempts`` is spent. Never
    wrap creates or sends: a timed-out write may have succeeded.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=base_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )


async def retry_read[T](
    call: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run an idempotent read, retrying transient failures."""
    retrying = transient_retrying(max_attempts=max_attempts, base_delay=base_delay, sleep=sleep)
    return await retrying(call)
