"""
Retry Logic with Exponential Backoff

Provider calls are retried on transport-level failures only. HTTP status
errors (auth, validation, rate limits) surface immediately so the caller can
classify them.
"""
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.shared.core.config import get_settings

logger = structlog.get_logger()
T = TypeVar("T")

RETRYABLE_EXCEPTIONS = (httpx.TransportError,)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "provider_call_failed_will_retry",
        attempt=retry_state.attempt_number,
        error=str(error) if error else None,
        error_type=type(error).__name__ if error else None,
    )


async def with_provider_retry(
    func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
) -> T:
    """Execute a provider coroutine with bounded exponential backoff."""
    settings = get_settings()
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(settings.PROVIDER_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.1, max=2.0),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=_log_before_sleep,
        reraise=True,
    ):
        with attempt:
            return await func(*args, **kwargs)
    raise RuntimeError("unreachable: AsyncRetrying exhausted without reraise")
