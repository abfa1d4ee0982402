"""
Async HTTP Client Shared Infrastructure

Provider adapters share one httpx.AsyncClient per process so poll runs reuse
connection pools. Every request carries a bounded timeout so a slow provider
cannot hold sibling providers' ingestion hostage.
"""

from typing import Optional
import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def provider_timeout(total: Optional[float] = None) -> httpx.Timeout:
    settings = get_settings()
    budget = total or settings.PROVIDER_HTTP_TIMEOUT_SECONDS
    return httpx.Timeout(budget, connect=min(budget, 3.0))


def get_http_client() -> httpx.AsyncClient:
    """
    Returns the global shared httpx.AsyncClient, creating it lazily when the
    lifespan hook did not run (scripts, tests).
    """
    global _client
    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = httpx.AsyncClient(
            timeout=provider_timeout(),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )
    return _client


async def init_http_client() -> None:
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return

    settings = get_settings()
    _client = httpx.AsyncClient(
        timeout=provider_timeout(),
        limits=httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": f"{settings.APP_NAME}/{settings.VERSION}"},
    )
    logger.info("http_client_initialized", max_connections=100)


async def close_http_client() -> None:
    """Gracefully shuts down the global client, flushing its connection pool."""
    global _client
    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info("http_client_closed")
