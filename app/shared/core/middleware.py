from collections.abc import Awaitable, Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from fastapi import Request
import structlog
from app.shared.core.tracing import new_correlation_id, set_correlation_id

CORRELATION_HEADER = "X-Correlation-ID"
_MAX_CORRELATION_ID_LENGTH = 128


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        if "X-Content-Type-Options" not in response.headers:
            response.headers["X-Content-Type-Options"] = "nosniff"
        if "X-Frame-Options" not in response.headers:
            response.headers["X-Frame-Options"] = "DENY"
        if "Cache-Control" not in response.headers:
            # Financial responses are tenant-specific
            response.headers["Cache-Control"] = "no-store"
        return response


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Accepts X-Correlation-ID (or X-Request-ID) from the caller, generating one
    when absent, binds it into structlog contextvars and echoes it back.
    NOTE: the header is trusted for tracing only, never as a security principal.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        raw = (
            request.headers.get(CORRELATION_HEADER)
            or request.headers.get("X-Request-ID")
            or ""
        ).strip()
        correlation_id = raw[:_MAX_CORRELATION_ID_LENGTH] if raw else new_correlation_id()

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
