"""
Tests for app/shared/core/middleware.py - FastAPI middleware
"""
import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from app.shared.core.middleware import (
    CORRELATION_HEADER,
    CorrelationIDMiddleware,
    SecurityHeadersMiddleware,
)
from app.shared.core.tracing import get_correlation_id


@pytest.fixture
def echo_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    @app.get("/echo")
    async def echo(request: Request) -> dict:
        return {
            "state": request.state.correlation_id,
            "context": get_correlation_id(),
        }

    return app


async def _get(app: FastAPI, headers: dict | None = None):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get("/echo", headers=headers or {})


class TestCorrelationIDMiddleware:
    @pytest.mark.asyncio
    async def test_generates_id_when_absent(self, echo_app):
        response = await _get(echo_app)
        generated = response.headers[CORRELATION_HEADER]
        assert generated.startswith("corr_")
        assert response.json() == {"state": generated, "context": generated}

    @pytest.mark.asyncio
    async def test_preserves_caller_id(self, echo_app):
        response = await _get(echo_app, {CORRELATION_HEADER: "corr-from-caller"})
        assert response.headers[CORRELATION_HEADER] == "corr-from-caller"
        assert response.json()["state"] == "corr-from-caller"

    @pytest.mark.asyncio
    async def test_accepts_request_id_alias(self, echo_app):
        response = await _get(echo_app, {"X-Request-ID": "req-7"})
        assert response.headers[CORRELATION_HEADER] == "req-7"

    @pytest.mark.asyncio
    async def test_truncates_oversized_ids(self, echo_app):
        response = await _get(echo_app, {CORRELATION_HEADER: "c" * 500})
        assert len(response.headers[CORRELATION_HEADER]) == 128


class TestSecurityHeadersMiddleware:
    @pytest.mark.asyncio
    async def test_sets_security_headers(self, echo_app):
        response = await _get(echo_app)
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"
        assert "Strict-Transport-Security" not in response.headers
