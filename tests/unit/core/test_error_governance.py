import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import (
    ConfigurationError,
    FinledgerException,
    PersistenceError,
    UpstreamProviderError,
)


def _app(exc: Exception) -> FastAPI:
    app = FastAPI()

    @app.exception_handler(Exception)
    async def _handler(request, error):
        return handle_exception(request, error)

    @app.exception_handler(FinledgerException)
    async def _ledger_handler(request, error):
        return handle_exception(request, error)

    @app.get("/boom")
    async def boom():
        raise exc

    return app


async def _call(exc: Exception):
    transport = ASGITransport(app=_app(exc), raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get("/boom")


@pytest.mark.asyncio
async def test_ledger_exception_envelope():
    response = await _call(PersistenceError("Failed to persist stripe events", details={"provider": "stripe"}))
    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "persistence_failure"
    assert error["retryable"] is True
    assert error["details"] == {"durable": False, "provider": "stripe"}
    assert error["id"]


@pytest.mark.asyncio
async def test_upstream_reauth_is_not_retryable():
    response = await _call(UpstreamProviderError("plaid returned HTTP 401", provider="plaid", reauth_required=True))
    assert response.status_code == 502
    assert response.json()["error"]["retryable"] is False
    assert response.json()["error"]["details"]["provider"] == "plaid"


@pytest.mark.asyncio
async def test_unclassified_errors_are_sanitized():
    response = await _call(RuntimeError("secret connection string"))
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "internal_error"
    assert "secret" not in error["message"]
    assert error["details"] is None


@pytest.mark.asyncio
async def test_production_hides_unsafe_codes(monkeypatch):
    from app.shared.core import error_governance

    class _Prod:
        ENVIRONMENT = "production"

    monkeypatch.setattr(error_governance, "get_settings", lambda: _Prod())
    response = await _call(ConfigurationError("DATABASE_URL leaked", details={"url": "postgres://x"}))
    error = response.json()["error"]
    assert error["message"] == "An error occurred while processing your request"
    assert error["details"] is None


@pytest.mark.asyncio
async def test_value_error_maps_to_bad_request():
    response = await _call(ValueError("amount must be numeric"))
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "amount must be numeric"
