import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import FinledgerException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import CorrelationIDMiddleware, SecurityHeadersMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import create_all_tables, get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    if settings.AUTO_CREATE_TABLES:
        await create_all_tables()

    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


finledger_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn resolves `app.main:app` by default.
app: FastAPI = finledger_app
__all__ = ["app", "finledger_app", "lifespan"]


@finledger_app.exception_handler(FinledgerException)
async def finledger_exception_handler(
    request: Request, exc: FinledgerException
) -> JSONResponse:
    return handle_exception(request, exc)


@finledger_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with the standard error envelope."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "HTTP_ERROR",
                "id": None,
                "retryable": False,
                "details": None,
            }
        },
    )


@finledger_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "VALIDATION_ERROR",
                "id": None,
                "retryable": False,
                "details": {"errors": _sanitize_errors(exc.errors())},
            }
        },
    )


@finledger_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return handle_exception(request, exc)


@finledger_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Sanitized 500 for anything unclassified; the trace keeps the detail."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    finledger_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

Instrumentator().instrument(finledger_app).expose(finledger_app)

# Middleware runs in reverse order of addition; CORS goes last so it runs first.
finledger_app.add_middleware(SecurityHeadersMiddleware)
finledger_app.add_middleware(CorrelationIDMiddleware)

cors_allowed_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
if len(cors_allowed_origins) != len(settings.CORS_ORIGINS):
    logger.error("insecure_cors_config_detected", msg="wildcard origin dropped")
finledger_app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-Tenant-ID",
        "X-Office-ID",
        "X-Correlation-ID",
        "Idempotency-Key",
    ],
)

register_api_routers(finledger_app)
