"""
Unified Error Governance

Centrally handles exception classification, structured logging,
and OpenTelemetry span recording so every failure carries a stable code.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from app.shared.core.config import get_settings
from app.shared.core.exceptions import FinledgerException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Codes whose message and details are safe to return verbatim in production.
SAFE_CODES = {
    "validation_error",
    "invalid_signature",
    "not_found",
    "conflict",
    "policy_denied",
    "upstream_failure",
    "persistence_failure",
}


def error_payload(
    exc: FinledgerException, error_id: str, details: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    return {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "id": error_id,
            "retryable": exc.retryable,
            "details": details if details else None,
        }
    }


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())

    # 1. Classification & Sanitization
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, FinledgerException):
        ledger_exc = exc
        if is_prod and ledger_exc.code not in SAFE_CODES:
            ledger_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        msg = "Invalid request parameters" if is_prod else str(exc)
        ledger_exc = FinledgerException(
            message=msg,
            code="validation_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        ledger_exc = FinledgerException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    # 2. OTel Recording
    with tracer.start_as_current_span("handle_exception") as span:
        span.set_attribute("error.id", error_id)
        span.set_attribute("error.code", ledger_exc.code)
        span.set_attribute("http.path", request.url.path)
        span.set_attribute("http.method", request.method)
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, ledger_exc.code))

    # 3. Metrics
    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=ledger_exc.status_code,
    ).inc()

    # 4. Structured Logging
    log = logger.error if ledger_exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_id=error_id,
        code=ledger_exc.code,
        message=ledger_exc.message,
        status_code=ledger_exc.status_code,
        retryable=ledger_exc.retryable,
        path=request.url.path,
        details=ledger_exc.details,
    )

    response_details: Optional[Dict[str, Any]] = ledger_exc.details
    if is_prod and ledger_exc.code not in SAFE_CODES:
        response_details = None

    return JSONResponse(
        status_code=ledger_exc.status_code,
        content=error_payload(ledger_exc, error_id, response_details),
    )
