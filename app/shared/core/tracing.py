"""
Correlation id propagation.

Every request, ingestion run and workflow transition carries a correlation id
that is bound into structlog contextvars and threaded into receipts.
"""

from contextvars import ContextVar
from typing import Optional
import uuid

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return f"corr_{uuid.uuid4().hex}"


def set_correlation_id(correlation_id: Optional[str]) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def ensure_correlation_id() -> str:
    """Returns the active correlation id, generating one for out-of-request work."""
    current = _correlation_id.get()
    if current:
        return current
    generated = new_correlation_id()
    _correlation_id.set(generated)
    return generated
