from __future__ import annotations

import re
from dataclasses import dataclass

from fastapi import Header, Request

from app.shared.core.exceptions import InvalidRequestError
from app.shared.core.tracing import ensure_correlation_id

_SCOPE_MAX_LENGTH = 64
_RANGE_PATTERN = re.compile(r"^(\d{1,3})d$")
MAX_RANGE_DAYS = 365


@dataclass(frozen=True)
class Scope:
    tenant_id: str
    office_id: str


def _clean_scope_value(value: str | None, header: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidRequestError(f"{header} header is required", details={"header": header})
    if len(cleaned) > _SCOPE_MAX_LENGTH:
        raise InvalidRequestError(
            f"{header} header is too long", details={"header": header, "max": _SCOPE_MAX_LENGTH}
        )
    return cleaned


def require_scope(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_office_id: str | None = Header(default=None, alias="X-Office-ID"),
) -> Scope:
    return Scope(
        tenant_id=_clean_scope_value(x_tenant_id, "X-Tenant-ID"),
        office_id=_clean_scope_value(x_office_id, "X-Office-ID"),
    )


def optional_scope(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_office_id: str | None = Header(default=None, alias="X-Office-ID"),
) -> Scope | None:
    if not (x_tenant_id or "").strip() or not (x_office_id or "").strip():
        return None
    return require_scope(x_tenant_id, x_office_id)


def correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or ensure_correlation_id()


def parse_range_days(value: str) -> int:
    """Parses `Nd` timeline ranges, 1 to 365 days."""
    match = _RANGE_PATTERN.match(value.strip())
    days = int(match.group(1)) if match else 0
    if not 1 <= days <= MAX_RANGE_DAYS:
        raise InvalidRequestError(
            "range must look like '30d' with 1 to 365 days", details={"range": value}
        )
    return days
