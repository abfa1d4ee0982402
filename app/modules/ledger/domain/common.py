from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(value: float | str) -> datetime | None:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_datetime(value: Any) -> datetime | None:
    """Accepts datetimes, ISO-8601 strings (with `Z`), dates and epoch seconds."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.isdigit():
        return _from_epoch(normalized)
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return as_utc(parsed)


def iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def minor_to_major(value: Any) -> Decimal | None:
    """Converts integer minor units (cents) into major units."""
    amount = to_decimal(value)
    if amount is None:
        return None
    return (amount / Decimal(100)).quantize(Decimal("0.01"))


def money(value: Any) -> float:
    """JSON-safe rendering of a monetary amount, rounded to cents."""
    amount = to_decimal(value, Decimal("0")) or Decimal("0")
    return float(amount.quantize(Decimal("0.01")))


def month_start(moment: datetime) -> datetime:
    moment = as_utc(moment)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def previous_month_start(moment: datetime) -> datetime:
    return month_start(month_start(moment) - timedelta(days=1))


def period_label(moment: datetime) -> str:
    return as_utc(moment).strftime("%Y-%m")
