from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.finance_event import EventStatus, FinanceEvent
from app.modules.ledger.domain.common import as_utc, iso_or_none, money, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class CanonicalEvent:
    """A provider payload item after normalization, before it is persisted."""

    provider: str
    provider_event_id: str
    event_type: str
    occurred_at: datetime
    raw_hash: str
    amount: Decimal | None = None
    currency: str = "usd"
    status: str = EventStatus.POSTED.value
    entity_refs: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


def dialect_insert(db: AsyncSession) -> Any:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"insert-ignore is not supported on {dialect}")


async def insert_events(
    db: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    events: Iterable[CanonicalEvent],
    receipt_id: UUID | None = None,
) -> tuple[list[UUID], int]:
    """
    Insert-ignore each event on the (tenant, office, provider, provider_event_id)
    key. Returns the ids of new rows and the number of duplicates skipped.

    Does not commit.
    """
    insert = dialect_insert(db)
    table = FinanceEvent.__table__
    written: list[UUID] = []
    skipped = 0
    for event in events:
        stmt = (
            insert(table)
            .values(
                tenant_id=tenant_id,
                office_id=office_id,
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                event_type=event.event_type,
                occurred_at=as_utc(event.occurred_at),
                amount=event.amount,
                currency=(event.currency or "usd").lower(),
                status=event.status,
                entity_refs=dict(event.entity_refs),
                metadata=dict(event.metadata),
                raw_hash=event.raw_hash,
                receipt_id=receipt_id,
            )
            .on_conflict_do_nothing(
                index_elements=["tenant_id", "office_id", "provider", "provider_event_id"]
            )
            .returning(table.c.id)
        )
        new_id = (await db.execute(stmt)).scalar_one_or_none()
        if new_id is None:
            skipped += 1
        else:
            written.append(new_id)
    return written, skipped


async def get_event_by_provider_id(
    db: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    provider: str,
    provider_event_id: str,
) -> FinanceEvent | None:
    return (
        await db.execute(
            select(FinanceEvent).where(
                FinanceEvent.tenant_id == tenant_id,
                FinanceEvent.office_id == office_id,
                FinanceEvent.provider == provider,
                FinanceEvent.provider_event_id == provider_event_id,
            )
        )
    ).scalar_one_or_none()


async def load_events_since(
    db: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    since: datetime,
    event_types: Sequence[str] | None = None,
) -> list[FinanceEvent]:
    query = select(FinanceEvent).where(
        FinanceEvent.tenant_id == tenant_id,
        FinanceEvent.office_id == office_id,
        FinanceEvent.occurred_at >= since,
    )
    if event_types:
        query = query.where(FinanceEvent.event_type.in_(list(event_types)))
    rows = await db.execute(query.order_by(FinanceEvent.occurred_at.asc()))
    return list(rows.scalars().all())


async def list_timeline(
    db: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    days: int,
    limit: int,
    offset: int,
    now: datetime | None = None,
) -> tuple[list[FinanceEvent], int]:
    since = (now or utcnow()) - timedelta(days=days)
    scope = (
        FinanceEvent.tenant_id == tenant_id,
        FinanceEvent.office_id == office_id,
        FinanceEvent.occurred_at >= since,
    )
    total = (
        await db.execute(select(func.count()).select_from(FinanceEvent).where(*scope))
    ).scalar_one()
    rows = await db.execute(
        select(FinanceEvent)
        .where(*scope)
        .order_by(FinanceEvent.occurred_at.desc(), FinanceEvent.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(rows.scalars().all()), int(total or 0)


def event_to_dict(event: FinanceEvent) -> dict[str, Any]:
    return {
        "eventId": str(event.id),
        "provider": event.provider,
        "providerEventId": event.provider_event_id,
        "eventType": event.event_type,
        "occurredAt": iso_or_none(event.occurred_at),
        "amount": money(event.amount) if event.amount is not None else None,
        "currency": event.currency,
        "status": event.status,
        "entityRefs": dict(event.entity_refs or {}),
        "metadata": dict(event.event_metadata or {}),
        "receiptId": str(event.receipt_id) if event.receipt_id else None,
    }
