"""
Connection registry.

One row per (tenant, office, provider) tracking link health, sync timestamps,
the last failure and consecutive failure count. Rows are created on first
contact and never deleted by ingestion.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.finance_connection import ConnectionStatus, FinanceConnection, SyncCursor
from app.modules.ledger.domain.common import as_utc, iso_or_none, utcnow
from app.modules.ledger.domain.events import dialect_insert

logger = structlog.get_logger()

FRESH_SECONDS = 5 * 60
STALE_SECONDS = 60 * 60
VERY_STALE_SECONDS = 24 * 60 * 60

_LAST_ERROR_MAX_CHARS = 1000


@dataclass(frozen=True)
class StalenessEntry:
    provider: str
    status: str
    stale_seconds: int | None
    last_sync_at: datetime | None
    last_webhook_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastSyncAt": iso_or_none(self.last_sync_at),
            "lastWebhookAt": iso_or_none(self.last_webhook_at),
            "staleSeconds": self.stale_seconds,
            "status": self.status,
        }


def last_data_at(connection: FinanceConnection) -> datetime | None:
    candidates = [
        as_utc(value)
        for value in (connection.last_sync_at, connection.last_webhook_at)
        if value is not None
    ]
    return max(candidates) if candidates else None


def classify_staleness(connection: FinanceConnection, now: datetime) -> StalenessEntry:
    last_data = last_data_at(connection)
    if last_data is None or connection.status != ConnectionStatus.CONNECTED.value:
        status = "offline"
        stale_seconds: int | None = None
    else:
        stale_seconds = max(0, int((as_utc(now) - last_data).total_seconds()))
        if stale_seconds < FRESH_SECONDS:
            status = "fresh"
        elif stale_seconds < STALE_SECONDS:
            status = "stale"
        elif stale_seconds < VERY_STALE_SECONDS:
            status = "very_stale"
        else:
            status = "offline"
    return StalenessEntry(
        provider=connection.provider,
        status=status,
        stale_seconds=stale_seconds,
        last_sync_at=as_utc(connection.last_sync_at) if connection.last_sync_at else None,
        last_webhook_at=(
            as_utc(connection.last_webhook_at) if connection.last_webhook_at else None
        ),
    )


def compute_staleness(
    connections: Sequence[FinanceConnection], now: datetime
) -> dict[str, dict[str, Any]]:
    return {
        conn.provider: classify_staleness(conn, now).to_dict()
        for conn in sorted(connections, key=lambda c: c.provider)
    }


def next_step(connection: FinanceConnection) -> str | None:
    if connection.status == ConnectionStatus.DISCONNECTED.value:
        return "reconnect"
    if connection.status == ConnectionStatus.NEEDS_REAUTH.value:
        return "reauthorize"
    if connection.status == ConnectionStatus.PENDING.value:
        return "complete_setup"
    return None


class ConnectionRegistry:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list(self, *, tenant_id: str, office_id: str) -> list[FinanceConnection]:
        rows = await self.db.execute(
            select(FinanceConnection)
            .where(
                FinanceConnection.tenant_id == tenant_id,
                FinanceConnection.office_id == office_id,
            )
            .order_by(FinanceConnection.provider.asc())
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def get(
        self, *, tenant_id: str, office_id: str, provider: str
    ) -> FinanceConnection | None:
        return (
            await self.db.execute(
                select(FinanceConnection)
                .where(
                    FinanceConnection.tenant_id == tenant_id,
                    FinanceConnection.office_id == office_id,
                    FinanceConnection.provider == provider,
                )
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

    async def find_by_external_account(
        self, *, provider: str, external_account_id: str
    ) -> FinanceConnection | None:
        rows = await self.db.execute(
            select(FinanceConnection)
            .where(
                FinanceConnection.provider == provider,
                FinanceConnection.external_account_id == external_account_id,
            )
            .order_by(FinanceConnection.updated_at.desc())
            .limit(1)
        )
        return rows.scalars().first()

    async def _ensure_row(self, *, tenant_id: str, office_id: str, provider: str) -> None:
        insert = dialect_insert(self.db)
        now = utcnow()
        await self.db.execute(
            insert(FinanceConnection.__table__)
            .values(
                tenant_id=tenant_id,
                office_id=office_id,
                provider=provider,
                status=ConnectionStatus.PENDING.value,
                consecutive_failures=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["tenant_id", "office_id", "provider"])
        )

    async def record_success(
        self,
        *,
        tenant_id: str,
        office_id: str,
        provider: str,
        mode: str,
        external_account_id: str | None = None,
        at: datetime | None = None,
    ) -> None:
        """Marks the connection healthy. Does not commit."""
        await self._ensure_row(tenant_id=tenant_id, office_id=office_id, provider=provider)
        now = at or utcnow()
        values: dict[str, Any] = {
            "status": ConnectionStatus.CONNECTED.value,
            "last_error": None,
            "last_error_at": None,
            "consecutive_failures": 0,
            "updated_at": now,
        }
        if mode == "webhook":
            values["last_webhook_at"] = now
        else:
            values["last_sync_at"] = now
        if external_account_id:
            values["external_account_id"] = external_account_id
        await self.db.execute(
            update(FinanceConnection)
            .where(
                FinanceConnection.tenant_id == tenant_id,
                FinanceConnection.office_id == office_id,
                FinanceConnection.provider == provider,
            )
            .values(**values)
        )

    async def record_failure(
        self,
        *,
        tenant_id: str,
        office_id: str,
        provider: str,
        error: str,
        reauth_required: bool = False,
    ) -> None:
        """Records a failed provider call without touching sync timestamps. Does not commit."""
        await self._ensure_row(tenant_id=tenant_id, office_id=office_id, provider=provider)
        now = utcnow()
        values: dict[str, Any] = {
            "last_error": error[:_LAST_ERROR_MAX_CHARS],
            "last_error_at": now,
            "consecutive_failures": FinanceConnection.consecutive_failures + 1,
            "updated_at": now,
        }
        if reauth_required:
            values["status"] = ConnectionStatus.NEEDS_REAUTH.value
        await self.db.execute(
            update(FinanceConnection)
            .where(
                FinanceConnection.tenant_id == tenant_id,
                FinanceConnection.office_id == office_id,
                FinanceConnection.provider == provider,
            )
            .values(**values)
        )
        logger.warning(
            "provider_failure_recorded",
            provider=provider,
            reauth_required=reauth_required,
        )

    async def get_cursor(
        self, *, tenant_id: str, office_id: str, provider: str
    ) -> str | None:
        return (
            await self.db.execute(
                select(SyncCursor.cursor).where(
                    SyncCursor.tenant_id == tenant_id,
                    SyncCursor.office_id == office_id,
                    SyncCursor.provider == provider,
                )
            )
        ).scalar_one_or_none()

    async def save_cursor(
        self, *, tenant_id: str, office_id: str, provider: str, cursor: str
    ) -> None:
        """Does not commit."""
        insert = dialect_insert(self.db)
        now = utcnow()
        stmt = insert(SyncCursor.__table__).values(
            tenant_id=tenant_id,
            office_id=office_id,
            provider=provider,
            cursor=cursor,
            updated_at=now,
        )
        await self.db.execute(
            stmt.on_conflict_do_update(
                index_elements=["tenant_id", "office_id", "provider"],
                set_={"cursor": cursor, "updated_at": now},
            )
        )


def connection_to_dict(connection: FinanceConnection, now: datetime) -> dict[str, Any]:
    staleness = classify_staleness(connection, now)
    return {
        "id": str(connection.id),
        "provider": connection.provider,
        "status": connection.status,
        "externalAccountId": connection.external_account_id,
        "lastSyncAt": iso_or_none(connection.last_sync_at),
        "lastWebhookAt": iso_or_none(connection.last_webhook_at),
        "lastError": connection.last_error,
        "lastErrorAt": iso_or_none(connection.last_error_at),
        "consecutiveFailures": connection.consecutive_failures,
        "staleness": staleness.status,
        "staleSeconds": staleness.stale_seconds,
        "nextStep": next_step(connection),
    }
