from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.finance_event import BANK_BALANCE_UPDATED, PAYMENT_SUCCEEDED
from app.models.finance_snapshot import FinanceSnapshot
from app.models.receipt import Receipt
from app.modules.ledger.domain.snapshot import SnapshotService
from app.shared.core.exceptions import PersistenceError
from tests.factories import OFFICE_ID, TENANT_ID, make_connection, make_event

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


async def _seed_connected(db) -> None:
    db.add(make_connection("plaid", last_sync_at=NOW - timedelta(minutes=1)))
    db.add(
        make_event(
            BANK_BALANCE_UPDATED,
            occurred_at=NOW - timedelta(hours=1),
            amount=5000,
            provider="plaid",
        )
    )
    db.add(make_event(PAYMENT_SUCCEEDED, occurred_at=NOW - timedelta(days=2), amount=400))
    await db.commit()


async def _snapshot_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(FinanceSnapshot))).scalar_one()


@pytest.mark.asyncio
async def test_compute_persists_snapshot_and_receipt(db) -> None:
    await _seed_connected(db)
    snapshot = await SnapshotService(db).compute_snapshot(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW, correlation_id="corr_snap"
    )

    assert snapshot["connected"] is True
    assert snapshot["generatedAt"] == NOW.isoformat()
    assert snapshot["chapters"]["now"]["bankBalance"] == 5000.0
    assert snapshot["chapters"]["month"]["revenue"] == 400.0
    assert snapshot["staleness"]["plaid"]["status"] == "fresh"

    row = await db.get(FinanceSnapshot, UUID(snapshot["snapshotId"]))
    assert row is not None
    receipt = await db.get(Receipt, UUID(snapshot["receiptId"]))
    assert receipt.action_type == "compute_snapshot"
    assert receipt.correlation_id == "corr_snap"
    assert receipt.receipt_metadata["snapshotId"] == snapshot["snapshotId"]


@pytest.mark.asyncio
async def test_compute_ignores_other_scopes(db) -> None:
    await _seed_connected(db)
    db.add(
        make_event(
            PAYMENT_SUCCEEDED,
            occurred_at=NOW - timedelta(days=1),
            amount=9999,
            tenant_id="tenant-b",
        )
    )
    await db.commit()

    snapshot = await SnapshotService(db).compute_snapshot(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW
    )
    assert snapshot["chapters"]["month"]["revenue"] == 400.0


@pytest.mark.asyncio
async def test_compute_write_failure_raises_persistence_error(db) -> None:
    await _seed_connected(db)
    service = SnapshotService(db)
    failure = OperationalError("INSERT", {}, Exception("disk full"))
    with patch.object(db, "commit", AsyncMock(side_effect=failure)):
        with pytest.raises(PersistenceError):
            await service.compute_snapshot(tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW)


@pytest.mark.asyncio
async def test_get_snapshot_without_connection_returns_empty(db) -> None:
    snapshot, connected = await SnapshotService(db).get_snapshot(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW
    )
    assert connected is False
    assert snapshot["snapshotId"] is None
    assert snapshot["chapters"]["reconcile"]["mismatchCount"] == 0
    assert await _snapshot_count(db) == 0


@pytest.mark.asyncio
async def test_get_snapshot_serves_cache_until_expired(db) -> None:
    await _seed_connected(db)
    service = SnapshotService(db)

    first, connected = await service.get_snapshot(tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW)
    assert connected is True
    assert first["snapshotId"] is not None

    cached, _ = await service.get_snapshot(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW + timedelta(seconds=60)
    )
    assert cached["snapshotId"] == first["snapshotId"]

    refreshed, _ = await service.get_snapshot(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW + timedelta(minutes=10)
    )
    assert refreshed["snapshotId"] != first["snapshotId"]
    assert await _snapshot_count(db) == 2


@pytest.mark.asyncio
async def test_get_snapshot_falls_back_to_cached_on_compute_failure(db) -> None:
    await _seed_connected(db)
    service = SnapshotService(db)
    first = await service.compute_snapshot(tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW)

    with patch.object(
        service,
        "compute_snapshot",
        AsyncMock(side_effect=PersistenceError("Failed to compute snapshot")),
    ):
        snapshot, connected = await service.get_snapshot(
            tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW + timedelta(hours=1)
        )
    assert connected is True
    assert snapshot["snapshotId"] == first["snapshotId"]


@pytest.mark.asyncio
async def test_compute_rolls_back_snapshot_when_receipt_write_fails(db) -> None:
    await _seed_connected(db)
    service = SnapshotService(db)
    failure = OperationalError("INSERT", {}, Exception("receipts table locked"))
    with patch.object(service.receipts, "add", side_effect=failure):
        with pytest.raises(PersistenceError) as exc_info:
            await service.compute_snapshot(tenant_id=TENANT_ID, office_id=OFFICE_ID, now=NOW)

    assert exc_info.value.retryable
    assert await _snapshot_count(db) == 0
    receipts = (await db.execute(select(func.count()).select_from(Receipt))).scalar_one()
    assert receipts == 0
