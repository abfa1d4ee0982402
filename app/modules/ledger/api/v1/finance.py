from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.receipt import ReceiptActionType
from app.modules.ledger.api.v1.authority import router as authority_router
from app.modules.ledger.api.v1.common import (
    Scope,
    correlation_id,
    parse_range_days,
    require_scope,
)
from app.modules.ledger.api.v1.deps import get_ingestion_service
from app.modules.ledger.api.v1.schemas import IngestRequest, ReceiptVerifyRequest, SyncRequest
from app.modules.ledger.api.v1.webhooks import router as webhooks_router
from app.modules.ledger.domain.common import iso_or_none, utcnow
from app.modules.ledger.domain.events import event_to_dict, list_timeline
from app.modules.ledger.domain.finance_exceptions import derive_exceptions
from app.modules.ledger.domain.ingestion import MODE_DIRECT, IngestionService
from app.modules.ledger.domain.insights import InsightsService
from app.modules.ledger.domain.receipts import ReceiptService, receipt_to_dict
from app.modules.ledger.domain.snapshot import SnapshotService
from app.shared.core.exceptions import InvalidRequestError
from app.shared.db.session import get_db

router = APIRouter(tags=["Finance"])


def _receipt_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise InvalidRequestError("receipt id must be a UUID", details={"receiptId": value}) from exc


@router.get("/snapshot")
async def get_snapshot(
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    snapshot, connected = await SnapshotService(db).get_snapshot(
        tenant_id=scope.tenant_id, office_id=scope.office_id
    )
    return {"snapshot": snapshot, "connected": connected}


@router.post("/compute-snapshot")
async def compute_snapshot(
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    snapshot = await SnapshotService(db).compute_snapshot(
        tenant_id=scope.tenant_id, office_id=scope.office_id, correlation_id=corr_id
    )
    return {"snapshot": snapshot, "connected": snapshot.get("connected", False)}


@router.get("/timeline")
async def get_timeline(
    range_: str = Query(default="30d", alias="range"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    events, total = await list_timeline(
        db,
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        days=parse_range_days(range_),
        limit=limit,
        offset=offset,
    )
    return {
        "events": [event_to_dict(e) for e in events],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/explain")
async def explain_metric(
    metric_id: str | None = Query(default=None, alias="metricId"),
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await InsightsService(db).explain(
        tenant_id=scope.tenant_id, office_id=scope.office_id, metric_id=metric_id
    )


@router.get("/connections/status")
async def connections_status(
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await InsightsService(db).connections_status(
        tenant_id=scope.tenant_id, office_id=scope.office_id
    )


@router.get("/lifecycle")
async def entity_lifecycle(
    entity_id: str | None = Query(default=None, alias="entityId", max_length=255),
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await InsightsService(db).lifecycle(
        tenant_id=scope.tenant_id, office_id=scope.office_id, entity_id=entity_id
    )


@router.get("/exceptions")
async def list_exceptions(
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    snapshot, _ = await SnapshotService(db).get_snapshot(
        tenant_id=scope.tenant_id, office_id=scope.office_id
    )
    exceptions = derive_exceptions(snapshot)
    as_of = snapshot.get("generatedAt") or iso_or_none(utcnow())
    receipt = await ReceiptService(db).record_best_effort(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        action_type=ReceiptActionType.READ_EXCEPTIONS,
        inputs={
            "tenant": scope.tenant_id,
            "office": scope.office_id,
            "snapshotId": snapshot.get("snapshotId"),
        },
        outputs={"exceptionIds": [e["id"] for e in exceptions]},
        correlation_id=corr_id,
    )
    return {
        "exceptions": exceptions,
        "as_of": as_of,
        "correlation_id": corr_id,
        "receipt_id": str(receipt.id) if receipt else None,
    }


@router.get("/receipts")
async def list_receipts(
    limit: int = Query(default=50, ge=1, le=200),
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    receipts = await ReceiptService(db).list_for_scope(
        tenant_id=scope.tenant_id, office_id=scope.office_id, limit=limit
    )
    return {"receipts": [receipt_to_dict(r) for r in receipts]}


@router.post("/receipts/{receipt_id}/verify")
async def verify_receipt(
    receipt_id: str,
    payload: ReceiptVerifyRequest,
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    valid = await ReceiptService(db).verify(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        receipt_id=_receipt_uuid(receipt_id),
        inputs=payload.inputs,
        outputs=payload.outputs,
    )
    return {"receiptId": receipt_id, "valid": valid}


@router.post("/sync")
async def sync_providers(
    payload: SyncRequest | None = None,
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    report = await service.sync_all(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        providers=payload.providers if payload else None,
        correlation_id=corr_id,
    )
    return report.to_dict()


@router.post("/ingest/{provider}")
async def ingest_items(
    provider: str,
    payload: IngestRequest,
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    result = await service.ingest(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        provider=provider,
        raw_items=payload.items,
        mode=MODE_DIRECT,
        external_account_id=payload.external_account_id,
        correlation_id=corr_id,
    )
    return result.to_dict()


router.include_router(authority_router)
router.include_router(webhooks_router)
