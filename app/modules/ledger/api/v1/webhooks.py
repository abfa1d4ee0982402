from typing import Any

from fastapi import APIRouter, Depends, Request

from app.modules.ledger.api.v1.common import Scope, correlation_id, optional_scope
from app.modules.ledger.api.v1.deps import get_ingestion_service
from app.modules.ledger.domain.ingestion import IngestionService

router = APIRouter(tags=["Webhooks"])


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    scope: Scope | None = Depends(optional_scope),
    corr_id: str = Depends(correlation_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    """
    The signature covers the exact bytes on the wire, so the body is read
    raw rather than through a pydantic model.
    """
    body = await request.body()
    result = await service.ingest_webhook(
        provider=provider,
        body=body,
        headers=dict(request.headers),
        tenant_id=scope.tenant_id if scope else None,
        office_id=scope.office_id if scope else None,
        correlation_id=corr_id,
    )
    return {"received": True, **result.to_dict()}
