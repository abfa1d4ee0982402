from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.ledger.api.v1.common import Scope, correlation_id, require_scope
from app.modules.ledger.api.v1.schemas import (
    ApproveRequest,
    DenyRequest,
    ExecuteRequest,
    ProposalCreateRequest,
)
from app.modules.ledger.domain.authority import AuthorityService, proposal_to_dict
from app.shared.db.session import get_db

router = APIRouter(tags=["Authority"])


@router.post("/proposals", status_code=status.HTTP_201_CREATED)
async def create_proposal(
    request: Request,
    payload: ProposalCreateRequest,
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await AuthorityService(db).create_proposal(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        title=payload.title,
        action=payload.action,
        proposal_type=payload.type,
        risk_tier=payload.risk_tier,
        amount=payload.amount,
        currency=payload.currency,
        description=payload.description,
        predicted_impact=payload.predicted_impact,
        dependencies=payload.dependencies,
        correlation_id=corr_id,
        idempotency_key=(request.headers.get("Idempotency-Key", "")[:128] or payload.idempotency_key),
    )
    body = proposal_to_dict(result.proposal)
    body["created"] = result.created
    return body


@router.get("/authority-queue")
async def list_authority_queue(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    scope: Scope = Depends(require_scope),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    proposals = await AuthorityService(db).list_queue(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        status=status_filter,
        limit=limit,
    )
    return {
        "proposals": [proposal_to_dict(p) for p in proposals],
        "total": len(proposals),
    }


@router.post("/authority-queue/{proposal_id}/approve")
async def approve_proposal(
    proposal_id: str,
    payload: ApproveRequest,
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await AuthorityService(db).approve(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        proposal_id=proposal_id,
        approved_by=payload.approved_by,
        correlation_id=corr_id,
    )
    return {
        "proposal": proposal_to_dict(result.proposal),
        "changed": result.changed,
        "receiptId": str(result.receipt_id) if result.receipt_id else None,
    }


@router.post("/authority-queue/{proposal_id}/deny")
async def deny_proposal(
    proposal_id: str,
    payload: DenyRequest,
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await AuthorityService(db).deny(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        proposal_id=proposal_id,
        denied_by=payload.denied_by,
        reason=payload.reason,
        correlation_id=corr_id,
    )
    return {
        "proposal": proposal_to_dict(result.proposal),
        "changed": result.changed,
        "receiptId": str(result.receipt_id) if result.receipt_id else None,
    }


@router.post("/actions/execute", status_code=status.HTTP_201_CREATED)
async def execute_action(
    payload: ExecuteRequest,
    scope: Scope = Depends(require_scope),
    corr_id: str = Depends(correlation_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await AuthorityService(db).execute(
        tenant_id=scope.tenant_id,
        office_id=scope.office_id,
        proposal_id=payload.proposal_id,
        approved_by=payload.approved_by,
        correlation_id=corr_id,
    )
    return result.to_dict()
