"""
Receipt ledger.

Every state change writes one append-only receipt holding the sha256 of the
canonical JSON of its inputs and outputs. Verification recomputes both hashes
from caller-supplied payloads and compares them against the stored pair.

Two write paths exist:

- `add` stages a receipt inside the caller's transaction. Workflow transitions
  use it so that state change and receipt commit (or roll back) together.
- `record_best_effort` commits a receipt on its own after the primary write
  has already committed. A failure there is logged at critical level and
  counted, but does not fail the request.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import hashlib
import json
from typing import Any, Mapping
from uuid import UUID, uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.receipt import Receipt, ReceiptActionType
from app.modules.ledger.domain.common import iso_or_none
from app.shared.core.exceptions import ResourceNotFoundError
from app.shared.core.ops_metrics import RECEIPT_WRITE_FAILURES_TOTAL
from app.shared.core.tracing import get_correlation_id

logger = structlog.get_logger()


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Unsupported type for canonical json: {type(value)}")


def canonical_json(payload: Any) -> str:
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_default,
    )


def canonical_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def receipt_to_dict(receipt: Receipt) -> dict[str, Any]:
    return {
        "receiptId": str(receipt.id),
        "tenantId": receipt.tenant_id,
        "officeId": receipt.office_id,
        "actionType": receipt.action_type,
        "inputsHash": receipt.inputs_hash,
        "outputsHash": receipt.outputs_hash,
        "policyDecisionId": receipt.policy_decision_id,
        "correlationId": receipt.correlation_id,
        "metadata": dict(receipt.receipt_metadata or {}),
        "createdAt": iso_or_none(receipt.created_at),
    }


class ReceiptService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def add(
        self,
        *,
        tenant_id: str,
        office_id: str,
        action_type: ReceiptActionType | str,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
        policy_decision_id: str | None = None,
        correlation_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        receipt_id: UUID | None = None,
    ) -> Receipt:
        """Stages a receipt in the current transaction without committing."""
        receipt = Receipt(
            id=receipt_id or uuid4(),
            tenant_id=tenant_id,
            office_id=office_id,
            action_type=ReceiptActionType(action_type).value,
            inputs_hash=canonical_hash(dict(inputs)),
            outputs_hash=canonical_hash(dict(outputs)),
            policy_decision_id=policy_decision_id,
            correlation_id=correlation_id or get_correlation_id(),
            receipt_metadata=json.loads(canonical_json(dict(metadata or {}))),
        )
        self.db.add(receipt)
        return receipt

    async def record_best_effort(
        self,
        *,
        tenant_id: str,
        office_id: str,
        action_type: ReceiptActionType | str,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
        policy_decision_id: str | None = None,
        correlation_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        receipt_id: UUID | None = None,
    ) -> Receipt | None:
        action = ReceiptActionType(action_type).value
        try:
            receipt = self.add(
                tenant_id=tenant_id,
                office_id=office_id,
                action_type=action,
                inputs=inputs,
                outputs=outputs,
                policy_decision_id=policy_decision_id,
                correlation_id=correlation_id,
                metadata=metadata,
                receipt_id=receipt_id,
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            RECEIPT_WRITE_FAILURES_TOTAL.labels(action_type=action).inc()
            logger.critical(
                "receipt_write_failed",
                action_type=action,
                tenant_id=tenant_id,
                office_id=office_id,
                receipt_id=str(receipt_id) if receipt_id else None,
                error=str(exc),
            )
            return None
        return receipt

    async def get(self, *, tenant_id: str, office_id: str, receipt_id: UUID) -> Receipt:
        receipt = (
            await self.db.execute(
                select(Receipt).where(
                    Receipt.id == receipt_id,
                    Receipt.tenant_id == tenant_id,
                    Receipt.office_id == office_id,
                )
            )
        ).scalar_one_or_none()
        if receipt is None:
            raise ResourceNotFoundError(f"Receipt {receipt_id} not found")
        return receipt

    async def verify(
        self,
        *,
        tenant_id: str,
        office_id: str,
        receipt_id: UUID,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
    ) -> bool:
        receipt = await self.get(
            tenant_id=tenant_id, office_id=office_id, receipt_id=receipt_id
        )
        valid = (
            canonical_hash(dict(inputs)) == receipt.inputs_hash
            and canonical_hash(dict(outputs)) == receipt.outputs_hash
        )
        logger.info(
            "receipt_verified",
            receipt_id=str(receipt_id),
            action_type=receipt.action_type,
            valid=valid,
        )
        return valid

    async def list_for_scope(
        self, *, tenant_id: str, office_id: str, limit: int = 50
    ) -> list[Receipt]:
        rows = await self.db.execute(
            select(Receipt)
            .where(Receipt.tenant_id == tenant_id, Receipt.office_id == office_id)
            .order_by(Receipt.created_at.desc())
            .limit(max(1, min(limit, 200)))
        )
        return list(rows.scalars().all())
