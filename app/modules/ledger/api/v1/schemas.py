from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ProposalCreateRequest(_CamelRequest):
    title: str | None = Field(default=None, max_length=200)
    action: str | None = Field(default=None, max_length=200)
    type: str | None = Field(default=None, max_length=64)
    risk_tier: str = Field(default="yellow", alias="riskTier", max_length=16)
    amount: Decimal | None = None
    currency: str = Field(default="usd", min_length=3, max_length=8)
    description: str | None = Field(default=None, max_length=2000)
    predicted_impact: str | None = Field(default=None, alias="predictedImpact", max_length=500)
    dependencies: list[str] = Field(default_factory=list)
    idempotency_key: str | None = Field(
        default=None, alias="idempotencyKey", min_length=1, max_length=128
    )


class ExecuteRequest(_CamelRequest):
    proposal_id: str = Field(..., alias="proposalId", min_length=1, max_length=255)
    approved_by: str = Field(..., alias="approvedBy", min_length=1, max_length=128)


class ApproveRequest(_CamelRequest):
    approved_by: str = Field(..., alias="approvedBy", min_length=1, max_length=128)


class DenyRequest(_CamelRequest):
    denied_by: str = Field(..., alias="deniedBy", min_length=1, max_length=128)
    reason: str | None = Field(default=None, max_length=1000)


class ReceiptVerifyRequest(_CamelRequest):
    inputs: dict[str, Any]
    outputs: dict[str, Any]


class IngestRequest(_CamelRequest):
    items: list[dict[str, Any]] = Field(..., max_length=1000)
    external_account_id: str | None = Field(
        default=None, alias="externalAccountId", max_length=255
    )


class SyncRequest(_CamelRequest):
    providers: list[str] | None = None
