from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from app.modules.ledger.domain.common import iso_or_none, to_decimal, utcnow
from app.shared.core.config import Settings, get_settings

POLICY_EVALUATOR = "finledger_policy_v1"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class PolicyDecision:
    decision_id: str
    risk_tier: RiskTier
    approved: bool
    amount: Decimal
    evaluated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "policyDecisionId": self.decision_id,
            "riskTier": self.risk_tier.value,
            "approved": self.approved,
            "amount": str(self.amount),
            "evaluatedAt": iso_or_none(self.evaluated_at),
            "evaluatedBy": POLICY_EVALUATOR,
        }


def risk_tier_for(amount: Decimal, settings: Settings) -> RiskTier:
    if amount > settings.POLICY_HIGH_RISK_ABOVE:
        return RiskTier.HIGH
    if amount > settings.POLICY_MEDIUM_RISK_ABOVE:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def evaluate_execution_policy(
    amount: Any,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> PolicyDecision:
    """High-tier amounts are denied outright; everything else may execute."""
    settings = settings or get_settings()
    value = abs(to_decimal(amount, Decimal("0")) or Decimal("0"))
    tier = risk_tier_for(value, settings)
    return PolicyDecision(
        decision_id=f"policy_{uuid4().hex}",
        risk_tier=tier,
        approved=tier is not RiskTier.HIGH,
        amount=value,
        evaluated_at=now or utcnow(),
    )
