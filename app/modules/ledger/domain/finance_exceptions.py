"""
Exception surfacing.

Exceptions are derived from a snapshot on read and never stored. The same
snapshot and thresholds always yield the same list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from app.shared.core.config import Settings, get_settings

SEVERITY_CRITICAL = "critical"
SEVERITY_WARN = "warn"
SEVERITY_INFO = "info"

_SEVERITY_ORDER = {SEVERITY_CRITICAL: 0, SEVERITY_WARN: 1, SEVERITY_INFO: 2}

_MISMATCH_SEVERITY = {
    "high": SEVERITY_CRITICAL,
    "medium": SEVERITY_WARN,
    "low": SEVERITY_INFO,
}

_MISMATCH_ACTIONS = {
    "settlement_timing": "confirm_deposit",
    "amount_mismatch": "review_payout",
    "cash_vs_books": "reconcile_books",
    "missing_entry": "record_ledger_entry",
}


@dataclass(frozen=True)
class FinanceException:
    id: str
    kind: str
    severity: str
    title: str
    detail: str
    recommended_action: str
    evidence: dict[str, Any] = field(default_factory=dict)
    source_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "severity": self.severity,
            "title": self.title,
            "detail": self.detail,
            "evidence": dict(self.evidence),
            "recommended_action": self.recommended_action,
            "source_ids": list(self.source_ids),
        }


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def _cash_exceptions(chapter_now: Mapping[str, Any], settings: Settings) -> list[FinanceException]:
    cash = _decimal(chapter_now.get("cashAvailable"))
    if cash >= settings.CASH_FLOOR_WARN:
        return []
    severity = SEVERITY_CRITICAL if cash < settings.CASH_FLOOR_CRITICAL else SEVERITY_WARN
    floor = settings.CASH_FLOOR_CRITICAL if severity == SEVERITY_CRITICAL else settings.CASH_FLOOR_WARN
    return [
        FinanceException(
            id="cash_floor",
            kind="low_cash",
            severity=severity,
            title="Cash below floor",
            detail=f"Available cash {float(cash):.2f} is below the {float(floor):.2f} floor",
            recommended_action="fund_account",
            evidence={
                "cashAvailable": float(cash),
                "floorWarn": float(settings.CASH_FLOOR_WARN),
                "floorCritical": float(settings.CASH_FLOOR_CRITICAL),
            },
        )
    ]


def _forecast_exceptions(chapter_next: Mapping[str, Any], settings: Settings) -> list[FinanceException]:
    net = _decimal(chapter_next.get("netCashFlow7d"))
    if net >= 0:
        return []
    severity = (
        SEVERITY_CRITICAL if abs(net) > settings.NEGATIVE_FORECAST_CRITICAL else SEVERITY_WARN
    )
    return [
        FinanceException(
            id="negative_forecast",
            kind="negative_forecast",
            severity=severity,
            title="Negative 7-day cash flow",
            detail=f"Expected outflows exceed inflows by {float(abs(net)):.2f} over the next 7 days",
            recommended_action="review_forecast",
            evidence={
                "netCashFlow7d": float(net),
                "expectedInflows7d": chapter_next.get("expectedInflows7d", 0),
                "expectedOutflows7d": chapter_next.get("expectedOutflows7d", 0),
            },
        )
    ]


def _reconcile_exceptions(chapter_reconcile: Mapping[str, Any]) -> list[FinanceException]:
    found: list[FinanceException] = []
    for mismatch in chapter_reconcile.get("mismatches") or []:
        kind = str(mismatch.get("type"))
        found.append(
            FinanceException(
                id=f"reconcile:{mismatch.get('id')}",
                kind=kind,
                severity=_MISMATCH_SEVERITY.get(str(mismatch.get("severity")), SEVERITY_INFO),
                title=str(mismatch.get("title") or kind),
                detail=str(mismatch.get("description") or ""),
                recommended_action=_MISMATCH_ACTIONS.get(kind, "review"),
                evidence={
                    "amounts": mismatch.get("amounts") or {},
                    "providers": mismatch.get("providers") or [],
                    "reasonCode": mismatch.get("reasonCode"),
                },
                source_ids=[str(i) for i in mismatch.get("relatedEventIds") or []],
            )
        )
    return found


def _staleness_exceptions(staleness: Mapping[str, Any]) -> list[FinanceException]:
    found: list[FinanceException] = []
    for provider, entry in sorted(staleness.items()):
        status = (entry or {}).get("status")
        if status == "offline":
            found.append(
                FinanceException(
                    id=f"staleness:{provider}",
                    kind="provider_offline",
                    severity=SEVERITY_WARN,
                    title=f"{provider} connection offline",
                    detail=f"No fresh data from {provider} in over 24 hours or the link is down",
                    recommended_action="reconnect",
                    evidence=dict(entry),
                )
            )
        elif status == "very_stale":
            found.append(
                FinanceException(
                    id=f"staleness:{provider}",
                    kind="provider_stale",
                    severity=SEVERITY_INFO,
                    title=f"{provider} data is stale",
                    detail=f"Last {provider} data is more than an hour old",
                    recommended_action="refresh_sync",
                    evidence=dict(entry),
                )
            )
    return found


def derive_exceptions(
    snapshot: Mapping[str, Any], settings: Settings | None = None
) -> list[dict[str, Any]]:
    """
    Ranks actionable exceptions from one snapshot, critical first.

    Cash and forecast rules only apply to a computed snapshot; an empty
    placeholder carries no balances worth alerting on.
    """
    settings = settings or get_settings()
    chapters = snapshot.get("chapters") or {}
    found: list[FinanceException] = []
    if snapshot.get("generatedAt"):
        found.extend(_cash_exceptions(chapters.get("now") or {}, settings))
        found.extend(_forecast_exceptions(chapters.get("next") or {}, settings))
    found.extend(_reconcile_exceptions(chapters.get("reconcile") or {}))
    found.extend(_staleness_exceptions(snapshot.get("staleness") or {}))
    found.sort(key=lambda exc: _SEVERITY_ORDER[exc.severity])
    return [exc.to_dict() for exc in found]
