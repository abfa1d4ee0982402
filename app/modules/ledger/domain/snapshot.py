"""
Snapshot engine.

A snapshot materializes five chapters (now, next, month, reconcile, actions)
plus provenance and staleness for one tenant/office. Chapter builders are pure
functions of (events, connections, as_of); `SnapshotService` loads the inputs,
persists an insert-only row and receipts the computation.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Sequence
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.finance_connection import ConnectionStatus, FinanceConnection
from app.models.finance_event import (
    BALANCE_AVAILABLE,
    BANK_BALANCE_UPDATED,
    BANK_TX_POSTED,
    FEE_ASSESSED,
    INVOICE_PAID,
    INVOICE_SENT,
    PAYMENT_SUCCEEDED,
    PAYOUT_CREATED,
    PAYOUT_PAID,
    PAYROLL_CALCULATED,
    PAYROLL_PAID,
    QBO_PAYMENT_CHANGED,
    QBO_REPORT_REFRESHED,
    EventStatus,
    FinanceEvent,
)
from app.models.finance_snapshot import FinanceSnapshot
from app.models.receipt import ReceiptActionType
from app.modules.ledger.domain.common import (
    as_utc,
    iso_or_none,
    money,
    month_start,
    period_label,
    previous_month_start,
    to_decimal,
    utcnow,
)
from app.modules.ledger.domain.connections import ConnectionRegistry, compute_staleness
from app.modules.ledger.domain.events import load_events_since
from app.modules.ledger.domain.receipts import ReceiptService
from app.modules.ledger.domain.reconciliation import build_chapter_reconcile
from app.shared.core.config import get_settings
from app.shared.core.exceptions import PersistenceError
from app.shared.core.ops_metrics import SNAPSHOT_COMPUTE_DURATION, SNAPSHOT_COMPUTE_TOTAL
from app.shared.core.tracing import ensure_correlation_id

logger = structlog.get_logger()

FORECAST_LOOKBACK = timedelta(days=14)
OVERDUE_AFTER = timedelta(days=14)
AR_LOOKBACK = timedelta(days=90)
PROVENANCE_WINDOW = timedelta(days=30)
EXPENSE_GROWTH_THRESHOLD = Decimal("1.10")
RECONCILE_REVIEW_THRESHOLD = 3

BASIS_LEDGER_REPORT = "ledger_report"
BASIS_TRANSACTIONS = "transactions"

_RISK_ORDER = {"HIGH": 0, "MED": 1, "LOW": 2}
_EXPENSE_TYPES = (PAYROLL_PAID, FEE_ASSESSED)
_MONTH_TRANSACTION_TYPES = (PAYMENT_SUCCEEDED, PAYROLL_PAID, FEE_ASSESSED)

PROVENANCE_METRICS: dict[str, dict[str, Any]] = {
    "cash_available": {
        "event_types": (BANK_BALANCE_UPDATED, BALANCE_AVAILABLE),
        "excludes": "Stripe pending balance not included",
    },
    "expected_inflows": {"event_types": (INVOICE_SENT, PAYOUT_CREATED)},
    "expected_outflows": {"event_types": (PAYROLL_CALCULATED,)},
    "revenue": {"event_types": (PAYMENT_SUCCEEDED, QBO_REPORT_REFRESHED)},
    "expenses": {"event_types": (PAYROLL_PAID, FEE_ASSESSED, QBO_REPORT_REFRESHED)},
    "reconciliation": {
        "event_types": (PAYOUT_PAID, BANK_TX_POSTED, QBO_PAYMENT_CHANGED, PAYMENT_SUCCEEDED)
    },
}


def _amount(event: FinanceEvent | None) -> Decimal:
    if event is None:
        return Decimal("0")
    return to_decimal(event.amount, Decimal("0")) or Decimal("0")


def _ref(event: FinanceEvent, key: str) -> str | None:
    value = (event.entity_refs or {}).get(key)
    return str(value) if value else None


def _settled_refs(events: Sequence[FinanceEvent], event_type: str, key: str) -> set[str]:
    return {
        ref
        for event in events
        if event.event_type == event_type
        for ref in [_ref(event, key)]
        if ref
    }


def confidence_for(last_sync: datetime | None, now: datetime) -> str:
    if last_sync is None:
        return "none"
    age = (as_utc(now) - as_utc(last_sync)).total_seconds()
    if age < 5 * 60:
        return "high"
    if age < 60 * 60:
        return "medium"
    if age < 24 * 60 * 60:
        return "low"
    return "none"


def build_chapter_now(
    bank_balance: FinanceEvent | None, stripe_balance: FinanceEvent | None
) -> dict[str, Any]:
    bank = _amount(bank_balance)
    stripe_available = Decimal("0")
    stripe_pending = Decimal("0")
    if stripe_balance is not None:
        metadata = stripe_balance.event_metadata or {}
        stripe_available = to_decimal(metadata.get("available")) or _amount(stripe_balance)
        stripe_pending = to_decimal(metadata.get("pending"), Decimal("0")) or Decimal("0")
    stamps = [e.occurred_at for e in (bank_balance, stripe_balance) if e is not None]
    return {
        "cashAvailable": money(bank + stripe_available),
        "bankBalance": money(bank),
        "stripeAvailable": money(stripe_available),
        "stripePending": money(stripe_pending),
        "lastUpdated": iso_or_none(max(as_utc(s) for s in stamps)) if stamps else None,
    }


def _forecast_item(event: FinanceEvent, kind: str, fallback: str) -> dict[str, Any]:
    metadata = event.event_metadata or {}
    return {
        "type": kind,
        "description": metadata.get("description") or fallback,
        "amount": money(event.amount),
        "expectedDate": metadata.get("arrivalDate") or iso_or_none(event.occurred_at),
        "provider": event.provider,
    }


def build_chapter_next(events: Sequence[FinanceEvent], now: datetime) -> dict[str, Any]:
    since = as_utc(now) - FORECAST_LOOKBACK
    paid_invoices = _settled_refs(events, INVOICE_PAID, "invoice_id")
    paid_payouts = _settled_refs(events, PAYOUT_PAID, "payout_id")
    paid_payrolls = _settled_refs(events, PAYROLL_PAID, "payroll_id")

    items: list[dict[str, Any]] = []
    inflows = Decimal("0")
    outflows = Decimal("0")
    for event in events:
        if as_utc(event.occurred_at) < since:
            continue
        if event.event_type == INVOICE_SENT and event.status == EventStatus.PENDING.value:
            if _ref(event, "invoice_id") in paid_invoices:
                continue
            items.append(_forecast_item(event, "inflow", "Pending invoice"))
            inflows += _amount(event)
        elif event.event_type == PAYOUT_CREATED:
            if _ref(event, "payout_id") in paid_payouts:
                continue
            items.append(_forecast_item(event, "inflow", "Pending payout deposit"))
            inflows += _amount(event)
        elif event.event_type == PAYROLL_CALCULATED:
            if _ref(event, "payroll_id") in paid_payrolls:
                continue
            items.append(_forecast_item(event, "outflow", "Upcoming payroll"))
            outflows += _amount(event)

    return {
        "expectedInflows7d": money(inflows),
        "expectedOutflows7d": money(outflows),
        "netCashFlow7d": money(inflows - outflows),
        "items": items,
    }


def _sum_between(
    events: Sequence[FinanceEvent],
    event_types: Sequence[str],
    start: datetime,
    end: datetime | None = None,
) -> Decimal:
    total = Decimal("0")
    for event in events:
        occurred = as_utc(event.occurred_at)
        if event.event_type in event_types and occurred >= start and (end is None or occurred < end):
            total += _amount(event)
    return total


def build_chapter_month(events: Sequence[FinanceEvent], now: datetime) -> dict[str, Any]:
    """
    Revenue and expenses for the current month.

    A ledger report and raw transactions never both count toward the same
    period: when a report with revenue exists it is authoritative and the
    transactions it already covers are excluded.
    """
    start = month_start(now)
    reports = [
        e
        for e in events
        if e.event_type == QBO_REPORT_REFRESHED
        and as_utc(e.occurred_at) >= start
        and (e.event_metadata or {}).get("revenue") is not None
    ]
    transactions = [
        e
        for e in events
        if e.event_type in _MONTH_TRANSACTION_TYPES and as_utc(e.occurred_at) >= start
    ]
    if reports:
        report = max(reports, key=lambda e: as_utc(e.occurred_at))
        metadata = report.event_metadata or {}
        revenue = to_decimal(metadata.get("revenue"), Decimal("0")) or Decimal("0")
        expenses = to_decimal(metadata.get("expenses"), Decimal("0")) or Decimal("0")
        basis = BASIS_LEDGER_REPORT
        excluded = len(transactions)
    else:
        revenue = _sum_between(transactions, (PAYMENT_SUCCEEDED,), start)
        expenses = _sum_between(transactions, _EXPENSE_TYPES, start)
        basis = BASIS_TRANSACTIONS
        excluded = 0
    return {
        "revenue": money(revenue),
        "expenses": money(expenses),
        "netIncome": money(revenue - expenses),
        "period": period_label(now),
        "basis": basis,
        "excludedTransactionCount": excluded,
    }


def _overdue_invoices(events: Sequence[FinanceEvent], now: datetime) -> list[FinanceEvent]:
    cutoff = as_utc(now) - OVERDUE_AFTER
    paid = _settled_refs(events, INVOICE_PAID, "invoice_id")
    return [
        e
        for e in events
        if e.event_type == INVOICE_SENT
        and as_utc(e.occurred_at) < cutoff
        and _ref(e, "invoice_id") not in paid
    ]


def build_chapter_actions(
    chapter_now: dict[str, Any],
    chapter_next: dict[str, Any],
    chapter_month: dict[str, Any],
    chapter_reconcile: dict[str, Any],
    events: Sequence[FinanceEvent],
    now: datetime,
) -> dict[str, Any]:
    proposals: list[dict[str, Any]] = []

    cash = Decimal(str(chapter_now["cashAvailable"]))
    outflows = Decimal(str(chapter_next["expectedOutflows7d"]))
    if outflows > cash and outflows > 0:
        proposals.append(
            {
                "title": "Fund payroll buffer",
                "type": "cash_management",
                "description": (
                    f"Upcoming outflows of {money(outflows)} exceed available cash of "
                    f"{money(cash)}. Consider transferring funds to cover the gap."
                ),
                "risk": "MED",
                "evidence": {"cashAvailable": money(cash), "expectedOutflows": money(outflows)},
                "predictedImpact": f"Shortfall of {money(outflows - cash)}",
                "dependencies": ["bank_transfer"],
            }
        )

    overdue = _overdue_invoices(events, now)
    if overdue:
        total_overdue = sum((_amount(e) for e in overdue), Decimal("0"))
        proposals.append(
            {
                "title": "Collect overdue AR",
                "type": "collections",
                "description": (
                    f"{len(overdue)} invoice(s) totaling {money(total_overdue)} are overdue "
                    "(>14 days). Follow up to collect payment."
                ),
                "risk": "HIGH",
                "evidence": {"overdueCount": len(overdue), "totalOverdue": money(total_overdue)},
                "predictedImpact": f"Recover up to {money(total_overdue)} in outstanding receivables",
                "dependencies": ["client_communication"],
            }
        )

    mismatch_count = int(chapter_reconcile.get("mismatchCount") or 0)
    if mismatch_count > RECONCILE_REVIEW_THRESHOLD:
        proposals.append(
            {
                "title": "Review reconciliation items",
                "type": "reconciliation",
                "description": (
                    f"{mismatch_count} reconciliation mismatches detected. Review and resolve "
                    "to maintain accurate books."
                ),
                "risk": "HIGH",
                "evidence": {"mismatchCount": mismatch_count},
                "predictedImpact": "Improved financial accuracy and audit readiness",
                "dependencies": ["bookkeeper_review"],
            }
        )

    previous = _sum_between(
        events, _EXPENSE_TYPES, previous_month_start(now), month_start(now)
    )
    # Last month is always summed from transactions; compare on that basis.
    if chapter_month.get("basis", BASIS_TRANSACTIONS) == BASIS_TRANSACTIONS:
        current = Decimal(str(chapter_month["expenses"]))
    else:
        current = _sum_between(events, _EXPENSE_TYPES, month_start(now))
    if previous > 0 and current > previous * EXPENSE_GROWTH_THRESHOLD:
        growth_pct = round(float((current - previous) / previous * 100), 1)
        proposals.append(
            {
                "title": "Review expense growth",
                "type": "expense_management",
                "description": (
                    f"Monthly expenses grew {growth_pct}% vs last month "
                    f"({money(previous)} -> {money(current)}). Review for unnecessary spend."
                ),
                "risk": "LOW",
                "evidence": {
                    "currentExpenses": money(current),
                    "previousExpenses": money(previous),
                    "growthPct": growth_pct,
                    "basis": BASIS_TRANSACTIONS,
                },
                "predictedImpact": f"Potential savings of {money(current - previous)}",
                "dependencies": [],
            }
        )

    proposals.sort(key=lambda p: _RISK_ORDER[p["risk"]])
    return {"proposals": proposals, "proposalCount": len(proposals)}


def compute_provenance(
    connections: Sequence[FinanceConnection],
    events: Sequence[FinanceEvent],
    now: datetime,
) -> dict[str, dict[str, Any]]:
    since = as_utc(now) - PROVENANCE_WINDOW
    recent = [e for e in events if as_utc(e.occurred_at) >= since]
    provenance: dict[str, dict[str, Any]] = {}
    for metric, config in PROVENANCE_METRICS.items():
        providers = sorted({e.provider for e in recent if e.event_type in config["event_types"]})
        candidates = providers or [c.provider for c in connections]
        syncs = [
            as_utc(c.last_sync_at)
            for c in connections
            if c.provider in candidates and c.last_sync_at is not None
        ]
        last_sync = max(syncs) if syncs else None
        entry: dict[str, Any] = {
            "source": providers,
            "lastSyncAt": iso_or_none(last_sync),
            "confidence": confidence_for(last_sync, now),
        }
        if config.get("excludes"):
            entry["excludes"] = config["excludes"]
        provenance[metric] = entry
    return provenance


def is_connected(connections: Sequence[FinanceConnection]) -> bool:
    return any(c.status == ConnectionStatus.CONNECTED.value for c in connections)


def build_snapshot(
    *,
    events: Sequence[FinanceEvent],
    connections: Sequence[FinanceConnection],
    bank_balance: FinanceEvent | None,
    stripe_balance: FinanceEvent | None,
    now: datetime,
) -> dict[str, Any]:
    """Pure: the same inputs always produce the same chapters."""
    chapter_now = build_chapter_now(bank_balance, stripe_balance)
    chapter_next = build_chapter_next(events, now)
    chapter_month = build_chapter_month(events, now)
    chapter_reconcile = build_chapter_reconcile(events, now)
    chapter_actions = build_chapter_actions(
        chapter_now, chapter_next, chapter_month, chapter_reconcile, events, now
    )
    return {
        "chapters": {
            "now": chapter_now,
            "next": chapter_next,
            "month": chapter_month,
            "reconcile": chapter_reconcile,
            "actions": chapter_actions,
        },
        "provenance": compute_provenance(connections, events, now),
        "staleness": compute_staleness(connections, now),
        "connected": is_connected(connections),
    }


def empty_snapshot(now: datetime, connected: bool = False) -> dict[str, Any]:
    return {
        "snapshotId": None,
        "chapters": {
            "now": build_chapter_now(None, None),
            "next": {
                "expectedInflows7d": 0.0,
                "expectedOutflows7d": 0.0,
                "netCashFlow7d": 0.0,
                "items": [],
            },
            "month": {
                "revenue": 0.0,
                "expenses": 0.0,
                "netIncome": 0.0,
                "period": period_label(now),
                "basis": BASIS_TRANSACTIONS,
                "excludedTransactionCount": 0,
            },
            "reconcile": {"mismatches": [], "mismatchCount": 0},
            "actions": {"proposals": [], "proposalCount": 0},
        },
        "provenance": {},
        "staleness": {},
        "generatedAt": None,
        "connected": connected,
        "receiptId": None,
    }


def snapshot_to_dict(row: FinanceSnapshot, connected: bool) -> dict[str, Any]:
    return {
        "snapshotId": str(row.id),
        "chapters": {
            "now": row.chapter_now,
            "next": row.chapter_next,
            "month": row.chapter_month,
            "reconcile": row.chapter_reconcile,
            "actions": row.chapter_actions,
        },
        "provenance": row.provenance,
        "staleness": row.staleness,
        "generatedAt": iso_or_none(row.generated_at),
        "connected": connected,
        "receiptId": str(row.receipt_id) if row.receipt_id else None,
    }


class SnapshotService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()
        self.registry = ConnectionRegistry(db)
        self.receipts = ReceiptService(db)

    async def _latest_of_type(
        self, *, tenant_id: str, office_id: str, event_type: str
    ) -> FinanceEvent | None:
        rows = await self.db.execute(
            select(FinanceEvent)
            .where(
                FinanceEvent.tenant_id == tenant_id,
                FinanceEvent.office_id == office_id,
                FinanceEvent.event_type == event_type,
            )
            .order_by(FinanceEvent.occurred_at.desc())
            .limit(1)
        )
        return rows.scalars().first()

    async def latest(self, *, tenant_id: str, office_id: str) -> FinanceSnapshot | None:
        rows = await self.db.execute(
            select(FinanceSnapshot)
            .where(
                FinanceSnapshot.tenant_id == tenant_id,
                FinanceSnapshot.office_id == office_id,
            )
            .order_by(FinanceSnapshot.generated_at.desc())
            .limit(1)
        )
        return rows.scalars().first()

    async def compute_snapshot(
        self,
        *,
        tenant_id: str,
        office_id: str,
        now: datetime | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        started = time.perf_counter()
        now = now or utcnow()
        since = min(as_utc(now) - AR_LOOKBACK, previous_month_start(now))
        try:
            connections = await self.registry.list(tenant_id=tenant_id, office_id=office_id)
            events = await load_events_since(
                self.db, tenant_id=tenant_id, office_id=office_id, since=since
            )
            bank_balance = await self._latest_of_type(
                tenant_id=tenant_id, office_id=office_id, event_type=BANK_BALANCE_UPDATED
            )
            stripe_balance = await self._latest_of_type(
                tenant_id=tenant_id, office_id=office_id, event_type=BALANCE_AVAILABLE
            )

            built = build_snapshot(
                events=events,
                connections=connections,
                bank_balance=bank_balance,
                stripe_balance=stripe_balance,
                now=now,
            )
            chapters = built["chapters"]
            receipt_id = uuid4()
            row = FinanceSnapshot(
                id=uuid4(),
                tenant_id=tenant_id,
                office_id=office_id,
                generated_at=as_utc(now),
                chapter_now=chapters["now"],
                chapter_next=chapters["next"],
                chapter_month=chapters["month"],
                chapter_reconcile=chapters["reconcile"],
                chapter_actions=chapters["actions"],
                provenance=built["provenance"],
                staleness=built["staleness"],
                receipt_id=receipt_id,
            )
            generated_at = iso_or_none(row.generated_at)
            self.db.add(row)
            self.receipts.add(
                tenant_id=tenant_id,
                office_id=office_id,
                action_type=ReceiptActionType.COMPUTE_SNAPSHOT,
                inputs={
                    "tenant": tenant_id,
                    "office": office_id,
                    "connectionCount": len(connections),
                },
                outputs={
                    "generatedAt": generated_at,
                    "connected": built["connected"],
                    "mismatchCount": chapters["reconcile"]["mismatchCount"],
                    "proposalCount": chapters["actions"]["proposalCount"],
                },
                correlation_id=correlation_id or ensure_correlation_id(),
                metadata={"generatedAt": generated_at, "snapshotId": str(row.id)},
                receipt_id=receipt_id,
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            SNAPSHOT_COMPUTE_TOTAL.labels(outcome="failed").inc()
            logger.error(
                "snapshot_compute_failed",
                tenant_id=tenant_id,
                office_id=office_id,
                error=str(exc),
            )
            raise PersistenceError(
                "Failed to compute snapshot", details={"tenant_id": tenant_id}
            ) from exc
        finally:
            SNAPSHOT_COMPUTE_DURATION.observe(time.perf_counter() - started)

        SNAPSHOT_COMPUTE_TOTAL.labels(outcome="computed").inc()
        logger.info(
            "snapshot_computed",
            tenant_id=tenant_id,
            office_id=office_id,
            mismatch_count=chapters["reconcile"]["mismatchCount"],
            proposal_count=chapters["actions"]["proposalCount"],
        )
        return snapshot_to_dict(row, built["connected"])

    async def get_snapshot(
        self, *, tenant_id: str, office_id: str, now: datetime | None = None
    ) -> tuple[dict[str, Any], bool]:
        """
        Latest snapshot, recomputed synchronously when the tenant is connected
        and the cached row is missing or older than SNAPSHOT_STALE_AFTER_SECONDS.
        """
        now = now or utcnow()
        connections = await self.registry.list(tenant_id=tenant_id, office_id=office_id)
        connected = is_connected(connections)
        cached = await self.latest(tenant_id=tenant_id, office_id=office_id)

        expired = cached is None or (
            as_utc(now) - as_utc(cached.generated_at)
        ).total_seconds() > self.settings.SNAPSHOT_STALE_AFTER_SECONDS
        if connected and expired:
            try:
                fresh = await self.compute_snapshot(
                    tenant_id=tenant_id, office_id=office_id, now=now
                )
                return fresh, connected
            except PersistenceError:
                logger.warning(
                    "snapshot_fallback_to_cached",
                    tenant_id=tenant_id,
                    office_id=office_id,
                    has_cached=cached is not None,
                )
                SNAPSHOT_COMPUTE_TOTAL.labels(outcome="fallback").inc()

        if cached is None:
            SNAPSHOT_COMPUTE_TOTAL.labels(outcome="empty").inc()
            return empty_snapshot(now, connected), connected
        SNAPSHOT_COMPUTE_TOTAL.labels(outcome="cached").inc()
        return snapshot_to_dict(cached, connected), connected
