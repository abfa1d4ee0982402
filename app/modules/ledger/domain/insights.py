"""Read-side views: metric explanations, entity lifecycle and connection health."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.finance_connection import ConnectionStatus
from app.models.finance_event import (
    BALANCE_AVAILABLE,
    BANK_BALANCE_UPDATED,
    BANK_TX_POSTED,
    BOOKING_CREATED,
    FEE_ASSESSED,
    INVOICE_PAID,
    INVOICE_SENT,
    PAYMENT_SUCCEEDED,
    PAYOUT_CREATED,
    PAYOUT_PAID,
    PAYROLL_CALCULATED,
    PAYROLL_PAID,
    QBO_INVOICE_CHANGED,
    QBO_JOURNAL_POSTED,
    QBO_PAYMENT_CHANGED,
    QBO_REPORT_REFRESHED,
    FinanceEvent,
)
from app.modules.ledger.domain.common import iso_or_none, money, utcnow
from app.modules.ledger.domain.connections import (
    ConnectionRegistry,
    connection_to_dict,
    last_data_at,
    next_step,
)
from app.modules.ledger.domain.snapshot import confidence_for
from app.shared.core.exceptions import InvalidRequestError, ResourceNotFoundError


METRIC_DEFINITIONS: dict[str, dict[str, Any]] = {
    "cash_available": {
        "definition": "Total cash available across all connected bank accounts and payment processors",
        "formula": "sum(bank_balances) + stripe_available_balance",
        "providers": ("plaid", "stripe"),
        "event_types": (BANK_BALANCE_UPDATED, BALANCE_AVAILABLE),
        "exclusions": ("Stripe pending balance not included",),
    },
    "expected_inflows": {
        "definition": "Expected cash inflows over the next 7 days based on outstanding invoices and scheduled payments",
        "formula": "sum(outstanding_invoices_due_within_7d) + sum(scheduled_deposits)",
        "providers": ("stripe", "qbo"),
        "event_types": (INVOICE_SENT, PAYOUT_CREATED),
    },
    "expected_outflows": {
        "definition": "Expected cash outflows over the next 7 days including payroll, bills, and scheduled payments",
        "formula": "sum(upcoming_payroll) + sum(bills_due_within_7d) + sum(scheduled_payments)",
        "providers": ("gusto", "qbo"),
        "event_types": (PAYROLL_CALCULATED,),
    },
    "monthly_revenue": {
        "definition": "Total revenue recognized in the current calendar month",
        "formula": "sum(income_transactions_current_month)",
        "providers": ("stripe", "qbo"),
        "event_types": (PAYMENT_SUCCEEDED, QBO_REPORT_REFRESHED),
        "exclusions": ("Raw transactions are excluded when a ledger report covers the month",),
    },
    "monthly_expenses": {
        "definition": "Total expenses recorded in the current calendar month",
        "formula": "sum(expense_transactions_current_month)",
        "providers": ("plaid", "qbo"),
        "event_types": (PAYROLL_PAID, FEE_ASSESSED, QBO_REPORT_REFRESHED),
        "exclusions": ("Raw transactions are excluded when a ledger report covers the month",),
    },
    "net_income": {
        "definition": "Net income for the current month calculated as revenue minus expenses",
        "formula": "monthly_revenue - monthly_expenses",
        "providers": ("stripe", "plaid", "qbo"),
        "event_types": (PAYMENT_SUCCEEDED, PAYROLL_PAID, FEE_ASSESSED, QBO_REPORT_REFRESHED),
    },
    "mismatch_count": {
        "definition": "Number of transactions that could not be automatically reconciled between providers",
        "formula": "count(unreconciled_transactions)",
        "providers": ("plaid", "stripe", "qbo"),
        "event_types": (PAYOUT_PAID, BANK_TX_POSTED, QBO_PAYMENT_CHANGED, PAYMENT_SUCCEEDED),
    },
}

LIFECYCLE_STAGES = ("booked", "invoiced", "paid", "deposited", "posted")

EVENT_TO_STAGE: dict[str, str] = {
    BOOKING_CREATED: "booked",
    QBO_INVOICE_CHANGED: "invoiced",
    INVOICE_SENT: "invoiced",
    INVOICE_PAID: "paid",
    PAYMENT_SUCCEEDED: "paid",
    PAYOUT_CREATED: "deposited",
    PAYOUT_PAID: "deposited",
    BANK_TX_POSTED: "deposited",
    QBO_JOURNAL_POSTED: "posted",
    QBO_PAYMENT_CHANGED: "posted",
}

LIFECYCLE_REF_KEYS = (
    "invoice_id",
    "payment_intent_id",
    "payout_id",
    "bank_tx_id",
    "booking_id",
    "entity_id",
)

_RELATED_EVENT_LIMIT = 5
_LIFECYCLE_ENTITY_LIMIT = 50
_LIFECYCLE_RECENT_LIMIT = 20


def build_lifecycle(events: list[FinanceEvent]) -> list[dict[str, Any]]:
    """`events` must be in ascending time order; the earliest event per stage wins."""
    details: dict[str, FinanceEvent] = {}
    for event in events:
        stage = EVENT_TO_STAGE.get(event.event_type)
        if stage and stage not in details:
            details[stage] = event

    steps: list[dict[str, Any]] = []
    for index, stage in enumerate(LIFECYCLE_STAGES):
        event = details.get(stage)
        completed = event is not None
        previous_done = all(s in details for s in LIFECYCLE_STAGES[:index])
        if completed:
            status = "completed"
        elif previous_done:
            status = "current"
        else:
            status = "pending"
        steps.append(
            {
                "label": stage.capitalize(),
                "status": status,
                "provider": event.provider if event else None,
                "timestamp": iso_or_none(event.occurred_at) if event else None,
                "eventId": str(event.id) if event else None,
                "amount": money(event.amount) if event and event.amount is not None else None,
            }
        )
    return steps


class InsightsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.registry = ConnectionRegistry(db)

    async def explain(
        self,
        *,
        tenant_id: str,
        office_id: str,
        metric_id: str | None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if not metric_id:
            raise InvalidRequestError("metricId query parameter is required")
        metric = METRIC_DEFINITIONS.get(metric_id)
        if metric is None:
            raise ResourceNotFoundError(
                f"Unknown metric: {metric_id}",
                details={"availableMetrics": list(METRIC_DEFINITIONS)},
            )
        now = now or utcnow()

        connections = {
            c.provider: c
            for c in await self.registry.list(tenant_id=tenant_id, office_id=office_id)
        }
        sources = []
        for provider in metric["providers"]:
            conn = connections.get(provider)
            if conn is None:
                confidence = "none"
            elif conn.status != ConnectionStatus.CONNECTED.value:
                confidence = "low"
            else:
                confidence = confidence_for(last_data_at(conn), now)
            sources.append(
                {
                    "provider": provider,
                    "lastSyncAt": iso_or_none(conn.last_sync_at) if conn else None,
                    "confidence": confidence,
                }
            )

        rows = await self.db.execute(
            select(FinanceEvent)
            .where(
                FinanceEvent.tenant_id == tenant_id,
                FinanceEvent.office_id == office_id,
                FinanceEvent.event_type.in_(metric["event_types"]),
            )
            .order_by(FinanceEvent.occurred_at.desc())
            .limit(_RELATED_EVENT_LIMIT)
        )
        related = [
            {
                "eventId": str(event.id),
                "provider": event.provider,
                "eventType": event.event_type,
                "occurredAt": iso_or_none(event.occurred_at),
                "amount": money(event.amount) if event.amount is not None else None,
                "currency": event.currency,
            }
            for event in rows.scalars().all()
        ]
        return {
            "metricId": metric_id,
            "definition": metric["definition"],
            "formula": metric["formula"],
            "sources": sources,
            "exclusions": list(metric.get("exclusions", ())),
            "relatedEvents": related,
        }

    async def lifecycle(
        self, *, tenant_id: str, office_id: str, entity_id: str | None
    ) -> dict[str, Any]:
        scope = (
            FinanceEvent.tenant_id == tenant_id,
            FinanceEvent.office_id == office_id,
        )
        if entity_id:
            matches = [
                FinanceEvent.entity_refs[key].as_string() == entity_id
                for key in LIFECYCLE_REF_KEYS
            ]
            matches.append(FinanceEvent.provider_event_id == entity_id)
            rows = await self.db.execute(
                select(FinanceEvent)
                .where(*scope, or_(*matches))
                .order_by(FinanceEvent.occurred_at.asc())
                .limit(_LIFECYCLE_ENTITY_LIMIT)
            )
            events = list(rows.scalars().all())
        else:
            rows = await self.db.execute(
                select(FinanceEvent)
                .where(*scope)
                .order_by(FinanceEvent.occurred_at.desc())
                .limit(_LIFECYCLE_RECENT_LIMIT)
            )
            events = list(reversed(rows.scalars().all()))
        return {"steps": build_lifecycle(events), "entityId": entity_id or None}

    async def connections_status(
        self, *, tenant_id: str, office_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        now = now or utcnow()
        connections = await self.registry.list(tenant_id=tenant_id, office_id=office_id)
        return {
            "connections": [connection_to_dict(c, now) for c in connections],
            "summary": {
                "total": len(connections),
                "connected": sum(
                    1 for c in connections if c.status == ConnectionStatus.CONNECTED.value
                ),
                "needsAttention": sum(1 for c in connections if next_step(c) is not None),
            },
        }
