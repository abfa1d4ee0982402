"""
Cross-provider reconciliation detectors.

Each detector is a pure function over already-loaded events. Findings are
derived on every snapshot and never persisted on their own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Sequence

from app.models.finance_event import (
    BANK_TX_POSTED,
    PAYMENT_SUCCEEDED,
    PAYOUT_PAID,
    QBO_PAYMENT_CHANGED,
    QBO_REPORT_REFRESHED,
    FinanceEvent,
)
from app.modules.ledger.domain.common import as_utc, money, month_start, to_decimal

RECONCILE_WINDOW = timedelta(days=30)
SETTLEMENT_WINDOW = timedelta(days=3)
BOOK_ENTRY_WINDOW = timedelta(days=30)
CASH_BOOKS_TOLERANCE = Decimal("0.05")

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"

# entity_refs keys that identify a single payment across providers
_PAYMENT_REF_KEYS = (
    "payment_intent_id",
    "invoice_id",
    "charge_id",
    "entity_id",
    "doc_number",
    "payment_ref",
)


@dataclass(frozen=True)
class Mismatch:
    type: str
    title: str
    description: str
    reason_code: str
    severity: str
    amounts: dict[str, float]
    providers: list[str]
    next_step: str
    related_event_ids: list[str] = field(default_factory=list)

    def to_dict(self, sequence: int) -> dict[str, Any]:
        return {
            "id": f"mismatch-{sequence}",
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "reasonCode": self.reason_code,
            "severity": self.severity,
            "amounts": dict(self.amounts),
            "providers": list(self.providers),
            "nextStep": self.next_step,
            "relatedEventIds": list(self.related_event_ids),
        }


def _of_type(events: Iterable[FinanceEvent], event_type: str) -> list[FinanceEvent]:
    return [event for event in events if event.event_type == event_type]


def _amount(event: FinanceEvent) -> Decimal:
    return to_decimal(event.amount, Decimal("0")) or Decimal("0")


def _day(event: FinanceEvent) -> str:
    return as_utc(event.occurred_at).date().isoformat()


def _deposits(events: Sequence[FinanceEvent]) -> list[FinanceEvent]:
    # Bank outflows carry a negative ledger sign and never settle a payout.
    return [e for e in _of_type(events, BANK_TX_POSTED) if _amount(e) > 0]


def _recent_payouts(events: Sequence[FinanceEvent], now: datetime) -> list[FinanceEvent]:
    since = as_utc(now) - RECONCILE_WINDOW
    return [e for e in _of_type(events, PAYOUT_PAID) if as_utc(e.occurred_at) >= since]


def _deposits_in_window(
    payout: FinanceEvent, deposits: Sequence[FinanceEvent]
) -> list[FinanceEvent]:
    start = as_utc(payout.occurred_at)
    end = start + SETTLEMENT_WINDOW
    return [d for d in deposits if start <= as_utc(d.occurred_at) <= end]


def detect_settlement_timing(
    events: Sequence[FinanceEvent], now: datetime
) -> list[Mismatch]:
    """Payouts with no equal-amount bank deposit within three days."""
    deposits = _deposits(events)
    findings: list[Mismatch] = []
    for payout in _recent_payouts(events, now):
        window = _deposits_in_window(payout, deposits)
        if any(_amount(d) == _amount(payout) for d in window):
            continue
        findings.append(
            Mismatch(
                type="settlement_timing",
                title="Settlement timing gap",
                description=(
                    f"Payout of {money(payout.amount)} on {_day(payout)} has no matching "
                    "bank deposit within 3 days"
                ),
                reason_code="SETTLEMENT_DELAY",
                severity=SEVERITY_MEDIUM,
                amounts={"payout": money(payout.amount)},
                providers=[payout.provider, "plaid"],
                next_step="Check bank transactions for delayed deposit",
                related_event_ids=[str(payout.id)],
            )
        )
    return findings


def detect_amount_mismatches(
    events: Sequence[FinanceEvent], now: datetime
) -> list[Mismatch]:
    """One finding per differing in-window deposit for payouts lacking an exact match."""
    deposits = _deposits(events)
    findings: list[Mismatch] = []
    for payout in _recent_payouts(events, now):
        window = _deposits_in_window(payout, deposits)
        if any(_amount(d) == _amount(payout) for d in window):
            continue
        for deposit in window:
            findings.append(
                Mismatch(
                    type="amount_mismatch",
                    title="Payout amount mismatch",
                    description=(
                        f"Stripe payout {money(payout.amount)} does not match bank "
                        f"deposit {money(deposit.amount)}"
                    ),
                    reason_code="AMOUNT_MISMATCH",
                    severity=SEVERITY_HIGH,
                    amounts={
                        "payout": money(payout.amount),
                        "bankDeposit": money(deposit.amount),
                    },
                    providers=["stripe", "plaid"],
                    next_step="Compare Stripe payout details with bank transaction",
                    related_event_ids=[str(payout.id), str(deposit.id)],
                )
            )
    return findings


def latest_books_report(
    events: Sequence[FinanceEvent], now: datetime
) -> FinanceEvent | None:
    """Newest ledger report this month that carries a bank total."""
    since = month_start(now)
    reports = [
        e
        for e in _of_type(events, QBO_REPORT_REFRESHED)
        if as_utc(e.occurred_at) >= since and (e.event_metadata or {}).get("bankTotal") is not None
    ]
    return max(reports, key=lambda e: as_utc(e.occurred_at)) if reports else None


def detect_cash_vs_books(events: Sequence[FinanceEvent], now: datetime) -> list[Mismatch]:
    report = latest_books_report(events, now)
    if report is None:
        return []
    since = month_start(now)
    bank_total = sum(
        (_amount(e) for e in _of_type(events, BANK_TX_POSTED) if as_utc(e.occurred_at) >= since),
        Decimal("0"),
    )
    books_total = to_decimal(report.event_metadata.get("bankTotal"), Decimal("0")) or Decimal("0")
    if bank_total <= 0 or books_total <= 0:
        return []
    difference = abs(bank_total - books_total)
    ratio = difference / max(bank_total, books_total)
    if ratio <= CASH_BOOKS_TOLERANCE:
        return []
    return [
        Mismatch(
            type="cash_vs_books",
            title="Cash vs books discrepancy",
            description=(
                f"Bank transactions total {money(bank_total)} but QBO reports "
                f"{money(books_total)} ({float(ratio * 100):.1f}% difference)"
            ),
            reason_code="CASH_BOOKS_DIVERGENCE",
            severity=SEVERITY_HIGH,
            amounts={
                "bankTotal": money(bank_total),
                "qboTotal": money(books_total),
                "difference": money(difference),
            },
            providers=["plaid", "qbo"],
            next_step="Review QBO entries against bank feed",
            related_event_ids=[str(report.id)],
        )
    ]


def payment_match_keys(event: FinanceEvent) -> set[str]:
    refs = event.entity_refs or {}
    keys = {str(refs[key]) for key in _PAYMENT_REF_KEYS if refs.get(key)}
    keys.add(event.provider_event_id)
    return keys


def detect_missing_entries(events: Sequence[FinanceEvent], now: datetime) -> list[Mismatch]:
    """Recent payments with no bookkeeping record sharing a native id."""
    since = as_utc(now) - RECONCILE_WINDOW
    book_entries = _of_type(events, QBO_PAYMENT_CHANGED)
    findings: list[Mismatch] = []
    for payment in _of_type(events, PAYMENT_SUCCEEDED):
        paid_at = as_utc(payment.occurred_at)
        if paid_at < since:
            continue
        keys = payment_match_keys(payment)
        matched = any(
            abs(as_utc(entry.occurred_at) - paid_at) <= BOOK_ENTRY_WINDOW
            and keys & payment_match_keys(entry)
            for entry in book_entries
        )
        if matched:
            continue
        findings.append(
            Mismatch(
                type="missing_entry",
                title="Missing QBO entry",
                description=(
                    f"Payment of {money(payment.amount)} on {_day(payment)} has no matching "
                    "QBO record"
                ),
                reason_code="MISSING_BOOK_ENTRY",
                severity=SEVERITY_MEDIUM,
                amounts={"payment": money(payment.amount)},
                providers=[payment.provider, "qbo"],
                next_step="Create matching entry in QuickBooks",
                related_event_ids=[str(payment.id)],
            )
        )
    return findings


def reconcile(events: Sequence[FinanceEvent], now: datetime) -> list[Mismatch]:
    return [
        *detect_settlement_timing(events, now),
        *detect_amount_mismatches(events, now),
        *detect_cash_vs_books(events, now),
        *detect_missing_entries(events, now),
    ]


def build_chapter_reconcile(events: Sequence[FinanceEvent], now: datetime) -> dict[str, Any]:
    mismatches = [
        finding.to_dict(sequence) for sequence, finding in enumerate(reconcile(events, now), start=1)
    ]
    return {"mismatches": mismatches, "mismatchCount": len(mismatches)}
