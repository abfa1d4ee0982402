from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    REVERSED = "reversed"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


# Canonical event types produced by provider normalization and the workflow.
INVOICE_SENT = "invoice_sent"
INVOICE_PAID = "invoice_paid"
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
PAYMENT_REFUNDED = "payment_refunded"
PAYOUT_CREATED = "payout_created"
PAYOUT_PAID = "payout_paid"
PAYOUT_FAILED = "payout_failed"
BALANCE_AVAILABLE = "balance_pending_to_available"
FEE_ASSESSED = "fee_assessed"
BANK_TX_POSTED = "bank_tx_posted"
BANK_TX_PENDING = "bank_tx_pending"
BANK_TX_REVERSED = "bank_tx_reversed"
BANK_BALANCE_UPDATED = "bank_balance_updated"
BANK_ITEM_ERROR = "bank_item_error"
BANK_ACCOUNT_LINKED = "bank_account_linked"
QBO_INVOICE_CHANGED = "qbo_invoice_changed"
QBO_PAYMENT_CHANGED = "qbo_payment_changed"
QBO_JOURNAL_POSTED = "qbo_journal_posted"
QBO_REPORT_REFRESHED = "qbo_report_refreshed"
PAYROLL_CALCULATED = "payroll_calculated"
PAYROLL_SUBMITTED = "payroll_submitted"
PAYROLL_PAID = "payroll_paid"
EMPLOYEE_CHANGED = "employee_changed"
BOOKING_CREATED = "booking_created"
PROPOSAL_CREATED = "proposal_created"
ACTION_EXECUTED = "action_executed"

# Provider discriminant for events the ledger writes itself.
INTERNAL_PROVIDER = "finledger"


class FinanceEvent(Base):
    """
    Immutable canonical fact ingested from a provider.

    Re-ingestion of the same provider event converges on the unique key.
    Only `proposal_created` rows change status, through compare-and-swap.
    """

    __tablename__ = "finance_events"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "office_id",
            "provider",
            "provider_event_id",
            name="uq_finance_events_provider_event",
        ),
        Index(
            "ix_finance_events_scope_type_time",
            "tenant_id",
            "office_id",
            "event_type",
            "occurred_at",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    office_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=EventStatus.POSTED.value
    )
    entity_refs: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict
    )
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )
    raw_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    receipt_id: Mapped[UUID | None] = mapped_column(PG_UUID(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
