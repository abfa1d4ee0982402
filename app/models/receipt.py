from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReceiptActionType(str, Enum):
    INGEST_WEBHOOK = "ingest_webhook"
    SYNC_PULL = "sync_pull"
    COMPUTE_SNAPSHOT = "compute_snapshot"
    PROPOSE_ACTION = "propose_action"
    APPROVE_ACTION = "approve_action"
    DENY_ACTION = "deny_action"
    EXECUTE_ACTION = "execute_action"
    POLICY_DENIED = "policy_denied"
    READ_EXCEPTIONS = "read_exceptions"


class Receipt(Base):
    """
    Append-only, content-hashed audit record of one action.

    Hashes are computed once at creation; rows are never updated or deleted.
    """

    __tablename__ = "finance_receipts"
    __table_args__ = (
        Index("ix_finance_receipts_scope_created", "tenant_id", "office_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    office_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    inputs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    outputs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    policy_decision_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    receipt_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
