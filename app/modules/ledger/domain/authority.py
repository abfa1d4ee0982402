"""
Authority workflow.

Proposals are `proposal_created` events with a mutable status moving
pending -> approved | denied. Transitions are compare-and-swap on status so
concurrent reviewers converge: one wins, the rest observe a no-op or a
conflict. Every transition commits together with its receipt.

Execution is gated by an amount-based policy and writes exactly one
`action_executed` event per proposal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence, cast
from uuid import UUID, uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.finance_event import (
    ACTION_EXECUTED,
    INTERNAL_PROVIDER,
    PROPOSAL_CREATED,
    FinanceEvent,
    ProposalStatus,
)
from app.models.receipt import ReceiptActionType
from app.modules.ledger.domain.common import iso_or_none, money, to_decimal, utcnow
from app.modules.ledger.domain.events import (
    CanonicalEvent,
    get_event_by_provider_id,
    insert_events,
)
from app.modules.ledger.domain.policy import evaluate_execution_policy
from app.modules.ledger.domain.receipts import ReceiptService, canonical_hash
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import (
    InvalidRequestError,
    PersistenceError,
    PolicyDeniedError,
    ResourceNotFoundError,
    StateConflictError,
)
from app.shared.core.ops_metrics import AUTHORITY_TRANSITIONS_TOTAL
from app.shared.core.tracing import ensure_correlation_id

logger = structlog.get_logger()

RISK_TIERS = ("green", "yellow", "red")
DEFAULT_RISK_TIER = "yellow"
DEFAULT_PROPOSAL_TYPE = "general"
_QUEUE_LIMIT_MAX = 200


@dataclass(frozen=True)
class ProposalResult:
    proposal: FinanceEvent
    created: bool
    receipt_id: UUID | None


@dataclass(frozen=True)
class TransitionResult:
    proposal: FinanceEvent
    changed: bool
    receipt_id: UUID | None


@dataclass(frozen=True)
class ExecutionResult:
    proposal: FinanceEvent
    execution: FinanceEvent
    policy_decision: dict[str, Any]
    receipt_id: UUID | None
    created: bool

    def to_dict(self) -> dict[str, Any]:
        metadata = self.execution.event_metadata or {}
        return {
            "executionEventId": str(self.execution.id),
            "executionProviderEventId": self.execution.provider_event_id,
            "proposalId": self.proposal.provider_event_id,
            "approvedBy": metadata.get("approvedBy"),
            "approvalReceiptId": metadata.get("approvalReceiptId"),
            "policyDecision": self.policy_decision,
            "executedAt": iso_or_none(self.execution.occurred_at),
            "receiptId": str(self.receipt_id) if self.receipt_id else None,
            "created": self.created,
        }


def proposal_to_dict(proposal: FinanceEvent) -> dict[str, Any]:
    metadata = proposal.event_metadata or {}
    return {
        "proposalId": proposal.provider_event_id,
        "eventId": str(proposal.id),
        "title": metadata.get("title"),
        "action": metadata.get("action"),
        "type": metadata.get("type"),
        "description": metadata.get("description"),
        "riskTier": metadata.get("riskTier"),
        "requiredApproval": metadata.get("requiredApproval", True),
        "status": proposal.status,
        "amount": money(proposal.amount) if proposal.amount is not None else None,
        "currency": proposal.currency,
        "predictedImpact": metadata.get("predictedImpact"),
        "dependencies": metadata.get("dependencies") or [],
        "inputsHash": metadata.get("inputsHash"),
        "correlationId": metadata.get("correlationId"),
        "createdAt": iso_or_none(proposal.occurred_at),
        "receiptId": str(proposal.receipt_id) if proposal.receipt_id else None,
        "approvedBy": metadata.get("approvedBy"),
        "approvedAt": metadata.get("approvedAt"),
        "deniedBy": metadata.get("deniedBy"),
        "deniedAt": metadata.get("deniedAt"),
        "denyReason": metadata.get("denyReason"),
    }


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(str(value))
    except ValueError:
        return None


class AuthorityService:
    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.receipts = ReceiptService(db)

    async def get_proposal(
        self, *, tenant_id: str, office_id: str, proposal_id: str
    ) -> FinanceEvent:
        """Resolves a proposal by its `proposal_*` id or its event UUID."""
        query = select(FinanceEvent).where(
            FinanceEvent.tenant_id == tenant_id,
            FinanceEvent.office_id == office_id,
            FinanceEvent.event_type == PROPOSAL_CREATED,
        )
        event_uuid = _as_uuid(proposal_id)
        if event_uuid is not None:
            query = query.where(FinanceEvent.id == event_uuid)
        else:
            query = query.where(FinanceEvent.provider_event_id == proposal_id)
        proposal = (
            await self.db.execute(query.execution_options(populate_existing=True))
        ).scalar_one_or_none()
        if proposal is None:
            raise ResourceNotFoundError(
                f"Proposal {proposal_id} not found", details={"proposalId": proposal_id}
            )
        return proposal

    async def create_proposal(
        self,
        *,
        tenant_id: str,
        office_id: str,
        title: str | None = None,
        action: str | None = None,
        proposal_type: str | None = None,
        risk_tier: str = DEFAULT_RISK_TIER,
        amount: Any = None,
        currency: str = "usd",
        description: str | None = None,
        predicted_impact: str | None = None,
        dependencies: Sequence[str] | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> ProposalResult:
        """
        Creation is idempotent on `idempotency_key`, else on the correlation id.
        Reusing a key for different proposal inputs is a conflict.
        """
        if not (title or action):
            raise InvalidRequestError("title or action is required")
        if risk_tier not in RISK_TIERS:
            raise InvalidRequestError(
                f"Unsupported risk tier: {risk_tier}", details={"supported": list(RISK_TIERS)}
            )
        parsed_amount = to_decimal(amount) if amount is not None else None
        if amount is not None and parsed_amount is None:
            raise InvalidRequestError("amount must be numeric")

        replay_key = idempotency_key or correlation_id
        proposal_id = f"proposal_{replay_key}" if replay_key else f"proposal_{uuid4().hex}"
        inputs = {
            "title": title,
            "action": action,
            "type": proposal_type or DEFAULT_PROPOSAL_TYPE,
            "riskTier": risk_tier,
            "amount": str(parsed_amount) if parsed_amount is not None else None,
            "currency": currency.lower(),
            "description": description,
            "predictedImpact": predicted_impact,
            "dependencies": list(dependencies or []),
        }
        inputs_hash = canonical_hash(inputs)
        metadata = {
            **inputs,
            "title": title or action,
            "requiredApproval": risk_tier != "green",
            "inputsHash": inputs_hash,
            "correlationId": correlation_id,
        }
        receipt_id = uuid4()
        event = CanonicalEvent(
            provider=INTERNAL_PROVIDER,
            provider_event_id=proposal_id,
            event_type=PROPOSAL_CREATED,
            occurred_at=utcnow(),
            raw_hash=inputs_hash,
            amount=parsed_amount,
            currency=currency.lower(),
            status=ProposalStatus.PENDING.value,
            entity_refs={"proposal_id": proposal_id},
            metadata=metadata,
        )

        try:
            written, _ = await insert_events(
                self.db,
                tenant_id=tenant_id,
                office_id=office_id,
                events=[event],
                receipt_id=receipt_id,
            )
            if written:
                self.receipts.add(
                    tenant_id=tenant_id,
                    office_id=office_id,
                    action_type=ReceiptActionType.PROPOSE_ACTION,
                    inputs=inputs,
                    outputs={"eventId": str(written[0]), "proposalId": proposal_id},
                    correlation_id=correlation_id or ensure_correlation_id(),
                    metadata={"proposalTitle": title or action},
                    receipt_id=receipt_id,
                )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("proposal_create_failed", proposal_id=proposal_id, error=str(exc))
            raise PersistenceError(
                "Proposal was not recorded", details={"proposalId": proposal_id}
            ) from exc

        proposal = await self.get_proposal(
            tenant_id=tenant_id, office_id=office_id, proposal_id=proposal_id
        )
        if not written and (proposal.event_metadata or {}).get("inputsHash") != inputs_hash:
            AUTHORITY_TRANSITIONS_TOTAL.labels(transition="propose", outcome="conflict").inc()
            logger.warning(
                "proposal_idempotency_key_reused",
                proposal_id=proposal_id,
                tenant_id=tenant_id,
                office_id=office_id,
            )
            raise StateConflictError(
                "A different proposal was already created with this idempotency key",
                details={"proposalId": proposal_id, "reason": "idempotency_key_reused"},
            )
        AUTHORITY_TRANSITIONS_TOTAL.labels(
            transition="propose", outcome="changed" if written else "noop"
        ).inc()
        logger.info(
            "proposal_created" if written else "proposal_create_replayed",
            proposal_id=proposal_id,
            tenant_id=tenant_id,
            office_id=office_id,
        )
        return ProposalResult(
            proposal=proposal, created=bool(written), receipt_id=proposal.receipt_id
        )

    async def _transition(
        self,
        *,
        tenant_id: str,
        office_id: str,
        proposal: FinanceEvent,
        target: ProposalStatus,
        actor: str,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> TransitionResult:
        transition = "approve" if target is ProposalStatus.APPROVED else "deny"
        if proposal.status == target.value:
            AUTHORITY_TRANSITIONS_TOTAL.labels(transition=transition, outcome="noop").inc()
            return TransitionResult(proposal=proposal, changed=False, receipt_id=None)
        if proposal.status != ProposalStatus.PENDING.value:
            AUTHORITY_TRANSITIONS_TOTAL.labels(transition=transition, outcome="conflict").inc()
            raise StateConflictError(
                f"Proposal is already {proposal.status}",
                details={
                    "proposalId": proposal.provider_event_id,
                    "currentStatus": proposal.status,
                    "requestedStatus": target.value,
                },
            )

        now = utcnow()
        receipt_id = uuid4()
        actor_key = "approvedBy" if target is ProposalStatus.APPROVED else "deniedBy"
        stamp_key = "approvedAt" if target is ProposalStatus.APPROVED else "deniedAt"
        receipt_key = (
            "approvalReceiptId" if target is ProposalStatus.APPROVED else "denialReceiptId"
        )
        metadata = {
            **(proposal.event_metadata or {}),
            actor_key: actor,
            stamp_key: now.isoformat(),
            receipt_key: str(receipt_id),
        }
        inputs: dict[str, Any] = {"proposalId": proposal.provider_event_id, actor_key: actor}
        if target is ProposalStatus.DENIED:
            metadata["denyReason"] = reason
            inputs["reason"] = reason

        try:
            result = cast(
                CursorResult[Any],
                await self.db.execute(
                    update(FinanceEvent)
                    .where(
                        FinanceEvent.id == proposal.id,
                        FinanceEvent.status == ProposalStatus.PENDING.value,
                    )
                    .values({FinanceEvent.status: target.value, FinanceEvent.event_metadata: metadata})
                    .execution_options(synchronize_session=False)
                ),
            )
            swapped = int(result.rowcount or 0) == 1
            if swapped:
                self.receipts.add(
                    tenant_id=tenant_id,
                    office_id=office_id,
                    action_type=(
                        ReceiptActionType.APPROVE_ACTION
                        if target is ProposalStatus.APPROVED
                        else ReceiptActionType.DENY_ACTION
                    ),
                    inputs=inputs,
                    outputs={"status": target.value, "previousStatus": ProposalStatus.PENDING.value},
                    correlation_id=correlation_id or ensure_correlation_id(),
                    metadata={"proposalTitle": metadata.get("title")},
                    receipt_id=receipt_id,
                )
                await self.db.commit()
            else:
                await self.db.rollback()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            AUTHORITY_TRANSITIONS_TOTAL.labels(transition=transition, outcome="failed").inc()
            logger.error(
                "proposal_transition_failed",
                proposal_id=proposal.provider_event_id,
                transition=transition,
                error=str(exc),
            )
            raise PersistenceError(
                f"Proposal {transition} did not complete",
                details={"proposalId": proposal.provider_event_id},
            ) from exc

        current = await self.get_proposal(
            tenant_id=tenant_id, office_id=office_id, proposal_id=proposal.provider_event_id
        )
        if not swapped:
            # Lost the race: report what the winner left behind.
            return await self._transition(
                tenant_id=tenant_id,
                office_id=office_id,
                proposal=current,
                target=target,
                actor=actor,
                reason=reason,
                correlation_id=correlation_id,
            )

        AUTHORITY_TRANSITIONS_TOTAL.labels(transition=transition, outcome="changed").inc()
        logger.info(
            "proposal_approved" if target is ProposalStatus.APPROVED else "proposal_denied",
            proposal_id=proposal.provider_event_id,
            actor=actor,
            tenant_id=tenant_id,
            office_id=office_id,
        )
        return TransitionResult(proposal=current, changed=True, receipt_id=receipt_id)

    async def approve(
        self,
        *,
        tenant_id: str,
        office_id: str,
        proposal_id: str,
        approved_by: str,
        correlation_id: str | None = None,
    ) -> TransitionResult:
        proposal = await self.get_proposal(
            tenant_id=tenant_id, office_id=office_id, proposal_id=proposal_id
        )
        return await self._transition(
            tenant_id=tenant_id,
            office_id=office_id,
            proposal=proposal,
            target=ProposalStatus.APPROVED,
            actor=approved_by,
            correlation_id=correlation_id,
        )

    async def deny(
        self,
        *,
        tenant_id: str,
        office_id: str,
        proposal_id: str,
        denied_by: str,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> TransitionResult:
        proposal = await self.get_proposal(
            tenant_id=tenant_id, office_id=office_id, proposal_id=proposal_id
        )
        return await self._transition(
            tenant_id=tenant_id,
            office_id=office_id,
            proposal=proposal,
            target=ProposalStatus.DENIED,
            actor=denied_by,
            reason=reason,
            correlation_id=correlation_id,
        )

    async def _existing_execution(
        self, *, tenant_id: str, office_id: str, execution_id: str
    ) -> FinanceEvent | None:
        return await get_event_by_provider_id(
            self.db,
            tenant_id=tenant_id,
            office_id=office_id,
            provider=INTERNAL_PROVIDER,
            provider_event_id=execution_id,
        )

    def _replayed(self, proposal: FinanceEvent, execution: FinanceEvent) -> ExecutionResult:
        AUTHORITY_TRANSITIONS_TOTAL.labels(transition="execute", outcome="noop").inc()
        return ExecutionResult(
            proposal=proposal,
            execution=execution,
            policy_decision=dict((execution.event_metadata or {}).get("policyDecision") or {}),
            receipt_id=execution.receipt_id,
            created=False,
        )

    async def execute(
        self,
        *,
        tenant_id: str,
        office_id: str,
        proposal_id: str,
        approved_by: str,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> ExecutionResult:
        correlation_id = correlation_id or ensure_correlation_id()
        proposal = await self.get_proposal(
            tenant_id=tenant_id, office_id=office_id, proposal_id=proposal_id
        )
        if proposal.status == ProposalStatus.DENIED.value:
            AUTHORITY_TRANSITIONS_TOTAL.labels(transition="execute", outcome="conflict").inc()
            raise StateConflictError(
                "Denied proposals cannot be executed",
                details={"proposalId": proposal.provider_event_id, "currentStatus": proposal.status},
            )

        execution_id = f"exec_{proposal.id}"
        existing = await self._existing_execution(
            tenant_id=tenant_id, office_id=office_id, execution_id=execution_id
        )
        if existing is not None:
            return self._replayed(proposal, existing)

        decision = evaluate_execution_policy(proposal.amount, settings=self.settings, now=now)
        policy = decision.to_dict()
        request_inputs = {"proposalId": proposal.provider_event_id, "approvedBy": approved_by}
        if not decision.approved:
            receipt = await self.receipts.record_best_effort(
                tenant_id=tenant_id,
                office_id=office_id,
                action_type=ReceiptActionType.POLICY_DENIED,
                inputs=request_inputs,
                outputs={"policyDecision": policy},
                policy_decision_id=decision.decision_id,
                correlation_id=correlation_id,
                metadata={
                    "proposalTitle": (proposal.event_metadata or {}).get("title"),
                    "riskTier": decision.risk_tier.value,
                },
            )
            AUTHORITY_TRANSITIONS_TOTAL.labels(
                transition="execute", outcome="policy_denied"
            ).inc()
            logger.warning(
                "proposal_execution_policy_denied",
                proposal_id=proposal.provider_event_id,
                risk_tier=decision.risk_tier.value,
                tenant_id=tenant_id,
                office_id=office_id,
            )
            raise PolicyDeniedError(
                "Proposal rejected by policy evaluation",
                details={
                    "policyDecision": policy,
                    "riskTier": decision.risk_tier.value,
                    "receiptId": str(receipt.id) if receipt is not None else None,
                },
            )

        if proposal.status == ProposalStatus.PENDING.value:
            approval = await self._transition(
                tenant_id=tenant_id,
                office_id=office_id,
                proposal=proposal,
                target=ProposalStatus.APPROVED,
                actor=approved_by,
                correlation_id=correlation_id,
            )
            proposal = approval.proposal

        proposal_meta = proposal.event_metadata or {}
        approval_receipt_id = proposal_meta.get("approvalReceiptId")
        receipt_id = uuid4()
        executed = CanonicalEvent(
            provider=INTERNAL_PROVIDER,
            provider_event_id=execution_id,
            event_type=ACTION_EXECUTED,
            occurred_at=now or utcnow(),
            raw_hash=canonical_hash({**request_inputs, "policyDecision": policy}),
            amount=to_decimal(proposal.amount) if proposal.amount is not None else None,
            currency=proposal.currency,
            entity_refs={"proposal_id": proposal.provider_event_id},
            metadata={
                "proposalId": proposal.provider_event_id,
                "approvedBy": approved_by,
                "proposalTitle": proposal_meta.get("title"),
                "policyDecision": policy,
                "approvalReceiptId": approval_receipt_id,
            },
        )
        try:
            written, _ = await insert_events(
                self.db,
                tenant_id=tenant_id,
                office_id=office_id,
                events=[executed],
                receipt_id=receipt_id,
            )
            if written:
                self.receipts.add(
                    tenant_id=tenant_id,
                    office_id=office_id,
                    action_type=ReceiptActionType.EXECUTE_ACTION,
                    inputs=request_inputs,
                    outputs={"executionEventId": execution_id, "policyDecision": policy},
                    policy_decision_id=decision.decision_id,
                    correlation_id=correlation_id,
                    metadata={
                        "proposalTitle": proposal_meta.get("title"),
                        "riskTier": decision.risk_tier.value,
                        "approvalReceiptId": approval_receipt_id,
                    },
                    receipt_id=receipt_id,
                )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            AUTHORITY_TRANSITIONS_TOTAL.labels(transition="execute", outcome="failed").inc()
            logger.error(
                "proposal_execution_failed",
                proposal_id=proposal.provider_event_id,
                error=str(exc),
            )
            raise PersistenceError(
                "Execution did not complete", details={"proposalId": proposal.provider_event_id}
            ) from exc

        execution = await self._existing_execution(
            tenant_id=tenant_id, office_id=office_id, execution_id=execution_id
        )
        if execution is None:
            raise PersistenceError(
                "Execution record is missing after commit",
                details={"proposalId": proposal.provider_event_id},
            )
        if not written:
            return self._replayed(proposal, execution)

        AUTHORITY_TRANSITIONS_TOTAL.labels(transition="execute", outcome="executed").inc()
        logger.info(
            "proposal_executed",
            proposal_id=proposal.provider_event_id,
            execution_id=execution_id,
            risk_tier=decision.risk_tier.value,
            tenant_id=tenant_id,
            office_id=office_id,
        )
        return ExecutionResult(
            proposal=proposal,
            execution=execution,
            policy_decision=policy,
            receipt_id=receipt_id,
            created=True,
        )

    async def list_queue(
        self,
        *,
        tenant_id: str,
        office_id: str,
        status: str | None = None,
        limit: int = 50,
    ) -> list[FinanceEvent]:
        query = select(FinanceEvent).where(
            FinanceEvent.tenant_id == tenant_id,
            FinanceEvent.office_id == office_id,
            FinanceEvent.event_type == PROPOSAL_CREATED,
        )
        if status is not None:
            allowed = {s.value for s in ProposalStatus}
            if status not in allowed:
                raise InvalidRequestError(
                    f"Unsupported status filter: {status}", details={"supported": sorted(allowed)}
                )
            query = query.where(FinanceEvent.status == status)
        rows = await self.db.execute(
            query.order_by(FinanceEvent.occurred_at.desc(), FinanceEvent.created_at.desc())
            .limit(max(1, min(limit, _QUEUE_LIMIT_MAX)))
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())
