"""
Event ingestion.

Raw provider payloads (polled, pushed by webhook, or posted directly) are
normalized into canonical events and written insert-ignore, so re-delivery of
the same provider event converges on a single row.

Poll mode fans out provider fetches concurrently; each provider is isolated
so one failing integration never aborts its siblings. Database writes stay
sequential on the request's session.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.receipt import ReceiptActionType
from app.modules.ledger.domain.connections import ConnectionRegistry
from app.modules.ledger.domain.common import utcnow
from app.modules.ledger.domain.events import CanonicalEvent, insert_events
from app.modules.ledger.domain.providers import (
    PollResult,
    ProviderAdapter,
    build_adapters,
)
from app.modules.ledger.domain.receipts import ReceiptService
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    InvalidRequestError,
    PersistenceError,
    ResourceNotFoundError,
    UpstreamProviderError,
    WebhookSignatureError,
)
from app.shared.core.ops_metrics import (
    FINANCE_EVENTS_INGESTED_TOTAL,
    PROVIDER_SYNC_DURATION,
    PROVIDER_SYNC_TOTAL,
    WEBHOOK_SIGNATURE_FAILURES_TOTAL,
)
from app.shared.core.tracing import ensure_correlation_id

logger = structlog.get_logger()

MODE_POLL = "poll"
MODE_WEBHOOK = "webhook"
MODE_DIRECT = "direct"
_MODES = frozenset({MODE_POLL, MODE_WEBHOOK, MODE_DIRECT})


@dataclass(frozen=True)
class IngestResult:
    provider: str
    written: int
    skipped: int
    event_ids: list[UUID] = field(default_factory=list)
    receipt_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "written": self.written,
            "skipped": self.skipped,
            "eventIds": [str(event_id) for event_id in self.event_ids],
            "receiptId": str(self.receipt_id) if self.receipt_id else None,
        }


@dataclass(frozen=True)
class ProviderSyncOutcome:
    status: str
    written: int = 0
    skipped: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "written": self.written,
            "skipped": self.skipped,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class SyncReport:
    processed: int
    providers: dict[str, ProviderSyncOutcome]

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "providers": {name: outcome.to_dict() for name, outcome in self.providers.items()},
        }


class IngestionService:
    def __init__(
        self,
        db: AsyncSession,
        adapters: Mapping[str, ProviderAdapter] | None = None,
    ):
        self.db = db
        self.settings = get_settings()
        self.adapters: dict[str, ProviderAdapter] = dict(
            adapters if adapters is not None else build_adapters(self.settings)
        )
        self.registry = ConnectionRegistry(db)
        self.receipts = ReceiptService(db)

    def _adapter(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise InvalidRequestError(
                f"Unsupported provider: {provider}",
                details={"supported": sorted(self.adapters)},
            )
        return adapter

    def normalize(self, provider: str, raw_items: Sequence[Mapping[str, Any]]) -> list[CanonicalEvent]:
        adapter = self._adapter(provider)
        events: list[CanonicalEvent] = []
        for raw in raw_items:
            if not isinstance(raw, Mapping):
                raise InvalidRequestError(
                    "Each ingested item must be a JSON object",
                    details={"provider": provider},
                )
            normalized = adapter.normalize(raw)
            if not normalized:
                FINANCE_EVENTS_INGESTED_TOTAL.labels(
                    provider=provider, mode="any", outcome="unmapped"
                ).inc()
            events.extend(normalized)
        return events

    async def ingest(
        self,
        *,
        tenant_id: str,
        office_id: str,
        provider: str,
        raw_items: Sequence[Mapping[str, Any]],
        mode: str = MODE_DIRECT,
        external_account_id: str | None = None,
        cursor: str | None = None,
        correlation_id: str | None = None,
    ) -> IngestResult:
        if mode not in _MODES:
            raise InvalidRequestError(f"Unsupported ingestion mode: {mode}")
        correlation_id = correlation_id or ensure_correlation_id()
        events = self.normalize(provider, raw_items)
        receipt_id = uuid4()

        try:
            written_ids, skipped = await insert_events(
                self.db,
                tenant_id=tenant_id,
                office_id=office_id,
                events=events,
                receipt_id=receipt_id,
            )
            await self.registry.record_success(
                tenant_id=tenant_id,
                office_id=office_id,
                provider=provider,
                mode=mode,
                external_account_id=external_account_id,
            )
            if cursor:
                await self.registry.save_cursor(
                    tenant_id=tenant_id, office_id=office_id, provider=provider, cursor=cursor
                )
            receipt = self.receipts.add(
                tenant_id=tenant_id,
                office_id=office_id,
                action_type=(
                    ReceiptActionType.INGEST_WEBHOOK
                    if mode == MODE_WEBHOOK
                    else ReceiptActionType.SYNC_PULL
                ),
                inputs={
                    "tenant": tenant_id,
                    "office": office_id,
                    "provider": provider,
                    "mode": mode,
                    "itemCount": len(raw_items),
                    "rawHashes": sorted(event.raw_hash for event in events),
                },
                outputs={
                    "written": len(written_ids),
                    "skipped": skipped,
                    "eventIds": sorted(str(event_id) for event_id in written_ids),
                },
                correlation_id=correlation_id,
                metadata={"provider": provider, "mode": mode},
                receipt_id=receipt_id,
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "finance_events_write_failed",
                provider=provider,
                mode=mode,
                tenant_id=tenant_id,
                office_id=office_id,
                error=str(exc),
            )
            raise PersistenceError(
                f"Failed to persist {provider} events",
                details={"provider": provider},
            ) from exc

        FINANCE_EVENTS_INGESTED_TOTAL.labels(
            provider=provider, mode=mode, outcome="written"
        ).inc(len(written_ids))
        FINANCE_EVENTS_INGESTED_TOTAL.labels(
            provider=provider, mode=mode, outcome="duplicate"
        ).inc(skipped)

        logger.info(
            "finance_events_ingested",
            provider=provider,
            mode=mode,
            written=len(written_ids),
            skipped=skipped,
            tenant_id=tenant_id,
            office_id=office_id,
        )
        return IngestResult(
            provider=provider,
            written=len(written_ids),
            skipped=skipped,
            event_ids=written_ids,
            receipt_id=receipt.id,
        )

    async def _fetch(
        self, provider: str, adapter: ProviderAdapter, cursor: str | None, now: datetime
    ) -> PollResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                adapter.fetch_changes(cursor, now),
                timeout=self.settings.PROVIDER_SYNC_BUDGET_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            PROVIDER_SYNC_TOTAL.labels(provider=provider, status="timeout").inc()
            raise UpstreamProviderError(
                f"{provider} fetch timed out",
                provider=provider,
                details={"timeout_seconds": self.settings.PROVIDER_SYNC_BUDGET_SECONDS},
            ) from exc
        except UpstreamProviderError:
            PROVIDER_SYNC_TOTAL.labels(provider=provider, status="failure").inc()
            raise
        finally:
            PROVIDER_SYNC_DURATION.labels(provider=provider).observe(
                time.perf_counter() - started
            )
        PROVIDER_SYNC_TOTAL.labels(provider=provider, status="success").inc()
        return result

    async def _record_failure(
        self, *, tenant_id: str, office_id: str, provider: str, exc: Exception
    ) -> None:
        reauth_required = isinstance(exc, UpstreamProviderError) and exc.reauth_required
        try:
            await self.registry.record_failure(
                tenant_id=tenant_id,
                office_id=office_id,
                provider=provider,
                error=str(exc) or type(exc).__name__,
                reauth_required=reauth_required,
            )
            await self.db.commit()
        except SQLAlchemyError as db_exc:
            await self.db.rollback()
            logger.error(
                "provider_failure_record_failed",
                provider=provider,
                error=str(db_exc),
            )

    async def sync_provider(
        self,
        *,
        tenant_id: str,
        office_id: str,
        provider: str,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> IngestResult:
        """Polls a single provider. Upstream failures are recorded, then re-raised."""
        adapter = self._adapter(provider)
        now = now or utcnow()
        cursor = await self.registry.get_cursor(
            tenant_id=tenant_id, office_id=office_id, provider=provider
        )
        try:
            poll = await self._fetch(provider, adapter, cursor, now)
        except UpstreamProviderError as exc:
            logger.warning("provider_sync_failed", provider=provider, error=exc.message)
            await self._record_failure(
                tenant_id=tenant_id, office_id=office_id, provider=provider, exc=exc
            )
            raise
        return await self.ingest(
            tenant_id=tenant_id,
            office_id=office_id,
            provider=provider,
            raw_items=poll.items,
            mode=MODE_POLL,
            external_account_id=poll.external_account_id,
            cursor=poll.cursor,
            correlation_id=correlation_id,
        )

    async def sync_all(
        self,
        *,
        tenant_id: str,
        office_id: str,
        providers: Sequence[str] | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> SyncReport:
        now = now or utcnow()
        correlation_id = correlation_id or ensure_correlation_id()
        selected = [
            name
            for name in (providers or sorted(self.adapters))
            if name in self.adapters and self.adapters[name].is_configured()
        ]
        cursors = {
            name: await self.registry.get_cursor(
                tenant_id=tenant_id, office_id=office_id, provider=name
            )
            for name in selected
        }

        fetched = await asyncio.gather(
            *(self._fetch(name, self.adapters[name], cursors[name], now) for name in selected),
            return_exceptions=True,
        )

        outcomes: dict[str, ProviderSyncOutcome] = {}
        processed = 0
        for name, result in zip(selected, fetched):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "provider_sync_failed",
                    provider=name,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                await self._record_failure(
                    tenant_id=tenant_id, office_id=office_id, provider=name, exc=result
                )
                outcomes[name] = ProviderSyncOutcome(status="error", error=str(result))
                continue
            try:
                ingested = await self.ingest(
                    tenant_id=tenant_id,
                    office_id=office_id,
                    provider=name,
                    raw_items=result.items,
                    mode=MODE_POLL,
                    external_account_id=result.external_account_id,
                    cursor=result.cursor,
                    correlation_id=correlation_id,
                )
            except PersistenceError as exc:
                outcomes[name] = ProviderSyncOutcome(status="error", error=exc.message)
                continue
            except Exception as exc:
                # A payload this provider cannot normalize fails only this provider.
                await self.db.rollback()
                logger.error(
                    "provider_ingest_failed",
                    provider=name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self._record_failure(
                    tenant_id=tenant_id, office_id=office_id, provider=name, exc=exc
                )
                outcomes[name] = ProviderSyncOutcome(
                    status="error", error=str(exc) or type(exc).__name__
                )
                continue
            processed += ingested.written + ingested.skipped
            outcomes[name] = ProviderSyncOutcome(
                status="ok", written=ingested.written, skipped=ingested.skipped
            )

        logger.info(
            "provider_sync_completed",
            tenant_id=tenant_id,
            office_id=office_id,
            processed=processed,
            failed=[name for name, outcome in outcomes.items() if outcome.status != "ok"],
        )
        return SyncReport(processed=processed, providers=outcomes)

    async def ingest_webhook(
        self,
        *,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        tenant_id: str | None = None,
        office_id: str | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> IngestResult:
        """
        Verifies the signature over the raw body before anything is parsed or
        written. Scope comes from the connection owning the provider account,
        falling back to the caller-supplied scope.
        """
        adapter = self._adapter(provider)
        lowered = {key.lower(): value for key, value in headers.items()}
        secret = adapter.webhook_secret()
        if secret:
            if not adapter.verify_signature(body, lowered, secret, now or utcnow()):
                WEBHOOK_SIGNATURE_FAILURES_TOTAL.labels(provider=provider).inc()
                logger.warning("webhook_signature_rejected", provider=provider)
                raise WebhookSignatureError(
                    f"Invalid {provider} webhook signature", details={"provider": provider}
                )
        elif self.settings.WEBHOOK_ALLOW_UNSIGNED:
            logger.warning("webhook_accepted_unsigned", provider=provider)
        else:
            WEBHOOK_SIGNATURE_FAILURES_TOTAL.labels(provider=provider).inc()
            logger.error("webhook_secret_not_configured", provider=provider)
            raise WebhookSignatureError(
                f"{provider} webhook secret is not configured",
                details={"provider": provider, "reason": "secret_not_configured"},
            )

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise InvalidRequestError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise InvalidRequestError("Webhook body must be a JSON object")

        account_id = adapter.webhook_account_id(payload)
        if account_id:
            connection = await self.registry.find_by_external_account(
                provider=provider, external_account_id=account_id
            )
            if connection is not None:
                tenant_id, office_id = connection.tenant_id, connection.office_id
        if not tenant_id or not office_id:
            raise ResourceNotFoundError(
                f"No connection matches this {provider} webhook",
                details={"provider": provider, "externalAccountId": account_id},
            )

        return await self.ingest(
            tenant_id=tenant_id,
            office_id=office_id,
            provider=provider,
            raw_items=[payload],
            mode=MODE_WEBHOOK,
            external_account_id=account_id,
            correlation_id=correlation_id,
        )
