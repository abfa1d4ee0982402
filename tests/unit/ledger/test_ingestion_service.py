import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.finance_connection import ConnectionStatus, FinanceConnection
from app.models.finance_event import FinanceEvent
from app.models.receipt import Receipt
from app.modules.ledger.domain.connections import ConnectionRegistry
from app.modules.ledger.domain.ingestion import (
    MODE_POLL,
    IngestionService,
)
from app.modules.ledger.domain.providers import PollResult, PlaidAdapter, StripeAdapter
from app.modules.ledger.domain.receipts import canonical_hash
from app.shared.core.config import Settings
from app.shared.core.exceptions import (
    InvalidRequestError,
    PersistenceError,
    ResourceNotFoundError,
    UpstreamProviderError,
    WebhookSignatureError,
)
from tests.factories import OFFICE_ID, TENANT_ID, make_connection

SECRET = "whsec_test"


def _payment(event_id: str = "evt_1", amount: int = 10000) -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "created": 1767225600,
        "data": {"object": {"id": f"pi_{event_id}", "amount": amount}},
    }


class FakeStripe(StripeAdapter):
    def __init__(self, settings, items=None, error=None, delay=0.0):
        super().__init__(settings)
        self.items = items or []
        self.error = error
        self.delay = delay

    def is_configured(self) -> bool:
        return True

    async def fetch_changes(self, cursor, now):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PollResult(items=self.items, cursor="1767225600", external_account_id="acct_1")


class FakePlaid(PlaidAdapter):
    def __init__(self, settings, error=None):
        super().__init__(settings)
        self.error = error

    def is_configured(self) -> bool:
        return True

    async def fetch_changes(self, cursor, now):
        if self.error is not None:
            raise self.error
        return PollResult(
            items=[{"transaction_id": "tx_1", "amount": -100, "date": "2026-01-01"}],
            cursor="cur_2",
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(TESTING=True, STRIPE_WEBHOOK_SECRET=SECRET, PROVIDER_SYNC_BUDGET_SECONDS=1.0)


async def _event_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(FinanceEvent))).scalar_one()


@pytest.mark.asyncio
async def test_ingest_is_idempotent_on_provider_event_id(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})

    first = await service.ingest(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=[_payment()]
    )
    second = await service.ingest(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=[_payment()]
    )

    assert (first.written, first.skipped) == (1, 0)
    assert (second.written, second.skipped) == (0, 1)
    assert await _event_count(db) == 1


@pytest.mark.asyncio
async def test_ingest_stamps_events_and_writes_receipt(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    result = await service.ingest(
        tenant_id=TENANT_ID,
        office_id=OFFICE_ID,
        provider="stripe",
        raw_items=[_payment("evt_a"), _payment("evt_b")],
        correlation_id="corr_test",
    )

    assert result.receipt_id is not None
    receipt = await db.get(Receipt, result.receipt_id)
    assert receipt.action_type == "sync_pull"
    assert receipt.correlation_id == "corr_test"
    assert receipt.outputs_hash == canonical_hash(
        {
            "written": 2,
            "skipped": 0,
            "eventIds": sorted(str(i) for i in result.event_ids),
        }
    )
    events = (await db.execute(select(FinanceEvent))).scalars().all()
    assert {e.receipt_id for e in events} == {result.receipt_id}
    assert result.to_dict()["eventIds"] == [str(i) for i in result.event_ids]


@pytest.mark.asyncio
async def test_ingest_marks_connection_connected_and_saves_cursor(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    await service.ingest(
        tenant_id=TENANT_ID,
        office_id=OFFICE_ID,
        provider="stripe",
        raw_items=[_payment()],
        mode=MODE_POLL,
        external_account_id="acct_1",
        cursor="1767225600",
    )
    registry = ConnectionRegistry(db)
    conn = await registry.get(tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe")
    assert conn.status == ConnectionStatus.CONNECTED.value
    assert conn.last_sync_at is not None
    assert conn.last_webhook_at is None
    assert conn.external_account_id == "acct_1"
    assert await registry.get_cursor(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe"
    ) == "1767225600"


@pytest.mark.asyncio
async def test_ingest_rejects_unknown_provider_and_mode(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    with pytest.raises(InvalidRequestError):
        await service.ingest(tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="xero", raw_items=[])
    with pytest.raises(InvalidRequestError):
        await service.ingest(
            tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=[], mode="fax"
        )
    with pytest.raises(InvalidRequestError):
        await service.ingest(
            tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=["nope"]
        )


@pytest.mark.asyncio
async def test_ingest_write_failure_raises_persistence_error(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    failure = OperationalError("INSERT", {}, Exception("locked"))
    with patch(
        "app.modules.ledger.domain.ingestion.insert_events", AsyncMock(side_effect=failure)
    ):
        with pytest.raises(PersistenceError) as exc_info:
            await service.ingest(
                tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=[_payment()]
            )
    assert exc_info.value.retryable
    assert await _event_count(db) == 0


@pytest.mark.asyncio
async def test_ingest_rolls_back_events_when_receipt_write_fails(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    failure = OperationalError("INSERT", {}, Exception("receipts table locked"))
    with patch.object(service.receipts, "add", side_effect=failure):
        with pytest.raises(PersistenceError):
            await service.ingest(
                tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=[_payment()]
            )
    assert await _event_count(db) == 0
    assert (await db.execute(select(func.count()).select_from(Receipt))).scalar_one() == 0

    result = await service.ingest(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe", raw_items=[_payment()]
    )
    assert result.written == 1
    assert (await db.get(Receipt, result.receipt_id)) is not None


@pytest.mark.asyncio
async def test_sync_all_isolates_provider_failures(db, settings) -> None:
    adapters = {
        "stripe": FakeStripe(settings, items=[_payment("evt_1"), _payment("evt_2")]),
        "plaid": FakePlaid(
            settings,
            error=UpstreamProviderError("plaid returned HTTP 401", provider="plaid", reauth_required=True),
        ),
    }
    service = IngestionService(db, adapters=adapters)
    report = await service.sync_all(tenant_id=TENANT_ID, office_id=OFFICE_ID)

    assert report.processed == 2
    assert report.providers["stripe"].status == "ok"
    assert report.providers["stripe"].written == 2
    assert report.providers["plaid"].status == "error"
    assert "401" in report.providers["plaid"].error

    registry = ConnectionRegistry(db)
    plaid = await registry.get(tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="plaid")
    assert plaid.status == ConnectionStatus.NEEDS_REAUTH.value
    assert plaid.consecutive_failures == 1
    assert plaid.last_sync_at is None


class UnparseablePlaid(FakePlaid):
    def normalize(self, raw):
        raise OverflowError("timestamp out of range for platform time_t")


@pytest.mark.asyncio
async def test_sync_all_continues_after_normalization_failure(db, settings) -> None:
    adapters = {
        "plaid": UnparseablePlaid(settings),
        "stripe": FakeStripe(settings, items=[_payment("evt_1")]),
    }
    service = IngestionService(db, adapters=adapters)
    report = await service.sync_all(tenant_id=TENANT_ID, office_id=OFFICE_ID)

    assert report.providers["plaid"].status == "error"
    assert "out of range" in report.providers["plaid"].error
    assert report.providers["stripe"].status == "ok"
    assert report.processed == 1
    assert await _event_count(db) == 1

    plaid = await ConnectionRegistry(db).get(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="plaid"
    )
    assert plaid.consecutive_failures == 1
    assert plaid.status == ConnectionStatus.PENDING.value
    cursor = await ConnectionRegistry(db).get_cursor(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="plaid"
    )
    assert cursor is None


@pytest.mark.asyncio
async def test_sync_all_times_out_slow_provider(db, settings) -> None:
    adapters = {
        "stripe": FakeStripe(settings, items=[_payment()], delay=0.5),
        "plaid": FakePlaid(settings),
    }
    service = IngestionService(db, adapters=adapters)
    service.settings = Settings(TESTING=True, PROVIDER_SYNC_BUDGET_SECONDS=0.05)

    report = await service.sync_all(tenant_id=TENANT_ID, office_id=OFFICE_ID)

    assert report.providers["stripe"].status == "error"
    assert "timed out" in report.providers["stripe"].error
    assert report.providers["plaid"].status == "ok"
    assert report.to_dict()["processed"] == 1


@pytest.mark.asyncio
async def test_sync_all_skips_unconfigured_providers(db, settings) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    report = await service.sync_all(tenant_id=TENANT_ID, office_id=OFFICE_ID)
    assert report.processed == 0
    assert report.providers == {}


@pytest.mark.asyncio
async def test_sync_provider_reraises_after_recording_failure(db, settings) -> None:
    error = UpstreamProviderError("stripe request failed", provider="stripe")
    service = IngestionService(db, adapters={"stripe": FakeStripe(settings, error=error)})
    with pytest.raises(UpstreamProviderError):
        await service.sync_provider(tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe")
    conn = await ConnectionRegistry(db).get(
        tenant_id=TENANT_ID, office_id=OFFICE_ID, provider="stripe"
    )
    assert conn.last_error == "stripe request failed"
    assert conn.status == ConnectionStatus.PENDING.value


def _signed(body: bytes, now: datetime) -> dict[str, str]:
    ts = int(now.timestamp())
    signature = hmac.new(SECRET.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={signature}"}


@pytest.mark.asyncio
async def test_webhook_resolves_scope_from_connection(db, settings) -> None:
    db.add(make_connection("stripe", tenant_id="tenant-b", office_id="office-9", external_account_id="acct_1"))
    await db.commit()
    now = datetime.now(timezone.utc)
    body = json.dumps({**_payment("evt_w"), "account": "acct_1"}).encode()

    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    result = await service.ingest_webhook(
        provider="stripe",
        body=body,
        headers=_signed(body, now),
        tenant_id=TENANT_ID,
        office_id=OFFICE_ID,
        now=now,
    )

    assert result.written == 1
    event = (await db.execute(select(FinanceEvent))).scalar_one()
    assert (event.tenant_id, event.office_id) == ("tenant-b", "office-9")
    receipt = await db.get(Receipt, result.receipt_id)
    assert receipt.action_type == "ingest_webhook"
    conn = (
        await db.execute(select(FinanceConnection).where(FinanceConnection.tenant_id == "tenant-b"))
    ).scalar_one()
    await db.refresh(conn)
    assert conn.last_webhook_at is not None


@pytest.mark.asyncio
async def test_webhook_falls_back_to_supplied_scope(db, settings) -> None:
    now = datetime.now(timezone.utc)
    body = json.dumps(_payment("evt_x")).encode()
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})
    result = await service.ingest_webhook(
        provider="stripe",
        body=body,
        headers=_signed(body, now),
        tenant_id=TENANT_ID,
        office_id=OFFICE_ID,
        now=now,
    )
    assert result.written == 1

    with pytest.raises(ResourceNotFoundError):
        await service.ingest_webhook(
            provider="stripe", body=body, headers=_signed(body, now), now=now
        )


@pytest.mark.asyncio
async def test_webhook_bad_signature_writes_nothing(db, settings) -> None:
    now = datetime.now(timezone.utc)
    body = json.dumps(_payment()).encode()
    headers = _signed(body, now)
    service = IngestionService(db, adapters={"stripe": StripeAdapter(settings)})

    with pytest.raises(WebhookSignatureError):
        await service.ingest_webhook(
            provider="stripe",
            body=body.replace(b"10000", b"99999"),
            headers=headers,
            tenant_id=TENANT_ID,
            office_id=OFFICE_ID,
            now=now,
        )
    assert await _event_count(db) == 0


@pytest.mark.asyncio
async def test_webhook_without_secret_is_rejected_unless_unsigned_allowed(db) -> None:
    no_secret = Settings(TESTING=True)
    body = json.dumps(_payment()).encode()
    service = IngestionService(db, adapters={"stripe": StripeAdapter(no_secret)})

    with pytest.raises(WebhookSignatureError) as exc_info:
        await service.ingest_webhook(
            provider="stripe", body=body, headers={}, tenant_id=TENANT_ID, office_id=OFFICE_ID
        )
    assert exc_info.value.details["reason"] == "secret_not_configured"

    service.settings = Settings(TESTING=True, WEBHOOK_ALLOW_UNSIGNED=True)
    result = await service.ingest_webhook(
        provider="stripe", body=body, headers={}, tenant_id=TENANT_ID, office_id=OFFICE_ID
    )
    assert result.written == 1


@pytest.mark.asyncio
async def test_webhook_rejects_non_object_body(db) -> None:
    service = IngestionService(db, adapters={"stripe": StripeAdapter(Settings(TESTING=True))})
    service.settings = Settings(TESTING=True, WEBHOOK_ALLOW_UNSIGNED=True)
    with pytest.raises(InvalidRequestError):
        await service.ingest_webhook(provider="stripe", body=b"[1,2]", headers={})
    with pytest.raises(InvalidRequestError):
        await service.ingest_webhook(provider="stripe", body=b"{not json", headers={})
