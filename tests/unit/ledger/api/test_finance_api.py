from datetime import datetime, timedelta, timezone

import pytest

from app.models.finance_event import BANK_BALANCE_UPDATED, PAYMENT_SUCCEEDED
from app.modules.ledger.api.v1.deps import get_ingestion_service
from app.modules.ledger.domain.ingestion import IngestionService
from app.modules.ledger.domain.providers import PollResult, StripeAdapter
from app.shared.core.config import Settings
from app.shared.core.exceptions import UpstreamProviderError
from tests.factories import make_connection, make_event

BASE = "/api/v1/finance"


def _payment(event_id: str) -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "created": 1767225600,
        "data": {"object": {"id": f"pi_{event_id}", "amount": 2500}},
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"X-Tenant-ID": "tenant-a"},
        {"X-Tenant-ID": "   ", "X-Office-ID": "office-1"},
        {"X-Tenant-ID": "t" * 65, "X-Office-ID": "office-1"},
    ],
)
async def test_scope_headers_are_required(async_client, headers):
    response = await async_client.get(f"{BASE}/snapshot", headers=headers)
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert error["id"]
    assert error["retryable"] is False


@pytest.mark.asyncio
async def test_snapshot_without_connections_is_empty(async_client, scope_headers):
    response = await async_client.get(f"{BASE}/snapshot", headers=scope_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["connected"] is False
    assert body["snapshot"]["snapshotId"] is None
    assert response.headers["X-Correlation-ID"].startswith("corr_")
    assert response.headers["Cache-Control"] == "no-store"


@pytest.mark.asyncio
async def test_compute_snapshot_receipt_round_trip(async_client, db, scope_headers):
    db.add(make_connection("plaid", last_sync_at=datetime.now(timezone.utc)))
    db.add(
        make_event(
            BANK_BALANCE_UPDATED,
            occurred_at=datetime.now(timezone.utc) - timedelta(hours=1),
            amount=20000,
            provider="plaid",
        )
    )
    await db.commit()

    computed = await async_client.post(f"{BASE}/compute-snapshot", headers=scope_headers)
    assert computed.status_code == 200
    snapshot = computed.json()["snapshot"]
    assert computed.json()["connected"] is True
    assert snapshot["chapters"]["now"]["cashAvailable"] == 20000.0

    listed = await async_client.get(f"{BASE}/receipts", headers=scope_headers)
    receipts = listed.json()["receipts"]
    assert [r["actionType"] for r in receipts] == ["compute_snapshot"]
    assert receipts[0]["receiptId"] == snapshot["receiptId"]

    payload = {
        "inputs": {"tenant": "tenant-a", "office": "office-1", "connectionCount": 1},
        "outputs": {
            "generatedAt": snapshot["generatedAt"],
            "connected": True,
            "mismatchCount": 0,
            "proposalCount": 0,
        },
    }
    verified = await async_client.post(
        f"{BASE}/receipts/{snapshot['receiptId']}/verify", headers=scope_headers, json=payload
    )
    assert verified.json() == {"receiptId": snapshot["receiptId"], "valid": True}

    payload["outputs"]["proposalCount"] = 1
    tampered = await async_client.post(
        f"{BASE}/receipts/{snapshot['receiptId']}/verify", headers=scope_headers, json=payload
    )
    assert tampered.json()["valid"] is False

    other_scope = await async_client.post(
        f"{BASE}/receipts/{snapshot['receiptId']}/verify",
        headers={"X-Tenant-ID": "tenant-b", "X-Office-ID": "office-1"},
        json=payload,
    )
    assert other_scope.status_code == 404


@pytest.mark.asyncio
async def test_verify_rejects_malformed_receipt_id(async_client, scope_headers):
    response = await async_client.post(
        f"{BASE}/receipts/not-a-uuid/verify",
        headers=scope_headers,
        json={"inputs": {}, "outputs": {}},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_timeline_range_and_paging(async_client, db, scope_headers):
    now = datetime.now(timezone.utc)
    for days in (1, 2, 3, 40):
        db.add(make_event(PAYMENT_SUCCEEDED, occurred_at=now - timedelta(days=days), amount=days))
    await db.commit()

    response = await async_client.get(
        f"{BASE}/timeline", headers=scope_headers, params={"range": "7d", "limit": 2}
    )
    body = response.json()
    assert body["total"] == 3
    assert [e["amount"] for e in body["events"]] == [1.0, 2.0]
    assert (body["limit"], body["offset"]) == (2, 0)

    wide = await async_client.get(f"{BASE}/timeline", headers=scope_headers, params={"range": "90d"})
    assert wide.json()["total"] == 4

    for bad in ("0d", "400d", "week"):
        rejected = await async_client.get(
            f"{BASE}/timeline", headers=scope_headers, params={"range": bad}
        )
        assert rejected.status_code == 400


@pytest.mark.asyncio
async def test_explain_errors(async_client, scope_headers):
    missing = await async_client.get(f"{BASE}/explain", headers=scope_headers)
    unknown = await async_client.get(
        f"{BASE}/explain", headers=scope_headers, params={"metricId": "burn"}
    )
    known = await async_client.get(
        f"{BASE}/explain", headers=scope_headers, params={"metricId": "mismatch_count"}
    )
    assert missing.status_code == 400
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "not_found"
    assert known.json()["metricId"] == "mismatch_count"


@pytest.mark.asyncio
async def test_exceptions_endpoint_writes_read_receipt(async_client, db, scope_headers):
    db.add(make_connection("plaid", last_sync_at=datetime.now(timezone.utc)))
    await db.commit()

    response = await async_client.get(
        f"{BASE}/exceptions", headers={**scope_headers, "X-Correlation-ID": "corr-read"}
    )
    body = response.json()

    assert response.status_code == 200
    assert body["correlation_id"] == "corr-read"
    assert body["receipt_id"] is not None
    # freshly computed snapshot with no cash trips the floor
    assert body["exceptions"][0]["id"] == "cash_floor"
    assert body["exceptions"][0]["severity"] == "critical"

    receipts = (await async_client.get(f"{BASE}/receipts", headers=scope_headers)).json()["receipts"]
    assert {r["actionType"] for r in receipts} == {"compute_snapshot", "read_exceptions"}


@pytest.mark.asyncio
async def test_connections_status_and_lifecycle(async_client, db, scope_headers):
    db.add(make_connection("stripe", last_sync_at=datetime.now(timezone.utc)))
    await db.commit()

    status = await async_client.get(f"{BASE}/connections/status", headers=scope_headers)
    assert status.json()["summary"]["connected"] == 1

    lifecycle = await async_client.get(
        f"{BASE}/lifecycle", headers=scope_headers, params={"entityId": "in_1"}
    )
    assert lifecycle.json()["entityId"] == "in_1"
    assert len(lifecycle.json()["steps"]) == 5


@pytest.mark.asyncio
async def test_direct_ingest(async_client, scope_headers):
    response = await async_client.post(
        f"{BASE}/ingest/stripe", headers=scope_headers, json={"items": [_payment("evt_1")]}
    )
    assert response.status_code == 200
    assert response.json()["written"] == 1

    replay = await async_client.post(
        f"{BASE}/ingest/stripe", headers=scope_headers, json={"items": [_payment("evt_1")]}
    )
    assert replay.json()["skipped"] == 1

    unknown = await async_client.post(
        f"{BASE}/ingest/xero", headers=scope_headers, json={"items": []}
    )
    assert unknown.status_code == 400


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"items": [{}] * 1001},
        {"items": [], "unexpected": True},
    ],
)
async def test_ingest_body_validation(async_client, scope_headers, payload):
    response = await async_client.post(f"{BASE}/ingest/stripe", headers=scope_headers, json=payload)
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]["errors"]


class _PollingStripe(StripeAdapter):
    def __init__(self, settings, fail=False):
        super().__init__(settings)
        self.fail = fail

    def is_configured(self) -> bool:
        return True

    async def fetch_changes(self, cursor, now):
        if self.fail:
            raise UpstreamProviderError("stripe returned HTTP 500", provider="stripe")
        return PollResult(items=[_payment("evt_poll")], cursor="1767225600")


@pytest.mark.asyncio
@pytest.mark.parametrize("fail, status", [(False, "ok"), (True, "error")])
async def test_sync_reports_per_provider(app, async_client, db, scope_headers, fail, status):
    adapter = _PollingStripe(Settings(TESTING=True), fail=fail)
    app.dependency_overrides[get_ingestion_service] = lambda: IngestionService(
        db, adapters={"stripe": adapter}
    )

    response = await async_client.post(f"{BASE}/sync", headers=scope_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["providers"]["stripe"]["status"] == status
    assert body["processed"] == (0 if fail else 1)
