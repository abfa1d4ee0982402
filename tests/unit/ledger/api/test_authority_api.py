import pytest

BASE = "/api/v1/finance"


async def _create(client, headers, corr="corr-api", **fields):
    body = {"title": "Pay vendor", "action": "pay_vendor", "amount": "1200.00", **fields}
    return await client.post(
        f"{BASE}/proposals", headers={**headers, "X-Correlation-ID": corr}, json=body
    )


@pytest.mark.asyncio
async def test_create_proposal_and_replay(async_client, scope_headers):
    first = await _create(async_client, scope_headers, riskTier="green")
    assert first.status_code == 201
    body = first.json()
    assert body["proposalId"] == "proposal_corr-api"
    assert body["created"] is True
    assert body["requiredApproval"] is False
    assert body["amount"] == 1200.0

    replay = await _create(async_client, scope_headers, riskTier="green")
    assert replay.status_code == 201
    assert replay.json()["created"] is False
    assert replay.json()["eventId"] == body["eventId"]


@pytest.mark.asyncio
async def test_different_proposal_under_reused_correlation_id_conflicts(async_client, scope_headers):
    first = await _create(async_client, scope_headers, corr="corr_session_1", title="Pay vendor A", amount="50")
    assert first.status_code == 201

    second = await _create(
        async_client, scope_headers, corr="corr_session_1", title="Pay vendor B", amount="90000"
    )
    assert second.status_code == 409
    error = second.json()["error"]
    assert error["code"] == "conflict"
    assert error["details"]["reason"] == "idempotency_key_reused"

    queue = await async_client.get(f"{BASE}/authority-queue", headers=scope_headers)
    assert [p["title"] for p in queue.json()["proposals"]] == ["Pay vendor A"]


@pytest.mark.asyncio
async def test_idempotency_key_separates_proposals_sharing_a_correlation_id(async_client, scope_headers):
    headers = {**scope_headers, "X-Correlation-ID": "corr_session_2"}
    first = await async_client.post(
        f"{BASE}/proposals",
        headers={**headers, "Idempotency-Key": "pay-a"},
        json={"title": "Pay vendor A", "amount": "50"},
    )
    second = await async_client.post(
        f"{BASE}/proposals",
        headers=headers,
        json={"title": "Pay vendor B", "amount": "90000", "idempotencyKey": "pay-b"},
    )
    replay = await async_client.post(
        f"{BASE}/proposals",
        headers={**headers, "Idempotency-Key": "pay-a"},
        json={"title": "Pay vendor A", "amount": "50"},
    )

    assert first.json()["proposalId"] == "proposal_pay-a"
    assert second.status_code == 201
    assert second.json()["proposalId"] == "proposal_pay-b"
    assert second.json()["created"] is True
    assert replay.status_code == 201
    assert replay.json()["created"] is False


@pytest.mark.asyncio
async def test_create_proposal_validation(async_client, scope_headers):
    missing = await async_client.post(f"{BASE}/proposals", headers=scope_headers, json={})
    assert missing.status_code == 400

    bad_tier = await _create(async_client, scope_headers, riskTier="purple")
    assert bad_tier.status_code == 400
    assert bad_tier.json()["error"]["details"]["supported"] == ["green", "yellow", "red"]

    unknown_field = await _create(async_client, scope_headers, approver="me")
    assert unknown_field.status_code == 422


@pytest.mark.asyncio
async def test_queue_approve_and_deny(async_client, scope_headers):
    await _create(async_client, scope_headers, corr="c1")
    await _create(async_client, scope_headers, corr="c2")

    approved = await async_client.post(
        f"{BASE}/authority-queue/proposal_c1/approve",
        headers=scope_headers,
        json={"approvedBy": "cfo"},
    )
    assert approved.status_code == 200
    assert approved.json()["changed"] is True
    assert approved.json()["receiptId"] is not None
    assert approved.json()["proposal"]["approvedBy"] == "cfo"

    denied = await async_client.post(
        f"{BASE}/authority-queue/proposal_c2/deny",
        headers=scope_headers,
        json={"deniedBy": "cfo", "reason": "duplicate"},
    )
    assert denied.json()["proposal"]["status"] == "denied"

    conflict = await async_client.post(
        f"{BASE}/authority-queue/proposal_c2/approve",
        headers=scope_headers,
        json={"approvedBy": "cfo"},
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "conflict"

    queue = await async_client.get(f"{BASE}/authority-queue", headers=scope_headers)
    assert queue.json()["total"] == 2
    pending = await async_client.get(
        f"{BASE}/authority-queue", headers=scope_headers, params={"status": "pending"}
    )
    assert pending.json() == {"proposals": [], "total": 0}
    invalid = await async_client.get(
        f"{BASE}/authority-queue", headers=scope_headers, params={"status": "nope"}
    )
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_approve_unknown_proposal(async_client, scope_headers):
    response = await async_client.post(
        f"{BASE}/authority-queue/proposal_missing/approve",
        headers=scope_headers,
        json={"approvedBy": "cfo"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_execute_and_replay(async_client, scope_headers):
    await _create(async_client, scope_headers)
    payload = {"proposalId": "proposal_corr-api", "approvedBy": "cfo"}

    executed = await async_client.post(f"{BASE}/actions/execute", headers=scope_headers, json=payload)
    assert executed.status_code == 201
    body = executed.json()
    assert body["created"] is True
    assert body["executionProviderEventId"].startswith("exec_")
    assert body["policyDecision"]["approved"] is True

    replay = await async_client.post(f"{BASE}/actions/execute", headers=scope_headers, json=payload)
    assert replay.json()["created"] is False
    assert replay.json()["executionEventId"] == body["executionEventId"]


@pytest.mark.asyncio
async def test_execute_policy_denied(async_client, scope_headers):
    await _create(async_client, scope_headers, amount="500000")
    response = await async_client.post(
        f"{BASE}/actions/execute",
        headers=scope_headers,
        json={"proposalId": "proposal_corr-api", "approvedBy": "cfo"},
    )
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "policy_denied"
    assert error["details"]["riskTier"] == "high"
    assert error["details"]["receiptId"]


@pytest.mark.asyncio
async def test_execute_requires_approver(async_client, scope_headers):
    response = await async_client.post(
        f"{BASE}/actions/execute", headers=scope_headers, json={"proposalId": "p"}
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
