"""Stripe: payments, invoices, payouts and balance movements."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any, Mapping

import structlog

from app.models.finance_event import (
    BALANCE_AVAILABLE,
    FEE_ASSESSED,
    INVOICE_PAID,
    INVOICE_SENT,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    PAYOUT_CREATED,
    PAYOUT_FAILED,
    PAYOUT_PAID,
    EventStatus,
)
from app.modules.ledger.domain.common import minor_to_major, parse_datetime
from app.modules.ledger.domain.events import CanonicalEvent
from app.modules.ledger.domain.providers.base import PollResult, ProviderAdapter

logger = structlog.get_logger()

STRIPE_EVENT_MAP: dict[str, str] = {
    "invoice.sent": INVOICE_SENT,
    "invoice.paid": INVOICE_PAID,
    "invoice.payment_succeeded": PAYMENT_SUCCEEDED,
    "invoice.payment_failed": PAYMENT_FAILED,
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "charge.refunded": PAYMENT_REFUNDED,
    "payout.created": PAYOUT_CREATED,
    "payout.paid": PAYOUT_PAID,
    "payout.failed": PAYOUT_FAILED,
    "balance.available": BALANCE_AVAILABLE,
}

_PENDING_TYPES = frozenset({INVOICE_SENT, PAYOUT_CREATED})
_FEE_SOURCE_TYPES = frozenset(
    {"payment_intent.succeeded", "invoice.paid", "invoice.payment_succeeded"}
)
_REF_BY_PREFIX = (
    ("invoice.", "invoice_id"),
    ("payment_intent.", "payment_intent_id"),
    ("charge.", "charge_id"),
    ("payout.", "payout_id"),
)
_POLL_PAGE_SIZE = 100
_POLL_MAX_PAGES = 5


def _sum_minor(entries: Any) -> int:
    if not isinstance(entries, list):
        return 0
    return sum(int(entry.get("amount") or 0) for entry in entries if isinstance(entry, dict))


def extract_amount(stripe_type: str, obj: Mapping[str, Any]) -> Any:
    """Returns the amount in minor units, or None."""
    if stripe_type.startswith("invoice."):
        return obj.get("amount_paid") if obj.get("amount_paid") is not None else obj.get("amount_due")
    if stripe_type.startswith("payment_intent.") or stripe_type.startswith("payout."):
        return obj.get("amount")
    if stripe_type.startswith("charge."):
        if obj.get("amount_refunded") is not None:
            return obj.get("amount_refunded")
        return obj.get("amount")
    if stripe_type == "balance.available":
        available = obj.get("available")
        if isinstance(available, list) and available:
            return _sum_minor(available)
    return None


def extract_entity_refs(stripe_type: str, obj: Mapping[str, Any], event_id: str) -> dict[str, Any]:
    refs: dict[str, Any] = {"stripe_event_id": event_id}
    object_id = obj.get("id")
    if object_id:
        for prefix, key in _REF_BY_PREFIX:
            if stripe_type.startswith(prefix):
                refs[key] = object_id
                break
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    if customer:
        refs["customer_id"] = customer
    if isinstance(obj.get("payment_intent"), str):
        refs["payment_intent_id"] = obj["payment_intent"]
    return refs


def extract_fee(stripe_type: str, obj: Mapping[str, Any]) -> Any:
    if stripe_type in _FEE_SOURCE_TYPES:
        charges = obj.get("charges")
        if isinstance(charges, dict):
            data = charges.get("data") or []
            if data and isinstance(data[0], dict) and data[0].get("balance_transaction"):
                return None
        fee = obj.get("application_fee_amount")
        if isinstance(fee, int) and not isinstance(fee, bool):
            return fee
    if stripe_type.startswith("charge."):
        balance_tx = obj.get("balance_transaction")
        if isinstance(balance_tx, dict) and isinstance(balance_tx.get("fee"), int):
            return balance_tx["fee"]
    return None


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


class StripeAdapter(ProviderAdapter):
    name = "stripe"

    def normalize(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        stripe_type = str(raw.get("type") or "")
        event_type = STRIPE_EVENT_MAP.get(stripe_type)
        event_id = raw.get("id")
        if event_type is None or not event_id:
            logger.debug("stripe_event_unmapped", stripe_type=stripe_type)
            return []

        data = raw.get("data")
        obj: Mapping[str, Any] = {}
        if isinstance(data, dict) and isinstance(data.get("object"), dict):
            obj = data["object"]

        occurred_at = parse_datetime(raw.get("created")) or parse_datetime(obj.get("created"))
        if occurred_at is None:
            logger.warning("stripe_event_missing_timestamp", stripe_event_id=event_id)
            return []

        currency = str(obj.get("currency") or "usd").lower()
        if stripe_type == "balance.available":
            available = obj.get("available")
            if isinstance(available, list) and available and isinstance(available[0], dict):
                currency = str(available[0].get("currency") or currency).lower()

        metadata: dict[str, Any] = {"stripeType": stripe_type}
        if obj.get("description"):
            metadata["description"] = obj["description"]
        if stripe_type == "balance.available":
            metadata["available"] = str(minor_to_major(_sum_minor(obj.get("available"))))
            metadata["pending"] = str(minor_to_major(_sum_minor(obj.get("pending"))))
        if obj.get("arrival_date") is not None:
            arrival = parse_datetime(obj.get("arrival_date"))
            if arrival is not None:
                metadata["arrivalDate"] = arrival.isoformat()

        refs = extract_entity_refs(stripe_type, obj, str(event_id))
        events = [
            self._event(
                raw,
                provider_event_id=str(event_id),
                event_type=event_type,
                occurred_at=occurred_at,
                amount=minor_to_major(extract_amount(stripe_type, obj)),
                currency=currency,
                status=(
                    EventStatus.PENDING.value
                    if event_type in _PENDING_TYPES
                    else EventStatus.POSTED.value
                ),
                entity_refs=refs,
                metadata=metadata,
            )
        ]

        fee = extract_fee(stripe_type, obj)
        if fee:
            events.append(
                self._event(
                    {"source": str(event_id), "fee": fee},
                    provider_event_id=f"{event_id}_fee",
                    event_type=FEE_ASSESSED,
                    occurred_at=occurred_at,
                    amount=minor_to_major(fee),
                    currency=currency,
                    entity_refs=refs,
                    metadata={"stripeType": stripe_type, "sourceEventId": str(event_id)},
                )
            )
        return events

    def webhook_secret(self) -> str | None:
        return self.settings.STRIPE_WEBHOOK_SECRET

    def webhook_account_id(self, payload: Mapping[str, Any]) -> str | None:
        account = payload.get("account")
        return str(account) if account else None

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str, now: datetime
    ) -> bool:
        header = headers.get("stripe-signature", "")
        if not header:
            logger.warning("stripe_webhook_missing_signature")
            return False
        timestamp, signatures = parse_signature_header(header)
        if not timestamp or not timestamp.isdigit() or not signatures:
            logger.warning("stripe_webhook_malformed_signature")
            return False

        tolerance = self.settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS
        if abs(now.timestamp() - int(timestamp)) > tolerance:
            logger.warning("stripe_webhook_timestamp_out_of_tolerance", timestamp=timestamp)
            return False

        signed_payload = timestamp.encode() + b"." + body
        expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)

    def is_configured(self) -> bool:
        return bool(self.settings.STRIPE_SECRET_KEY)

    async def fetch_changes(self, cursor: str | None, now: datetime) -> PollResult:
        created_after = (
            int(cursor)
            if cursor and cursor.isdigit()
            else int((now - timedelta(days=1)).timestamp())
        )
        url = f"{self.settings.STRIPE_API_BASE.rstrip('/')}/v1/events"
        headers = {"Authorization": f"Bearer {self.settings.STRIPE_SECRET_KEY}"}
        items: list[dict[str, Any]] = []
        starting_after: str | None = None
        complete = False
        # Events list newest first; page back towards the cursor.
        for _ in range(_POLL_MAX_PAGES):
            params: dict[str, Any] = {
                "limit": _POLL_PAGE_SIZE,
                "created[gt]": created_after,
                "types[]": sorted(STRIPE_EVENT_MAP),
            }
            if starting_after:
                params["starting_after"] = starting_after
            payload = await self._request("GET", url, headers=headers, params=params)
            page = [item for item in payload.get("data") or [] if isinstance(item, dict)]
            items.extend(page)
            if not page or not payload.get("has_more"):
                complete = True
                break
            last_id = page[-1].get("id")
            if not last_id:
                break
            starting_after = str(last_id)

        if not complete:
            # Older events are still unread; keep the cursor where it was.
            logger.warning(
                "stripe_poll_window_truncated",
                fetched=len(items),
                created_after=created_after,
            )
            return PollResult(items=items, cursor=str(created_after))
        newest = max((int(item.get("created") or 0) for item in items), default=created_after)
        return PollResult(items=items, cursor=str(max(newest, created_after)))
