"""Plaid: bank transactions, balances and item health."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping

import structlog

from app.models.finance_event import (
    BANK_ACCOUNT_LINKED,
    BANK_BALANCE_UPDATED,
    BANK_ITEM_ERROR,
    BANK_TX_PENDING,
    BANK_TX_POSTED,
    BANK_TX_REVERSED,
    EventStatus,
)
from app.modules.ledger.domain.common import parse_datetime, to_decimal, utcnow
from app.modules.ledger.domain.events import CanonicalEvent
from app.modules.ledger.domain.providers.base import PollResult, ProviderAdapter
from app.modules.ledger.domain.receipts import canonical_hash

logger = structlog.get_logger()

PLAID_WEBHOOK_MAP: dict[str, str] = {
    "TRANSACTIONS.TRANSACTIONS_REMOVED": BANK_TX_REVERSED,
    "ITEM.ERROR": BANK_ITEM_ERROR,
    "ITEM.PENDING_EXPIRATION": BANK_ITEM_ERROR,
    "ITEM.USER_PERMISSION_REVOKED": BANK_ITEM_ERROR,
    "ITEM.WEBHOOK_UPDATE_ACKNOWLEDGED": BANK_ACCOUNT_LINKED,
    "BALANCE.DEFAULT_UPDATE": BANK_BALANCE_UPDATED,
    "HOLDINGS.DEFAULT_UPDATE": BANK_BALANCE_UPDATED,
}

PLAID_HOSTS: dict[str, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

_SYNC_MAX_PAGES = 5


def map_webhook(webhook_type: str, webhook_code: str) -> str | None:
    key = f"{webhook_type}.{webhook_code}"
    if key in PLAID_WEBHOOK_MAP:
        return PLAID_WEBHOOK_MAP[key]
    if webhook_type == "TRANSACTIONS":
        return BANK_TX_POSTED
    return None


def _ledger_amount(plaid_amount: Any) -> Decimal | None:
    # Plaid reports money leaving the account as positive.
    amount = to_decimal(plaid_amount)
    if amount is None:
        return None
    return (-amount).quantize(Decimal("0.01"))


class PlaidAdapter(ProviderAdapter):
    name = "plaid"

    def normalize(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        if "webhook_type" in raw:
            return self._normalize_webhook(raw)
        if isinstance(raw.get("accounts"), list):
            return self._normalize_balances(raw)
        if raw.get("transaction_id"):
            if raw.get("removed"):
                return self._normalize_removed(raw)
            return self._normalize_transaction(raw)
        logger.debug("plaid_item_unrecognized", keys=sorted(raw)[:10])
        return []

    def _normalize_transaction(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        occurred_at = parse_datetime(raw.get("datetime")) or parse_datetime(raw.get("date"))
        if occurred_at is None:
            return []
        pending = bool(raw.get("pending"))
        refs: dict[str, Any] = {"bank_tx_id": raw["transaction_id"]}
        if raw.get("account_id"):
            refs["account_id"] = raw["account_id"]
        if raw.get("category"):
            refs["category"] = raw["category"]
        return [
            self._event(
                raw,
                provider_event_id=f"plaid_tx_{raw['transaction_id']}",
                event_type=BANK_TX_PENDING if pending else BANK_TX_POSTED,
                occurred_at=occurred_at,
                amount=_ledger_amount(raw.get("amount")),
                currency=str(raw.get("iso_currency_code") or "usd").lower(),
                status=EventStatus.PENDING.value if pending else EventStatus.POSTED.value,
                entity_refs=refs,
                metadata={
                    "name": raw.get("name"),
                    "merchantName": raw.get("merchant_name"),
                    "transactionType": raw.get("transaction_type"),
                    "plaidAmount": str(raw.get("amount")),
                },
            )
        ]

    def _normalize_removed(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        return [
            self._event(
                raw,
                provider_event_id=f"plaid_tx_removed_{raw['transaction_id']}",
                event_type=BANK_TX_REVERSED,
                occurred_at=parse_datetime(raw.get("removed_at")) or utcnow(),
                status=EventStatus.REVERSED.value,
                entity_refs={"bank_tx_id": raw["transaction_id"]},
            )
        ]

    def _normalize_balances(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        accounts = [a for a in raw.get("accounts") or [] if isinstance(a, dict)]
        total = Decimal("0")
        currency = "usd"
        for account in accounts:
            balances = account.get("balances") or {}
            total += to_decimal(balances.get("current"), Decimal("0")) or Decimal("0")
            if balances.get("iso_currency_code"):
                currency = str(balances["iso_currency_code"]).lower()
        as_of = parse_datetime(raw.get("date")) or utcnow()
        item_id = raw.get("item_id") or (accounts[0].get("account_id") if accounts else "unknown")
        return [
            self._event(
                raw,
                provider_event_id=f"plaid_balance_{item_id}_{as_of.date().isoformat()}",
                event_type=BANK_BALANCE_UPDATED,
                occurred_at=as_of,
                amount=total.quantize(Decimal("0.01")),
                currency=currency,
                entity_refs={"item_id": item_id},
                metadata={"accountCount": len(accounts)},
            )
        ]

    def _normalize_webhook(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        webhook_type = str(raw.get("webhook_type") or "")
        webhook_code = str(raw.get("webhook_code") or "")
        event_type = map_webhook(webhook_type, webhook_code)
        if event_type is None:
            logger.debug("plaid_webhook_unmapped", webhook_type=webhook_type, webhook_code=webhook_code)
            return []
        item_id = str(raw.get("item_id") or "")
        occurred_at = parse_datetime(raw.get("timestamp"))
        if occurred_at is None:
            occurred_at = utcnow()
            stamp = canonical_hash(raw)[:16]
        else:
            stamp = str(raw.get("timestamp"))
        metadata: dict[str, Any] = {"webhookType": webhook_type, "webhookCode": webhook_code}
        if raw.get("new_transactions") is not None:
            metadata["newTransactions"] = raw.get("new_transactions")
        if isinstance(raw.get("error"), dict):
            metadata["error"] = raw["error"].get("error_code")
        return [
            self._event(
                raw,
                provider_event_id=f"plaid_{webhook_type}_{webhook_code}_{item_id}_{stamp}",
                event_type=event_type,
                occurred_at=occurred_at,
                status=(
                    EventStatus.REVERSED.value
                    if event_type == BANK_TX_REVERSED
                    else EventStatus.POSTED.value
                ),
                entity_refs={"item_id": item_id},
                metadata=metadata,
            )
        ]

    def webhook_secret(self) -> str | None:
        return self.settings.PLAID_WEBHOOK_SECRET

    def webhook_account_id(self, payload: Mapping[str, Any]) -> str | None:
        item_id = payload.get("item_id")
        return str(item_id) if item_id else None

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str, now: datetime
    ) -> bool:
        signature = headers.get("plaid-signature", "")
        if not signature:
            logger.warning("plaid_webhook_missing_signature")
            return False
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def is_configured(self) -> bool:
        return bool(
            self.settings.PLAID_CLIENT_ID
            and self.settings.PLAID_SECRET
            and self.settings.PLAID_ACCESS_TOKEN
        )

    def _credentials(self) -> dict[str, Any]:
        return {
            "client_id": self.settings.PLAID_CLIENT_ID,
            "secret": self.settings.PLAID_SECRET,
            "access_token": self.settings.PLAID_ACCESS_TOKEN,
        }

    async def fetch_changes(self, cursor: str | None, now: datetime) -> PollResult:
        host = PLAID_HOSTS[self.settings.PLAID_ENVIRONMENT]
        items: list[dict[str, Any]] = []
        next_cursor = cursor
        for _ in range(_SYNC_MAX_PAGES):
            body = {**self._credentials(), "count": 250}
            if next_cursor:
                body["cursor"] = next_cursor
            page = await self._request("POST", f"{host}/transactions/sync", json_body=body)
            items.extend(tx for tx in page.get("added") or [] if isinstance(tx, dict))
            items.extend(tx for tx in page.get("modified") or [] if isinstance(tx, dict))
            items.extend(
                {"transaction_id": tx.get("transaction_id"), "removed": True}
                for tx in page.get("removed") or []
                if isinstance(tx, dict) and tx.get("transaction_id")
            )
            next_cursor = page.get("next_cursor") or next_cursor
            if not page.get("has_more"):
                break

        balances = await self._request(
            "POST", f"{host}/accounts/balance/get", json_body=self._credentials()
        )
        item = balances.get("item") or {}
        item_id = item.get("item_id") or self.settings.PLAID_ITEM_ID
        items.append(
            {
                "item_id": item_id,
                "accounts": balances.get("accounts") or [],
                "date": now.date().isoformat(),
            }
        )
        return PollResult(items=items, cursor=next_cursor, external_account_id=item_id)
