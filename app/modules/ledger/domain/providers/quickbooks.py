"""QuickBooks Online: accounting entities (via CDC) and financial reports."""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterator, Mapping

import structlog

from app.models.finance_event import (
    QBO_INVOICE_CHANGED,
    QBO_JOURNAL_POSTED,
    QBO_PAYMENT_CHANGED,
    QBO_REPORT_REFRESHED,
)
from app.modules.ledger.domain.common import month_start, parse_datetime, to_decimal
from app.modules.ledger.domain.events import CanonicalEvent
from app.modules.ledger.domain.providers.base import PollResult, ProviderAdapter

logger = structlog.get_logger()

QBO_EVENT_MAP: dict[str, str] = {
    "Invoice": QBO_INVOICE_CHANGED,
    "Estimate": QBO_INVOICE_CHANGED,
    "Payment": QBO_PAYMENT_CHANGED,
    "Bill": QBO_PAYMENT_CHANGED,
    "BillPayment": QBO_PAYMENT_CHANGED,
    "JournalEntry": QBO_JOURNAL_POSTED,
    "ProfitAndLoss": QBO_REPORT_REFRESHED,
    "BalanceSheet": QBO_REPORT_REFRESHED,
}

CDC_ENTITIES = ("Invoice", "Estimate", "Payment", "Bill", "BillPayment", "JournalEntry")
_CDC_PAGING_KEYS = frozenset({"startPosition", "maxResults", "totalCount"})
_QBO_MINOR_VERSION = "70"


def _iter_cdc_entities(document: Mapping[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    for response in document.get("CDCResponse") or []:
        for query_response in (response or {}).get("QueryResponse") or []:
            for entity_name, rows in (query_response or {}).items():
                if entity_name in _CDC_PAGING_KEYS or not isinstance(rows, list):
                    continue
                for row in rows:
                    if isinstance(row, dict):
                        yield entity_name, row


def _iter_rows(rows: Any) -> Iterator[dict[str, Any]]:
    if not isinstance(rows, dict):
        return
    for row in rows.get("Row") or []:
        if not isinstance(row, dict):
            continue
        yield row
        yield from _iter_rows(row.get("Rows"))


def _summary_value(row: Mapping[str, Any]) -> Decimal | None:
    col_data = (row.get("Summary") or {}).get("ColData") or []
    if len(col_data) < 2 or not isinstance(col_data[1], dict):
        return None
    return to_decimal(col_data[1].get("value"))


def parse_report_totals(report: Mapping[str, Any]) -> dict[str, Decimal]:
    """Extracts group summary totals (Income, Expenses, BankAccounts) from a report."""
    totals: dict[str, Decimal] = {}
    for row in _iter_rows(report.get("Rows")):
        group = row.get("group")
        if group in {"Income", "Expenses", "BankAccounts"} and group not in totals:
            value = _summary_value(row)
            if value is not None:
                totals[group] = value
    return totals


class QuickBooksAdapter(ProviderAdapter):
    name = "qbo"

    def normalize(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        if "CDCResponse" in raw:
            return [
                event
                for entity_name, entity in _iter_cdc_entities(raw)
                for event in self._normalize_entity(entity_name, entity)
            ]
        if "eventNotifications" in raw:
            return self._normalize_webhook(raw)
        if isinstance(raw.get("Header"), dict) and "Rows" in raw:
            return self._normalize_report(raw)
        if len(raw) == 1:
            entity_name, entity = next(iter(raw.items()))
            if entity_name in QBO_EVENT_MAP and isinstance(entity, dict):
                return self._normalize_entity(entity_name, entity)
        logger.debug("qbo_item_unrecognized", keys=sorted(raw)[:10])
        return []

    def _normalize_entity(self, entity_name: str, entity: Mapping[str, Any]) -> list[CanonicalEvent]:
        event_type = QBO_EVENT_MAP.get(entity_name)
        entity_id = entity.get("Id")
        if event_type is None or not entity_id:
            return []
        last_updated_raw = (entity.get("MetaData") or {}).get("LastUpdatedTime")
        occurred_at = parse_datetime(last_updated_raw) or parse_datetime(entity.get("TxnDate"))
        if occurred_at is None:
            return []
        refs: dict[str, Any] = {"entity_type": entity_name, "entity_id": str(entity_id)}
        if entity.get("DocNumber"):
            refs["doc_number"] = str(entity["DocNumber"])
        if entity.get("PaymentRefNum"):
            refs["payment_ref"] = str(entity["PaymentRefNum"])
        currency_ref = entity.get("CurrencyRef") or {}
        metadata: dict[str, Any] = {"operation": "Delete" if entity.get("status") == "Deleted" else "Update"}
        if entity.get("PrivateNote"):
            metadata["description"] = entity["PrivateNote"]
        return [
            self._event(
                entity,
                provider_event_id=f"qbo_{entity_name}_{entity_id}_{last_updated_raw or occurred_at.isoformat()}",
                event_type=event_type,
                occurred_at=occurred_at,
                amount=to_decimal(entity.get("TotalAmt")),
                currency=str(currency_ref.get("value") or "usd").lower(),
                entity_refs=refs,
                metadata=metadata,
            )
        ]

    def _normalize_webhook(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        for notification in raw.get("eventNotifications") or []:
            realm_id = (notification or {}).get("realmId")
            entities = ((notification or {}).get("dataChangeEvent") or {}).get("entities") or []
            for entity in entities:
                if not isinstance(entity, dict):
                    continue
                name = entity.get("name")
                event_type = QBO_EVENT_MAP.get(str(name))
                occurred_at = parse_datetime(entity.get("lastUpdated"))
                if event_type is None or not entity.get("id") or occurred_at is None:
                    continue
                events.append(
                    self._event(
                        entity,
                        provider_event_id=f"qbo_{name}_{entity['id']}_{entity.get('lastUpdated')}",
                        event_type=event_type,
                        occurred_at=occurred_at,
                        entity_refs={
                            "entity_type": name,
                            "entity_id": str(entity["id"]),
                            "realm_id": realm_id,
                        },
                        metadata={"operation": entity.get("operation")},
                    )
                )
        return events

    def _normalize_report(self, report: Mapping[str, Any]) -> list[CanonicalEvent]:
        header = report.get("Header") or {}
        report_name = str(header.get("ReportName") or "ProfitAndLoss")
        start = header.get("StartPeriod")
        end = header.get("EndPeriod")
        occurred_at = parse_datetime(end) or parse_datetime(header.get("Time"))
        if occurred_at is None:
            return []
        totals = parse_report_totals(report)
        metadata: dict[str, Any] = {"reportType": report_name, "startDate": start, "endDate": end}
        if report_name == "ProfitAndLoss":
            provider_event_id = f"qbo_pnl_{start}_{end}"
            metadata["revenue"] = str(totals.get("Income", Decimal("0")))
            metadata["expenses"] = str(totals.get("Expenses", Decimal("0")))
        else:
            provider_event_id = f"qbo_{report_name.lower()}_{start}_{end}"
        if "BankAccounts" in totals:
            metadata["bankTotal"] = str(totals["BankAccounts"])
        return [
            self._event(
                report,
                provider_event_id=provider_event_id,
                event_type=QBO_REPORT_REFRESHED,
                occurred_at=occurred_at,
                currency=str(header.get("Currency") or "usd").lower(),
                entity_refs={"report": report_name},
                metadata=metadata,
            )
        ]

    def webhook_secret(self) -> str | None:
        return self.settings.QBO_WEBHOOK_VERIFIER_TOKEN

    def webhook_account_id(self, payload: Mapping[str, Any]) -> str | None:
        for notification in payload.get("eventNotifications") or []:
            if isinstance(notification, dict) and notification.get("realmId"):
                return str(notification["realmId"])
        return None

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str, now: datetime
    ) -> bool:
        signature = headers.get("intuit-signature", "")
        if not signature:
            logger.warning("qbo_webhook_missing_signature")
            return False
        digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature.strip())

    def is_configured(self) -> bool:
        return bool(self.settings.QBO_ACCESS_TOKEN and self.settings.QBO_REALM_ID)

    async def fetch_changes(self, cursor: str | None, now: datetime) -> PollResult:
        base = f"{self.settings.QBO_BASE_URL.rstrip('/')}/v3/company/{self.settings.QBO_REALM_ID}"
        headers = {
            "Authorization": f"Bearer {self.settings.QBO_ACCESS_TOKEN}",
            "Accept": "application/json",
        }
        changed_since = parse_datetime(cursor) or (now - timedelta(hours=24))
        cdc = await self._request(
            "GET",
            f"{base}/cdc",
            headers=headers,
            params={
                "entities": ",".join(CDC_ENTITIES),
                "changedSince": changed_since.isoformat(),
                "minorversion": _QBO_MINOR_VERSION,
            },
        )
        report = await self._request(
            "GET",
            f"{base}/reports/ProfitAndLoss",
            headers=headers,
            params={
                "start_date": month_start(now).date().isoformat(),
                "end_date": now.date().isoformat(),
                "minorversion": _QBO_MINOR_VERSION,
            },
        )
        return PollResult(
            items=[cdc, report],
            cursor=now.isoformat(),
            external_account_id=self.settings.QBO_REALM_ID,
        )
