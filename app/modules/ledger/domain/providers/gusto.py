"""Gusto: payroll runs and workforce changes."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any, Mapping

import structlog

from app.models.finance_event import (
    EMPLOYEE_CHANGED,
    PAYROLL_CALCULATED,
    PAYROLL_PAID,
    PAYROLL_SUBMITTED,
    EventStatus,
)
from app.modules.ledger.domain.common import parse_datetime, to_decimal
from app.modules.ledger.domain.events import CanonicalEvent
from app.modules.ledger.domain.providers.base import PollResult, ProviderAdapter

logger = structlog.get_logger()

GUSTO_EVENT_MAP: dict[str, str] = {
    "payroll.calculated": PAYROLL_CALCULATED,
    "payroll.submitted": PAYROLL_SUBMITTED,
    "payroll.processed": PAYROLL_PAID,
    "payroll.reversed": PAYROLL_PAID,
    "company.updated": EMPLOYEE_CHANGED,
}

GUSTO_API_VERSION = "2024-04-01"
_POLL_LOOKBACK_DAYS = 30


def map_event(gusto_type: str) -> str | None:
    if gusto_type in GUSTO_EVENT_MAP:
        return GUSTO_EVENT_MAP[gusto_type]
    if gusto_type.startswith("employee."):
        return EMPLOYEE_CHANGED
    return None


def _payroll_amount(payroll: Mapping[str, Any]) -> Any:
    totals = payroll.get("totals") or {}
    if totals.get("net_pay") is not None:
        return to_decimal(totals.get("net_pay"))
    return to_decimal(totals.get("gross_pay"))


class GustoAdapter(ProviderAdapter):
    name = "gusto"

    def normalize(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        if raw.get("payroll_uuid") and not (raw.get("event_type") or raw.get("type")):
            return self._normalize_payroll(raw)
        return self._normalize_webhook(raw)

    def _normalize_payroll(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        occurred_at = parse_datetime(raw.get("check_date")) or parse_datetime(
            raw.get("processed_date")
        )
        if occurred_at is None:
            return []
        payroll_id = str(raw["payroll_uuid"])
        return [
            self._event(
                raw,
                provider_event_id=f"gusto_payroll_{payroll_id}",
                event_type=PAYROLL_PAID,
                occurred_at=occurred_at,
                amount=_payroll_amount(raw),
                entity_refs={
                    "payroll_id": payroll_id,
                    "company_uuid": raw.get("company_uuid"),
                },
                metadata={
                    "checkDate": raw.get("check_date"),
                    "payPeriod": raw.get("pay_period"),
                    "description": "Payroll",
                },
            )
        ]

    def _normalize_webhook(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        gusto_type = str(raw.get("event_type") or raw.get("type") or "")
        event_type = map_event(gusto_type)
        resource = raw.get("resource_uuid") or raw.get("entity_uuid") or raw.get("uuid")
        occurred_at = parse_datetime(raw.get("timestamp"))
        if event_type is None or not resource or occurred_at is None:
            logger.debug("gusto_event_unmapped", gusto_type=gusto_type)
            return []
        refs: dict[str, Any] = {"entity_id": str(resource)}
        if gusto_type.startswith("payroll."):
            refs["payroll_id"] = str(resource)
        if raw.get("company_uuid"):
            refs["company_uuid"] = raw["company_uuid"]
        return [
            self._event(
                raw,
                provider_event_id=f"gusto_{gusto_type}_{resource}_{raw.get('timestamp')}",
                event_type=event_type,
                occurred_at=occurred_at,
                amount=to_decimal(raw.get("amount")),
                status=(
                    EventStatus.REVERSED.value
                    if gusto_type == "payroll.reversed"
                    else EventStatus.POSTED.value
                ),
                entity_refs=refs,
                metadata={"gustoType": gusto_type, "description": raw.get("description")},
            )
        ]

    def webhook_secret(self) -> str | None:
        return self.settings.GUSTO_WEBHOOK_SECRET

    def webhook_account_id(self, payload: Mapping[str, Any]) -> str | None:
        company = payload.get("company_uuid")
        return str(company) if company else None

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str, now: datetime
    ) -> bool:
        signature = headers.get("x-gusto-signature", "")
        if not signature:
            logger.warning("gusto_webhook_missing_signature")
            return False
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    def is_configured(self) -> bool:
        return bool(self.settings.GUSTO_ACCESS_TOKEN and self.settings.GUSTO_COMPANY_UUID)

    async def fetch_changes(self, cursor: str | None, now: datetime) -> PollResult:
        start = parse_datetime(cursor) or (now - timedelta(days=_POLL_LOOKBACK_DAYS))
        company = self.settings.GUSTO_COMPANY_UUID
        payrolls = await self._request_list(
            "GET",
            f"{self.settings.GUSTO_BASE_URL.rstrip('/')}/v1/companies/{company}/payrolls",
            headers={
                "Authorization": f"Bearer {self.settings.GUSTO_ACCESS_TOKEN}",
                "X-Gusto-API-Version": GUSTO_API_VERSION,
                "Accept": "application/json",
            },
            params={
                "processing_statuses": "processed",
                "start_date": start.date().isoformat(),
                "end_date": now.date().isoformat(),
            },
        )
        items = [
            {**payroll, "company_uuid": payroll.get("company_uuid") or company}
            for payroll in payrolls
            if isinstance(payroll, dict)
        ]
        return PollResult(items=items, cursor=now.date().isoformat(), external_account_id=company)
