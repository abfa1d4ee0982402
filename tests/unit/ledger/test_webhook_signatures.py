import base64
import hashlib
import hmac
from datetime import datetime, timezone

import pytest

from app.modules.ledger.domain.providers import (
    GustoAdapter,
    PlaidAdapter,
    QuickBooksAdapter,
    StripeAdapter,
)
from app.modules.ledger.domain.providers.stripe import parse_signature_header
from app.shared.core.config import Settings

SECRET = "whsec_test"
BODY = b'{"id":"evt_1","type":"payout.paid"}'
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _hex(payload: bytes) -> str:
    return hmac.new(SECRET.encode(), payload, hashlib.sha256).hexdigest()


@pytest.fixture
def settings() -> Settings:
    return Settings(TESTING=True, WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS=300)


def test_parse_signature_header_collects_all_v1_values() -> None:
    assert parse_signature_header("t=123, v1=abc, v0=zzz, v1=def") == ("123", ["abc", "def"])
    assert parse_signature_header("garbage") == (None, [])


class TestStripeSignature:
    def _header(self, timestamp: int, body: bytes = BODY) -> str:
        return f"t={timestamp},v1={_hex(str(timestamp).encode() + b'.' + body)}"

    def test_valid_signature(self, settings) -> None:
        ts = int(NOW.timestamp())
        headers = {"stripe-signature": self._header(ts)}
        assert StripeAdapter(settings).verify_signature(BODY, headers, SECRET, NOW)

    def test_any_matching_v1_is_accepted(self, settings) -> None:
        ts = int(NOW.timestamp())
        good = self._header(ts).split("v1=")[1]
        headers = {"stripe-signature": f"t={ts},v1=deadbeef,v1={good}"}
        assert StripeAdapter(settings).verify_signature(BODY, headers, SECRET, NOW)

    def test_tampered_body_is_rejected(self, settings) -> None:
        ts = int(NOW.timestamp())
        headers = {"stripe-signature": self._header(ts)}
        assert not StripeAdapter(settings).verify_signature(BODY + b" ", headers, SECRET, NOW)

    def test_timestamp_outside_tolerance_is_rejected(self, settings) -> None:
        ts = int(NOW.timestamp()) - 301
        headers = {"stripe-signature": self._header(ts)}
        assert not StripeAdapter(settings).verify_signature(BODY, headers, SECRET, NOW)

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc", "t=123"])
    def test_missing_or_malformed_header(self, settings, header) -> None:
        headers = {"stripe-signature": header} if header else {}
        assert not StripeAdapter(settings).verify_signature(BODY, headers, SECRET, NOW)


def test_plaid_hex_signature(settings) -> None:
    adapter = PlaidAdapter(settings)
    assert adapter.verify_signature(BODY, {"plaid-signature": _hex(BODY).upper()}, SECRET, NOW)
    assert not adapter.verify_signature(BODY, {"plaid-signature": _hex(b"other")}, SECRET, NOW)
    assert not adapter.verify_signature(BODY, {}, SECRET, NOW)


def test_quickbooks_base64_signature(settings) -> None:
    adapter = QuickBooksAdapter(settings)
    digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()
    signature = base64.b64encode(digest).decode()
    assert adapter.verify_signature(BODY, {"intuit-signature": signature}, SECRET, NOW)
    assert not adapter.verify_signature(BODY, {"intuit-signature": _hex(BODY)}, SECRET, NOW)


def test_gusto_hex_signature(settings) -> None:
    adapter = GustoAdapter(settings)
    assert adapter.verify_signature(BODY, {"x-gusto-signature": _hex(BODY)}, SECRET, NOW)
    assert not adapter.verify_signature(BODY, {"x-gusto-signature": "nope"}, SECRET, NOW)
