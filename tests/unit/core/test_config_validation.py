"""
Tests for app/shared/core/config.py - Configuration management
"""
from decimal import Decimal
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from app.shared.core.config import Settings, get_settings, reload_settings_from_environment


def _settings(**overrides):
    with patch.dict("os.environ", {}, clear=True):
        return Settings(_env_file=None, **overrides)


class TestSettingsDefaults:
    def test_threshold_defaults(self):
        settings = _settings()
        assert settings.CASH_FLOOR_WARN == Decimal("10000")
        assert settings.CASH_FLOOR_CRITICAL == Decimal("2500")
        assert settings.NEGATIVE_FORECAST_CRITICAL == Decimal("5000")
        assert settings.POLICY_MEDIUM_RISK_ABOVE == Decimal("10000")
        assert settings.POLICY_HIGH_RISK_ABOVE == Decimal("100000")
        assert settings.SNAPSHOT_STALE_AFTER_SECONDS == 300

    def test_unsigned_webhooks_off_by_default(self):
        assert _settings().WEBHOOK_ALLOW_UNSIGNED is False


class TestSettingsValidation:
    """Threshold ordering and environment guards."""

    def test_critical_floor_above_warn_floor(self):
        with pytest.raises(ValidationError) as exc:
            _settings(CASH_FLOOR_CRITICAL=Decimal("20000"))
        assert "CASH_FLOOR_CRITICAL" in str(exc.value)

    def test_policy_tiers_must_be_ordered(self):
        with pytest.raises(ValidationError) as exc:
            _settings(POLICY_MEDIUM_RISK_ABOVE=Decimal("100000"))
        assert "POLICY_MEDIUM_RISK_ABOVE" in str(exc.value)

    def test_provider_timeout_bounds(self):
        with pytest.raises(ValidationError):
            _settings(PROVIDER_HTTP_TIMEOUT_SECONDS=12)
        with pytest.raises(ValidationError):
            _settings(PROVIDER_SYNC_BUDGET_SECONDS=1, PROVIDER_HTTP_TIMEOUT_SECONDS=5)

    def test_unknown_plaid_environment(self):
        with pytest.raises(ValidationError) as exc:
            _settings(PLAID_ENVIRONMENT="moon")
        assert "PLAID_ENVIRONMENT" in str(exc.value)

    def test_unsigned_webhooks_forbidden_in_production(self):
        with pytest.raises(ValidationError) as exc:
            _settings(
                ENVIRONMENT="production",
                DATABASE_URL="postgresql+asyncpg://ledger",
                WEBHOOK_ALLOW_UNSIGNED=True,
            )
        assert "WEBHOOK_ALLOW_UNSIGNED" in str(exc.value)

    def test_production_requires_database_url(self):
        with pytest.raises(ValidationError) as exc:
            _settings(ENVIRONMENT="production")
        assert "DATABASE_URL" in str(exc.value)

    def test_testing_flag_rejected_in_production(self):
        with pytest.raises(ValidationError):
            _settings(ENVIRONMENT="production", TESTING=True)

    def test_testing_mode_skips_threshold_checks(self):
        settings = _settings(TESTING=True, CASH_FLOOR_CRITICAL=Decimal("50000"))
        assert settings.CASH_FLOOR_CRITICAL == Decimal("50000")


def test_reload_settings_replaces_cached_instance():
    before = get_settings()
    with patch.dict("os.environ", {"SNAPSHOT_STALE_AFTER_SECONDS": "120"}):
        refreshed = reload_settings_from_environment()
        assert refreshed is not before
        assert refreshed.SNAPSHOT_STALE_AFTER_SECONDS == 120
    reload_settings_from_environment()
