"""
Unit Tests for Settlement Configuration

Reliability Level: SOVEREIGN TIER

Tests:
- defaults and environment parsing (Decimal precision, ints)
- invalid values fall back to defaults
- live brokerage mode fails closed without credentials (STL-040)
"""

import pytest
from decimal import Decimal

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.settlement_config import (
    SettlementConfig,
    get_settlement_config,
    reset_settlement_config,
)
from services.settlement_errors import SettlementConfigurationError, SettlementErrorCode

ENV_NAMES = (
    "SETTLEMENT_EXECUTION_TOLERANCE_PCT",
    "SETTLEMENT_RECONCILIATION_EPSILON",
    "JOURNAL_MIN_AMOUNT",
    "JOURNAL_MAX_WORKERS",
    "JOURNAL_TRANSFER_TIMEOUT_SECONDS",
    "JOURNAL_STALE_QUEUED_SECONDS",
    "BROKERAGE_MODE",
    "BROKERAGE_BASE_URL",
    "BROKERAGE_API_KEY",
    "BROKERAGE_API_SECRET",
    "BROKERAGE_FIRM_ACCOUNT_ID",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    reset_settlement_config()
    yield
    reset_settlement_config()


class TestDefaults:

    def test_defaults(self) -> None:
        config = SettlementConfig.from_environment()

        assert config.execution_tolerance_pct == Decimal("1.00")
        assert config.reconciliation_epsilon == Decimal("0.01")
        assert config.journal_min_amount == Decimal("1.00")
        assert config.journal_max_workers == 4
        assert config.journal_transfer_timeout_seconds == 30
        assert config.journal_stale_queued_seconds == 900
        assert config.brokerage_mode == "demo"
        assert config.is_live is False


class TestEnvironmentParsing:

    def test_values_read_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("SETTLEMENT_EXECUTION_TOLERANCE_PCT", "2.5")
        monkeypatch.setenv("JOURNAL_MIN_AMOUNT", "5.005")
        monkeypatch.setenv("JOURNAL_MAX_WORKERS", "8")
        monkeypatch.setenv("BROKERAGE_MODE", " DEMO ")

        config = SettlementConfig.from_environment()

        assert config.execution_tolerance_pct == Decimal("2.50")
        assert config.journal_min_amount == Decimal("5.00")
        assert config.journal_max_workers == 8
        assert config.brokerage_mode == "demo"

    def test_invalid_values_fall_back(self, monkeypatch) -> None:
        monkeypatch.setenv("JOURNAL_MIN_AMOUNT", "lots")
        monkeypatch.setenv("JOURNAL_MAX_WORKERS", "four")

        config = SettlementConfig.from_environment()

        assert config.journal_min_amount == Decimal("1.00")
        assert config.journal_max_workers == 4

    def test_non_positive_workers_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("JOURNAL_MAX_WORKERS", "0")
        with pytest.raises(SettlementConfigurationError):
            SettlementConfig.from_environment()

    def test_unknown_mode_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("BROKERAGE_MODE", "paper")
        with pytest.raises(SettlementConfigurationError):
            SettlementConfig.from_environment()


class TestLiveMode:

    def test_live_without_credentials_fails_closed(self, monkeypatch) -> None:
        monkeypatch.setenv("BROKERAGE_MODE", "live")

        with pytest.raises(SettlementConfigurationError) as exc_info:
            SettlementConfig.from_environment()

        assert exc_info.value.error_code == SettlementErrorCode.CONFIG_MISSING
        assert "BROKERAGE_API_KEY" in str(exc_info.value)

    def test_live_with_credentials(self, monkeypatch) -> None:
        monkeypatch.setenv("BROKERAGE_MODE", "live")
        monkeypatch.setenv("BROKERAGE_API_KEY", "key")
        monkeypatch.setenv("BROKERAGE_API_SECRET", "secret")
        monkeypatch.setenv("BROKERAGE_FIRM_ACCOUNT_ID", "firm-1")

        config = SettlementConfig.from_environment()

        assert config.is_live is True
        assert config.to_dict()["brokerage_api_secret_set"] is True
        assert "secret" not in config.to_dict().values()

    def test_validation_can_be_skipped(self, monkeypatch) -> None:
        monkeypatch.setenv("BROKERAGE_MODE", "live")
        config = SettlementConfig.from_environment(validate=False)
        assert config.brokerage_api_key is None


class TestGlobalInstance:

    def test_cached_until_reset(self, monkeypatch) -> None:
        first = get_settlement_config()
        assert get_settlement_config() is first

        monkeypatch.setenv("JOURNAL_MAX_WORKERS", "2")
        reset_settlement_config()

        assert get_settlement_config().journal_max_workers == 2
