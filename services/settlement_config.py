"""
============================================================================
Settlement Pipeline - Configuration
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Tolerances and minimums are decimal.Decimal (ROUND_HALF_EVEN)

This module provides configuration management for the settlement pipeline:
- Environment variable parsing with type safety
- Default values for optional configuration
- Fail-closed behavior when live brokerage credentials are missing (STL-040)

ENVIRONMENT VARIABLES:
    - SETTLEMENT_EXECUTION_TOLERANCE_PCT: Max % deviation of a fill (default: 1.00)
    - SETTLEMENT_RECONCILIATION_EPSILON: Wallet cash tolerance (default: 0.01)
    - JOURNAL_MIN_AMOUNT: Brokerage cash journal floor (default: 1.00)
    - JOURNAL_MAX_WORKERS: Journal worker pool size (default: 4)
    - JOURNAL_TRANSFER_TIMEOUT_SECONDS: Per-member transfer timeout (default: 30)
    - JOURNAL_STALE_QUEUED_SECONDS: Age of an orphaned queued journal (default: 900)
    - BROKERAGE_MODE: demo | live (default: demo)
    - BROKERAGE_BASE_URL, BROKERAGE_API_KEY, BROKERAGE_API_SECRET,
      BROKERAGE_FIRM_ACCOUNT_ID: required when BROKERAGE_MODE=live

ERROR CODES:
    - STL-040: Required configuration missing

============================================================================
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Optional, List
from dataclasses import dataclass, field
import logging
import os

from services.settlement_errors import SettlementConfigurationError, SettlementErrorCode

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

PRECISION_PERCENT = Decimal("0.01")
PRECISION_USD = Decimal("0.01")

BROKERAGE_MODE_DEMO = "demo"
BROKERAGE_MODE_LIVE = "live"

DEFAULT_EXECUTION_TOLERANCE_PCT = Decimal("1.00")
DEFAULT_RECONCILIATION_EPSILON = Decimal("0.01")
DEFAULT_JOURNAL_MIN_AMOUNT = Decimal("1.00")
DEFAULT_JOURNAL_MAX_WORKERS = 4
DEFAULT_JOURNAL_TRANSFER_TIMEOUT_SECONDS = 30
DEFAULT_JOURNAL_STALE_QUEUED_SECONDS = 900
DEFAULT_BROKERAGE_BASE_URL = "https://broker-api.sandbox.alpaca.markets"


def _decimal_env(name: str, default: Decimal, precision: Decimal) -> Decimal:
    raw = os.environ.get(name, str(default))
    try:
        return Decimal(raw.strip()).quantize(precision, rounding=ROUND_HALF_EVEN)
    except (InvalidOperation, ValueError):
        logger.warning(
            f"[SETTLEMENT-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[SETTLEMENT-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


# =============================================================================
# SettlementConfig Class
# =============================================================================

@dataclass
class SettlementConfig:
    """
    Settlement pipeline configuration.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: numeric limits must be positive; live mode needs credentials
    Side Effects: Logs configuration on load
    """

    execution_tolerance_pct: Decimal = field(
        default_factory=lambda: DEFAULT_EXECUTION_TOLERANCE_PCT
    )
    reconciliation_epsilon: Decimal = field(
        default_factory=lambda: DEFAULT_RECONCILIATION_EPSILON
    )
    journal_min_amount: Decimal = field(default_factory=lambda: DEFAULT_JOURNAL_MIN_AMOUNT)
    journal_max_workers: int = DEFAULT_JOURNAL_MAX_WORKERS
    journal_transfer_timeout_seconds: int = DEFAULT_JOURNAL_TRANSFER_TIMEOUT_SECONDS
    journal_stale_queued_seconds: int = DEFAULT_JOURNAL_STALE_QUEUED_SECONDS

    brokerage_mode: str = BROKERAGE_MODE_DEMO
    brokerage_base_url: str = DEFAULT_BROKERAGE_BASE_URL
    brokerage_api_key: Optional[str] = None
    brokerage_api_secret: Optional[str] = None
    brokerage_firm_account_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.execution_tolerance_pct = Decimal(str(self.execution_tolerance_pct)).quantize(
            PRECISION_PERCENT, rounding=ROUND_HALF_EVEN
        )
        self.reconciliation_epsilon = Decimal(str(self.reconciliation_epsilon))
        self.journal_min_amount = Decimal(str(self.journal_min_amount)).quantize(
            PRECISION_USD, rounding=ROUND_HALF_EVEN
        )
        self.brokerage_mode = (self.brokerage_mode or BROKERAGE_MODE_DEMO).strip().lower()

    @property
    def is_live(self) -> bool:
        return self.brokerage_mode == BROKERAGE_MODE_LIVE

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            SettlementConfigurationError: If configuration is missing or invalid (STL-040)
        """
        errors: List[str] = []

        if self.execution_tolerance_pct < Decimal("0"):
            errors.append(
                f"SETTLEMENT_EXECUTION_TOLERANCE_PCT must be non-negative, "
                f"got: {self.execution_tolerance_pct}"
            )
        if self.reconciliation_epsilon < Decimal("0"):
            errors.append(
                f"SETTLEMENT_RECONCILIATION_EPSILON must be non-negative, "
                f"got: {self.reconciliation_epsilon}"
            )
        if self.journal_min_amount < Decimal("0"):
            errors.append(
                f"JOURNAL_MIN_AMOUNT must be non-negative, got: {self.journal_min_amount}"
            )
        if self.journal_max_workers <= 0:
            errors.append(
                f"JOURNAL_MAX_WORKERS must be positive, got: {self.journal_max_workers}"
            )
        if self.journal_transfer_timeout_seconds <= 0:
            errors.append(
                f"JOURNAL_TRANSFER_TIMEOUT_SECONDS must be positive, "
                f"got: {self.journal_transfer_timeout_seconds}"
            )
        if self.journal_stale_queued_seconds <= 0:
            errors.append(
                f"JOURNAL_STALE_QUEUED_SECONDS must be positive, "
                f"got: {self.journal_stale_queued_seconds}"
            )
        if self.brokerage_mode not in (BROKERAGE_MODE_DEMO, BROKERAGE_MODE_LIVE):
            errors.append(f"BROKERAGE_MODE must be demo or live, got: {self.brokerage_mode}")

        if self.is_live:
            for env_name, value in (
                ("BROKERAGE_BASE_URL", self.brokerage_base_url),
                ("BROKERAGE_API_KEY", self.brokerage_api_key),
                ("BROKERAGE_API_SECRET", self.brokerage_api_secret),
                ("BROKERAGE_FIRM_ACCOUNT_ID", self.brokerage_firm_account_id),
            ):
                if not value:
                    errors.append(f"{env_name} must be set when BROKERAGE_MODE=live")

        if errors:
            error_msg = "Settlement configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{SettlementErrorCode.CONFIG_MISSING}] {error_msg}")
            raise SettlementConfigurationError(error_msg)

        logger.info(
            f"[SETTLEMENT-CONFIG] Configuration validated | "
            f"brokerage_mode={self.brokerage_mode} | "
            f"journal_min_amount={self.journal_min_amount} | "
            f"journal_max_workers={self.journal_max_workers} | "
            f"journal_transfer_timeout_seconds={self.journal_transfer_timeout_seconds}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "SettlementConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading (default: True)

        Raises:
            SettlementConfigurationError: If required configuration is missing (STL-040)
        """
        config = cls(
            execution_tolerance_pct=_decimal_env(
                "SETTLEMENT_EXECUTION_TOLERANCE_PCT",
                DEFAULT_EXECUTION_TOLERANCE_PCT,
                PRECISION_PERCENT,
            ),
            reconciliation_epsilon=_decimal_env(
                "SETTLEMENT_RECONCILIATION_EPSILON",
                DEFAULT_RECONCILIATION_EPSILON,
                Decimal("0.00000001"),
            ),
            journal_min_amount=_decimal_env(
                "JOURNAL_MIN_AMOUNT", DEFAULT_JOURNAL_MIN_AMOUNT, PRECISION_USD
            ),
            journal_max_workers=_int_env("JOURNAL_MAX_WORKERS", DEFAULT_JOURNAL_MAX_WORKERS),
            journal_transfer_timeout_seconds=_int_env(
                "JOURNAL_TRANSFER_TIMEOUT_SECONDS", DEFAULT_JOURNAL_TRANSFER_TIMEOUT_SECONDS
            ),
            journal_stale_queued_seconds=_int_env(
                "JOURNAL_STALE_QUEUED_SECONDS", DEFAULT_JOURNAL_STALE_QUEUED_SECONDS
            ),
            brokerage_mode=os.environ.get("BROKERAGE_MODE", BROKERAGE_MODE_DEMO),
            brokerage_base_url=os.environ.get("BROKERAGE_BASE_URL", DEFAULT_BROKERAGE_BASE_URL),
            brokerage_api_key=os.environ.get("BROKERAGE_API_KEY") or None,
            brokerage_api_secret=os.environ.get("BROKERAGE_API_SECRET") or None,
            brokerage_firm_account_id=os.environ.get("BROKERAGE_FIRM_ACCOUNT_ID") or None,
        )

        logger.info(
            f"[SETTLEMENT-CONFIG] Loading configuration from environment | "
            f"BROKERAGE_MODE={config.brokerage_mode} | "
            f"JOURNAL_MIN_AMOUNT={config.journal_min_amount} | "
            f"JOURNAL_MAX_WORKERS={config.journal_max_workers}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        """Configuration for logging. Secrets are reported as set/unset only."""
        return {
            "execution_tolerance_pct": str(self.execution_tolerance_pct),
            "reconciliation_epsilon": str(self.reconciliation_epsilon),
            "journal_min_amount": str(self.journal_min_amount),
            "journal_max_workers": self.journal_max_workers,
            "journal_transfer_timeout_seconds": self.journal_transfer_timeout_seconds,
            "journal_stale_queued_seconds": self.journal_stale_queued_seconds,
            "brokerage_mode": self.brokerage_mode,
            "brokerage_base_url": self.brokerage_base_url,
            "brokerage_api_key_set": bool(self.brokerage_api_key),
            "brokerage_api_secret_set": bool(self.brokerage_api_secret),
            "brokerage_firm_account_id": self.brokerage_firm_account_id,
        }


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[SettlementConfig] = None


def get_settlement_config(validate: bool = True) -> SettlementConfig:
    """Lazy-loaded global configuration."""
    global _config_instance

    if _config_instance is None:
        _config_instance = SettlementConfig.from_environment(validate=validate)

    return _config_instance


def reset_settlement_config() -> None:
    """Clear the global configuration (tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("[SETTLEMENT-CONFIG] Configuration instance reset")


__all__ = [
    "SettlementConfig",
    "BROKERAGE_MODE_DEMO",
    "BROKERAGE_MODE_LIVE",
    "DEFAULT_EXECUTION_TOLERANCE_PCT",
    "DEFAULT_RECONCILIATION_EPSILON",
    "DEFAULT_JOURNAL_MIN_AMOUNT",
    "DEFAULT_JOURNAL_MAX_WORKERS",
    "DEFAULT_JOURNAL_TRANSFER_TIMEOUT_SECONDS",
    "DEFAULT_JOURNAL_STALE_QUEUED_SECONDS",
    "get_settlement_config",
    "reset_settlement_config",
]
