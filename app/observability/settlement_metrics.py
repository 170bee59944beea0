"""
============================================================================
Loyalty Settlement Core v1.0.0
Prometheus Metrics - Settlement Pipeline
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: All currency values must be Decimal
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- settlement_order_transitions_total: Committed order transitions by (from, to)
- settlement_toggle_outcomes_total: Toggle results by direction and outcome
- settlement_journal_outcomes_total: Per-member journal results
- settlement_ach_exports_total: ACH exports by result
- settlement_reconciliation_failures_total: Fail-closed reconciliation checks
- settlement_firm_balance_usd: Last observed brokerage firm balance
- settlement_transfer_latency_seconds: Brokerage journal call latency

ZERO-FLOAT MANDATE
------------------
Decimal values are converted to float ONLY at the Prometheus boundary.
Metric failures are logged and never affect the financial flow.

============================================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

ORDER_TRANSITIONS = Counter(
    "settlement_order_transitions_total",
    "Committed order status transitions",
    ["from_status", "to_status"]
)

TOGGLE_OUTCOMES = Counter(
    "settlement_toggle_outcomes_total",
    "Sell/settle toggle results per order",
    ["direction", "outcome"]
)

JOURNAL_OUTCOMES = Counter(
    "settlement_journal_outcomes_total",
    "Per-member journal results",
    ["outcome"]
)

ACH_EXPORTS = Counter(
    "settlement_ach_exports_total",
    "Broker ACH payment exports",
    ["result"]
)

RECONCILIATION_FAILURES = Counter(
    "settlement_reconciliation_failures_total",
    "Reconciliation checks that failed closed",
    ["check"]
)

FIRM_BALANCE_GAUGE = Gauge(
    "settlement_firm_balance_usd",
    "Last observed cash balance of the brokerage firm (omnibus) account"
)

TRANSFER_LATENCY = Histogram(
    "settlement_transfer_latency_seconds",
    "Latency of brokerage journal transfer calls",
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_transition(
    from_status: str,
    to_status: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Count one committed order transition.

    Side Effects: Increments Prometheus counter
    """
    try:
        ORDER_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record transition metric | error=%s | correlation_id=%s",
            str(e), correlation_id
        )


def record_toggle_outcome(direction: str, outcome: str, count: int = 1) -> None:
    """Count toggle results; outcome is changed, noop, sold_noop or skipped."""
    try:
        if count > 0:
            TOGGLE_OUTCOMES.labels(direction=direction, outcome=outcome).inc(count)
    except Exception as e:
        logger.error("[OBS-002] Failed to record toggle metric | error=%s", str(e))


def record_journal_outcome(outcome: str) -> None:
    try:
        JOURNAL_OUTCOMES.labels(outcome=outcome).inc()
    except Exception as e:
        logger.error("[OBS-003] Failed to record journal metric | error=%s", str(e))


def record_ach_export(result: str) -> None:
    try:
        ACH_EXPORTS.labels(result=result).inc()
    except Exception as e:
        logger.error("[OBS-004] Failed to record ACH export metric | error=%s", str(e))


def record_reconciliation_failure(check: str) -> None:
    try:
        RECONCILIATION_FAILURES.labels(check=check).inc()
    except Exception as e:
        logger.error(
            "[OBS-005] Failed to record reconciliation metric | error=%s", str(e)
        )


def update_firm_balance(
    balance: Decimal,
    correlation_id: Optional[str] = None
) -> None:
    """
    Update the firm balance gauge.

    ZERO-FLOAT MANDATE: Decimal converted to float at Prometheus boundary.
    """
    try:
        if not isinstance(balance, Decimal):
            logger.error(
                "[OBS-000] balance must be Decimal, got %s",
                type(balance).__name__
            )
            return
        FIRM_BALANCE_GAUGE.set(float(balance))
    except Exception as e:
        logger.error(
            "[OBS-006] Failed to update firm balance metric | error=%s | correlation_id=%s",
            str(e), correlation_id
        )


def observe_transfer_latency(seconds: float) -> None:
    try:
        TRANSFER_LATENCY.observe(seconds)
    except Exception as e:
        logger.error("[OBS-007] Failed to observe transfer latency | error=%s", str(e))


__all__ = [
    "ORDER_TRANSITIONS",
    "TOGGLE_OUTCOMES",
    "JOURNAL_OUTCOMES",
    "ACH_EXPORTS",
    "RECONCILIATION_FAILURES",
    "FIRM_BALANCE_GAUGE",
    "TRANSFER_LATENCY",
    "record_transition",
    "record_toggle_outcome",
    "record_journal_outcome",
    "record_ach_export",
    "record_reconciliation_failure",
    "update_firm_balance",
    "observe_transfer_latency",
]
