"""
============================================================================
Loyalty Settlement Core v1.0.0
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.settlement_metrics import (
    ORDER_TRANSITIONS,
    TOGGLE_OUTCOMES,
    JOURNAL_OUTCOMES,
    ACH_EXPORTS,
    RECONCILIATION_FAILURES,
    FIRM_BALANCE_GAUGE,
    TRANSFER_LATENCY,
    record_transition,
    record_toggle_outcome,
    record_journal_outcome,
    record_ach_export,
    record_reconciliation_failure,
    update_firm_balance,
    observe_transfer_latency,
)

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
