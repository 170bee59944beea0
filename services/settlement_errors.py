"""
============================================================================
Settlement Pipeline - Error Taxonomy
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Every error carries its code and the ids it concerns

PROPAGATION POLICY:
    Per-item errors inside a batch (toggle, journal, payment marking) are
    collected into ItemIssue records and returned next to the success
    counts. Only request-level errors (AmbiguousToggleRequest, configuration
    errors, StoreUnavailable) abort a whole call.

ERROR CODES:
    - STL-001: Invalid state transition
    - STL-002: Ambiguous toggle request (id in both sets)
    - STL-003: Broker execution does not match the requested order
    - STL-004: ACH detail / aggregate reconciliation failed
    - STL-005: Brokerage transfer failed or timed out (retryable)
    - STL-006: Member has no linked brokerage sub-account
    - STL-007: Order not found
    - STL-008: Concurrent modification (lost update detected)
    - STL-009: Store unavailable
    - STL-010: Ledger idempotency key replayed with a different payload
    - STL-011: Toggle of a display-only order (reported no-op)
    - STL-012: Journal amount below brokerage minimum
    - STL-013: Nothing to journal (amount <= 0)
    - STL-014: Transfer outcome unknown (timeout or lost acknowledgement);
               orders stay claimed until the brokerage is checked again
    - STL-040: Required configuration missing

============================================================================
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any


class SettlementErrorCode:
    """Settlement-specific error codes for audit logging."""
    INVALID_TRANSITION = "STL-001"
    AMBIGUOUS_TOGGLE = "STL-002"
    EXECUTION_MISMATCH = "STL-003"
    RECONCILIATION_FAILED = "STL-004"
    TRANSFER_FAILED = "STL-005"
    NO_LINKED_ACCOUNT = "STL-006"
    ORDER_NOT_FOUND = "STL-007"
    CONCURRENT_MODIFICATION = "STL-008"
    STORE_UNAVAILABLE = "STL-009"
    DUPLICATE_LEDGER_ENTRY = "STL-010"
    TERMINAL_NOOP = "STL-011"
    BELOW_MINIMUM = "STL-012"
    NOTHING_TO_JOURNAL = "STL-013"
    TRANSFER_IN_DOUBT = "STL-014"
    CONFIG_MISSING = "STL-040"


class SettlementError(Exception):
    """
    Base class for all settlement pipeline errors.

    Reliability Level: SOVEREIGN TIER
    """

    error_code = "STL-000"

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        member_id: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.order_id = order_id
        self.member_id = member_id
        super().__init__(f"[{self.error_code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            "error_code": self.error_code,
            "error": self.message,
            "order_id": self.order_id,
            "member_id": self.member_id,
        }


class InvalidTransition(SettlementError):
    """Status precondition not met for the requested transition."""
    error_code = SettlementErrorCode.INVALID_TRANSITION


class AmbiguousToggleRequest(SettlementError):
    """An order id appears in both toggle sets."""
    error_code = SettlementErrorCode.AMBIGUOUS_TOGGLE


class ExecutionMismatch(SettlementError):
    """Broker confirmation does not match the requested order."""
    error_code = SettlementErrorCode.EXECUTION_MISMATCH


class ReconciliationError(SettlementError):
    """ACH detail rows and aggregate disagree. Fails closed."""
    error_code = SettlementErrorCode.RECONCILIATION_FAILED


class TransferFailure(SettlementError):
    """External brokerage transfer failed. Retryable."""
    error_code = SettlementErrorCode.TRANSFER_FAILED


class TransferInDoubt(TransferFailure):
    """The transfer may have landed. Resolved by client_ref, never re-sent blindly."""
    error_code = SettlementErrorCode.TRANSFER_IN_DOUBT


class NoLinkedAccount(SettlementError):
    """Member has no active brokerage sub-account."""
    error_code = SettlementErrorCode.NO_LINKED_ACCOUNT


class OrderNotFound(SettlementError):
    """Referenced order does not exist."""
    error_code = SettlementErrorCode.ORDER_NOT_FOUND


class ConcurrentModification(SettlementError):
    """Compare-and-swap lost: the row changed since it was read."""
    error_code = SettlementErrorCode.CONCURRENT_MODIFICATION


class StoreUnavailable(SettlementError):
    """Backing store cannot be reached. Aborts the whole call."""
    error_code = SettlementErrorCode.STORE_UNAVAILABLE


class DuplicateLedgerEntry(SettlementError):
    """A client_tx_id was replayed with a different payload."""
    error_code = SettlementErrorCode.DUPLICATE_LEDGER_ENTRY


class SettlementConfigurationError(SettlementError):
    """Required configuration is missing or invalid (fail closed)."""
    error_code = SettlementErrorCode.CONFIG_MISSING


@dataclass(frozen=True)
class ItemIssue:
    """
    One skipped or failed item inside a batch operation.

    item_id is an order id or a member id depending on the batch.
    """
    item_id: str
    error_code: str
    reason: str

    @classmethod
    def from_error(cls, item_id: str, error: SettlementError) -> "ItemIssue":
        return cls(item_id=item_id, error_code=error.error_code, reason=error.message)

    def to_dict(self) -> Dict[str, str]:
        return {
            "item_id": self.item_id,
            "error_code": self.error_code,
            "reason": self.reason,
        }


__all__ = [
    "SettlementErrorCode",
    "SettlementError",
    "InvalidTransition",
    "AmbiguousToggleRequest",
    "ExecutionMismatch",
    "ReconciliationError",
    "TransferFailure",
    "TransferInDoubt",
    "NoLinkedAccount",
    "OrderNotFound",
    "ConcurrentModification",
    "StoreUnavailable",
    "DuplicateLedgerEntry",
    "SettlementConfigurationError",
    "ItemIssue",
]
