"""
============================================================================
Loyalty Settlement Core - Services Layer
============================================================================

Order lifecycle, ledger, journal and broker payment services for the
loyalty-to-brokerage settlement pipeline.

Reliability Level: L6 Critical
============================================================================
"""

from services.settlement_errors import (
    SettlementErrorCode,
    SettlementError,
    InvalidTransition,
    AmbiguousToggleRequest,
    ExecutionMismatch,
    ReconciliationError,
    TransferFailure,
    TransferInDoubt,
    NoLinkedAccount,
    OrderNotFound,
    ConcurrentModification,
    StoreUnavailable,
    DuplicateLedgerEntry,
    SettlementConfigurationError,
    ItemIssue,
)

from services.settlement_models import (
    Order,
    OrderStatus,
    OrderType,
    LedgerEntry,
    TxType,
    Direction,
    LedgerStatus,
    JournalRecord,
    JournalStatus,
    LinkedAccount,
    Merchant,
    BrokerMaster,
    WalletRow,
    BrokerConfirmation,
    AchConfirmation,
)

__all__ = [
    # Errors
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
    # Models
    "Order",
    "OrderStatus",
    "OrderType",
    "LedgerEntry",
    "TxType",
    "Direction",
    "LedgerStatus",
    "JournalRecord",
    "JournalStatus",
    "LinkedAccount",
    "Merchant",
    "BrokerMaster",
    "WalletRow",
    "BrokerConfirmation",
    "AchConfirmation",
]
