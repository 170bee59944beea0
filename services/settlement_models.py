"""
============================================================================
Settlement Pipeline - Core Data Models
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All financial values use decimal.Decimal with ROUND_HALF_EVEN
Traceability: All mutating operations carry correlation_id for audit

This module defines the records the settlement pipeline moves around:
- Order: one intended or executed trade, grouped by basket_id
- LedgerEntry: immutable balance-affecting event for a member
- JournalRecord: one omnibus -> sub-account transfer per member per batch
- LinkedAccount: optional brokerage sub-account of a member
- WalletRow / Merchant / BrokerMaster: reference data read by the
  projection, the data profile and the ACH export
- BrokerConfirmation / AchConfirmation: external payloads that drive the
  executed and settled transitions
- OrderChange: one compare-and-swap instruction for the store

============================================================================
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List
import hashlib
import json

from app.exchange.decimal_gateway import to_usd, to_units


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def order_sort_key(order_id: str):
    """Numeric ids sort numerically, everything else lexically after them."""
    text = str(order_id)
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)


# =============================================================================
# Enums
# =============================================================================

class OrderStatus(Enum):
    """Order lifecycle status."""
    PLACED = "placed"
    QUEUED = "queued"
    EXECUTED = "executed"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    SELL = "sell"
    SOLD = "sold"
    JOURNALED = "journaled"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    GTC = "gtc"


class TxType(Enum):
    POINTS_RECEIVED = "points_received"
    REDEEM_POINTS = "redeem_points"
    ADJUST_POINTS = "adjust_points"
    CASH_IN = "cash_in"
    CASH_OUT = "cash_out"
    CASH_FEE = "cash_fee"


class Direction(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class LedgerStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REVERSED = "reversed"


class JournalStatus(Enum):
    QUEUED = "queued"
    JOURNALED = "journaled"
    FAILED = "failed"


# Statuses an order may hold while paid_flag is set. SELL is included because
# the toggle service reclassifies settled (and therefore paid) orders.
PAID_STATUSES = frozenset({
    OrderStatus.EXECUTED,
    OrderStatus.CONFIRMED,
    OrderStatus.SETTLED,
    OrderStatus.SELL,
    OrderStatus.SOLD,
    OrderStatus.JOURNALED,
})

# Orders the journal engine may claim for a new transfer
JOURNAL_CLAIMABLE_STATUSES = frozenset({OrderStatus.SETTLED})

# Statuses a claimed order may hold when its transfer completes. The toggle
# service can move a claimed order between settled and sell mid-transfer and
# mark_sold can close it; the funds still moved.
JOURNAL_SOURCE_STATUSES = frozenset({
    OrderStatus.SETTLED,
    OrderStatus.SELL,
    OrderStatus.SOLD,
})

# Financial fields frozen once the executed transition has written them
EXECUTION_FIELDS = ("executed_price", "executed_shares", "executed_amount")

# Fields that never change after the order is created
IMMUTABLE_ORDER_FIELDS = (
    "order_id", "basket_id", "member_id", "merchant_id", "symbol",
    "broker", "order_type", "amount", "shares", "points_used", "placed_at",
)


# =============================================================================
# Order
# =============================================================================

@dataclass
class Order:
    """
    One security purchase intent, grouped by basket_id.

    Reliability Level: L6 Critical
    Input Constraints: amount and shares are Decimal
    Side Effects: None (data container)
    """
    order_id: str
    basket_id: str
    member_id: str
    merchant_id: str
    symbol: str
    broker: str
    amount: Decimal
    shares: Decimal = Decimal("0")
    points_used: int = 0
    order_type: OrderType = OrderType.MARKET
    status: OrderStatus = OrderStatus.PLACED
    placed_at: datetime = field(default_factory=utc_now)
    member_timezone: Optional[str] = None

    # Execution (written exactly once)
    executed_price: Optional[Decimal] = None
    executed_shares: Optional[Decimal] = None
    executed_amount: Optional[Decimal] = None
    executed_at: Optional[datetime] = None
    broker_order_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    # Merchant -> broker payment
    paid_flag: bool = False
    paid_batch_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    # Journal claim and completion
    journal_record_id: Optional[str] = None
    journal_id: Optional[str] = None
    journaled_at: Optional[datetime] = None

    version: int = 0
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.amount = to_units(self.amount)
        self.shares = to_units(self.shares)
        for name in EXECUTION_FIELDS:
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, to_units(value))
        if isinstance(self.status, str):
            self.status = OrderStatus(self.status)
        if isinstance(self.order_type, str):
            self.order_type = OrderType(self.order_type)

    @property
    def amount_source(self) -> str:
        """Which field the payable amount comes from (audit flag)."""
        return "executed_amount" if self.executed_amount is not None else "amount"

    @property
    def payable_amount(self) -> Decimal:
        """Cent-rounded payment amount: executed_amount, falling back to amount."""
        raw = self.executed_amount if self.executed_amount is not None else self.amount
        return to_usd(raw)

    @property
    def journal_claimed(self) -> bool:
        return self.journal_record_id is not None and self.journaled_at is None

    def copy(self, **changes: Any) -> "Order":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/API responses."""
        return {
            "order_id": self.order_id,
            "basket_id": self.basket_id,
            "member_id": self.member_id,
            "merchant_id": self.merchant_id,
            "symbol": self.symbol,
            "broker": self.broker,
            "amount": _dec(self.amount),
            "shares": _dec(self.shares),
            "points_used": self.points_used,
            "order_type": self.order_type.value,
            "status": self.status.value,
            "placed_at": _iso(self.placed_at),
            "member_timezone": self.member_timezone,
            "executed_price": _dec(self.executed_price),
            "executed_shares": _dec(self.executed_shares),
            "executed_amount": _dec(self.executed_amount),
            "executed_at": _iso(self.executed_at),
            "broker_order_id": self.broker_order_id,
            "confirmed_at": _iso(self.confirmed_at),
            "settled_at": _iso(self.settled_at),
            "paid_flag": self.paid_flag,
            "paid_batch_id": self.paid_batch_id,
            "paid_at": _iso(self.paid_at),
            "journal_record_id": self.journal_record_id,
            "journal_id": self.journal_id,
            "journaled_at": _iso(self.journaled_at),
            "payable_amount": _dec(self.payable_amount),
            "amount_source": self.amount_source,
            "version": self.version,
        }


@dataclass(frozen=True)
class OrderChange:
    """
    Compare-and-swap instruction for one order row.

    The store applies `changes` only if the row still has expected_status and
    expected_version.
    """
    order_id: str
    expected_status: OrderStatus
    expected_version: int
    changes: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Ledger
# =============================================================================

@dataclass
class LedgerEntry:
    """
    Immutable record of one balance-affecting event.

    Only `status` may change after insert (pending -> confirmed|failed,
    confirmed -> reversed). tx_id is assigned by the store.
    """
    member_id: str
    tx_type: TxType
    direction: Direction
    channel: str
    client_tx_id: str
    status: LedgerStatus = LedgerStatus.CONFIRMED
    amount_points: Optional[Decimal] = None
    amount_cash: Optional[Decimal] = None
    order_id: Optional[str] = None
    merchant_id: Optional[str] = None
    broker: Optional[str] = None
    external_ref: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    tx_id: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.tx_type, str):
            self.tx_type = TxType(self.tx_type)
        if isinstance(self.direction, str):
            self.direction = Direction(self.direction)
        if isinstance(self.status, str):
            self.status = LedgerStatus(self.status)
        if self.amount_points is not None:
            self.amount_points = to_units(self.amount_points)
        if self.amount_cash is not None:
            self.amount_cash = to_usd(self.amount_cash)

    @property
    def sign(self) -> int:
        return 1 if self.direction == Direction.INBOUND else -1

    def signed_cash(self) -> Decimal:
        return self.sign * (self.amount_cash or Decimal("0.00"))

    def signed_points(self) -> Decimal:
        return self.sign * (self.amount_points or Decimal("0"))

    def payload_fingerprint(self) -> str:
        """SHA-256 over the immutable payload, used for idempotent replays."""
        data = (
            f"{self.member_id}|{self.tx_type.value}|{self.direction.value}|"
            f"{self.channel}|{_dec(self.amount_points)}|{_dec(self.amount_cash)}|"
            f"{self.order_id}|{self.external_ref}"
        )
        return hashlib.sha256(data.encode()).hexdigest()

    def copy(self, **changes: Any) -> "LedgerEntry":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "member_id": self.member_id,
            "order_id": self.order_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "tx_type": self.tx_type.value,
            "direction": self.direction.value,
            "channel": self.channel,
            "status": self.status.value,
            "amount_points": _dec(self.amount_points),
            "amount_cash": _dec(self.amount_cash),
            "client_tx_id": self.client_tx_id,
            "external_ref": self.external_ref,
            "note": self.note,
            "created_at": _iso(self.created_at),
        }


# =============================================================================
# Journal
# =============================================================================

@dataclass
class JournalRecord:
    """
    One fund transfer instruction for one member in one journal run.

    amount always equals the sum of the payable amounts of order_ids.
    """
    record_id: str
    member_id: str
    account_id: str
    amount: Decimal
    order_ids: List[str]
    client_ref: str
    journal_status: JournalStatus = JournalStatus.QUEUED
    journal_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    journaled_at: Optional[datetime] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = to_usd(self.amount)
        if isinstance(self.journal_status, str):
            self.journal_status = JournalStatus(self.journal_status)

    @property
    def order_count(self) -> int:
        return len(self.order_ids)

    def copy(self, **changes: Any) -> "JournalRecord":
        return replace(self, order_ids=list(self.order_ids), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "journal_id": self.journal_id,
            "member_id": self.member_id,
            "account_id": self.account_id,
            "amount": _dec(self.amount),
            "order_count": self.order_count,
            "order_ids": list(self.order_ids),
            "client_ref": self.client_ref,
            "journal_status": self.journal_status.value,
            "created_at": _iso(self.created_at),
            "journaled_at": _iso(self.journaled_at),
            "error": self.error,
        }


# =============================================================================
# Reference data
# =============================================================================

@dataclass
class LinkedAccount:
    """Optional brokerage sub-account of a member."""
    member_id: str
    broker: str
    account_id: Optional[str] = None
    account_status: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return bool(self.account_id) and (self.account_status or "").upper() == "ACTIVE"


@dataclass
class Merchant:
    """Merchant master row with base and per-tier conversion rates."""
    merchant_id: str
    merchant_name: str
    conversion_rate: Decimal
    tier_rates: Dict[str, Decimal] = field(default_factory=dict)

    def effective_rate(self, tier: Optional[str]) -> Decimal:
        """Member's tier rate, falling back to the merchant base rate."""
        if tier and tier in self.tier_rates:
            return Decimal(str(self.tier_rates[tier]))
        return Decimal(str(self.conversion_rate))


@dataclass
class BrokerMaster:
    """Broker master row with the ACH instructions used to pay the broker."""
    broker_id: str
    broker_name: str
    ach_bank_name: Optional[str] = None
    ach_routing_num: Optional[str] = None
    ach_account_num: Optional[str] = None
    ach_account_type: Optional[str] = None


@dataclass
class WalletRow:
    """
    Wallet projection row.

    points and cash_balance are a materialized view of the ledger; they are
    never written directly except by WalletProjection.refresh().
    """
    member_id: Optional[str]
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    member_email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    member_tier: Optional[str] = None
    points: Optional[Decimal] = None
    cash_balance: Optional[Decimal] = None
    record_id: Optional[int] = None
    updated_at: Optional[datetime] = None

    def copy(self, **changes: Any) -> "WalletRow":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "member_id": self.member_id,
            "merchant_id": self.merchant_id,
            "merchant_name": self.merchant_name,
            "member_email": self.member_email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "member_tier": self.member_tier,
            "points": _dec(self.points),
            "cash_balance": _dec(self.cash_balance),
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# External payloads
# =============================================================================

@dataclass(frozen=True)
class BrokerConfirmation:
    """Broker fill report that drives the executed transition."""
    order_id: str
    executed_price: Decimal
    executed_shares: Decimal
    executed_amount: Optional[Decimal] = None
    executed_at: Optional[datetime] = None
    broker_order_id: Optional[str] = None


@dataclass(frozen=True)
class AchConfirmation:
    """Cleared merchant payment of a broker invoice."""
    paid_batch_id: str
    cleared: bool
    amount: Decimal
    reference: Optional[str] = None
    cleared_at: Optional[datetime] = None


def dumps(payload: Any) -> str:
    """JSON encode with Decimal and datetime support."""
    def _default(value: Any) -> Any:
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        raise TypeError(f"Unserializable: {type(value).__name__}")
    return json.dumps(payload, default=_default, sort_keys=True)
