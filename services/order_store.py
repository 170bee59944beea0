"""
============================================================================
Settlement Pipeline - Store Contract and In-Memory Store
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Amounts stored as decimal.Decimal, never float
Traceability: Every row carries a version used for compare-and-swap

STORE CONTRACT:
    Order status is never blind-overwritten. Every write names the status
    and version it expects; a mismatch raises ConcurrentModification and
    nothing is written. Multi-row steps (batch settle, journal claim,
    journal finalize) are all-or-nothing.

    Ledger rows are insert-only except for their status, and client_tx_id
    is unique.

IMPLEMENTATIONS:
    - InMemorySettlementStore: single RLock, rows copied in and out.
      Used by demo mode and tests.
    - services.sql_store.SqlSettlementStore: SQLAlchemy, same contract.

============================================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable, Tuple
import itertools
import logging
import threading

from services.settlement_errors import (
    ConcurrentModification,
    DuplicateLedgerEntry,
    InvalidTransition,
    OrderNotFound,
    SettlementError,
)
from services.settlement_models import (
    BrokerMaster,
    EXECUTION_FIELDS,
    IMMUTABLE_ORDER_FIELDS,
    JOURNAL_CLAIMABLE_STATUSES,
    JOURNAL_SOURCE_STATUSES,
    JournalRecord,
    JournalStatus,
    LedgerEntry,
    LedgerStatus,
    LinkedAccount,
    Merchant,
    Order,
    OrderChange,
    OrderStatus,
    PAID_STATUSES,
    WalletRow,
    order_sort_key,
    utc_now,
)

logger = logging.getLogger(__name__)


def check_order_change(order: Order, change: OrderChange) -> None:
    """
    Reject writes to fields that are frozen on the stored row.

    Raises:
        ValueError: change touches an identity/request field
        InvalidTransition: change rewrites an execution field already set, or
            leaves paid_flag set on a status that cannot have been paid
    """
    illegal = [name for name in change.changes if name in IMMUTABLE_ORDER_FIELDS]
    if illegal:
        raise ValueError(f"Immutable order fields cannot change: {illegal}")
    for name in EXECUTION_FIELDS:
        if name in change.changes and getattr(order, name) is not None:
            raise InvalidTransition(
                f"{name} is already set and immutable",
                order_id=order.order_id,
            )
    status = change.changes.get("status", order.status)
    if change.changes.get("paid_flag", order.paid_flag) and status not in PAID_STATUSES:
        raise InvalidTransition(
            f"paid_flag cannot be set on a {status.value} order",
            order_id=order.order_id,
        )


def check_new_order(order: Order) -> None:
    """
    Raises:
        ValueError: paid_flag set on an order that cannot have been paid
    """
    if order.paid_flag and order.status not in PAID_STATUSES:
        raise ValueError(
            f"Order {order.order_id}: paid_flag cannot be set on a {order.status.value} order"
        )


def check_journal_claim(order: Optional[Order], order_id: str, record: JournalRecord) -> None:
    """Raise ConcurrentModification unless the order can be claimed by record."""
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    if (
        order.member_id != record.member_id
        or order.status not in JOURNAL_CLAIMABLE_STATUSES
        or order.journaled_at is not None
        or order.journal_record_id is not None
    ):
        raise ConcurrentModification(
            f"Order {order_id} is no longer claimable "
            f"(status={order.status.value}, claim={order.journal_record_id})",
            order_id=order_id,
            member_id=record.member_id,
        )


def apply_order_change(order: Order, change: OrderChange, now: datetime) -> Order:
    """Return the row after change; the caller has already compared status/version."""
    updated = order.copy(**change.changes)
    updated.version = order.version + 1
    updated.updated_at = now
    return updated


class SettlementStore(ABC):
    """
    Abstract persistence contract for orders, ledger, journals and the
    reference data the pipeline reads.
    """

    # -- orders ---------------------------------------------------------------

    @abstractmethod
    def add_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    def list_orders(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
        member_ids: Optional[Iterable[str]] = None,
        merchant_id: Optional[str] = None,
        broker: Optional[str] = None,
        basket_id: Optional[str] = None,
        paid: Optional[bool] = None,
        paid_batch_id: Optional[str] = None,
        journal_record_id: Optional[str] = None,
        unjournaled: bool = False,
        unclaimed: bool = False,
    ) -> List[Order]:
        """Matching orders in stable order_id order."""

    @abstractmethod
    def compare_and_set(self, change: OrderChange) -> Order:
        """
        Apply one change if the row still has the expected status and version.

        Raises:
            OrderNotFound, ConcurrentModification
        """

    @abstractmethod
    def compare_and_set_many(self, changes: List[OrderChange]) -> List[Order]:
        """All-or-nothing compare_and_set over several rows."""

    # -- ledger ---------------------------------------------------------------

    @abstractmethod
    def append_ledger(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Insert an entry and assign tx_id.

        Raises:
            DuplicateLedgerEntry: client_tx_id already present
        """

    @abstractmethod
    def get_ledger_entry(self, tx_id: int) -> Optional[LedgerEntry]:
        ...

    @abstractmethod
    def find_ledger_by_client_tx_id(self, client_tx_id: str) -> Optional[LedgerEntry]:
        ...

    @abstractmethod
    def set_ledger_status(
        self, tx_id: int, expected: LedgerStatus, new: LedgerStatus
    ) -> LedgerEntry:
        ...

    @abstractmethod
    def list_ledger(
        self,
        member_id: Optional[str] = None,
        statuses: Optional[Iterable[LedgerStatus]] = None,
    ) -> List[LedgerEntry]:
        """Entries in tx_id order."""

    # -- journals -------------------------------------------------------------

    @abstractmethod
    def claim_orders_for_journal(self, record: JournalRecord) -> JournalRecord:
        """
        Insert a queued journal record and claim its orders in one step.

        Raises:
            ConcurrentModification: an order is already claimed, journaled or
                no longer settled (nothing is written)
        """

    @abstractmethod
    def get_journal(self, record_id: str) -> Optional[JournalRecord]:
        ...

    @abstractmethod
    def update_journal(self, record_id: str, **changes: Any) -> JournalRecord:
        ...

    @abstractmethod
    def list_journals(
        self,
        status: Optional[JournalStatus] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[JournalRecord]:
        """Records newest first."""

    @abstractmethod
    def release_journal_claim(self, record_id: str, error: str) -> JournalRecord:
        """Mark a queued record failed and release the claims of its unjournaled orders."""

    @abstractmethod
    def finalize_journal(
        self,
        record_id: str,
        journal_id: str,
        entry: LedgerEntry,
        changes: List[OrderChange],
    ) -> Tuple[JournalRecord, LedgerEntry, List[Order]]:
        """
        Complete a journal in one step: record -> journaled, ledger entry
        appended (an identical entry already present is reused), and every
        change applied with compare-and-swap.
        """

    # -- reference data -------------------------------------------------------

    @abstractmethod
    def upsert_linked_account(self, account: LinkedAccount) -> None:
        ...

    @abstractmethod
    def get_linked_account(self, member_id: str) -> Optional[LinkedAccount]:
        ...

    @abstractmethod
    def add_merchant(self, merchant: Merchant) -> None:
        ...

    @abstractmethod
    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        ...

    @abstractmethod
    def list_merchants(self) -> List[Merchant]:
        ...

    @abstractmethod
    def add_broker(self, broker: BrokerMaster) -> None:
        ...

    @abstractmethod
    def get_broker(self, broker: str) -> Optional[BrokerMaster]:
        """Look up by broker_id, then by broker_name."""

    @abstractmethod
    def add_wallet_row(self, row: WalletRow) -> WalletRow:
        ...

    @abstractmethod
    def list_wallet_rows(self, member_id: Optional[str] = None) -> List[WalletRow]:
        ...

    @abstractmethod
    def update_wallet_balances(
        self, record_id: int, points: Any, cash_balance: Any
    ) -> WalletRow:
        ...

    @abstractmethod
    def ping(self) -> bool:
        """Raise StoreUnavailable when the backing store cannot be reached."""


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemorySettlementStore(SettlementStore):
    """
    Thread-safe in-memory store.

    THREAD SAFETY:
        A single re-entrant lock serializes every read and write, so each
        method is atomic. Rows are copied on the way in and out; callers
        never hold a live reference.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self._ledger: Dict[int, LedgerEntry] = {}
        self._ledger_by_client: Dict[str, int] = {}
        self._tx_ids = itertools.count(1)
        self._journals: Dict[str, JournalRecord] = {}
        self._accounts: Dict[str, LinkedAccount] = {}
        self._merchants: Dict[str, Merchant] = {}
        self._brokers: Dict[str, BrokerMaster] = {}
        self._wallet: Dict[int, WalletRow] = {}
        self._wallet_ids = itertools.count(1)

    # -- orders ---------------------------------------------------------------

    def add_order(self, order: Order) -> Order:
        check_new_order(order)
        with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order.copy()
            return order.copy()

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return order.copy() if order is not None else None

    def list_orders(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
        member_ids: Optional[Iterable[str]] = None,
        merchant_id: Optional[str] = None,
        broker: Optional[str] = None,
        basket_id: Optional[str] = None,
        paid: Optional[bool] = None,
        paid_batch_id: Optional[str] = None,
        journal_record_id: Optional[str] = None,
        unjournaled: bool = False,
        unclaimed: bool = False,
    ) -> List[Order]:
        status_set = set(statuses) if statuses is not None else None
        member_set = set(member_ids) if member_ids is not None else None
        with self._lock:
            rows = []
            for order in self._orders.values():
                if status_set is not None and order.status not in status_set:
                    continue
                if member_set is not None and order.member_id not in member_set:
                    continue
                if merchant_id is not None and order.merchant_id != merchant_id:
                    continue
                if broker is not None and order.broker != broker:
                    continue
                if basket_id is not None and order.basket_id != basket_id:
                    continue
                if paid is not None and order.paid_flag != paid:
                    continue
                if paid_batch_id is not None and order.paid_batch_id != paid_batch_id:
                    continue
                if journal_record_id is not None and order.journal_record_id != journal_record_id:
                    continue
                if unjournaled and order.journaled_at is not None:
                    continue
                if unclaimed and order.journal_record_id is not None:
                    continue
                rows.append(order.copy())
        rows.sort(key=lambda o: order_sort_key(o.order_id))
        return rows

    def _check_cas(self, change: OrderChange) -> Order:
        current = self._orders.get(change.order_id)
        if current is None:
            raise OrderNotFound(f"Order {change.order_id} not found", order_id=change.order_id)
        if current.status != change.expected_status or current.version != change.expected_version:
            raise ConcurrentModification(
                f"Order {change.order_id} changed: expected "
                f"{change.expected_status.value}@v{change.expected_version}, found "
                f"{current.status.value}@v{current.version}",
                order_id=change.order_id,
            )
        check_order_change(current, change)
        return current

    def compare_and_set(self, change: OrderChange) -> Order:
        return self.compare_and_set_many([change])[0]

    def compare_and_set_many(self, changes: List[OrderChange]) -> List[Order]:
        with self._lock:
            ids = [c.order_id for c in changes]
            if len(ids) != len(set(ids)):
                raise ValueError("Duplicate order ids in one compare-and-set batch")
            currents = [self._check_cas(c) for c in changes]
            now = utc_now()
            updated = [apply_order_change(cur, c, now) for cur, c in zip(currents, changes)]
            for row in updated:
                self._orders[row.order_id] = row
            return [row.copy() for row in updated]

    # -- ledger ---------------------------------------------------------------

    def _append_ledger_locked(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.client_tx_id in self._ledger_by_client:
            raise DuplicateLedgerEntry(
                f"client_tx_id {entry.client_tx_id} already recorded",
                member_id=entry.member_id,
            )
        stored = entry.copy(tx_id=next(self._tx_ids))
        self._ledger[stored.tx_id] = stored
        self._ledger_by_client[stored.client_tx_id] = stored.tx_id
        return stored.copy()

    def append_ledger(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            return self._append_ledger_locked(entry)

    def get_ledger_entry(self, tx_id: int) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._ledger.get(tx_id)
            return entry.copy() if entry is not None else None

    def find_ledger_by_client_tx_id(self, client_tx_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            tx_id = self._ledger_by_client.get(client_tx_id)
            return self._ledger[tx_id].copy() if tx_id is not None else None

    def set_ledger_status(
        self, tx_id: int, expected: LedgerStatus, new: LedgerStatus
    ) -> LedgerEntry:
        with self._lock:
            entry = self._ledger.get(tx_id)
            if entry is None:
                raise SettlementError(f"Ledger entry {tx_id} not found")
            if entry.status != expected:
                raise ConcurrentModification(
                    f"Ledger entry {tx_id} is {entry.status.value}, expected {expected.value}",
                    member_id=entry.member_id,
                )
            entry = entry.copy(status=new)
            self._ledger[tx_id] = entry
            return entry.copy()

    def list_ledger(
        self,
        member_id: Optional[str] = None,
        statuses: Optional[Iterable[LedgerStatus]] = None,
    ) -> List[LedgerEntry]:
        status_set = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                e.copy() for tx_id, e in sorted(self._ledger.items())
                if (member_id is None or e.member_id == member_id)
                and (status_set is None or e.status in status_set)
            ]
        return rows

    # -- journals -------------------------------------------------------------

    def claim_orders_for_journal(self, record: JournalRecord) -> JournalRecord:
        with self._lock:
            if record.record_id in self._journals:
                raise ValueError(f"Journal record {record.record_id} already exists")
            for order_id in record.order_ids:
                check_journal_claim(self._orders.get(order_id), order_id, record)
            now = utc_now()
            for order_id in record.order_ids:
                current = self._orders[order_id]
                self._orders[order_id] = current.copy(
                    journal_record_id=record.record_id,
                    version=current.version + 1,
                    updated_at=now,
                )
            self._journals[record.record_id] = record.copy()
            return record.copy()

    def get_journal(self, record_id: str) -> Optional[JournalRecord]:
        with self._lock:
            record = self._journals.get(record_id)
            return record.copy() if record is not None else None

    def update_journal(self, record_id: str, **changes: Any) -> JournalRecord:
        with self._lock:
            record = self._journals.get(record_id)
            if record is None:
                raise SettlementError(f"Journal record {record_id} not found")
            record = record.copy(**changes)
            self._journals[record_id] = record
            return record.copy()

    def list_journals(
        self,
        status: Optional[JournalStatus] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[JournalRecord]:
        with self._lock:
            rows = [
                r.copy() for r in self._journals.values()
                if (status is None or r.journal_status == status)
                and (since is None or r.created_at >= since)
                and (before is None or r.created_at < before)
                and (member_id is None or r.member_id == member_id)
            ]
        rows.sort(key=lambda r: (r.created_at, r.record_id), reverse=True)
        return rows[:limit] if limit is not None else rows

    def release_journal_claim(self, record_id: str, error: str) -> JournalRecord:
        with self._lock:
            record = self._journals.get(record_id)
            if record is None:
                raise SettlementError(f"Journal record {record_id} not found")
            if record.journal_status != JournalStatus.QUEUED:
                raise ConcurrentModification(
                    f"Journal record {record_id} is {record.journal_status.value}, not queued",
                    member_id=record.member_id,
                )
            now = utc_now()
            for order_id in record.order_ids:
                current = self._orders.get(order_id)
                if (
                    current is not None
                    and current.journal_record_id == record_id
                    and current.journaled_at is None
                ):
                    self._orders[order_id] = current.copy(
                        journal_record_id=None,
                        version=current.version + 1,
                        updated_at=now,
                    )
            record = record.copy(journal_status=JournalStatus.FAILED, error=error)
            self._journals[record_id] = record
            return record.copy()

    def finalize_journal(
        self,
        record_id: str,
        journal_id: str,
        entry: LedgerEntry,
        changes: List[OrderChange],
    ) -> Tuple[JournalRecord, LedgerEntry, List[Order]]:
        with self._lock:
            record = self._journals.get(record_id)
            if record is None:
                raise SettlementError(f"Journal record {record_id} not found")
            if record.journal_status != JournalStatus.QUEUED:
                raise ConcurrentModification(
                    f"Journal record {record_id} is {record.journal_status.value}, not queued",
                    member_id=record.member_id,
                )
            for change in changes:
                current = self._check_cas(change)
                if (
                    current.journal_record_id != record_id
                    or current.status not in JOURNAL_SOURCE_STATUSES
                ):
                    raise ConcurrentModification(
                        f"Order {change.order_id} is not claimed by {record_id}",
                        order_id=change.order_id,
                    )

            existing_id = self._ledger_by_client.get(entry.client_tx_id)
            if existing_id is not None:
                stored_entry = self._ledger[existing_id].copy()
                if stored_entry.payload_fingerprint() != entry.payload_fingerprint():
                    raise DuplicateLedgerEntry(
                        f"client_tx_id {entry.client_tx_id} recorded with a different payload",
                        member_id=entry.member_id,
                    )
            else:
                stored_entry = self._append_ledger_locked(entry)

            now = utc_now()
            updated = []
            for change in changes:
                row = apply_order_change(self._orders[change.order_id], change, now)
                self._orders[row.order_id] = row
                updated.append(row.copy())

            record = record.copy(
                journal_status=JournalStatus.JOURNALED,
                journal_id=journal_id,
                journaled_at=now,
                error=None,
            )
            self._journals[record_id] = record
            return record.copy(), stored_entry, updated

    # -- reference data -------------------------------------------------------

    def upsert_linked_account(self, account: LinkedAccount) -> None:
        with self._lock:
            self._accounts[account.member_id] = LinkedAccount(**vars(account))

    def get_linked_account(self, member_id: str) -> Optional[LinkedAccount]:
        with self._lock:
            account = self._accounts.get(member_id)
            return LinkedAccount(**vars(account)) if account is not None else None

    def add_merchant(self, merchant: Merchant) -> None:
        with self._lock:
            self._merchants[merchant.merchant_id] = Merchant(
                merchant_id=merchant.merchant_id,
                merchant_name=merchant.merchant_name,
                conversion_rate=merchant.conversion_rate,
                tier_rates=dict(merchant.tier_rates),
            )

    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        with self._lock:
            merchant = self._merchants.get(merchant_id)
            if merchant is None:
                return None
            return Merchant(
                merchant_id=merchant.merchant_id,
                merchant_name=merchant.merchant_name,
                conversion_rate=merchant.conversion_rate,
                tier_rates=dict(merchant.tier_rates),
            )

    def list_merchants(self) -> List[Merchant]:
        with self._lock:
            ids = sorted(self._merchants)
        return [m for m in (self.get_merchant(i) for i in ids) if m is not None]

    def add_broker(self, broker: BrokerMaster) -> None:
        with self._lock:
            self._brokers[broker.broker_id] = BrokerMaster(**vars(broker))

    def get_broker(self, broker: str) -> Optional[BrokerMaster]:
        with self._lock:
            found = self._brokers.get(broker)
            if found is None:
                found = next(
                    (b for b in self._brokers.values() if b.broker_name == broker), None
                )
            return BrokerMaster(**vars(found)) if found is not None else None

    def add_wallet_row(self, row: WalletRow) -> WalletRow:
        with self._lock:
            stored = row.copy(record_id=next(self._wallet_ids), updated_at=utc_now())
            self._wallet[stored.record_id] = stored
            return stored.copy()

    def list_wallet_rows(self, member_id: Optional[str] = None) -> List[WalletRow]:
        with self._lock:
            return [
                r.copy() for _, r in sorted(self._wallet.items())
                if member_id is None or r.member_id == member_id
            ]

    def update_wallet_balances(
        self, record_id: int, points: Any, cash_balance: Any
    ) -> WalletRow:
        with self._lock:
            row = self._wallet.get(record_id)
            if row is None:
                raise SettlementError(f"Wallet row {record_id} not found")
            row = row.copy(points=points, cash_balance=cash_balance, updated_at=utc_now())
            self._wallet[record_id] = row
            return row.copy()

    def ping(self) -> bool:
        return True


__all__ = [
    "SettlementStore",
    "InMemorySettlementStore",
    "check_order_change",
    "check_new_order",
    "check_journal_claim",
    "apply_order_change",
]
