"""
============================================================================
Settlement Pipeline - SQL Store
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Money and quantities persisted as exact decimal strings
Traceability: Every order row carries a version for compare-and-swap

SQLAlchemy Core implementation of SettlementStore over the tables
orders, transactions_ledger, journals, member_accounts, wallet,
merchant and broker_master.

COMPARE-AND-SWAP:
    UPDATE orders SET ..., version = version + 1
    WHERE order_id = :order_id AND status = :expected_status
      AND version = :expected_version

    A rowcount of 0 means a lost update (or a missing row) and raises;
    the enclosing engine.begin() block rolls every row back.

PORTABILITY:
    Timestamps are stored as fixed-width UTC ISO strings and amounts as
    decimal strings, so ordering and exactness are identical on
    PostgreSQL and SQLite (used by the test suite).

ERROR CODES:
    - STL-008: Concurrent modification (rowcount mismatch)
    - STL-009: Store unavailable (connection/operational failure)
    - STL-010: Duplicate ledger client_tx_id

============================================================================
"""

from contextlib import contextmanager, nullcontext
from dataclasses import fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Iterable, Tuple
import json
import logging
import threading

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from services.order_store import (
    SettlementStore,
    apply_order_change,
    check_journal_claim,
    check_new_order,
    check_order_change,
)
from services.settlement_errors import (
    ConcurrentModification,
    DuplicateLedgerEntry,
    OrderNotFound,
    SettlementError,
    StoreUnavailable,
)
from services.settlement_models import (
    BrokerMaster,
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
    WalletRow,
    order_sort_key,
    utc_now,
)

logger = logging.getLogger(__name__)


ORDER_COLUMNS = [f.name for f in fields(Order)]
LEDGER_COLUMNS = [f.name for f in fields(LedgerEntry)]
JOURNAL_COLUMNS = [f.name for f in fields(JournalRecord)]
WALLET_COLUMNS = [f.name for f in fields(WalletRow)]

DATETIME_COLUMNS = frozenset({
    "placed_at", "executed_at", "confirmed_at", "settled_at", "paid_at",
    "journaled_at", "updated_at", "created_at",
})
DECIMAL_COLUMNS = frozenset({
    "amount", "shares", "executed_price", "executed_shares", "executed_amount",
    "amount_points", "amount_cash", "points", "cash_balance", "conversion_rate",
})
BOOL_COLUMNS = frozenset({"paid_flag"})

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


# =============================================================================
# Schema
# =============================================================================

def _schema_statements(dialect: str) -> List[str]:
    serial = "INTEGER PRIMARY KEY AUTOINCREMENT" if dialect == "sqlite" else "BIGSERIAL PRIMARY KEY"
    return [
        """
        CREATE TABLE IF NOT EXISTS orders (
            order_id VARCHAR(64) PRIMARY KEY,
            basket_id VARCHAR(64) NOT NULL,
            member_id VARCHAR(64) NOT NULL,
            merchant_id VARCHAR(64) NOT NULL,
            symbol VARCHAR(32) NOT NULL,
            broker VARCHAR(64) NOT NULL,
            amount VARCHAR(40) NOT NULL,
            shares VARCHAR(40) NOT NULL,
            points_used INTEGER NOT NULL DEFAULT 0,
            order_type VARCHAR(16) NOT NULL,
            status VARCHAR(16) NOT NULL,
            placed_at VARCHAR(40) NOT NULL,
            member_timezone VARCHAR(64),
            executed_price VARCHAR(40),
            executed_shares VARCHAR(40),
            executed_amount VARCHAR(40),
            executed_at VARCHAR(40),
            broker_order_id VARCHAR(128),
            confirmed_at VARCHAR(40),
            settled_at VARCHAR(40),
            paid_flag INTEGER NOT NULL DEFAULT 0,
            paid_batch_id VARCHAR(128),
            paid_at VARCHAR(40),
            journal_record_id VARCHAR(64),
            journal_id VARCHAR(128),
            journaled_at VARCHAR(40),
            version INTEGER NOT NULL DEFAULT 0,
            updated_at VARCHAR(40) NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_orders_status_member ON orders (status, member_id)",
        "CREATE INDEX IF NOT EXISTS ix_orders_paid_batch ON orders (paid_batch_id)",
        f"""
        CREATE TABLE IF NOT EXISTS transactions_ledger (
            tx_id {serial},
            member_id VARCHAR(64) NOT NULL,
            tx_type VARCHAR(32) NOT NULL,
            direction VARCHAR(16) NOT NULL,
            channel VARCHAR(32) NOT NULL,
            client_tx_id VARCHAR(128) NOT NULL UNIQUE,
            status VARCHAR(16) NOT NULL,
            amount_points VARCHAR(40),
            amount_cash VARCHAR(40),
            order_id VARCHAR(64),
            merchant_id VARCHAR(64),
            broker VARCHAR(64),
            external_ref VARCHAR(128),
            note TEXT,
            created_at VARCHAR(40) NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_ledger_member ON transactions_ledger (member_id)",
        """
        CREATE TABLE IF NOT EXISTS journals (
            record_id VARCHAR(64) PRIMARY KEY,
            member_id VARCHAR(64) NOT NULL,
            account_id VARCHAR(128) NOT NULL,
            amount VARCHAR(40) NOT NULL,
            order_ids TEXT NOT NULL,
            client_ref VARCHAR(128) NOT NULL,
            journal_status VARCHAR(16) NOT NULL,
            journal_id VARCHAR(128),
            created_at VARCHAR(40) NOT NULL,
            journaled_at VARCHAR(40),
            error TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS member_accounts (
            member_id VARCHAR(64) PRIMARY KEY,
            broker VARCHAR(64) NOT NULL,
            account_id VARCHAR(128),
            account_status VARCHAR(32)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS merchant (
            merchant_id VARCHAR(64) PRIMARY KEY,
            merchant_name VARCHAR(255) NOT NULL,
            conversion_rate VARCHAR(40) NOT NULL,
            tier_rates TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS broker_master (
            broker_id VARCHAR(64) PRIMARY KEY,
            broker_name VARCHAR(255) NOT NULL,
            ach_bank_name VARCHAR(255),
            ach_routing_num VARCHAR(32),
            ach_account_num VARCHAR(64),
            ach_account_type VARCHAR(32)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS wallet (
            record_id {serial},
            member_id VARCHAR(64),
            merchant_id VARCHAR(64),
            merchant_name VARCHAR(255),
            member_email VARCHAR(255),
            first_name VARCHAR(128),
            last_name VARCHAR(128),
            member_tier VARCHAR(64),
            points VARCHAR(40),
            cash_balance VARCHAR(40),
            updated_at VARCHAR(40)
        )
        """,
    ]


def create_schema(engine: Engine) -> None:
    """Create the settlement tables if they do not exist."""
    with engine.begin() as conn:
        for statement in _schema_statements(engine.dialect.name):
            conn.execute(text(statement))
    logger.info(f"[SQL-STORE] Schema ready | dialect={engine.dialect.name}")


# =============================================================================
# Value conversion
# =============================================================================

def _to_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in DATETIME_COLUMNS:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
    if name in BOOL_COLUMNS:
        return 1 if value else 0
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


def _from_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in DATETIME_COLUMNS:
        return datetime.fromisoformat(value)
    if name in DECIMAL_COLUMNS:
        return Decimal(str(value))
    if name in BOOL_COLUMNS:
        return bool(value)
    return value


def _params(row: Any, columns: Iterable[str]) -> Dict[str, Any]:
    return {name: _to_db(name, getattr(row, name)) for name in columns}


def _decode(mapping: Any, columns: Iterable[str]) -> Dict[str, Any]:
    return {name: _from_db(name, mapping[name]) for name in columns}


def _row_to_order(mapping: Any) -> Order:
    return Order(**_decode(mapping, ORDER_COLUMNS))


def _row_to_ledger(mapping: Any) -> LedgerEntry:
    return LedgerEntry(**_decode(mapping, LEDGER_COLUMNS))


def _row_to_journal(mapping: Any) -> JournalRecord:
    data = _decode(mapping, [c for c in JOURNAL_COLUMNS if c != "order_ids"])
    data["order_ids"] = json.loads(mapping["order_ids"])
    return JournalRecord(**data)


def _row_to_wallet(mapping: Any) -> WalletRow:
    return WalletRow(**_decode(mapping, WALLET_COLUMNS))


def _insert_sql(table: str, columns: List[str]) -> str:
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({', '.join(':' + c for c in columns)})"
    )


# =============================================================================
# Store
# =============================================================================

class SqlSettlementStore(SettlementStore):
    """
    SettlementStore over a SQLAlchemy engine.

    Reliability Level: L6 Critical (Sovereign Tier)
    Side Effects: Database reads/writes
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        # One shared SQLite connection cannot interleave transactions
        self._lock = threading.RLock() if engine.dialect.name == "sqlite" else None

    @contextmanager
    def _tx(self):
        with self._lock if self._lock is not None else nullcontext():
            try:
                with self._engine.begin() as conn:
                    yield conn
            except OperationalError as e:
                logger.error(f"[STL-009] Store unavailable | error={e}")
                raise StoreUnavailable(f"Database unavailable: {e.orig}") from e

    # -- orders ---------------------------------------------------------------

    def add_order(self, order: Order) -> Order:
        check_new_order(order)
        try:
            with self._tx() as conn:
                conn.execute(text(_insert_sql("orders", ORDER_COLUMNS)), _params(order, ORDER_COLUMNS))
        except IntegrityError as e:
            raise ValueError(f"Order {order.order_id} already exists") from e
        return order.copy()

    @staticmethod
    def _select_order(conn: Connection, order_id: str) -> Optional[Order]:
        row = conn.execute(
            text("SELECT * FROM orders WHERE order_id = :order_id"), {"order_id": order_id}
        ).mappings().first()
        return _row_to_order(row) if row is not None else None

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._tx() as conn:
            return self._select_order(conn, order_id)

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
        clauses = []
        params: Dict[str, Any] = {}
        expanding = []
        if statuses is not None:
            params["statuses"] = [s.value for s in statuses]
            if not params["statuses"]:
                return []
            clauses.append("status IN :statuses")
            expanding.append("statuses")
        if member_ids is not None:
            params["member_ids"] = list(member_ids)
            if not params["member_ids"]:
                return []
            clauses.append("member_id IN :member_ids")
            expanding.append("member_ids")
        for name, value in (
            ("merchant_id", merchant_id),
            ("broker", broker),
            ("basket_id", basket_id),
            ("paid_batch_id", paid_batch_id),
            ("journal_record_id", journal_record_id),
        ):
            if value is not None:
                clauses.append(f"{name} = :{name}")
                params[name] = value
        if paid is not None:
            clauses.append("paid_flag = :paid_flag")
            params["paid_flag"] = 1 if paid else 0
        if unjournaled:
            clauses.append("journaled_at IS NULL")
        if unclaimed:
            clauses.append("journal_record_id IS NULL")

        sql = "SELECT * FROM orders"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        query = text(sql)
        if expanding:
            query = query.bindparams(*(bindparam(name, expanding=True) for name in expanding))

        with self._tx() as conn:
            rows = conn.execute(query, params).mappings().all()
        orders = [_row_to_order(r) for r in rows]
        orders.sort(key=lambda o: order_sort_key(o.order_id))
        return orders

    def _cas(self, conn: Connection, change: OrderChange) -> Order:
        current = self._select_order(conn, change.order_id)
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
        unknown = [name for name in change.changes if name not in ORDER_COLUMNS]
        if unknown:
            raise ValueError(f"Unknown order fields: {unknown}")

        updated = apply_order_change(current, change, utc_now())
        columns = list(change.changes) + ["updated_at"]
        assignments = ", ".join(f"{c} = :new_{c}" for c in columns)
        params = {f"new_{c}": _to_db(c, getattr(updated, c)) for c in columns}
        params.update({
            "order_id": change.order_id,
            "expected_status": change.expected_status.value,
            "expected_version": change.expected_version,
        })
        result = conn.execute(
            text(
                f"UPDATE orders SET {assignments}, version = version + 1 "
                f"WHERE order_id = :order_id AND status = :expected_status "
                f"AND version = :expected_version"
            ),
            params,
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Order {change.order_id} changed during update", order_id=change.order_id
            )
        return updated

    def compare_and_set(self, change: OrderChange) -> Order:
        return self.compare_and_set_many([change])[0]

    def compare_and_set_many(self, changes: List[OrderChange]) -> List[Order]:
        ids = [c.order_id for c in changes]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate order ids in one compare-and-set batch")
        with self._tx() as conn:
            return [self._cas(conn, c) for c in changes]

    # -- ledger ---------------------------------------------------------------

    @staticmethod
    def _insert_ledger(conn: Connection, entry: LedgerEntry) -> LedgerEntry:
        columns = [c for c in LEDGER_COLUMNS if c != "tx_id"]
        tx_id = conn.execute(
            text(_insert_sql("transactions_ledger", columns) + " RETURNING tx_id"),
            _params(entry, columns),
        ).scalar_one()
        return entry.copy(tx_id=int(tx_id))

    def append_ledger(self, entry: LedgerEntry) -> LedgerEntry:
        try:
            with self._tx() as conn:
                return self._insert_ledger(conn, entry)
        except IntegrityError as e:
            raise DuplicateLedgerEntry(
                f"client_tx_id {entry.client_tx_id} already recorded",
                member_id=entry.member_id,
            ) from e

    def get_ledger_entry(self, tx_id: int) -> Optional[LedgerEntry]:
        with self._tx() as conn:
            row = conn.execute(
                text("SELECT * FROM transactions_ledger WHERE tx_id = :tx_id"), {"tx_id": tx_id}
            ).mappings().first()
        return _row_to_ledger(row) if row is not None else None

    @staticmethod
    def _select_ledger_by_client(conn: Connection, client_tx_id: str) -> Optional[LedgerEntry]:
        row = conn.execute(
            text("SELECT * FROM transactions_ledger WHERE client_tx_id = :client_tx_id"),
            {"client_tx_id": client_tx_id},
        ).mappings().first()
        return _row_to_ledger(row) if row is not None else None

    def find_ledger_by_client_tx_id(self, client_tx_id: str) -> Optional[LedgerEntry]:
        with self._tx() as conn:
            return self._select_ledger_by_client(conn, client_tx_id)

    def set_ledger_status(
        self, tx_id: int, expected: LedgerStatus, new: LedgerStatus
    ) -> LedgerEntry:
        with self._tx() as conn:
            result = conn.execute(
                text(
                    "UPDATE transactions_ledger SET status = :new "
                    "WHERE tx_id = :tx_id AND status = :expected"
                ),
                {"tx_id": tx_id, "expected": expected.value, "new": new.value},
            )
            row = conn.execute(
                text("SELECT * FROM transactions_ledger WHERE tx_id = :tx_id"), {"tx_id": tx_id}
            ).mappings().first()
        if row is None:
            raise SettlementError(f"Ledger entry {tx_id} not found")
        entry = _row_to_ledger(row)
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Ledger entry {tx_id} is {entry.status.value}, expected {expected.value}",
                member_id=entry.member_id,
            )
        return entry

    def list_ledger(
        self,
        member_id: Optional[str] = None,
        statuses: Optional[Iterable[LedgerStatus]] = None,
    ) -> List[LedgerEntry]:
        clauses = []
        params: Dict[str, Any] = {}
        query_binds = []
        if member_id is not None:
            clauses.append("member_id = :member_id")
            params["member_id"] = member_id
        if statuses is not None:
            params["statuses"] = [s.value for s in statuses]
            if not params["statuses"]:
                return []
            clauses.append("status IN :statuses")
            query_binds.append(bindparam("statuses", expanding=True))
        sql = "SELECT * FROM transactions_ledger"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY tx_id"
        query = text(sql)
        if query_binds:
            query = query.bindparams(*query_binds)
        with self._tx() as conn:
            rows = conn.execute(query, params).mappings().all()
        return [_row_to_ledger(r) for r in rows]

    # -- journals -------------------------------------------------------------

    @staticmethod
    def _journal_params(record: JournalRecord) -> Dict[str, Any]:
        params = _params(record, [c for c in JOURNAL_COLUMNS if c != "order_ids"])
        params["order_ids"] = json.dumps(list(record.order_ids))
        return params

    @staticmethod
    def _select_journal(conn: Connection, record_id: str) -> Optional[JournalRecord]:
        row = conn.execute(
            text("SELECT * FROM journals WHERE record_id = :record_id"), {"record_id": record_id}
        ).mappings().first()
        return _row_to_journal(row) if row is not None else None

    def _require_queued(self, conn: Connection, record_id: str) -> JournalRecord:
        record = self._select_journal(conn, record_id)
        if record is None:
            raise SettlementError(f"Journal record {record_id} not found")
        if record.journal_status != JournalStatus.QUEUED:
            raise ConcurrentModification(
                f"Journal record {record_id} is {record.journal_status.value}, not queued",
                member_id=record.member_id,
            )
        return record

    def claim_orders_for_journal(self, record: JournalRecord) -> JournalRecord:
        now = _to_db("updated_at", utc_now())
        with self._tx() as conn:
            if self._select_journal(conn, record.record_id) is not None:
                raise ValueError(f"Journal record {record.record_id} already exists")
            for order_id in record.order_ids:
                order = self._select_order(conn, order_id)
                check_journal_claim(order, order_id, record)
                result = conn.execute(
                    text(
                        "UPDATE orders SET journal_record_id = :record_id, "
                        "version = version + 1, updated_at = :now "
                        "WHERE order_id = :order_id AND version = :version "
                        "AND journal_record_id IS NULL"
                    ),
                    {
                        "record_id": record.record_id,
                        "now": now,
                        "order_id": order_id,
                        "version": order.version,
                    },
                )
                if result.rowcount != 1:
                    raise ConcurrentModification(
                        f"Order {order_id} claimed concurrently", order_id=order_id
                    )
            conn.execute(
                text(_insert_sql("journals", JOURNAL_COLUMNS)), self._journal_params(record)
            )
        return record.copy()

    def get_journal(self, record_id: str) -> Optional[JournalRecord]:
        with self._tx() as conn:
            return self._select_journal(conn, record_id)

    def update_journal(self, record_id: str, **changes: Any) -> JournalRecord:
        with self._tx() as conn:
            record = self._select_journal(conn, record_id)
            if record is None:
                raise SettlementError(f"Journal record {record_id} not found")
            record = record.copy(**changes)
            self._write_journal(conn, record)
        return record

    def _write_journal(self, conn: Connection, record: JournalRecord) -> None:
        params = self._journal_params(record)
        columns = [c for c in JOURNAL_COLUMNS if c != "record_id"]
        conn.execute(
            text(
                f"UPDATE journals SET {', '.join(f'{c} = :{c}' for c in columns)} "
                f"WHERE record_id = :record_id"
            ),
            params,
        )

    def list_journals(
        self,
        status: Optional[JournalStatus] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[JournalRecord]:
        clauses = []
        params: Dict[str, Any] = {}
        if status is not None:
            clauses.append("journal_status = :status")
            params["status"] = status.value
        if since is not None:
            clauses.append("created_at >= :since")
            params["since"] = _to_db("created_at", since)
        if before is not None:
            clauses.append("created_at < :before")
            params["before"] = _to_db("created_at", before)
        if member_id is not None:
            clauses.append("member_id = :member_id")
            params["member_id"] = member_id
        sql = "SELECT * FROM journals"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, record_id DESC"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)
        with self._tx() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [_row_to_journal(r) for r in rows]

    def release_journal_claim(self, record_id: str, error: str) -> JournalRecord:
        now = _to_db("updated_at", utc_now())
        with self._tx() as conn:
            record = self._require_queued(conn, record_id)
            conn.execute(
                text(
                    "UPDATE orders SET journal_record_id = NULL, "
                    "version = version + 1, updated_at = :now "
                    "WHERE journal_record_id = :record_id AND journaled_at IS NULL"
                ),
                {"record_id": record_id, "now": now},
            )
            record = record.copy(journal_status=JournalStatus.FAILED, error=error)
            self._write_journal(conn, record)
        return record

    def finalize_journal(
        self,
        record_id: str,
        journal_id: str,
        entry: LedgerEntry,
        changes: List[OrderChange],
    ) -> Tuple[JournalRecord, LedgerEntry, List[Order]]:
        with self._tx() as conn:
            record = self._require_queued(conn, record_id)
            for change in changes:
                current = self._select_order(conn, change.order_id)
                if (
                    current is None
                    or current.journal_record_id != record_id
                    or current.status not in JOURNAL_SOURCE_STATUSES
                ):
                    raise ConcurrentModification(
                        f"Order {change.order_id} is not claimed by {record_id}",
                        order_id=change.order_id,
                    )

            stored_entry = self._select_ledger_by_client(conn, entry.client_tx_id)
            if stored_entry is not None:
                if stored_entry.payload_fingerprint() != entry.payload_fingerprint():
                    raise DuplicateLedgerEntry(
                        f"client_tx_id {entry.client_tx_id} recorded with a different payload",
                        member_id=entry.member_id,
                    )
            else:
                stored_entry = self._insert_ledger(conn, entry)

            updated = [self._cas(conn, change) for change in changes]
            record = record.copy(
                journal_status=JournalStatus.JOURNALED,
                journal_id=journal_id,
                journaled_at=utc_now(),
                error=None,
            )
            self._write_journal(conn, record)
        return record, stored_entry, updated

    # -- reference data -------------------------------------------------------

    def upsert_linked_account(self, account: LinkedAccount) -> None:
        params = {
            "member_id": account.member_id,
            "broker": account.broker,
            "account_id": account.account_id,
            "account_status": account.account_status,
        }
        with self._tx() as conn:
            result = conn.execute(
                text(
                    "UPDATE member_accounts SET broker = :broker, account_id = :account_id, "
                    "account_status = :account_status WHERE member_id = :member_id"
                ),
                params,
            )
            if result.rowcount == 0:
                conn.execute(text(_insert_sql("member_accounts", list(params))), params)

    def get_linked_account(self, member_id: str) -> Optional[LinkedAccount]:
        with self._tx() as conn:
            row = conn.execute(
                text("SELECT * FROM member_accounts WHERE member_id = :member_id"),
                {"member_id": member_id},
            ).mappings().first()
        if row is None:
            return None
        return LinkedAccount(
            member_id=row["member_id"],
            broker=row["broker"],
            account_id=row["account_id"],
            account_status=row["account_status"],
        )

    def add_merchant(self, merchant: Merchant) -> None:
        params = {
            "merchant_id": merchant.merchant_id,
            "merchant_name": merchant.merchant_name,
            "conversion_rate": str(merchant.conversion_rate),
            "tier_rates": json.dumps({k: str(v) for k, v in merchant.tier_rates.items()}),
        }
        with self._tx() as conn:
            conn.execute(text("DELETE FROM merchant WHERE merchant_id = :merchant_id"), params)
            conn.execute(text(_insert_sql("merchant", list(params))), params)

    @staticmethod
    def _row_to_merchant(row: Any) -> Merchant:
        return Merchant(
            merchant_id=row["merchant_id"],
            merchant_name=row["merchant_name"],
            conversion_rate=Decimal(row["conversion_rate"]),
            tier_rates={k: Decimal(v) for k, v in json.loads(row["tier_rates"]).items()},
        )

    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        with self._tx() as conn:
            row = conn.execute(
                text("SELECT * FROM merchant WHERE merchant_id = :merchant_id"),
                {"merchant_id": merchant_id},
            ).mappings().first()
        return self._row_to_merchant(row) if row is not None else None

    def list_merchants(self) -> List[Merchant]:
        with self._tx() as conn:
            rows = conn.execute(text("SELECT * FROM merchant ORDER BY merchant_id")).mappings().all()
        return [self._row_to_merchant(r) for r in rows]

    def add_broker(self, broker: BrokerMaster) -> None:
        params = dict(vars(broker))
        with self._tx() as conn:
            conn.execute(text("DELETE FROM broker_master WHERE broker_id = :broker_id"), params)
            conn.execute(text(_insert_sql("broker_master", list(params))), params)

    def get_broker(self, broker: str) -> Optional[BrokerMaster]:
        with self._tx() as conn:
            row = conn.execute(
                text("SELECT * FROM broker_master WHERE broker_id = :broker"), {"broker": broker}
            ).mappings().first()
            if row is None:
                row = conn.execute(
                    text(
                        "SELECT * FROM broker_master WHERE broker_name = :broker "
                        "ORDER BY broker_id LIMIT 1"
                    ),
                    {"broker": broker},
                ).mappings().first()
        return BrokerMaster(**dict(row)) if row is not None else None

    def add_wallet_row(self, row: WalletRow) -> WalletRow:
        stored = row.copy(updated_at=utc_now())
        columns = [c for c in WALLET_COLUMNS if c != "record_id"]
        with self._tx() as conn:
            record_id = conn.execute(
                text(_insert_sql("wallet", columns) + " RETURNING record_id"),
                _params(stored, columns),
            ).scalar_one()
        return stored.copy(record_id=int(record_id))

    def list_wallet_rows(self, member_id: Optional[str] = None) -> List[WalletRow]:
        sql = "SELECT * FROM wallet"
        params: Dict[str, Any] = {}
        if member_id is not None:
            sql += " WHERE member_id = :member_id"
            params["member_id"] = member_id
        sql += " ORDER BY record_id"
        with self._tx() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [_row_to_wallet(r) for r in rows]

    def update_wallet_balances(
        self, record_id: int, points: Any, cash_balance: Any
    ) -> WalletRow:
        with self._tx() as conn:
            conn.execute(
                text(
                    "UPDATE wallet SET points = :points, cash_balance = :cash_balance, "
                    "updated_at = :updated_at WHERE record_id = :record_id"
                ),
                {
                    "record_id": record_id,
                    "points": _to_db("points", points),
                    "cash_balance": _to_db("cash_balance", cash_balance),
                    "updated_at": _to_db("updated_at", utc_now()),
                },
            )
            row = conn.execute(
                text("SELECT * FROM wallet WHERE record_id = :record_id"), {"record_id": record_id}
            ).mappings().first()
        if row is None:
            raise SettlementError(f"Wallet row {record_id} not found")
        return _row_to_wallet(row)

    def ping(self) -> bool:
        with self._tx() as conn:
            conn.execute(text("SELECT 1"))
        return True


__all__ = ["SqlSettlementStore", "create_schema"]
