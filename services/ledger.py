"""
============================================================================
Settlement Pipeline - Transactions Ledger
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All amounts are decimal.Decimal with ROUND_HALF_EVEN
Traceability: Every entry carries a client_tx_id idempotency key

LEDGER RULES:
    - Entries are insert-only. Amounts are non-negative; direction carries
      the sign (inbound adds, outbound subtracts).
    - The only permitted updates are status transitions:
        pending -> confirmed | failed
        confirmed -> reversed
    - Balances are derived from confirmed entries only. This is the
      authoritative balance; the wallet table is a projection of it.
    - Replaying a client_tx_id with the identical payload returns the stored
      entry; replaying it with a different payload raises STL-010.

============================================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, List, Set
import logging

from services.order_store import SettlementStore
from services.settlement_errors import (
    DuplicateLedgerEntry,
    InvalidTransition,
    SettlementError,
    SettlementErrorCode,
)
from services.settlement_models import (
    Direction,
    LedgerEntry,
    LedgerStatus,
    TxType,
)
from app.exchange.decimal_gateway import sum_usd, to_units

logger = logging.getLogger(__name__)


LEDGER_STATUS_TRANSITIONS: Dict[LedgerStatus, Set[LedgerStatus]] = {
    LedgerStatus.PENDING: {LedgerStatus.CONFIRMED, LedgerStatus.FAILED},
    LedgerStatus.CONFIRMED: {LedgerStatus.REVERSED},
    LedgerStatus.FAILED: set(),
    LedgerStatus.REVERSED: set(),
}


@dataclass(frozen=True)
class LedgerAppendResult:
    entry: LedgerEntry
    duplicate: bool = False


class LedgerService:
    """
    Append-only ledger over the settlement store.

    Reliability Level: L6 Critical (Sovereign Tier)
    Side Effects: Store writes, logs
    """

    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    def append(
        self,
        entry: LedgerEntry,
        correlation_id: Optional[str] = None,
    ) -> LedgerAppendResult:
        """
        Append an entry with client_tx_id idempotency.

        Raises:
            ValueError: missing key, missing amounts or negative amounts
            DuplicateLedgerEntry: key replayed with a different payload
        """
        self._validate(entry)

        existing = self._store.find_ledger_by_client_tx_id(entry.client_tx_id)
        if existing is None:
            try:
                stored = self._store.append_ledger(entry)
            except DuplicateLedgerEntry:
                # Lost the insert race to a concurrent writer with the same key
                existing = self._store.find_ledger_by_client_tx_id(entry.client_tx_id)
                if existing is None:
                    raise
            else:
                logger.info(
                    f"[LEDGER] Entry appended | tx_id={stored.tx_id} | "
                    f"member_id={stored.member_id} | tx_type={stored.tx_type.value} | "
                    f"direction={stored.direction.value} | amount_cash={stored.amount_cash} | "
                    f"amount_points={stored.amount_points} | status={stored.status.value} | "
                    f"client_tx_id={stored.client_tx_id} | correlation_id={correlation_id}"
                )
                return LedgerAppendResult(entry=stored, duplicate=False)

        if existing.payload_fingerprint() != entry.payload_fingerprint():
            logger.error(
                f"[{SettlementErrorCode.DUPLICATE_LEDGER_ENTRY}] client_tx_id replayed "
                f"with different payload | client_tx_id={entry.client_tx_id} | "
                f"existing_tx_id={existing.tx_id} | correlation_id={correlation_id}"
            )
            raise DuplicateLedgerEntry(
                f"client_tx_id {entry.client_tx_id} already recorded with a different payload",
                member_id=entry.member_id,
            )

        logger.info(
            f"[LEDGER] Idempotent replay | tx_id={existing.tx_id} | "
            f"client_tx_id={entry.client_tx_id} | correlation_id={correlation_id}"
        )
        return LedgerAppendResult(entry=existing, duplicate=True)

    @staticmethod
    def _validate(entry: LedgerEntry) -> None:
        if not entry.client_tx_id or not entry.client_tx_id.strip():
            raise ValueError("client_tx_id must be non-empty")
        if not entry.member_id:
            raise ValueError("member_id must be non-empty")
        if entry.amount_cash is None and entry.amount_points is None:
            raise ValueError("A ledger entry needs amount_cash or amount_points")
        for name in ("amount_cash", "amount_points"):
            value = getattr(entry, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative; direction carries the sign")

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    def confirm(self, tx_id: int, correlation_id: Optional[str] = None) -> LedgerEntry:
        return self._set_status(tx_id, LedgerStatus.CONFIRMED, correlation_id)

    def fail(self, tx_id: int, correlation_id: Optional[str] = None) -> LedgerEntry:
        return self._set_status(tx_id, LedgerStatus.FAILED, correlation_id)

    def reverse(self, tx_id: int, correlation_id: Optional[str] = None) -> LedgerEntry:
        return self._set_status(tx_id, LedgerStatus.REVERSED, correlation_id)

    def _set_status(
        self, tx_id: int, target: LedgerStatus, correlation_id: Optional[str]
    ) -> LedgerEntry:
        entry = self._store.get_ledger_entry(tx_id)
        if entry is None:
            raise SettlementError(f"Ledger entry {tx_id} not found")
        if target not in LEDGER_STATUS_TRANSITIONS[entry.status]:
            logger.error(
                f"[{SettlementErrorCode.INVALID_TRANSITION}] Invalid ledger status change | "
                f"tx_id={tx_id} | {entry.status.value} -> {target.value} | "
                f"correlation_id={correlation_id}"
            )
            raise InvalidTransition(
                f"Ledger entry {tx_id}: {entry.status.value} -> {target.value} is not allowed",
                member_id=entry.member_id,
            )
        updated = self._store.set_ledger_status(tx_id, entry.status, target)
        logger.info(
            f"[LEDGER] Status changed | tx_id={tx_id} | "
            f"{entry.status.value} -> {target.value} | correlation_id={correlation_id}"
        )
        return updated

    # -------------------------------------------------------------------------
    # Balances
    # -------------------------------------------------------------------------

    def entries(self, member_id: Optional[str] = None) -> List[LedgerEntry]:
        return self._store.list_ledger(member_id=member_id)

    def cash_balance(self, member_id: str) -> Decimal:
        """Authoritative cash balance: signed sum of confirmed cash movements."""
        confirmed = self._store.list_ledger(
            member_id=member_id, statuses=[LedgerStatus.CONFIRMED]
        )
        return sum_usd(e.signed_cash() for e in confirmed if e.amount_cash is not None)

    def points_balance(self, member_id: str) -> Decimal:
        confirmed = self._store.list_ledger(
            member_id=member_id, statuses=[LedgerStatus.CONFIRMED]
        )
        total = Decimal("0")
        for entry in confirmed:
            if entry.amount_points is not None:
                total += entry.signed_points()
        return to_units(total)

    def member_ids(self) -> List[str]:
        return sorted({e.member_id for e in self._store.list_ledger()})

    def verify_conservation(
        self,
        member_id: str,
        authoritative_cash: Decimal,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """True when the ledger's derived cash equals the given balance exactly."""
        derived = self.cash_balance(member_id)
        if derived != sum_usd([authoritative_cash]):
            logger.error(
                f"[{SettlementErrorCode.RECONCILIATION_FAILED}] Ledger conservation broken | "
                f"member_id={member_id} | ledger_cash={derived} | "
                f"authoritative_cash={authoritative_cash} | correlation_id={correlation_id}"
            )
            return False
        return True


def cash_entry(
    member_id: str,
    tx_type: TxType,
    direction: Direction,
    amount_cash: Decimal,
    channel: str,
    client_tx_id: str,
    **extra,
) -> LedgerEntry:
    """Shorthand for a confirmed cash movement."""
    return LedgerEntry(
        member_id=member_id,
        tx_type=tx_type,
        direction=direction,
        channel=channel,
        client_tx_id=client_tx_id,
        amount_cash=amount_cash,
        **extra,
    )


__all__ = [
    "LedgerService",
    "LedgerAppendResult",
    "LEDGER_STATUS_TRANSITIONS",
    "cash_entry",
]
