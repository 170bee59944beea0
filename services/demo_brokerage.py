"""
============================================================================
Loyalty Settlement Core v1.0.0
Demo Brokerage - In-Memory Cash Journals
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All amounts use decimal.Decimal with ROUND_HALF_EVEN

DEMO BROKERAGE:
    Implements the brokerage transfer operations in memory, used when
    BROKERAGE_MODE=demo and by the test suite:
    - Firm (omnibus) cash balance debited by every journal
    - Journals searchable by client_ref, like the live API
    - Scriptable faults: rejected accounts, slow accounts, journals that
      land but whose acknowledgement is lost, firm balance outage

============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, List, Set
import itertools
import logging
import threading
import time

from app.exchange.brokerage_client import (
    BrokerageClientError,
    BrokerageTimeoutError,
    JournalReceipt,
)
from app.exchange.decimal_gateway import to_usd

logger = logging.getLogger(__name__)


class DemoBrokerage:
    """
    Thread-safe in-memory brokerage.

    Side Effects: None outside this object
    """

    def __init__(self, firm_balance: Decimal = Decimal("1000000.00")) -> None:
        self._lock = threading.Lock()
        self._firm_balance = to_usd(firm_balance)
        self._journals: Dict[str, JournalReceipt] = {}
        self._by_ref: Dict[str, str] = {}
        self._ids = itertools.count(1)
        self.account_balances: Dict[str, Decimal] = {}

        # Fault injection
        self.reject_accounts: Set[str] = set()
        self.slow_accounts: Dict[str, float] = {}
        self.lost_ack_accounts: Set[str] = set()
        self.firm_balance_unavailable = False
        self.calls: List[str] = []

    def create_journal(
        self,
        to_account: str,
        amount: Decimal,
        description: str,
        client_ref: str,
    ) -> JournalReceipt:
        amount = to_usd(amount)
        delay = self.slow_accounts.get(to_account)
        if delay:
            time.sleep(delay)

        with self._lock:
            self.calls.append(to_account)
            if to_account in self.reject_accounts:
                raise BrokerageClientError(
                    f"BRK-CLI-001: account {to_account} rejected the journal", http_status=422
                )
            if amount <= 0:
                raise BrokerageClientError("BRK-CLI-001: amount must be positive", http_status=422)
            if amount > self._firm_balance:
                raise BrokerageClientError(
                    "BRK-CLI-001: insufficient firm balance", http_status=403
                )

            existing_id = self._by_ref.get(client_ref)
            if existing_id is not None:
                receipt = self._journals[existing_id]
            else:
                receipt = JournalReceipt(
                    journal_id=f"demo-jnl-{next(self._ids):06d}",
                    status="executed",
                    amount=amount,
                    to_account=to_account,
                    client_ref=client_ref,
                )
                self._journals[receipt.journal_id] = receipt
                self._by_ref[client_ref] = receipt.journal_id
                self._firm_balance -= amount
                self.account_balances[to_account] = (
                    self.account_balances.get(to_account, Decimal("0.00")) + amount
                )

            lost = to_account in self.lost_ack_accounts

        logger.debug(
            f"[DEMO-BROKERAGE] Journal {'created' if existing_id is None else 'replayed'} | "
            f"journal_id={receipt.journal_id} | to_account={to_account} | amount={amount}"
        )
        if lost:
            raise BrokerageTimeoutError(
                f"BRK-CLI-003: acknowledgement lost for {receipt.journal_id}"
            )
        return receipt

    def get_journal(self, journal_id: str) -> Optional[JournalReceipt]:
        with self._lock:
            return self._journals.get(journal_id)

    def find_journal(
        self, client_ref: str, to_account: Optional[str] = None
    ) -> Optional[JournalReceipt]:
        with self._lock:
            journal_id = self._by_ref.get(client_ref)
            if journal_id is None:
                return None
            receipt = self._journals[journal_id]
        if to_account is not None and receipt.to_account != to_account:
            return None
        return receipt

    def get_firm_balance(self) -> Decimal:
        if self.firm_balance_unavailable:
            raise BrokerageClientError("BRK-CLI-001: firm account unavailable", http_status=503)
        with self._lock:
            return self._firm_balance

    @property
    def journal_count(self) -> int:
        with self._lock:
            return len(self._journals)


__all__ = ["DemoBrokerage"]
