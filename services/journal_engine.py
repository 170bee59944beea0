"""
============================================================================
Settlement Pipeline - Journal Engine
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Journal amounts are sums of cent-rounded order amounts
Traceability: All operations include correlation_id for audit

JOURNAL RUN (per member, independent):
    0. Resolve in-doubt records from earlier runs (see below) before any
       new claim, so their orders are never sent a second time.
    1. Select settled orders with journaled_at unset and no open claim.
    2. Group by member; members without an active linked brokerage
       sub-account are reported (STL-006) and excluded.
    3. Amount = sum of payable amounts (executed_amount, else amount).
       Amount <= 0 is skipped (STL-013); below JOURNAL_MIN_AMOUNT is
       skipped (STL-012). No zero-amount record is ever created.
    4. Claim: one queued JournalRecord is inserted and every contributing
       order is stamped with its record id in the same atomic step.
    5. Transfer: the brokerage is first asked for a journal carrying the
       same client_ref (a previous attempt whose acknowledgement was lost);
       only if none exists is a new journal created. The call runs on its
       own worker and is bounded by JOURNAL_TRANSFER_TIMEOUT_SECONDS from
       the moment it starts.
    6. Success: record -> journaled, one cash_out ledger entry, orders ->
       journaled, all in one store step.
       Rejection: record -> failed, claims released, orders stay settled,
       no ledger entry.
       Timeout or lost acknowledgement (STL-014): the journal may still
       land, so the record stays queued with its orders claimed and is
       marked in doubt.

IN-DOUBT RECORDS:
    Every run first asks the brokerage for each in-doubt record by its own
    client_ref. A journal found is finalized; a rejected one is released;
    a missing one keeps its claim until recover_queued_journals() ages it
    out.

CONCURRENCY:
    Members run on a ThreadPoolExecutor bounded by JOURNAL_MAX_WORKERS. One
    member's failure or hung transfer never blocks or rolls back another.
    A concurrent run cannot claim orders already claimed, so no order is
    funded twice.

CRASH RECOVERY:
    recover_queued_journals() resolves queued records older than
    JOURNAL_STALE_QUEUED_SECONDS against the brokerage by client_ref; a
    record with no brokerage journal is failed and its claims released.

ERROR CODES:
    - STL-005: Transfer failure (retryable, orders stay settled)
    - STL-006: No linked brokerage account
    - STL-012: Amount below brokerage minimum
    - STL-013: Nothing to journal
    - STL-014: Transfer outcome unknown, orders held

============================================================================
"""

from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Iterable, Tuple
import hashlib
import logging
import time
import uuid

from app.exchange.brokerage_client import (
    BrokerageClientError,
    BrokerageTimeoutError,
    BrokerageTransferClient,
    JournalReceipt,
)
from app.exchange.decimal_gateway import sum_usd
from app.observability.settlement_metrics import (
    observe_transfer_latency,
    record_journal_outcome,
    update_firm_balance,
)
from services.order_state_machine import OrderTransitioner, TransitionOwner
from services.settlement_config import SettlementConfig
from services.settlement_errors import (
    ConcurrentModification,
    ItemIssue,
    NoLinkedAccount,
    SettlementError,
    SettlementErrorCode,
    TransferFailure,
    TransferInDoubt,
)
from services.settlement_models import (
    Direction,
    JournalRecord,
    JournalStatus,
    LedgerEntry,
    LinkedAccount,
    Order,
    OrderStatus,
    TxType,
    order_sort_key,
    utc_now,
)

logger = logging.getLogger(__name__)

OWNER = TransitionOwner.JOURNAL_ENGINE
JOURNAL_CHANNEL = "journal"
JOURNAL_DESCRIPTION = "Points conversion funding"
RECENT_JOURNAL_DAYS = 30
RECENT_JOURNAL_LIMIT = 50
FINALIZE_RETRIES = 3
IN_DOUBT_PREFIX = "in doubt: "
REJECTED_STATUSES = frozenset({"rejected", "canceled", "cancelled", "failed"})


def journal_client_ref(member_id: str, order_ids: Iterable[str]) -> str:
    """
    Idempotency reference for a transfer: same member and same order set
    always yield the same reference.
    """
    payload = member_id + "|" + ",".join(sorted(order_ids, key=order_sort_key))
    return "jref_" + hashlib.sha256(payload.encode()).hexdigest()[:32]


def ledger_client_tx_id(record_id: str) -> str:
    return f"jnl_{record_id}"


def is_rejected(receipt: JournalReceipt) -> bool:
    return bool(receipt.status) and receipt.status.lower() in REJECTED_STATUSES


@dataclass
class MemberJournalOutcome:
    member_id: str
    record: Optional[JournalRecord] = None
    issue: Optional[ItemIssue] = None

    @property
    def journaled(self) -> bool:
        return self.record is not None and self.record.journal_status == JournalStatus.JOURNALED


@dataclass
class JournalRunResult:
    total_journaled: Decimal = Decimal("0.00")
    members_funded: int = 0
    journals_created: int = 0
    journals: List[JournalRecord] = field(default_factory=list)
    issues: List[ItemIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_journaled": str(self.total_journaled),
            "members_funded": self.members_funded,
            "journals_created": self.journals_created,
            "journals": [j.to_dict() for j in self.journals],
            "skipped": [i.to_dict() for i in self.issues],
        }


@dataclass
class RecoveryResult:
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    unresolved: List[ItemIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": list(self.completed),
            "failed": list(self.failed),
            "unresolved": [i.to_dict() for i in self.unresolved],
        }


class JournalEngine:
    """
    Funds members' brokerage sub-accounts from the firm account.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: member_ids None means all members
    Side Effects: Brokerage journals, store writes, ledger entries, metrics
    """

    def __init__(
        self,
        transitioner: OrderTransitioner,
        brokerage: BrokerageTransferClient,
        config: SettlementConfig,
    ) -> None:
        self._transitioner = transitioner
        self._store = transitioner.store
        self._brokerage = brokerage
        self._config = config

    # =========================================================================
    # Run
    # =========================================================================

    def run_journal(
        self,
        member_ids: Optional[Iterable[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> JournalRunResult:
        correlation_id = correlation_id or str(uuid.uuid4())
        member_filter = list(member_ids) if member_ids is not None else None
        result = JournalRunResult()
        if member_filter is not None and not member_filter:
            return result

        outcomes = self._resolve_in_doubt(member_filter, correlation_id)

        groups = self._group_pending(member_filter)
        logger.info(
            f"[JOURNAL] Run started | members={len(groups)} | in_doubt={len(outcomes)} | "
            f"scope={'all' if member_filter is None else len(member_filter)} | "
            f"correlation_id={correlation_id}"
        )

        work: List[Tuple[str, LinkedAccount, List[Order], Decimal]] = []
        for member_id, orders in groups.items():
            issue, account, amount = self._precheck(member_id, orders, correlation_id)
            if issue is not None:
                result.issues.append(issue)
            else:
                work.append((member_id, account, orders, amount))

        if work:
            workers = max(1, min(self._config.journal_max_workers, len(work)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="journal-member") as pool:
                futures = [
                    pool.submit(
                        self._journal_member, member_id, account, orders, amount, correlation_id
                    )
                    for member_id, account, orders, amount in work
                ]
                outcomes.extend(f.result() for f in futures)

        for outcome in outcomes:
            if outcome.issue is not None:
                result.issues.append(outcome.issue)
            if outcome.journaled:
                result.journals.append(outcome.record)
        result.journals_created = len(result.journals)
        result.members_funded = len({r.member_id for r in result.journals})
        result.total_journaled = sum_usd(r.amount for r in result.journals)

        logger.info(
            f"[JOURNAL] Run complete | members_funded={result.members_funded} | "
            f"journals_created={result.journals_created} | "
            f"total_journaled={result.total_journaled} | skipped={len(result.issues)} | "
            f"correlation_id={correlation_id}"
        )
        return result

    def _group_pending(
        self, member_ids: Optional[List[str]], include_claimed: bool = False
    ) -> "OrderedDict[str, List[Order]]":
        orders = self._store.list_orders(
            statuses=[OrderStatus.SETTLED],
            member_ids=member_ids,
            unjournaled=True,
            unclaimed=not include_claimed,
        )
        groups: "OrderedDict[str, List[Order]]" = OrderedDict()
        for order in sorted(orders, key=lambda o: (o.member_id, order_sort_key(o.order_id))):
            groups.setdefault(order.member_id, []).append(order)
        return groups

    def _precheck(
        self, member_id: str, orders: List[Order], correlation_id: str
    ) -> Tuple[Optional[ItemIssue], Optional[LinkedAccount], Decimal]:
        account = self._store.get_linked_account(member_id)
        amount = sum_usd(o.payable_amount for o in orders)
        if account is None or not account.is_active:
            error = NoLinkedAccount(
                "Member has no active linked brokerage account", member_id=member_id
            )
            logger.warning(
                f"[{error.error_code}] Member excluded from journal | member_id={member_id} | "
                f"orders={len(orders)} | amount={amount} | correlation_id={correlation_id}"
            )
            record_journal_outcome("no_account")
            return ItemIssue.from_error(member_id, error), None, amount

        if amount <= 0:
            record_journal_outcome("nothing_to_journal")
            return ItemIssue(
                item_id=member_id,
                error_code=SettlementErrorCode.NOTHING_TO_JOURNAL,
                reason=f"Journal amount {amount} is not positive",
            ), account, amount

        if amount < self._config.journal_min_amount:
            logger.info(
                f"[{SettlementErrorCode.BELOW_MINIMUM}] Journal amount below minimum | "
                f"member_id={member_id} | amount={amount} | "
                f"minimum={self._config.journal_min_amount} | correlation_id={correlation_id}"
            )
            record_journal_outcome("below_minimum")
            return ItemIssue(
                item_id=member_id,
                error_code=SettlementErrorCode.BELOW_MINIMUM,
                reason=f"Journal amount {amount} is below the minimum "
                       f"{self._config.journal_min_amount}",
            ), account, amount

        return None, account, amount

    def _journal_member(
        self,
        member_id: str,
        account: LinkedAccount,
        orders: List[Order],
        amount: Decimal,
        correlation_id: str,
    ) -> MemberJournalOutcome:
        order_ids = [o.order_id for o in orders]
        record = JournalRecord(
            record_id=f"jr_{uuid.uuid4().hex[:20]}",
            member_id=member_id,
            account_id=account.account_id,
            amount=amount,
            order_ids=order_ids,
            client_ref=journal_client_ref(member_id, order_ids),
        )
        try:
            record = self._store.claim_orders_for_journal(record)
        except ConcurrentModification as e:
            logger.warning(
                f"[JOURNAL] Orders claimed elsewhere, member skipped | member_id={member_id} | "
                f"order_id={e.order_id} | correlation_id={correlation_id}"
            )
            return MemberJournalOutcome(member_id, issue=ItemIssue.from_error(member_id, e))

        try:
            receipt = self._transfer(record, correlation_id)
        except TransferInDoubt as e:
            held = self._mark_in_doubt(record, e.message)
            record_journal_outcome("in_doubt")
            return MemberJournalOutcome(
                member_id, record=held, issue=ItemIssue.from_error(member_id, e)
            )
        except TransferFailure as e:
            released = self._store.release_journal_claim(record.record_id, e.message)
            record_journal_outcome("failed")
            return MemberJournalOutcome(
                member_id, record=released, issue=ItemIssue.from_error(member_id, e)
            )

        try:
            finalized = self._finalize(record, receipt, correlation_id)
        except SettlementError as e:
            # Money moved; the next run finalizes it from the brokerage record
            logger.critical(
                f"[{e.error_code}] Journal landed but could not be recorded | "
                f"record_id={record.record_id} | journal_id={receipt.journal_id} | "
                f"member_id={member_id} | error={e.message} | correlation_id={correlation_id}"
            )
            held = self._mark_in_doubt(record, e.message)
            record_journal_outcome("unrecorded")
            return MemberJournalOutcome(member_id, record=held, issue=ItemIssue.from_error(member_id, e))

        record_journal_outcome("journaled")
        return MemberJournalOutcome(member_id, record=finalized)

    def _transfer(self, record: JournalRecord, correlation_id: str) -> JournalReceipt:
        """
        Resolve or create the brokerage journal for a claimed record.

        The call gets a dedicated worker so the timeout covers only this
        member's call, never time spent queued behind another member.

        Raises:
            TransferInDoubt: timeout or lost acknowledgement, may have landed
            TransferFailure: brokerage error or rejection
        """
        timeout = self._config.journal_transfer_timeout_seconds
        started = time.monotonic()

        def send() -> JournalReceipt:
            existing = self._brokerage.find_journal(record.client_ref, record.account_id)
            if existing is not None:
                logger.info(
                    f"[JOURNAL] Reusing journal from earlier attempt | "
                    f"journal_id={existing.journal_id} | client_ref={record.client_ref} | "
                    f"correlation_id={correlation_id}"
                )
                return existing
            return self._brokerage.create_journal(
                record.account_id, record.amount, JOURNAL_DESCRIPTION, record.client_ref
            )

        executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"journal-transfer-{record.member_id}"
        )
        future = executor.submit(send)
        try:
            receipt = future.result(timeout=timeout)
        except FutureTimeout:
            reason = f"Brokerage transfer timed out after {timeout}s"
            self._log_in_doubt(record, reason, correlation_id)
            raise TransferInDoubt(reason, member_id=record.member_id)
        except BrokerageTimeoutError as e:
            self._log_in_doubt(record, str(e), correlation_id)
            raise TransferInDoubt(str(e), member_id=record.member_id) from e
        except BrokerageClientError as e:
            self._log_transfer_failure(record, str(e), correlation_id)
            raise TransferFailure(str(e), member_id=record.member_id) from e
        finally:
            # A timed-out call keeps running on its own thread
            executor.shutdown(wait=False)
            observe_transfer_latency(time.monotonic() - started)

        if is_rejected(receipt):
            reason = f"Brokerage journal {receipt.journal_id} is {receipt.status}"
            self._log_transfer_failure(record, reason, correlation_id)
            raise TransferFailure(reason, member_id=record.member_id)
        return receipt

    @staticmethod
    def _log_transfer_failure(record: JournalRecord, reason: str, correlation_id: str) -> None:
        logger.error(
            f"[{SettlementErrorCode.TRANSFER_FAILED}] Transfer failed, orders stay settled | "
            f"record_id={record.record_id} | member_id={record.member_id} | "
            f"amount={record.amount} | reason={reason} | correlation_id={correlation_id}"
        )

    @staticmethod
    def _log_in_doubt(record: JournalRecord, reason: str, correlation_id: str) -> None:
        logger.error(
            f"[{SettlementErrorCode.TRANSFER_IN_DOUBT}] Transfer outcome unknown, orders held | "
            f"record_id={record.record_id} | member_id={record.member_id} | "
            f"amount={record.amount} | client_ref={record.client_ref} | reason={reason} | "
            f"correlation_id={correlation_id}"
        )

    def _mark_in_doubt(self, record: JournalRecord, reason: str) -> JournalRecord:
        current = self._store.get_journal(record.record_id)
        if current is None or current.journal_status != JournalStatus.QUEUED:
            return current or record
        return self._store.update_journal(record.record_id, error=IN_DOUBT_PREFIX + reason)

    def _resolve_in_doubt(
        self, member_ids: Optional[List[str]], correlation_id: str
    ) -> List[MemberJournalOutcome]:
        """Settle earlier in-doubt records by their own client_ref before new claims."""
        records = [
            r for r in self._store.list_journals(status=JournalStatus.QUEUED)
            if r.error is not None and r.error.startswith(IN_DOUBT_PREFIX)
            and (member_ids is None or r.member_id in member_ids)
        ]
        outcomes: List[MemberJournalOutcome] = []
        for record in sorted(records, key=lambda r: (r.created_at, r.record_id)):
            member_id = record.member_id
            try:
                receipt = self._brokerage.find_journal(record.client_ref, record.account_id)
            except BrokerageClientError as e:
                outcomes.append(MemberJournalOutcome(member_id, record=record, issue=ItemIssue(
                    item_id=member_id,
                    error_code=SettlementErrorCode.TRANSFER_IN_DOUBT,
                    reason=f"Brokerage lookup for {record.record_id} failed: {e}",
                )))
                continue

            if receipt is None:
                # The call may still be in flight; recover_queued_journals ages it out
                outcomes.append(MemberJournalOutcome(member_id, record=record, issue=ItemIssue(
                    item_id=member_id,
                    error_code=SettlementErrorCode.TRANSFER_IN_DOUBT,
                    reason=f"Journal record {record.record_id} not yet found at the brokerage",
                )))
                continue

            if is_rejected(receipt):
                reason = f"Brokerage journal {receipt.journal_id} is {receipt.status}"
                released = self._store.release_journal_claim(record.record_id, reason)
                record_journal_outcome("failed")
                outcomes.append(MemberJournalOutcome(member_id, record=released, issue=ItemIssue(
                    item_id=member_id,
                    error_code=SettlementErrorCode.TRANSFER_FAILED,
                    reason=reason,
                )))
                continue

            try:
                finalized = self._finalize(record, receipt, correlation_id)
            except SettlementError as e:
                current = self._store.get_journal(record.record_id)
                if current is not None and current.journal_status != JournalStatus.QUEUED:
                    # Another run resolved it first
                    continue
                outcomes.append(MemberJournalOutcome(
                    member_id, record=record, issue=ItemIssue.from_error(member_id, e)
                ))
                continue
            logger.info(
                f"[JOURNAL] In-doubt journal resolved | record_id={record.record_id} | "
                f"journal_id={receipt.journal_id} | member_id={member_id} | "
                f"correlation_id={correlation_id}"
            )
            record_journal_outcome("recovered")
            outcomes.append(MemberJournalOutcome(member_id, record=finalized))
        return outcomes

    def _finalize(
        self,
        record: JournalRecord,
        receipt: JournalReceipt,
        correlation_id: str,
    ) -> JournalRecord:
        entry = LedgerEntry(
            member_id=record.member_id,
            tx_type=TxType.CASH_OUT,
            direction=Direction.OUTBOUND,
            channel=JOURNAL_CHANNEL,
            client_tx_id=ledger_client_tx_id(record.record_id),
            amount_cash=record.amount,
            external_ref=receipt.journal_id,
            note=f"Journal to {record.account_id} for {record.order_count} orders",
        )
        journaled_at = utc_now()

        for attempt in range(1, FINALIZE_RETRIES + 1):
            before = [self._store.get_order(order_id) for order_id in record.order_ids]
            changes = [
                self._transitioner.plan(
                    order, OrderStatus.JOURNALED, OWNER,
                    {"journaled_at": journaled_at, "journal_id": receipt.journal_id},
                )
                for order in before
                if order is not None
            ]
            try:
                stored, ledger_entry, after = self._store.finalize_journal(
                    record.record_id, receipt.journal_id, entry, changes
                )
            except ConcurrentModification as e:
                if attempt == FINALIZE_RETRIES:
                    raise
                logger.warning(
                    f"[JOURNAL] Order changed during finalize, re-reading | "
                    f"record_id={record.record_id} | order_id={e.order_id} | "
                    f"attempt={attempt} | correlation_id={correlation_id}"
                )
                continue

            by_id = {o.order_id: o for o in before if o is not None}
            for row in after:
                self._transitioner.publish(by_id[row.order_id], row, OWNER, correlation_id)
            logger.info(
                f"[JOURNAL] Member funded | record_id={stored.record_id} | "
                f"journal_id={stored.journal_id} | member_id={stored.member_id} | "
                f"amount={stored.amount} | orders={stored.order_count} | "
                f"ledger_tx_id={ledger_entry.tx_id} | correlation_id={correlation_id}"
            )
            return stored

        raise ConcurrentModification(f"Journal record {record.record_id} could not be finalized")

    # =========================================================================
    # Recovery
    # =========================================================================

    def recover_queued_journals(self, correlation_id: Optional[str] = None) -> RecoveryResult:
        """Resolve queued records left behind by a crash mid-member."""
        correlation_id = correlation_id or str(uuid.uuid4())
        cutoff = utc_now() - timedelta(seconds=self._config.journal_stale_queued_seconds)
        stale = self._store.list_journals(status=JournalStatus.QUEUED, before=cutoff)
        result = RecoveryResult()

        for record in sorted(stale, key=lambda r: (r.created_at, r.record_id)):
            try:
                receipt = self._brokerage.find_journal(record.client_ref, record.account_id)
            except BrokerageClientError as e:
                result.unresolved.append(ItemIssue(
                    item_id=record.record_id,
                    error_code=SettlementErrorCode.TRANSFER_FAILED,
                    reason=f"Brokerage lookup failed: {e}",
                ))
                continue

            if receipt is None or is_rejected(receipt):
                self._store.release_journal_claim(
                    record.record_id,
                    "No brokerage journal found during recovery" if receipt is None
                    else f"Brokerage journal {receipt.journal_id} is {receipt.status}",
                )
                result.failed.append(record.record_id)
                record_journal_outcome("recovered_failed")
                continue

            try:
                self._finalize(record, receipt, correlation_id)
            except SettlementError as e:
                result.unresolved.append(ItemIssue.from_error(record.record_id, e))
                continue
            result.completed.append(record.record_id)
            record_journal_outcome("recovered")

        logger.info(
            f"[JOURNAL] Recovery complete | stale={len(stale)} | completed={len(result.completed)} | "
            f"failed={len(result.failed)} | unresolved={len(result.unresolved)} | "
            f"correlation_id={correlation_id}"
        )
        return result

    # =========================================================================
    # Status
    # =========================================================================

    def check_journal_status(self, journal_id: str) -> Optional[Dict[str, Any]]:
        receipt = self._brokerage.get_journal(journal_id)
        return receipt.to_dict() if receipt is not None else None

    def get_journal_status(self, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """Firm balance, pending orders by member and recent journals."""
        correlation_id = correlation_id or str(uuid.uuid4())
        firm_balance: Optional[Decimal] = None
        try:
            firm_balance = self._brokerage.get_firm_balance()
            update_firm_balance(firm_balance, correlation_id)
        except BrokerageClientError as e:
            logger.warning(
                f"[JOURNAL] Firm balance unavailable | error={e} | correlation_id={correlation_id}"
            )

        groups = self._group_pending(None, include_claimed=True)
        pending: List[Dict[str, Any]] = []
        member_summary: List[Dict[str, Any]] = []
        for member_id, orders in groups.items():
            account = self._store.get_linked_account(member_id)
            pending.extend(o.to_dict() for o in orders)
            member_summary.append({
                "member_id": member_id,
                "total_amount": str(sum_usd(o.payable_amount for o in orders)),
                "order_count": len(orders),
                "alpaca_account_id": account.account_id if account else None,
                "account_status": account.account_status if account else None,
                "orders": [
                    {
                        "order_id": o.order_id,
                        "symbol": o.symbol,
                        "amount": str(o.payable_amount),
                        "amount_source": o.amount_source,
                        "in_flight": o.journal_claimed,
                    }
                    for o in orders
                ],
            })

        since = utc_now() - timedelta(days=RECENT_JOURNAL_DAYS)
        recent = self._store.list_journals(since=since, limit=RECENT_JOURNAL_LIMIT)
        return {
            "firm_balance": str(firm_balance) if firm_balance is not None else None,
            "pending": pending,
            "member_summary": member_summary,
            "recent_journals": [r.to_dict() for r in recent],
        }


__all__ = [
    "JournalEngine",
    "JournalRunResult",
    "RecoveryResult",
    "journal_client_ref",
    "ledger_client_tx_id",
]
