"""
Unit Tests for the Journal Engine

Reliability Level: SOVEREIGN TIER

Tests member funding from the firm account:
- amount = sum of cent-rounded payable amounts, one ledger entry per journal
- per-member independence (one rejection never blocks the others)
- members without an active linked account / below minimum are skipped
- lost acknowledgements and timeouts never cause double funding
- crash recovery of stale queued journals
- status reporting
"""

import threading
import time
from datetime import timedelta
from decimal import Decimal

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.demo_brokerage import DemoBrokerage
from services.journal_engine import journal_client_ref, ledger_client_tx_id
from services.order_store import InMemorySettlementStore
from services.settlement_config import SettlementConfig
from services.settlement_errors import SettlementErrorCode
from services.settlement_models import (
    Direction,
    JournalRecord,
    JournalStatus,
    LinkedAccount,
    Order,
    OrderStatus,
    TxType,
    utc_now,
)
from services.settlement_runtime import build_settlement_services

S = OrderStatus


def settled_order(order_id: str, member_id: str, amount: str, executed_amount=None) -> Order:
    return Order(
        order_id=order_id,
        basket_id=f"B-{member_id}",
        member_id=member_id,
        merchant_id="MER1",
        symbol="VTI",
        broker="BRK1",
        amount=Decimal(amount),
        executed_amount=Decimal(executed_amount) if executed_amount is not None else None,
        status=S.SETTLED,
        paid_flag=True,
        paid_batch_id="ACH_1",
    )


def link(store, member_id: str, account_id: str, status: str = "ACTIVE") -> None:
    store.upsert_linked_account(LinkedAccount(
        member_id=member_id, broker="BRK1", account_id=account_id, account_status=status
    ))


def build(config: SettlementConfig = None, brokerage: DemoBrokerage = None):
    store = InMemorySettlementStore()
    brokerage = brokerage or DemoBrokerage(firm_balance=Decimal("10000.00"))
    services = build_settlement_services(
        config=config or SettlementConfig(journal_max_workers=2),
        store=store,
        brokerage=brokerage,
    )
    return services, store, brokerage


# =============================================================================
# Journal run
# =============================================================================

class TestRunJournal:

    def test_single_member_funded(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00", executed_amount="40.00"))
        store.add_order(settled_order("102", "M1", "10.10"))

        result = services.journal.run_journal(["M1"], correlation_id="c")

        assert result.members_funded == 1
        assert result.journals_created == 1
        assert result.total_journaled == Decimal("50.10")
        assert result.issues == []
        assert brokerage.account_balances["acct-1"] == Decimal("50.10")

        record = result.journals[0]
        assert record.journal_status == JournalStatus.JOURNALED
        assert record.order_ids == ["101", "102"]
        for order_id in ("101", "102"):
            order = store.get_order(order_id)
            assert order.status == S.JOURNALED
            assert order.journal_id == record.journal_id
            assert order.journaled_at is not None

        entries = services.ledger.entries("M1")
        assert len(entries) == 1
        assert entries[0].tx_type == TxType.CASH_OUT
        assert entries[0].direction == Direction.OUTBOUND
        assert entries[0].amount_cash == Decimal("50.10")
        assert entries[0].external_ref == record.journal_id
        assert entries[0].client_tx_id == ledger_client_tx_id(record.record_id)

    def test_second_run_funds_nothing(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00"))
        services.journal.run_journal(None)

        again = services.journal.run_journal(None)

        assert again.members_funded == 0
        assert again.journals == []
        assert brokerage.journal_count == 1
        assert len(services.ledger.entries("M1")) == 1

    def test_empty_member_list_is_noop(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00"))

        result = services.journal.run_journal([])

        assert result.members_funded == 0
        assert brokerage.journal_count == 0

    def test_rejected_member_does_not_block_others(self) -> None:
        services, store, brokerage = build()
        for index in (1, 2, 3):
            member_id = f"M{index}"
            link(store, member_id, f"acct-{index}")
            store.add_order(settled_order(str(index), member_id, "20.00"))
        brokerage.reject_accounts.add("acct-3")

        result = services.journal.run_journal(None)

        assert result.members_funded == 2
        assert result.total_journaled == Decimal("40.00")
        assert [(i.item_id, i.error_code) for i in result.issues] == [
            ("M3", SettlementErrorCode.TRANSFER_FAILED)
        ]
        failed_order = store.get_order("3")
        assert failed_order.status == S.SETTLED
        assert failed_order.journal_record_id is None
        assert services.ledger.entries("M3") == []
        failed = store.list_journals(status=JournalStatus.FAILED)
        assert [r.member_id for r in failed] == ["M3"]

        brokerage.reject_accounts.clear()
        retry = services.journal.run_journal(["M3"])
        assert retry.members_funded == 1
        assert store.get_order("3").status == S.JOURNALED

    def test_member_without_account_skipped(self) -> None:
        services, store, brokerage = build()
        link(store, "M2", "acct-2", status="SUBMITTED")
        store.add_order(settled_order("1", "M1", "20.00"))
        store.add_order(settled_order("2", "M2", "20.00"))

        result = services.journal.run_journal(None)

        codes = {i.item_id: i.error_code for i in result.issues}
        assert codes == {
            "M1": SettlementErrorCode.NO_LINKED_ACCOUNT,
            "M2": SettlementErrorCode.NO_LINKED_ACCOUNT,
        }
        assert store.get_order("1").status == S.SETTLED
        assert brokerage.journal_count == 0
        assert store.list_journals() == []

    def test_below_minimum_creates_no_record(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("1", "M1", "0.50"))

        result = services.journal.run_journal(None)

        assert result.issues[0].error_code == SettlementErrorCode.BELOW_MINIMUM
        assert store.list_journals() == []
        assert store.get_order("1").status == S.SETTLED

    def test_zero_amount_creates_no_record(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("1", "M1", "0.004"))

        result = services.journal.run_journal(None)

        assert result.issues[0].error_code == SettlementErrorCode.NOTHING_TO_JOURNAL
        assert store.list_journals() == []

    def test_only_settled_orders_are_journaled(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("1", "M1", "20.00"))
        sell = settled_order("2", "M1", "30.00")
        sell.status = S.SELL
        store.add_order(sell)

        result = services.journal.run_journal(None)

        assert result.total_journaled == Decimal("20.00")
        assert store.get_order("2").status == S.SELL


# =============================================================================
# Double-funding protection
# =============================================================================

class TestNoDoubleFunding:

    def test_lost_acknowledgement_resolved_on_next_run(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00"))
        store.add_order(settled_order("102", "M1", "10.10"))
        brokerage.lost_ack_accounts.add("acct-1")

        first = services.journal.run_journal(None)

        assert first.members_funded == 0
        assert first.issues[0].error_code == SettlementErrorCode.TRANSFER_IN_DOUBT
        assert brokerage.journal_count == 1
        assert store.get_order("101").status == S.SETTLED

        brokerage.lost_ack_accounts.clear()
        second = services.journal.run_journal(None)

        assert second.members_funded == 1
        assert brokerage.journal_count == 1
        assert brokerage.account_balances["acct-1"] == Decimal("50.10")
        assert len(services.ledger.entries("M1")) == 1

    def test_timed_out_transfer_not_sent_twice(self) -> None:
        config = SettlementConfig(journal_max_workers=1, journal_transfer_timeout_seconds=1)
        services, store, brokerage = build(config=config)
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "25.00"))
        brokerage.slow_accounts["acct-1"] = 1.5

        first = services.journal.run_journal(None)
        assert first.issues[0].error_code == SettlementErrorCode.TRANSFER_IN_DOUBT
        assert store.get_order("101").status == S.SETTLED

        time.sleep(1.0)
        brokerage.slow_accounts.clear()
        second = services.journal.run_journal(None)

        assert second.members_funded == 1
        assert brokerage.journal_count == 1
        assert brokerage.account_balances["acct-1"] == Decimal("25.00")

    def test_timed_out_orders_stay_claimed(self) -> None:
        config = SettlementConfig(journal_max_workers=1, journal_transfer_timeout_seconds=1)
        services, store, brokerage = build(config=config)
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "25.00"))
        brokerage.slow_accounts["acct-1"] = 1.5

        services.journal.run_journal(None)

        order = store.get_order("101")
        assert order.status == S.SETTLED
        assert order.journal_record_id is not None
        held = store.get_journal(order.journal_record_id)
        assert held.journal_status == JournalStatus.QUEUED
        assert held.error.startswith("in doubt: ")
        time.sleep(1.0)

    def test_late_landing_transfer_then_new_order(self) -> None:
        config = SettlementConfig(journal_max_workers=1, journal_transfer_timeout_seconds=1)
        services, store, brokerage = build(config=config)
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "25.00"))
        brokerage.slow_accounts["acct-1"] = 1.5

        services.journal.run_journal(None)
        time.sleep(1.0)
        brokerage.slow_accounts.clear()
        store.add_order(settled_order("102", "M1", "10.00"))

        second = services.journal.run_journal(None)

        assert second.members_funded == 1
        assert second.total_journaled == Decimal("35.00")
        assert brokerage.journal_count == 2
        assert brokerage.account_balances["acct-1"] == Decimal("35.00")
        assert store.get_order("101").status == S.JOURNALED
        assert store.get_order("102").status == S.JOURNALED
        assert store.get_order("101").journal_id != store.get_order("102").journal_id
        assert len(services.ledger.entries("M1")) == 2

    def test_hung_member_does_not_starve_others(self) -> None:
        config = SettlementConfig(journal_max_workers=1, journal_transfer_timeout_seconds=1)
        services, store, brokerage = build(config=config)
        for index in (1, 2, 3):
            member_id = f"M{index}"
            link(store, member_id, f"acct-{index}")
            store.add_order(settled_order(f"{index}01", member_id, "25.00"))
        brokerage.slow_accounts["acct-1"] = 3.0

        result = services.journal.run_journal(None)

        assert result.members_funded == 2
        assert [(i.item_id, i.error_code) for i in result.issues] == [
            ("M1", SettlementErrorCode.TRANSFER_IN_DOUBT)
        ]
        assert store.get_order("201").status == S.JOURNALED
        assert store.get_order("301").status == S.JOURNALED
        hung = store.get_order("101")
        assert hung.status == S.SETTLED
        assert hung.journal_record_id is not None
        time.sleep(2.5)

    def test_concurrent_runs_fund_each_member_once(self) -> None:
        services, store, brokerage = build(config=SettlementConfig(journal_max_workers=4))
        for index in range(1, 7):
            member_id = f"M{index}"
            link(store, member_id, f"acct-{index}")
            store.add_order(settled_order(f"{index}01", member_id, "15.00"))
            store.add_order(settled_order(f"{index}02", member_id, "5.25"))

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(services.journal.run_journal(None)))
            for _ in range(3)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(r.members_funded for r in results) == 6
        assert brokerage.journal_count == 6
        for index in range(1, 7):
            assert brokerage.account_balances[f"acct-{index}"] == Decimal("20.25")
            assert len(services.ledger.entries(f"M{index}")) == 1

    def test_toggle_during_transfer_still_journals(self) -> None:
        class TogglingBrokerage(DemoBrokerage):
            toggle = None

            def create_journal(self, to_account, amount, description, client_ref):
                self.toggle.toggle_sell_status(["101"], [])
                return super().create_journal(to_account, amount, description, client_ref)

        brokerage = TogglingBrokerage(firm_balance=Decimal("1000.00"))
        services, store, _ = build(brokerage=brokerage)
        brokerage.toggle = services.toggle
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00"))

        result = services.journal.run_journal(None)

        assert result.members_funded == 1
        assert store.get_order("101").status == S.JOURNALED

    def test_client_ref_ignores_order_of_ids(self) -> None:
        assert journal_client_ref("M1", ["2", "10"]) == journal_client_ref("M1", ["10", "2"])
        assert journal_client_ref("M1", ["2"]) != journal_client_ref("M2", ["2"])
        assert journal_client_ref("M1", ["2"]).startswith("jref_")


# =============================================================================
# Crash recovery
# =============================================================================

class TestRecoverQueuedJournals:

    def _orphan(self, store, record_id: str) -> JournalRecord:
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00"))
        record = JournalRecord(
            record_id=record_id,
            member_id="M1",
            account_id="acct-1",
            amount=Decimal("40.00"),
            order_ids=["101"],
            client_ref=journal_client_ref("M1", ["101"]),
            created_at=utc_now() - timedelta(hours=1),
        )
        return store.claim_orders_for_journal(record)

    def test_landed_journal_is_recorded(self) -> None:
        services, store, brokerage = build()
        record = self._orphan(store, "jr_orphan1")
        receipt = brokerage.create_journal(
            "acct-1", Decimal("40.00"), "Points conversion funding", record.client_ref
        )

        result = services.journal.recover_queued_journals()

        assert result.completed == ["jr_orphan1"]
        order = store.get_order("101")
        assert order.status == S.JOURNALED
        assert order.journal_id == receipt.journal_id
        assert store.get_journal("jr_orphan1").journal_status == JournalStatus.JOURNALED
        assert len(services.ledger.entries("M1")) == 1

    def test_missing_journal_releases_claim(self) -> None:
        services, store, brokerage = build()
        self._orphan(store, "jr_orphan2")

        result = services.journal.recover_queued_journals()

        assert result.failed == ["jr_orphan2"]
        order = store.get_order("101")
        assert order.status == S.SETTLED
        assert order.journal_record_id is None
        assert store.get_journal("jr_orphan2").journal_status == JournalStatus.FAILED

        rerun = services.journal.run_journal(None)
        assert rerun.members_funded == 1

    def test_recent_queued_journal_left_alone(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("101", "M1", "40.00"))
        store.claim_orders_for_journal(JournalRecord(
            record_id="jr_fresh",
            member_id="M1",
            account_id="acct-1",
            amount=Decimal("40.00"),
            order_ids=["101"],
            client_ref=journal_client_ref("M1", ["101"]),
        ))

        result = services.journal.recover_queued_journals()

        assert result.completed == [] and result.failed == []
        assert store.get_journal("jr_fresh").journal_status == JournalStatus.QUEUED


# =============================================================================
# Status
# =============================================================================

class TestJournalStatus:

    def test_status_lists_pending_and_recent(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        link(store, "M2", "acct-2")
        store.add_order(settled_order("1", "M1", "40.00"))
        store.add_order(settled_order("2", "M2", "12.34", executed_amount="12.345"))
        services.journal.run_journal(["M1"])

        status = services.journal.get_journal_status()

        assert status["firm_balance"] == "9960.00"
        assert [o["order_id"] for o in status["pending"]] == ["2"]
        summary = status["member_summary"][0]
        assert summary["member_id"] == "M2"
        assert summary["total_amount"] == "12.34"
        assert summary["alpaca_account_id"] == "acct-2"
        assert summary["orders"][0]["amount_source"] == "executed_amount"
        assert summary["orders"][0]["in_flight"] is False
        assert len(status["recent_journals"]) == 1

    def test_firm_balance_unavailable(self) -> None:
        services, store, brokerage = build()
        brokerage.firm_balance_unavailable = True

        status = services.journal.get_journal_status()

        assert status["firm_balance"] is None
        assert status["pending"] == []

    def test_check_journal_status(self) -> None:
        services, store, brokerage = build()
        link(store, "M1", "acct-1")
        store.add_order(settled_order("1", "M1", "40.00"))
        record = services.journal.run_journal(None).journals[0]

        found = services.journal.check_journal_status(record.journal_id)

        assert found["journal_id"] == record.journal_id
        assert found["amount"] == "40.00"
        assert services.journal.check_journal_status("missing") is None
