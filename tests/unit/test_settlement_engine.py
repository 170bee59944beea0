"""
Unit Tests for the Settlement Engine

Reliability Level: SOVEREIGN TIER

Tests order advancement from placement to settlement:
- queue_basket / execute_order / confirm_basket
- mark_batch_paid / cancel_payment (payment marks, status untouched)
- settle_batch (ACH cleared, all-or-nothing, re-runnable)
- fail_order / cancel_order / mark_sold
- list_settled_batches pagination
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.order_state_machine import OrderTransitioner
from services.order_store import InMemorySettlementStore
from services.settlement_config import SettlementConfig
from services.settlement_engine import SettlementEngine
from services.settlement_errors import (
    ExecutionMismatch,
    InvalidTransition,
    OrderNotFound,
    ReconciliationError,
    SettlementErrorCode,
)
from services.settlement_models import (
    AchConfirmation,
    BrokerConfirmation,
    Order,
    OrderStatus,
)

S = OrderStatus


def make_order(order_id: str, status: OrderStatus = S.PLACED, **kwargs) -> Order:
    values = dict(
        order_id=order_id,
        basket_id="B1",
        member_id="M1",
        merchant_id="MER1",
        symbol="AAPL",
        broker="BRK1",
        amount=Decimal("100.00"),
        status=status,
    )
    values.update(kwargs)
    return Order(**values)


@pytest.fixture
def store() -> InMemorySettlementStore:
    return InMemorySettlementStore()


@pytest.fixture
def engine(store) -> SettlementEngine:
    return SettlementEngine(OrderTransitioner(store), SettlementConfig())


def add_executed(store, order_id: str, executed_amount: str, **kwargs) -> Order:
    return store.add_order(make_order(
        order_id,
        status=S.EXECUTED,
        amount=Decimal(executed_amount),
        executed_amount=Decimal(executed_amount),
        **kwargs
    ))


# =============================================================================
# Sweep and execution
# =============================================================================

class TestQueueAndExecute:

    def test_queue_basket_reports_non_placed_orders(self, store, engine) -> None:
        store.add_order(make_order("1"))
        store.add_order(make_order("2"))
        store.add_order(make_order("3", status=S.EXECUTED))

        result = engine.queue_basket("B1", correlation_id="c")

        assert result.changed == ["1", "2"]
        assert [i.item_id for i in result.issues] == ["3"]
        assert result.issues[0].error_code == SettlementErrorCode.INVALID_TRANSITION
        assert store.get_order("1").status == S.QUEUED

    def test_queue_unknown_basket(self, engine) -> None:
        with pytest.raises(OrderNotFound):
            engine.queue_basket("NOPE")

    def test_execute_within_tolerance(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.QUEUED))
        fill = BrokerConfirmation(
            order_id="1",
            executed_price=Decimal("50.00"),
            executed_shares=Decimal("2.0"),
            broker_order_id="brk-1",
        )

        updated = engine.execute_order("1", fill, correlation_id="c")

        assert updated.status == S.EXECUTED
        assert updated.executed_amount == Decimal("100")
        assert updated.broker_order_id == "brk-1"
        assert updated.executed_at is not None

    def test_execute_outside_tolerance(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.QUEUED))
        fill = BrokerConfirmation(
            order_id="1", executed_price=Decimal("50.00"), executed_shares=Decimal("2.1")
        )

        with pytest.raises(ExecutionMismatch):
            engine.execute_order("1", fill)
        assert store.get_order("1").status == S.QUEUED
        assert store.get_order("1").executed_amount is None

    def test_execute_wrong_order(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.QUEUED))
        fill = BrokerConfirmation(
            order_id="2", executed_price=Decimal("50"), executed_shares=Decimal("2")
        )
        with pytest.raises(ExecutionMismatch):
            engine.execute_order("1", fill)

    def test_execute_share_quantity_order(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.QUEUED, amount=Decimal("0"), shares=Decimal("3")))
        fill = BrokerConfirmation(
            order_id="1", executed_price=Decimal("10"), executed_shares=Decimal("3")
        )
        assert engine.execute_order("1", fill).executed_shares == Decimal("3")

    def test_execution_written_once(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.QUEUED))
        fill = BrokerConfirmation(
            order_id="1", executed_price=Decimal("50"), executed_shares=Decimal("2")
        )
        engine.execute_order("1", fill)

        with pytest.raises(InvalidTransition):
            engine.execute_order("1", fill)

    def test_confirm_basket(self, store, engine) -> None:
        add_executed(store, "1", "10.00")
        add_executed(store, "2", "10.00", member_id="M2")

        result = engine.confirm_basket("M1", "B1")

        assert result.changed == ["1"]
        assert store.get_order("1").status == S.CONFIRMED
        assert store.get_order("1").confirmed_at is not None
        assert store.get_order("2").status == S.EXECUTED


# =============================================================================
# Payment marks and settlement
# =============================================================================

class TestPaymentAndSettlement:

    def test_mark_batch_paid(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        add_executed(store, "2", "10.10")
        add_executed(store, "3", "99.00", broker="BRK2")

        result = engine.mark_batch_paid("MER1", "BRK1", "ACH_1", correlation_id="c")

        assert result.order_ids == ["1", "2"]
        assert result.total_amount == Decimal("50.10")
        order = store.get_order("1")
        assert order.paid_flag is True
        assert order.paid_batch_id == "ACH_1"
        assert order.status == S.EXECUTED
        assert store.get_order("3").paid_flag is False

    def test_mark_batch_paid_rejects_bad_batch_id(self, engine) -> None:
        with pytest.raises(ValueError):
            engine.mark_batch_paid("MER1", "BRK1", "ACH-1; DROP")

    def test_mark_batch_paid_reports_unpayable_ids(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        store.add_order(make_order("2", status=S.SETTLED))

        result = engine.mark_batch_paid("MER1", "BRK1", "ACH_1", order_ids=["1", "2", "404"])

        assert result.order_ids == ["1"]
        assert sorted(i.item_id for i in result.issues) == ["2", "404"]

    def test_mark_batch_paid_nothing_to_mark(self, engine) -> None:
        result = engine.mark_batch_paid("MER1", "BRK1", "ACH_1")
        assert result.order_ids == []
        assert result.total_amount == Decimal("0.00")

    def test_settle_batch(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        add_executed(store, "2", "10.10")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")
        cleared_at = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

        result = engine.settle_batch(
            "ACH_1",
            AchConfirmation("ACH_1", cleared=True, amount=Decimal("50.10"), cleared_at=cleared_at),
        )

        assert result.settled == ["1", "2"]
        assert result.total_amount == Decimal("50.10")
        assert store.get_order("1").status == S.SETTLED
        assert store.get_order("1").settled_at == cleared_at

    def test_settle_batch_rerun_is_noop(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")
        ach = AchConfirmation("ACH_1", cleared=True, amount=Decimal("40.00"))
        engine.settle_batch("ACH_1", ach)
        version = store.get_order("1").version

        result = engine.settle_batch("ACH_1", ach)

        assert result.settled == []
        assert result.already_settled == ["1"]
        assert store.get_order("1").version == version

    def test_settle_batch_amount_mismatch_fails_closed(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        add_executed(store, "2", "10.10")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")

        with pytest.raises(ReconciliationError):
            engine.settle_batch("ACH_1", AchConfirmation("ACH_1", True, Decimal("50.11")))
        assert store.get_order("1").status == S.EXECUTED
        assert store.get_order("2").status == S.EXECUTED

    def test_settle_batch_requires_cleared_ach(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")
        with pytest.raises(InvalidTransition):
            engine.settle_batch("ACH_1", AchConfirmation("ACH_1", False, Decimal("40.00")))

    def test_settle_batch_other_batch(self, engine) -> None:
        with pytest.raises(ReconciliationError):
            engine.settle_batch("ACH_1", AchConfirmation("ACH_2", True, Decimal("1.00")))

    def test_settle_uses_rounded_line_amounts(self, store, engine) -> None:
        add_executed(store, "1", "10.005")
        add_executed(store, "2", "10.015")
        marked = engine.mark_batch_paid("MER1", "BRK1", "ACH_1")
        assert marked.total_amount == Decimal("20.02")

        result = engine.settle_batch("ACH_1", AchConfirmation("ACH_1", True, Decimal("20.02")))
        assert result.settled == ["1", "2"]

    def test_cancel_payment(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")

        result = engine.cancel_payment("ACH_1")

        assert result.order_ids == ["1"]
        order = store.get_order("1")
        assert order.paid_flag is False
        assert order.paid_batch_id is None
        assert order.paid_at is None

    def test_cancel_payment_after_settlement(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")
        engine.settle_batch("ACH_1", AchConfirmation("ACH_1", True, Decimal("40.00")))

        result = engine.cancel_payment("ACH_1")

        assert result.order_ids == []
        assert [i.item_id for i in result.issues] == ["1"]
        assert store.get_order("1").paid_flag is True


# =============================================================================
# Exits
# =============================================================================

class TestExits:

    def test_fail_clears_payment_marks(self, store, engine) -> None:
        add_executed(store, "1", "40.00")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_1")

        failed = engine.fail_order("1", "broker rejected")

        assert failed.status == S.FAILED
        assert failed.paid_flag is False
        assert failed.paid_batch_id is None

    def test_settled_order_cannot_fail(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.SETTLED))
        with pytest.raises(InvalidTransition):
            engine.fail_order("1", "too late")

    def test_cancel_placed_order(self, store, engine) -> None:
        store.add_order(make_order("1"))
        assert engine.cancel_order("1").status == S.CANCELLED

    def test_mark_sold(self, store, engine) -> None:
        store.add_order(make_order("1", status=S.SELL))
        store.add_order(make_order("2", status=S.SETTLED))

        result = engine.mark_sold(["2", "1"])

        assert result.changed == ["1"]
        assert [i.item_id for i in result.issues] == ["2"]
        assert store.get_order("1").status == S.SOLD


# =============================================================================
# Payment history
# =============================================================================

class TestSettledBatches:

    def _settle(self, store, engine, batch_id: str, order_id: str, amount: str) -> None:
        add_executed(store, order_id, amount)
        engine.mark_batch_paid("MER1", "BRK1", batch_id, order_ids=[order_id])
        engine.settle_batch(batch_id, AchConfirmation(batch_id, True, Decimal(amount)))

    def test_lists_newest_first_with_pagination(self, store, engine) -> None:
        self._settle(store, engine, "ACH_A", "1", "10.00")
        self._settle(store, engine, "ACH_B", "2", "20.00")
        add_executed(store, "3", "5.00")
        engine.mark_batch_paid("MER1", "BRK1", "ACH_C")

        page = engine.list_settled_batches(limit=1)

        assert page["total"] == 2
        assert page["count"] == 1
        assert page["has_more"] is True
        assert page["batches"][0]["batch_id"] == "ACH_B"
        assert page["batches"][0]["total_amount"] == "20.00"

        rest = engine.list_settled_batches(limit=1, offset=1)
        assert rest["batches"][0]["batch_id"] == "ACH_A"
        assert rest["has_more"] is False

    def test_limit_is_clamped(self, engine) -> None:
        assert engine.list_settled_batches(limit=1000)["limit"] == 100
        assert engine.list_settled_batches(limit=0)["limit"] == 1
