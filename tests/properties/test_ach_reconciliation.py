"""
Property-Based Tests for ACH Export Reconciliation

Reliability Level: SOVEREIGN TIER

Tests the merchant -> broker payment flow using Hypothesis.

Properties tested:
- Property 1: Detail lines sum exactly to the ACH aggregate, for any mix of
  fractional-cent amounts and executed/requested sourcing
- Property 2: Export -> confirm -> settle moves every exported order to
  settled, and the settled total equals the exported total
- Property 3: An ACH amount that differs from the batch total by any
  non-zero number of cents settles nothing
"""

import csv
import io
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from hypothesis import given, settings, Phase
from hypothesis import strategies as st

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import pytest

from app.exchange.decimal_gateway import sum_usd, to_usd
from services.broker_payments import BrokerPaymentService
from services.order_state_machine import OrderTransitioner
from services.order_store import InMemorySettlementStore
from services.settlement_config import SettlementConfig
from services.settlement_engine import SettlementEngine
from services.settlement_errors import ReconciliationError
from services.settlement_models import (
    AchConfirmation,
    BrokerMaster,
    Order,
    OrderStatus,
)


# =============================================================================
# Strategies
# =============================================================================

# Up to three decimal places so that per-line cent rounding is exercised
amount_strategy = st.decimals(
    min_value=Decimal("0.001"),
    max_value=Decimal("5000"),
    places=3,
    allow_nan=False,
    allow_infinity=False,
)

order_strategy = st.tuples(amount_strategy, st.one_of(st.none(), amount_strategy))

orders_strategy = st.lists(order_strategy, min_size=1, max_size=25)


def build(rows: List[Tuple[Decimal, Optional[Decimal]]]):
    store = InMemorySettlementStore()
    store.add_broker(BrokerMaster(
        broker_id="BRK1",
        broker_name="Broker One",
        ach_bank_name="First Bank",
        ach_routing_num="021000021",
        ach_account_num="123456789",
        ach_account_type="checking",
    ))
    for i, (amount, executed_amount) in enumerate(rows, start=1):
        store.add_order(Order(
            order_id=str(i),
            basket_id="B1",
            member_id=f"M{i % 4}",
            merchant_id="MER1",
            symbol="VTI",
            broker="BRK1",
            amount=amount,
            executed_amount=executed_amount,
            status=OrderStatus.EXECUTED,
        ))
    engine = SettlementEngine(OrderTransitioner(store), SettlementConfig())
    return store, engine, BrokerPaymentService(store, engine)


def payable(row: Tuple[Decimal, Optional[Decimal]]) -> Decimal:
    amount, executed_amount = row
    return to_usd(executed_amount if executed_amount is not None else amount)


# =============================================================================
# Property 1: Detail lines reconcile to the aggregate
# =============================================================================

class TestDetailReconcilesToAggregate:

    @settings(max_examples=100, phases=[Phase.generate, Phase.target])
    @given(rows=orders_strategy)
    def test_detail_sum_equals_ach_amount(self, rows) -> None:
        _, _, payments = build(rows)

        export = payments.export_broker_payment("MER1", "BRK1")

        detail = list(csv.DictReader(io.StringIO(export.detail_csv)))
        ach = list(csv.DictReader(io.StringIO(export.ach_csv)))
        line_total = sum_usd(Decimal(r["amount_cash"]) for r in detail)

        assert len(detail) == len(rows)
        assert len(ach) == 1
        assert Decimal(ach[0]["payment_amount"]) == line_total
        assert export.total_amount == line_total
        assert line_total == sum_usd(payable(r) for r in rows)
        assert int(ach[0]["order_count"]) == len(rows)

    @settings(max_examples=100, phases=[Phase.generate, Phase.target])
    @given(rows=orders_strategy)
    def test_each_line_is_cent_rounded_payable(self, rows) -> None:
        _, _, payments = build(rows)

        export = payments.export_broker_payment("MER1", "BRK1")

        detail = list(csv.DictReader(io.StringIO(export.detail_csv)))
        for line, row in zip(detail, rows):
            assert Decimal(line["amount_cash"]) == payable(row)
            assert Decimal(line["amount_cash"]).as_tuple().exponent == -2


# =============================================================================
# Property 2: Export -> confirm -> settle
# =============================================================================

class TestExportConfirmSettle:

    @settings(max_examples=50, phases=[Phase.generate, Phase.target])
    @given(rows=orders_strategy)
    def test_full_flow_settles_exported_total(self, rows) -> None:
        store, engine, payments = build(rows)
        now = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

        export = payments.export_broker_payment("MER1", "BRK1", now=now)
        payments.confirm_broker_payment(
            "MER1", "BRK1", export.batch_id, order_ids=export.order_ids
        )
        result = engine.settle_batch(
            export.batch_id,
            AchConfirmation(
                paid_batch_id=export.batch_id,
                cleared=True,
                amount=export.total_amount,
                cleared_at=now,
            ),
        )

        assert sorted(result.settled) == sorted(export.order_ids)
        assert result.total_amount == export.total_amount
        for order_id in export.order_ids:
            order = store.get_order(order_id)
            assert order.status == OrderStatus.SETTLED
            assert order.settled_at == now
            assert order.paid_batch_id == export.batch_id


# =============================================================================
# Property 3: Amount mismatch fails closed
# =============================================================================

class TestMismatchFailsClosed:

    @settings(max_examples=50, phases=[Phase.generate, Phase.target])
    @given(
        rows=orders_strategy,
        cents_off=st.integers(min_value=1, max_value=500),
        sign=st.sampled_from([1, -1]),
    )
    def test_wrong_ach_amount_settles_nothing(self, rows, cents_off, sign) -> None:
        store, engine, payments = build(rows)
        export = payments.export_broker_payment("MER1", "BRK1")
        payments.confirm_broker_payment(
            "MER1", "BRK1", export.batch_id, order_ids=export.order_ids
        )
        wrong = export.total_amount + sign * Decimal(cents_off) / 100

        with pytest.raises(ReconciliationError):
            engine.settle_batch(
                export.batch_id,
                AchConfirmation(paid_batch_id=export.batch_id, cleared=True, amount=wrong),
            )

        assert all(
            store.get_order(i).status == OrderStatus.EXECUTED for i in export.order_ids
        )
