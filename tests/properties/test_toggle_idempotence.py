"""
Property-Based Tests for the Sell/Settle Toggle

Reliability Level: SOVEREIGN TIER

Tests SellToggleService using Hypothesis.

Properties tested:
- Property 1: Applying the same toggle request twice leaves the orders in
  the state reached after the first application, and the second
  application changes nothing
- Property 2: A request whose sets overlap writes nothing
- Property 3: Reported counts equal the number of orders whose status
  actually changed
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings, assume, Phase
from hypothesis import strategies as st

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.order_state_machine import OrderTransitioner
from services.order_store import InMemorySettlementStore
from services.sell_toggle import SellToggleService
from services.settlement_errors import AmbiguousToggleRequest
from services.settlement_models import Order, OrderStatus


# =============================================================================
# Strategies
# =============================================================================

STATUSES = [
    OrderStatus.EXECUTED,
    OrderStatus.SETTLED,
    OrderStatus.SELL,
    OrderStatus.SOLD,
    OrderStatus.JOURNALED,
]

statuses_strategy = st.lists(st.sampled_from(STATUSES), min_size=1, max_size=12)

ids_strategy = st.lists(st.integers(min_value=1, max_value=15), max_size=10)


def build(statuses):
    store = InMemorySettlementStore()
    for i, status in enumerate(statuses, start=1):
        store.add_order(Order(
            order_id=str(i),
            basket_id="B1",
            member_id="M1",
            merchant_id="MER1",
            symbol="VTI",
            broker="BRK1",
            amount=Decimal("10.00"),
            status=status,
        ))
    return store, SellToggleService(OrderTransitioner(store))


def snapshot(store):
    return {o.order_id: (o.status, o.version) for o in store.list_orders()}


# =============================================================================
# Property 1: Idempotence
# =============================================================================

class TestToggleIdempotence:

    @settings(max_examples=100, phases=[Phase.generate, Phase.target])
    @given(statuses=statuses_strategy, sell=ids_strategy, settle=ids_strategy)
    def test_second_application_is_noop(self, statuses, sell, settle) -> None:
        sell_ids = [str(i) for i in sell]
        settle_ids = [str(i) for i in settle if str(i) not in sell_ids]
        store, toggle = build(statuses)

        toggle.toggle_sell_status(sell_ids, settle_ids)
        after_first = snapshot(store)

        again = toggle.toggle_sell_status(sell_ids, settle_ids)

        assert again.marked_sell == 0
        assert again.marked_settled == 0
        assert again.changed == []
        assert snapshot(store) == after_first


# =============================================================================
# Property 2: Overlap writes nothing
# =============================================================================

class TestOverlapRejected:

    @settings(max_examples=100, phases=[Phase.generate, Phase.target])
    @given(statuses=statuses_strategy, sell=ids_strategy, settle=ids_strategy)
    def test_overlapping_sets_write_nothing(self, statuses, sell, settle) -> None:
        assume(set(sell) & set(settle))
        store, toggle = build(statuses)
        before = snapshot(store)

        with pytest.raises(AmbiguousToggleRequest):
            toggle.toggle_sell_status([str(i) for i in sell], [str(i) for i in settle])

        assert snapshot(store) == before


# =============================================================================
# Property 3: Counts reflect actual changes
# =============================================================================

class TestCountsReflectChanges:

    @settings(max_examples=100, phases=[Phase.generate, Phase.target])
    @given(statuses=statuses_strategy, sell=ids_strategy, settle=ids_strategy)
    def test_counts_match_status_changes(self, statuses, sell, settle) -> None:
        sell_ids = [str(i) for i in sell]
        settle_ids = [str(i) for i in settle if str(i) not in sell_ids]
        store, toggle = build(statuses)
        before = snapshot(store)

        result = toggle.toggle_sell_status(sell_ids, settle_ids)

        after = snapshot(store)
        now_sell = [i for i in after if after[i][0] != before[i][0] and after[i][0] == OrderStatus.SELL]
        now_settled = [
            i for i in after if after[i][0] != before[i][0] and after[i][0] == OrderStatus.SETTLED
        ]
        assert result.marked_sell == len(now_sell)
        assert result.marked_settled == len(now_settled)
        assert sorted(result.changed) == sorted(now_sell + now_settled)
        for order_id, (status, _) in after.items():
            if before[order_id][0] in (OrderStatus.SOLD, OrderStatus.JOURNALED, OrderStatus.EXECUTED):
                assert status == before[order_id][0]
