"""
Unit Tests for the Transactions Ledger

Reliability Level: SOVEREIGN TIER

Tests LedgerService:
- client_tx_id idempotency (identical replay vs conflicting payload)
- input validation (sign carried by direction only)
- status transitions and their effect on balances
"""

import pytest
from decimal import Decimal

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.ledger import LedgerService, cash_entry
from services.order_store import InMemorySettlementStore
from services.settlement_errors import DuplicateLedgerEntry, InvalidTransition
from services.settlement_models import (
    Direction,
    LedgerEntry,
    LedgerStatus,
    TxType,
)


@pytest.fixture
def ledger() -> LedgerService:
    return LedgerService(InMemorySettlementStore())


def deposit(amount: str, client_tx_id: str, **extra) -> LedgerEntry:
    return cash_entry(
        "M1", TxType.CASH_IN, Direction.INBOUND, Decimal(amount), "ach", client_tx_id, **extra
    )


class TestAppend:

    def test_assigns_tx_id(self, ledger) -> None:
        result = ledger.append(deposit("100.00", "dep-1"))

        assert result.duplicate is False
        assert result.entry.tx_id == 1
        assert result.entry.amount_cash == Decimal("100.00")

    def test_identical_replay_returns_stored_entry(self, ledger) -> None:
        first = ledger.append(deposit("100.00", "dep-1"))
        replay = ledger.append(deposit("100.00", "dep-1"))

        assert replay.duplicate is True
        assert replay.entry.tx_id == first.entry.tx_id
        assert len(ledger.entries("M1")) == 1

    def test_conflicting_replay_rejected(self, ledger) -> None:
        ledger.append(deposit("100.00", "dep-1"))
        with pytest.raises(DuplicateLedgerEntry):
            ledger.append(deposit("100.01", "dep-1"))

    def test_negative_amount_rejected(self, ledger) -> None:
        with pytest.raises(ValueError):
            ledger.append(deposit("-5.00", "dep-1"))

    def test_amount_required(self, ledger) -> None:
        entry = LedgerEntry(
            member_id="M1",
            tx_type=TxType.ADJUST_POINTS,
            direction=Direction.INBOUND,
            channel="admin",
            client_tx_id="adj-1",
        )
        with pytest.raises(ValueError):
            ledger.append(entry)

    def test_client_tx_id_required(self, ledger) -> None:
        with pytest.raises(ValueError):
            ledger.append(deposit("1.00", " "))


class TestBalances:

    def test_cash_balance_uses_direction(self, ledger) -> None:
        ledger.append(deposit("100.00", "dep-1"))
        ledger.append(cash_entry(
            "M1", TxType.CASH_OUT, Direction.OUTBOUND, Decimal("30.25"), "journal", "jnl-1"
        ))
        ledger.append(cash_entry(
            "M1", TxType.CASH_FEE, Direction.OUTBOUND, Decimal("0.99"), "fee", "fee-1"
        ))

        assert ledger.cash_balance("M1") == Decimal("68.76")
        assert ledger.cash_balance("M2") == Decimal("0.00")

    def test_pending_not_counted_until_confirmed(self, ledger) -> None:
        pending = ledger.append(deposit("50.00", "dep-1", status=LedgerStatus.PENDING)).entry
        assert ledger.cash_balance("M1") == Decimal("0.00")

        ledger.confirm(pending.tx_id)
        assert ledger.cash_balance("M1") == Decimal("50.00")

    def test_reversal_removes_entry_from_balance(self, ledger) -> None:
        entry = ledger.append(deposit("50.00", "dep-1")).entry
        ledger.reverse(entry.tx_id)

        assert ledger.cash_balance("M1") == Decimal("0.00")
        assert ledger.entries("M1")[0].status == LedgerStatus.REVERSED

    def test_invalid_status_change(self, ledger) -> None:
        pending = ledger.append(deposit("50.00", "dep-1", status=LedgerStatus.PENDING)).entry
        with pytest.raises(InvalidTransition):
            ledger.reverse(pending.tx_id)

        failed = ledger.fail(pending.tx_id)
        assert failed.status == LedgerStatus.FAILED
        with pytest.raises(InvalidTransition):
            ledger.confirm(pending.tx_id)

    def test_points_balance(self, ledger) -> None:
        ledger.append(LedgerEntry(
            member_id="M1", tx_type=TxType.POINTS_RECEIVED, direction=Direction.INBOUND,
            channel="merchant", client_tx_id="pts-1", amount_points=Decimal("1500"),
        ))
        ledger.append(LedgerEntry(
            member_id="M1", tx_type=TxType.REDEEM_POINTS, direction=Direction.OUTBOUND,
            channel="basket", client_tx_id="pts-2", amount_points=Decimal("400"),
        ))

        assert ledger.points_balance("M1") == Decimal("1100")
        assert ledger.member_ids() == ["M1"]

    def test_verify_conservation(self, ledger) -> None:
        ledger.append(deposit("100.00", "dep-1"))

        assert ledger.verify_conservation("M1", Decimal("100.00")) is True
        assert ledger.verify_conservation("M1", Decimal("99.99")) is False
