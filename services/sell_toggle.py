"""
============================================================================
Settlement Pipeline - Sell/Settle Toggle Service
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: All operations include correlation_id for audit

ADMIN RECLASSIFICATION:
    toggle_sell_status(to_sell, to_settled) moves orders
        settled -> sell   (to_sell)
        sell -> settled   (to_settled)

    - Status is the only field written; no ledger side effect.
    - Partial success: a bad id is reported, never fails the batch.
    - Ids already in their target state are no-ops, excluded from counts.
    - Sold orders are display-only. A request to move one is a silent
      no-op, reported in terminal_noops and logged at WARNING as STL-011
      so it stays distinguishable from a real invalid transition.
    - An id present in both sets aborts the whole call before any write.

ERROR CODES:
    - STL-001: Invalid state transition (order reported, batch continues)
    - STL-002: Ambiguous toggle request (whole call rejected)
    - STL-011: Terminal no-op (sold order)

============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterable
import logging
import uuid

from app.observability.settlement_metrics import record_toggle_outcome
from services.order_state_machine import OrderTransitioner, TransitionOwner
from services.settlement_errors import (
    AmbiguousToggleRequest,
    ConcurrentModification,
    InvalidTransition,
    ItemIssue,
    OrderNotFound,
    SettlementErrorCode,
)
from services.settlement_models import Order, OrderStatus, order_sort_key

logger = logging.getLogger(__name__)

SELL_ELIGIBLE_STATUSES = (OrderStatus.SETTLED, OrderStatus.SELL, OrderStatus.SOLD)


@dataclass
class ToggleResult:
    """Counts reflect orders actually changed, not orders requested."""
    marked_sell: int = 0
    marked_settled: int = 0
    changed: List[str] = field(default_factory=list)
    noops: List[str] = field(default_factory=list)
    terminal_noops: List[str] = field(default_factory=list)
    issues: List[ItemIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "marked_sell": self.marked_sell,
            "marked_settled": self.marked_settled,
            "changed": list(self.changed),
            "noops": list(self.noops),
            "terminal_noops": list(self.terminal_noops),
            "skipped": [i.to_dict() for i in self.issues],
        }


class SellToggleService:
    """
    Administrator bulk toggle between settled and sell.

    Side Effects: Order status writes via OrderTransitioner, logs, metrics
    """

    def __init__(self, transitioner: OrderTransitioner) -> None:
        self._transitioner = transitioner
        self._store = transitioner.store

    def list_sell_eligible(self, merchant_id: Optional[str] = None) -> List[Order]:
        return self._store.list_orders(statuses=SELL_ELIGIBLE_STATUSES, merchant_id=merchant_id)

    def toggle_sell_status(
        self,
        to_sell: Iterable[str],
        to_settled: Iterable[str],
        correlation_id: Optional[str] = None,
    ) -> ToggleResult:
        """
        Reclassify orders between settled and sell.

        Raises:
            AmbiguousToggleRequest: an id appears in both sets
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        sell_ids = sorted(set(to_sell or []), key=order_sort_key)
        settled_ids = sorted(set(to_settled or []), key=order_sort_key)

        overlap = sorted(set(sell_ids) & set(settled_ids), key=order_sort_key)
        if overlap:
            logger.error(
                f"[{SettlementErrorCode.AMBIGUOUS_TOGGLE}] Ids in both toggle sets | "
                f"order_ids={overlap} | correlation_id={correlation_id}"
            )
            raise AmbiguousToggleRequest(
                f"Order ids present in both to_sell and to_settled: {', '.join(overlap)}"
            )

        result = ToggleResult()
        for order_id in sell_ids:
            if self._toggle_one(order_id, OrderStatus.SETTLED, OrderStatus.SELL, correlation_id, result):
                result.marked_sell += 1
        for order_id in settled_ids:
            if self._toggle_one(order_id, OrderStatus.SELL, OrderStatus.SETTLED, correlation_id, result):
                result.marked_settled += 1

        record_toggle_outcome("to_sell", "changed", result.marked_sell)
        record_toggle_outcome("to_settled", "changed", result.marked_settled)
        record_toggle_outcome("any", "noop", len(result.noops))
        record_toggle_outcome("any", "sold_noop", len(result.terminal_noops))
        record_toggle_outcome("any", "skipped", len(result.issues))

        logger.info(
            f"[SELL-TOGGLE] Toggle complete | requested_sell={len(sell_ids)} | "
            f"requested_settled={len(settled_ids)} | marked_sell={result.marked_sell} | "
            f"marked_settled={result.marked_settled} | noops={len(result.noops)} | "
            f"terminal_noops={len(result.terminal_noops)} | "
            f"skipped={len(result.issues)} | correlation_id={correlation_id}"
        )
        return result

    def _toggle_one(
        self,
        order_id: str,
        source: OrderStatus,
        target: OrderStatus,
        correlation_id: str,
        result: ToggleResult,
    ) -> bool:
        order = self._store.get_order(order_id)
        if order is None:
            result.issues.append(ItemIssue(
                item_id=order_id,
                error_code=SettlementErrorCode.ORDER_NOT_FOUND,
                reason="Order not found",
            ))
            return False

        if order.status == target:
            result.noops.append(order_id)
            return False

        if order.status == OrderStatus.SOLD:
            logger.warning(
                f"[{SettlementErrorCode.TERMINAL_NOOP}] Sold order left unchanged | "
                f"order_id={order_id} | requested={target.value} | "
                f"correlation_id={correlation_id}"
            )
            result.terminal_noops.append(order_id)
            return False

        if order.status != source:
            result.issues.append(ItemIssue(
                item_id=order_id,
                error_code=SettlementErrorCode.INVALID_TRANSITION,
                reason=f"Order is {order.status.value}; expected {source.value}",
            ))
            return False

        try:
            self._transitioner.transition(order_id, target, TransitionOwner.TOGGLE_SERVICE, correlation_id)
        except (InvalidTransition, OrderNotFound, ConcurrentModification) as e:
            # Another writer moved the order between the read and the write
            current = self._store.get_order(order_id)
            if current is not None and current.status == target:
                result.noops.append(order_id)
            else:
                result.issues.append(ItemIssue.from_error(order_id, e))
            return False

        result.changed.append(order_id)
        return True


__all__ = ["SellToggleService", "ToggleResult", "SELL_ELIGIBLE_STATUSES"]
