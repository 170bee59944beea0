"""
============================================================================
Settlement Pipeline - Settlement Engine
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All financial calculations use decimal.Decimal with ROUND_HALF_EVEN
Traceability: All operations include correlation_id for audit

ORDER FLOW OWNED HERE:
    queue_basket      placed -> queued               (sweep submission)
    execute_order     queued -> executed             (broker fill, write-once)
    confirm_basket    executed -> confirmed          (broker confirmation)
    mark_batch_paid   paid_flag on executed|confirmed (merchant pays broker)
    cancel_payment    clear paid_flag before settlement
    settle_batch      executed|confirmed -> settled  (ACH cleared, all-or-nothing)
    fail_order /
    cancel_order      any pre-settled state -> failed | cancelled
    mark_sold         sell -> sold                   (broker sell order filled)

    Every status write goes through OrderTransitioner.

ERROR CODES:
    - STL-001: Invalid state transition
    - STL-003: Broker execution outside tolerance
    - STL-004: ACH amount does not reconcile with the batch
    - STL-007: Order not found

============================================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, List, Iterable
import logging
import re
import uuid

from app.exchange.decimal_gateway import sum_usd, to_units
from app.observability.settlement_metrics import record_reconciliation_failure
from services.order_state_machine import (
    OrderTransitioner,
    PRE_SETTLED_STATES,
    TransitionOwner,
)
from services.settlement_config import SettlementConfig
from services.settlement_errors import (
    ConcurrentModification,
    ExecutionMismatch,
    InvalidTransition,
    ItemIssue,
    OrderNotFound,
    ReconciliationError,
    SettlementErrorCode,
)
from services.settlement_models import (
    AchConfirmation,
    BrokerConfirmation,
    Order,
    OrderStatus,
    order_sort_key,
    utc_now,
)

logger = logging.getLogger(__name__)

OWNER = TransitionOwner.SETTLEMENT_ENGINE

PAYABLE_STATUSES = (OrderStatus.EXECUTED, OrderStatus.CONFIRMED)
BATCH_ID_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

SETTLED_BATCH_DEFAULT_LIMIT = 25
SETTLED_BATCH_MAX_LIMIT = 100


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class BatchResult:
    """Per-item outcome of a bulk settlement operation."""
    changed: List[str] = field(default_factory=list)
    issues: List[ItemIssue] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return len(self.changed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changed": list(self.changed),
            "changed_count": self.changed_count,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class PaymentMarkResult:
    paid_batch_id: str
    order_ids: List[str] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")
    issues: List[ItemIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paid_batch_id": self.paid_batch_id,
            "order_ids": list(self.order_ids),
            "order_count": len(self.order_ids),
            "total_amount": str(self.total_amount),
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class SettleResult:
    paid_batch_id: str
    settled: List[str] = field(default_factory=list)
    already_settled: List[str] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paid_batch_id": self.paid_batch_id,
            "settled": list(self.settled),
            "settled_count": len(self.settled),
            "already_settled_count": len(self.already_settled),
            "total_amount": str(self.total_amount),
        }


class SettlementEngine:
    """
    Advances orders from placement to settlement.

    Reliability Level: L6 Critical (Sovereign Tier)
    Side Effects: Order status writes via OrderTransitioner, logs, metrics
    """

    def __init__(self, transitioner: OrderTransitioner, config: SettlementConfig) -> None:
        self._transitioner = transitioner
        self._store = transitioner.store
        self._config = config

    # =========================================================================
    # Sweep and execution
    # =========================================================================

    def queue_basket(self, basket_id: str, correlation_id: Optional[str] = None) -> BatchResult:
        """Submit every placed order of a basket to its broker."""
        correlation_id = correlation_id or _new_correlation_id()
        orders = self._store.list_orders(basket_id=basket_id)
        if not orders:
            raise OrderNotFound(f"Basket {basket_id} has no orders")

        result = BatchResult()
        for order in orders:
            self._apply_one(order.order_id, OrderStatus.QUEUED, correlation_id, result)

        logger.info(
            f"[SETTLEMENT] Basket queued | basket_id={basket_id} | "
            f"queued={result.changed_count} | skipped={len(result.issues)} | "
            f"correlation_id={correlation_id}"
        )
        return result

    def execute_order(
        self,
        order_id: str,
        confirmation: BrokerConfirmation,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Record a broker fill: queued -> executed, execution fields written once.

        Raises:
            OrderNotFound, ExecutionMismatch, InvalidTransition
        """
        correlation_id = correlation_id or _new_correlation_id()
        order = self._store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

        if confirmation.order_id != order_id:
            raise ExecutionMismatch(
                f"Confirmation is for order {confirmation.order_id}, not {order_id}",
                order_id=order_id,
            )

        price = to_units(confirmation.executed_price)
        shares = to_units(confirmation.executed_shares)
        if price <= 0 or shares <= 0:
            raise ExecutionMismatch(
                f"Executed price and shares must be positive (price={price}, shares={shares})",
                order_id=order_id,
            )
        executed_amount = (
            to_units(confirmation.executed_amount)
            if confirmation.executed_amount is not None
            else to_units(price * shares)
        )

        self._check_tolerance(order, executed_amount, shares, correlation_id)

        updated = self._transitioner.transition(
            order_id,
            OrderStatus.EXECUTED,
            OWNER,
            correlation_id,
            fields={
                "executed_price": price,
                "executed_shares": shares,
                "executed_amount": executed_amount,
                "executed_at": confirmation.executed_at or utc_now(),
                "broker_order_id": confirmation.broker_order_id,
            },
        )
        logger.info(
            f"[SETTLEMENT] Order executed | order_id={order_id} | price={price} | "
            f"shares={shares} | executed_amount={executed_amount} | "
            f"correlation_id={correlation_id}"
        )
        return updated

    def _check_tolerance(
        self,
        order: Order,
        executed_amount: Decimal,
        executed_shares: Decimal,
        correlation_id: str,
    ) -> None:
        # Dollar-amount orders are matched on amount; share-quantity orders on shares
        if order.amount > 0:
            requested, filled, label = order.amount, executed_amount, "amount"
        else:
            requested, filled, label = order.shares, executed_shares, "shares"
        if requested <= 0:
            raise ExecutionMismatch(
                f"Order {order.order_id} has no requested amount or shares",
                order_id=order.order_id,
            )

        deviation_pct = abs(filled - requested) / requested * Decimal("100")
        if deviation_pct > self._config.execution_tolerance_pct:
            logger.error(
                f"[{SettlementErrorCode.EXECUTION_MISMATCH}] Fill outside tolerance | "
                f"order_id={order.order_id} | {label} requested={requested} | "
                f"filled={filled} | deviation_pct={deviation_pct:.4f} | "
                f"tolerance_pct={self._config.execution_tolerance_pct} | "
                f"correlation_id={correlation_id}"
            )
            raise ExecutionMismatch(
                f"Executed {label} {filled} deviates {deviation_pct:.4f}% from requested "
                f"{requested} (tolerance {self._config.execution_tolerance_pct}%)",
                order_id=order.order_id,
                member_id=order.member_id,
            )

    def confirm_basket(
        self,
        member_id: str,
        basket_id: str,
        correlation_id: Optional[str] = None,
    ) -> BatchResult:
        """Broker confirmation of a member's basket: executed -> confirmed."""
        correlation_id = correlation_id or _new_correlation_id()
        orders = self._store.list_orders(basket_id=basket_id, member_ids=[member_id])
        if not orders:
            raise OrderNotFound(
                f"Basket {basket_id} has no orders for member {member_id}", member_id=member_id
            )

        result = BatchResult()
        now = utc_now()
        for order in orders:
            self._apply_one(
                order.order_id, OrderStatus.CONFIRMED, correlation_id, result,
                fields={"confirmed_at": now},
            )
        logger.info(
            f"[SETTLEMENT] Basket confirmed | member_id={member_id} | basket_id={basket_id} | "
            f"confirmed={result.changed_count} | skipped={len(result.issues)} | "
            f"correlation_id={correlation_id}"
        )
        return result

    # =========================================================================
    # Merchant -> broker payment
    # =========================================================================

    def mark_batch_paid(
        self,
        merchant_id: str,
        broker: str,
        paid_batch_id: str,
        order_ids: Optional[Iterable[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentMarkResult:
        """
        Confirmed-payment step: stamp paid_flag/paid_batch_id/paid_at on the
        unpaid executed|confirmed orders of (merchant, broker), all in one
        atomic write. Status is unchanged.

        When order_ids is given only those orders are marked; requested ids
        that are no longer payable are reported as issues.
        """
        correlation_id = correlation_id or _new_correlation_id()
        if not BATCH_ID_PATTERN.match(paid_batch_id or ""):
            raise ValueError(f"paid_batch_id must be alphanumeric/underscore: {paid_batch_id!r}")

        requested = list(dict.fromkeys(order_ids)) if order_ids is not None else None
        for attempt in range(1, 4):
            payable = self._store.list_orders(
                statuses=PAYABLE_STATUSES, merchant_id=merchant_id, broker=broker, paid=False
            )
            result = PaymentMarkResult(paid_batch_id=paid_batch_id)
            if requested is not None:
                by_id = {o.order_id: o for o in payable}
                targets = [by_id[i] for i in requested if i in by_id]
                for missing in (i for i in requested if i not in by_id):
                    result.issues.append(ItemIssue(
                        item_id=missing,
                        error_code=SettlementErrorCode.INVALID_TRANSITION,
                        reason="Order is not an unpaid executed/confirmed order for this broker",
                    ))
            else:
                targets = payable

            if not targets:
                return result

            now = utc_now()
            fields = {
                o.order_id: {"paid_flag": True, "paid_batch_id": paid_batch_id, "paid_at": now}
                for o in targets
            }
            try:
                updated = self._transitioner.write_fields(targets, fields, correlation_id)
            except ConcurrentModification as e:
                logger.warning(
                    f"[SETTLEMENT] Payment mark lost update, re-reading | "
                    f"order_id={e.order_id} | attempt={attempt} | correlation_id={correlation_id}"
                )
                continue

            result.order_ids = [o.order_id for o in updated]
            result.total_amount = sum_usd(o.payable_amount for o in updated)
            logger.info(
                f"[SETTLEMENT] Batch marked paid | merchant_id={merchant_id} | broker={broker} | "
                f"paid_batch_id={paid_batch_id} | orders={len(updated)} | "
                f"total_amount={result.total_amount} | correlation_id={correlation_id}"
            )
            return result

        raise ConcurrentModification(
            f"Could not mark batch {paid_batch_id} paid: orders keep changing"
        )

    def cancel_payment(
        self, paid_batch_id: str, correlation_id: Optional[str] = None
    ) -> PaymentMarkResult:
        """Clear the payment marks of a batch's orders that have not settled."""
        correlation_id = correlation_id or _new_correlation_id()
        for attempt in range(1, 4):
            orders = self._store.list_orders(paid_batch_id=paid_batch_id)
            result = PaymentMarkResult(paid_batch_id=paid_batch_id)
            targets = [o for o in orders if o.status in PAYABLE_STATUSES]
            for order in orders:
                if order.status not in PAYABLE_STATUSES:
                    result.issues.append(ItemIssue(
                        item_id=order.order_id,
                        error_code=SettlementErrorCode.INVALID_TRANSITION,
                        reason=f"Order is {order.status.value}; payment can no longer be cancelled",
                    ))
            if not targets:
                return result

            fields = {
                o.order_id: {"paid_flag": False, "paid_batch_id": None, "paid_at": None}
                for o in targets
            }
            try:
                updated = self._transitioner.write_fields(targets, fields, correlation_id)
            except ConcurrentModification:
                continue

            result.order_ids = [o.order_id for o in updated]
            result.total_amount = sum_usd(o.payable_amount for o in updated)
            logger.info(
                f"[SETTLEMENT] Payment cancelled | paid_batch_id={paid_batch_id} | "
                f"orders={len(updated)} | skipped={len(result.issues)} | "
                f"correlation_id={correlation_id}"
            )
            return result

        raise ConcurrentModification(
            f"Could not cancel batch {paid_batch_id}: orders keep changing"
        )

    def settle_batch(
        self,
        paid_batch_id: str,
        ach: AchConfirmation,
        correlation_id: Optional[str] = None,
    ) -> SettleResult:
        """
        Settle a paid batch once its ACH payment cleared, all-or-nothing.

        Re-running after success is a no-op (orders already settled are
        reported, not re-settled).

        Raises:
            InvalidTransition: ACH not cleared or batch empty
            ReconciliationError: ACH amount differs from the batch total
        """
        correlation_id = correlation_id or _new_correlation_id()
        if ach.paid_batch_id != paid_batch_id:
            raise ReconciliationError(
                f"ACH confirmation is for batch {ach.paid_batch_id}, not {paid_batch_id}"
            )
        if not ach.cleared:
            raise InvalidTransition(f"ACH payment for batch {paid_batch_id} has not cleared")

        orders = [o for o in self._store.list_orders(paid_batch_id=paid_batch_id) if o.paid_flag]
        if not orders:
            raise InvalidTransition(f"Batch {paid_batch_id} has no paid orders")

        batch_total = sum_usd(o.payable_amount for o in orders)
        ach_amount = sum_usd([ach.amount])
        if batch_total != ach_amount:
            record_reconciliation_failure("settle_batch")
            logger.error(
                f"[{SettlementErrorCode.RECONCILIATION_FAILED}] ACH amount mismatch | "
                f"paid_batch_id={paid_batch_id} | batch_total={batch_total} | "
                f"ach_amount={ach_amount} | correlation_id={correlation_id}"
            )
            raise ReconciliationError(
                f"ACH amount {ach_amount} does not match batch total {batch_total}"
            )

        result = SettleResult(paid_batch_id=paid_batch_id, total_amount=batch_total)
        pending = [o.order_id for o in orders if o.status in PAYABLE_STATUSES]
        result.already_settled = [o.order_id for o in orders if o.settled_at is not None]
        if pending:
            settled_at = ach.cleared_at or utc_now()
            self._transitioner.transition_many(
                pending,
                OrderStatus.SETTLED,
                OWNER,
                correlation_id,
                fields_by_id={i: {"settled_at": settled_at} for i in pending},
            )
            result.settled = pending

        logger.info(
            f"[SETTLEMENT] Batch settled | paid_batch_id={paid_batch_id} | "
            f"settled={len(result.settled)} | already_settled={len(result.already_settled)} | "
            f"total_amount={batch_total} | correlation_id={correlation_id}"
        )
        return result

    # =========================================================================
    # Exits
    # =========================================================================

    def fail_order(
        self, order_id: str, reason: str, correlation_id: Optional[str] = None
    ) -> Order:
        return self._terminate(order_id, OrderStatus.FAILED, reason, correlation_id)

    def cancel_order(
        self, order_id: str, reason: str = "cancelled", correlation_id: Optional[str] = None
    ) -> Order:
        return self._terminate(order_id, OrderStatus.CANCELLED, reason, correlation_id)

    def _terminate(
        self,
        order_id: str,
        target: OrderStatus,
        reason: str,
        correlation_id: Optional[str],
    ) -> Order:
        correlation_id = correlation_id or _new_correlation_id()
        order = self._store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        fields = None
        if order.paid_flag and order.status in PRE_SETTLED_STATES:
            # A failed order can no longer be part of a broker payment
            fields = {"paid_flag": False, "paid_batch_id": None, "paid_at": None}
        updated = self._transitioner.transition(order_id, target, OWNER, correlation_id, fields)
        logger.warning(
            f"[SETTLEMENT] Order {target.value} | order_id={order_id} | reason={reason} | "
            f"correlation_id={correlation_id}"
        )
        return updated

    def mark_sold(
        self, order_ids: Iterable[str], correlation_id: Optional[str] = None
    ) -> BatchResult:
        """Broker sell order filled: sell -> sold, per order."""
        correlation_id = correlation_id or _new_correlation_id()
        result = BatchResult()
        for order_id in sorted(set(order_ids), key=order_sort_key):
            self._apply_one(order_id, OrderStatus.SOLD, correlation_id, result)
        logger.info(
            f"[SETTLEMENT] Orders marked sold | sold={result.changed_count} | "
            f"skipped={len(result.issues)} | correlation_id={correlation_id}"
        )
        return result

    def _apply_one(
        self,
        order_id: str,
        target: OrderStatus,
        correlation_id: str,
        result: BatchResult,
        fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self._transitioner.transition(order_id, target, OWNER, correlation_id, fields)
        except (InvalidTransition, OrderNotFound, ConcurrentModification) as e:
            result.issues.append(ItemIssue.from_error(order_id, e))
        else:
            result.changed.append(order_id)

    # =========================================================================
    # Payment history
    # =========================================================================

    def list_settled_batches(
        self,
        merchant_id: Optional[str] = None,
        limit: int = SETTLED_BATCH_DEFAULT_LIMIT,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Settled payment batches, newest payment first, paginated."""
        limit = min(SETTLED_BATCH_MAX_LIMIT, max(1, int(limit)))
        offset = max(0, int(offset))

        groups: Dict[tuple, List[Order]] = {}
        for order in self._store.list_orders(merchant_id=merchant_id, paid=True):
            if order.paid_batch_id is None or order.settled_at is None:
                continue
            key = (order.paid_batch_id, order.merchant_id, order.broker)
            groups.setdefault(key, []).append(order)

        batches = []
        for (batch_id, merchant, broker), orders in groups.items():
            paid_times = [o.paid_at for o in orders if o.paid_at is not None]
            batches.append({
                "batch_id": batch_id,
                "merchant_id": merchant,
                "broker": broker,
                "order_count": len(orders),
                "total_amount": str(sum_usd(o.payable_amount for o in orders)),
                "paid_at": min(paid_times).isoformat() if paid_times else None,
                "settled_at": max(o.settled_at for o in orders).isoformat(),
            })
        batches.sort(key=lambda b: (b["paid_at"] or "", b["batch_id"]), reverse=True)

        page = batches[offset:offset + limit]
        return {
            "batches": page,
            "count": len(page),
            "total": len(batches),
            "offset": offset,
            "limit": limit,
            "has_more": offset + len(page) < len(batches),
        }


__all__ = [
    "SettlementEngine",
    "BatchResult",
    "PaymentMarkResult",
    "SettleResult",
    "PAYABLE_STATUSES",
]
