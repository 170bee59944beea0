"""
============================================================================
Settlement Pipeline - Order State Machine
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: All transitions carry correlation_id for audit

ORDER LIFECYCLE STATE MACHINE:

    placed -> queued -> executed -> confirmed -> settled -> sell -> sold
    executed -> settled         (batch paid without a broker confirm step)
    settled <-> sell            (Toggle Service)
    settled | sell | sold -> journaled   (Journal Engine)
    placed | queued | executed | confirmed -> failed | cancelled

    Terminal States: sold (except to journaled), journaled, failed, cancelled

SINGLE CHOKE POINT:
    No component writes order status directly. Every writer calls
    OrderTransitioner, which reads the row, validates (current, target,
    owner), and commits with compare-and-swap on (status, version). A lost
    update is retried against the fresh row and re-validated.

OWNERSHIP:
    Each transition has exactly one owning component; a request from any
    other component is rejected with InvalidTransition.

ERROR CODES:
    - STL-001: Invalid state transition attempted
    - STL-007: Order not found
    - STL-008: Concurrent modification (retries exhausted)

============================================================================
"""

from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, FrozenSet
import logging

from app.observability.settlement_metrics import record_transition
from services.order_store import SettlementStore
from services.settlement_errors import (
    ConcurrentModification,
    InvalidTransition,
    OrderNotFound,
    SettlementErrorCode,
)
from services.settlement_models import Order, OrderChange, OrderStatus
from services.transition_events import TransitionEvent, TransitionEventBus

logger = logging.getLogger(__name__)


class TransitionOwner(Enum):
    """Components allowed to write order status."""
    SETTLEMENT_ENGINE = "settlement_engine"
    TOGGLE_SERVICE = "toggle_service"
    JOURNAL_ENGINE = "journal_engine"


S = OrderStatus

# (from, to) -> owning component
TRANSITION_OWNERS: Dict[Tuple[OrderStatus, OrderStatus], TransitionOwner] = {
    (S.PLACED, S.QUEUED): TransitionOwner.SETTLEMENT_ENGINE,
    (S.QUEUED, S.EXECUTED): TransitionOwner.SETTLEMENT_ENGINE,
    (S.EXECUTED, S.CONFIRMED): TransitionOwner.SETTLEMENT_ENGINE,
    (S.EXECUTED, S.SETTLED): TransitionOwner.SETTLEMENT_ENGINE,
    (S.CONFIRMED, S.SETTLED): TransitionOwner.SETTLEMENT_ENGINE,
    (S.SELL, S.SOLD): TransitionOwner.SETTLEMENT_ENGINE,
    (S.SETTLED, S.SELL): TransitionOwner.TOGGLE_SERVICE,
    (S.SELL, S.SETTLED): TransitionOwner.TOGGLE_SERVICE,
    (S.SETTLED, S.JOURNALED): TransitionOwner.JOURNAL_ENGINE,
    (S.SELL, S.JOURNALED): TransitionOwner.JOURNAL_ENGINE,
    (S.SOLD, S.JOURNALED): TransitionOwner.JOURNAL_ENGINE,
}

PRE_SETTLED_STATES: FrozenSet[OrderStatus] = frozenset(
    {S.PLACED, S.QUEUED, S.EXECUTED, S.CONFIRMED}
)
for _state in PRE_SETTLED_STATES:
    TRANSITION_OWNERS[(_state, S.FAILED)] = TransitionOwner.SETTLEMENT_ENGINE
    TRANSITION_OWNERS[(_state, S.CANCELLED)] = TransitionOwner.SETTLEMENT_ENGINE

VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {state: [] for state in OrderStatus}
for (_from, _to) in TRANSITION_OWNERS:
    VALID_TRANSITIONS[_from].append(_to)

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset(
    {S.SOLD, S.JOURNALED, S.FAILED, S.CANCELLED}
)

# Fields a transition may write besides status
TRANSITION_FIELDS: Dict[OrderStatus, FrozenSet[str]] = {
    S.QUEUED: frozenset(),
    S.EXECUTED: frozenset({
        "executed_price", "executed_shares", "executed_amount",
        "executed_at", "broker_order_id",
    }),
    S.CONFIRMED: frozenset({"confirmed_at"}),
    S.SETTLED: frozenset({"settled_at"}),
    S.SELL: frozenset(),
    S.SOLD: frozenset(),
    S.JOURNALED: frozenset({"journaled_at", "journal_id"}),
    S.FAILED: frozenset({"paid_flag", "paid_batch_id", "paid_at"}),
    S.CANCELLED: frozenset({"paid_flag", "paid_batch_id", "paid_at"}),
}

# The toggle is a pure reclassification and never writes fields
TOGGLE_PAIRS = frozenset({(S.SETTLED, S.SELL), (S.SELL, S.SETTLED)})


def validate_transition(
    current: OrderStatus,
    target: OrderStatus,
    owner: TransitionOwner,
) -> Tuple[bool, Optional[str]]:
    """
    Check a transition against the table.

    Returns:
        (True, None) if allowed, (False, reason) otherwise
    """
    expected_owner = TRANSITION_OWNERS.get((current, target))
    if expected_owner is None:
        valid = VALID_TRANSITIONS.get(current, [])
        valid_str = "/".join(s.value for s in valid) if valid else "NONE (terminal)"
        return False, (
            f"{current.value} -> {target.value} is not a valid transition; "
            f"valid from {current.value}: {valid_str}"
        )
    if expected_owner != owner:
        return False, (
            f"{current.value} -> {target.value} is owned by "
            f"{expected_owner.value}, not {owner.value}"
        )
    return True, None


class OrderTransitioner:
    """
    The single write path for order status.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: correlation_id must be non-empty
    Side Effects: Store writes, TransitionEvent publication, metrics, logs
    """

    def __init__(
        self,
        store: SettlementStore,
        event_bus: Optional[TransitionEventBus] = None,
        max_retries: int = 3,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._max_retries = max_retries

    @property
    def store(self) -> SettlementStore:
        return self._store

    def plan(
        self,
        order: Order,
        target: OrderStatus,
        owner: TransitionOwner,
        fields: Optional[Dict[str, Any]] = None,
    ) -> OrderChange:
        """
        Validate a transition of a freshly read row and build its CAS change.

        Raises:
            InvalidTransition: not allowed, wrong owner, or illegal fields
        """
        ok, reason = validate_transition(order.status, target, owner)
        if not ok:
            raise InvalidTransition(reason, order_id=order.order_id, member_id=order.member_id)

        fields = dict(fields or {})
        illegal = sorted(set(fields) - TRANSITION_FIELDS[target])
        if illegal or ((order.status, target) in TOGGLE_PAIRS and fields):
            raise InvalidTransition(
                f"{order.status.value} -> {target.value} cannot write fields {illegal or sorted(fields)}",
                order_id=order.order_id,
                member_id=order.member_id,
            )

        changes = {"status": target}
        changes.update(fields)
        return OrderChange(
            order_id=order.order_id,
            expected_status=order.status,
            expected_version=order.version,
            changes=changes,
        )

    def transition(
        self,
        order_id: str,
        target: OrderStatus,
        owner: TransitionOwner,
        correlation_id: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """
        Move one order to target.

        Raises:
            OrderNotFound, InvalidTransition, ConcurrentModification
        """
        return self.transition_many(
            [order_id], target, owner, correlation_id,
            fields_by_id={order_id: fields} if fields else None,
        )[0]

    def transition_many(
        self,
        order_ids: List[str],
        target: OrderStatus,
        owner: TransitionOwner,
        correlation_id: str,
        fields_by_id: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> List[Order]:
        """
        Move several orders to target all-or-nothing.

        On a lost update the rows are re-read and re-validated; if the fresh
        rows no longer allow the transition, InvalidTransition is raised and
        nothing is written.
        """
        if not correlation_id or not str(correlation_id).strip():
            raise ValueError("correlation_id must be non-empty")
        if not order_ids:
            return []

        fields_by_id = fields_by_id or {}
        attempt = 0
        while True:
            attempt += 1
            before: List[Order] = []
            for order_id in order_ids:
                order = self._store.get_order(order_id)
                if order is None:
                    logger.error(
                        f"[{SettlementErrorCode.ORDER_NOT_FOUND}] Order not found | "
                        f"order_id={order_id} | correlation_id={correlation_id}"
                    )
                    raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
                before.append(order)

            try:
                changes = [
                    self.plan(order, target, owner, fields_by_id.get(order.order_id))
                    for order in before
                ]
            except InvalidTransition as e:
                logger.error(
                    f"[{e.error_code}] Invalid transition | {e.message} | "
                    f"order_id={e.order_id} | owner={owner.value} | "
                    f"correlation_id={correlation_id}"
                )
                raise

            try:
                after = self._store.compare_and_set_many(changes)
            except ConcurrentModification as e:
                if attempt > self._max_retries:
                    logger.error(
                        f"[{e.error_code}] Concurrent modification, retries exhausted | "
                        f"order_id={e.order_id} | target={target.value} | "
                        f"attempts={attempt} | correlation_id={correlation_id}"
                    )
                    raise
                logger.warning(
                    f"[ORDER-SM] Lost update, re-reading | order_id={e.order_id} | "
                    f"target={target.value} | attempt={attempt} | "
                    f"correlation_id={correlation_id}"
                )
                continue

            for old, new in zip(before, after):
                self.publish(old, new, owner, correlation_id)
            return after

    def write_fields(
        self,
        orders: List[Order],
        fields_by_id: Dict[str, Dict[str, Any]],
        correlation_id: str,
    ) -> List[Order]:
        """
        Compare-and-swap non-status fields (payment marks) on rows as read.

        Raises:
            ValueError: a change names status
            ConcurrentModification: a row changed since it was read
        """
        changes = []
        for order in orders:
            fields = dict(fields_by_id.get(order.order_id) or {})
            if "status" in fields:
                raise ValueError("write_fields cannot change status; use transition()")
            changes.append(OrderChange(
                order_id=order.order_id,
                expected_status=order.status,
                expected_version=order.version,
                changes=fields,
            ))
        updated = self._store.compare_and_set_many(changes)
        logger.info(
            f"[ORDER-SM] Fields written | orders={len(updated)} | "
            f"fields={sorted({k for c in changes for k in c.changes})} | "
            f"correlation_id={correlation_id}"
        )
        return updated

    def publish(
        self,
        before: Order,
        after: Order,
        owner: TransitionOwner,
        correlation_id: str,
    ) -> None:
        """Record a committed transition: log, metric and event."""
        logger.info(
            f"[ORDER-SM] State transition | order_id={after.order_id} | "
            f"{before.status.value} -> {after.status.value} | owner={owner.value} | "
            f"version={after.version} | correlation_id={correlation_id}"
        )
        record_transition(before.status.value, after.status.value, correlation_id)
        if self._event_bus is not None:
            self._event_bus.publish(TransitionEvent(
                order_id=after.order_id,
                from_status=before.status.value,
                to_status=after.status.value,
                owner=owner.value,
                correlation_id=correlation_id,
                member_id=after.member_id,
                basket_id=after.basket_id,
            ))


__all__ = [
    "TransitionOwner",
    "TRANSITION_OWNERS",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "PRE_SETTLED_STATES",
    "TRANSITION_FIELDS",
    "validate_transition",
    "OrderTransitioner",
]
