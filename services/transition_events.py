"""
============================================================================
Settlement Pipeline - Order Transition Events
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Every event carries the correlation_id of the transition

Every committed order status transition is published here. The merchant and
broker webhook dispatcher lives outside this service and subscribes to the
bus; a failing subscriber is logged and never affects the transition that
already committed.

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable
import json
import logging
import threading

from services.settlement_models import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    """One committed order status change."""
    order_id: str
    from_status: str
    to_status: str
    owner: str
    correlation_id: str
    member_id: Optional[str] = None
    basket_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "owner": self.owner,
            "correlation_id": self.correlation_id,
            "member_id": self.member_id,
            "basket_id": self.basket_id,
            "occurred_at": self.occurred_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


Subscriber = Callable[[TransitionEvent], None]


class TransitionEventBus:
    """
    In-process publish/subscribe for transition events.

    THREAD SAFETY:
        Subscriber list and history are guarded by separate locks; delivery
        happens on a snapshot outside the lock.

    Reliability Level: SOVEREIGN TIER
    Side Effects: Invokes subscriber callables
    """

    def __init__(self, max_history_size: int = 500) -> None:
        if max_history_size <= 0:
            raise ValueError(
                f"max_history_size must be positive, got: {max_history_size}"
            )
        self._max_history_size = max_history_size
        self._subscribers: List[Subscriber] = []
        self._subscribers_lock = threading.Lock()
        self._history: List[TransitionEvent] = []
        self._history_lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        if not callable(subscriber):
            raise TypeError(f"subscriber must be callable, got: {type(subscriber).__name__}")
        with self._subscribers_lock:
            if subscriber not in self._subscribers:
                self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> bool:
        with self._subscribers_lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
                return True
        return False

    def publish(self, event: TransitionEvent) -> int:
        """
        Deliver an event to every subscriber.

        Returns:
            Number of subscribers notified successfully
        """
        with self._subscribers_lock:
            subscribers = self._subscribers.copy()

        notified = 0
        for subscriber in subscribers:
            try:
                subscriber(event)
                notified += 1
            except Exception as e:
                logger.error(
                    f"[ORDER-EVENTS] Failed to notify subscriber: {e} | "
                    f"order_id={event.order_id} | "
                    f"to_status={event.to_status} | "
                    f"correlation_id={event.correlation_id}"
                )

        with self._history_lock:
            self._history.append(event)
            if len(self._history) > self._max_history_size:
                self._history = self._history[-self._max_history_size:]

        return notified

    def history(self, order_id: Optional[str] = None) -> List[TransitionEvent]:
        with self._history_lock:
            events = list(self._history)
        if order_id is not None:
            events = [e for e in events if e.order_id == order_id]
        return events

    def clear_history(self) -> None:
        with self._history_lock:
            self._history = []


__all__ = ["TransitionEvent", "TransitionEventBus", "Subscriber"]
