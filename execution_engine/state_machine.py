"""
Execution Engine - Order State Machine.

============================================================
PURPOSE
============================================================
Strict status transitions for persisted Order records.

STATE MACHINE:

    PENDING ──────────────► FAILED
       │
       ▼
     OPEN ────────────────► CANCELLED / EXPIRED / FAILED
       │
       ├──► PARTIALLY_FILLED ──► CANCELLED / EXPIRED / FAILED
       │           │
       │           ▼
       └────────► FILLED

    PENDING may also move straight to FILLED (simulated and
    immediate fills), PARTIALLY_FILLED or CANCELLED.

INVARIANTS:
- Terminal states are final
- Same-state transitions are no-ops
- All transitions are logged

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from core.clock import ClockProtocol, SystemClock
from core.exceptions import StateTransitionError
from storage.models.enums import OrderStatus
from storage.models.trading import Order
from storage.repositories.orders import OrderRepository


logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.OPEN,
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.OPEN: {
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
    },
    OrderStatus.PARTIALLY_FILLED: {
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
    },
    # Terminal states - no transitions out
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.EXPIRED: set(),
    OrderStatus.FAILED: set(),
}


@dataclass
class StateTransitionEvent:
    """Event representing a status transition."""

    order_id: int
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp: datetime
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class TransitionGuard:
    """Checks transitions and explains denials."""

    @staticmethod
    def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> Tuple[bool, str]:
        if from_status == to_status:
            return True, "Same state"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Cannot transition from terminal state {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"


class OrderStateMachine:
    """
    Applies validated status transitions to Order records.

    Listeners receive a StateTransitionEvent after each persisted
    change; a failing listener is logged and ignored.
    """

    def __init__(self, repository: OrderRepository, clock: Optional[ClockProtocol] = None):
        self._repo = repository
        self._clock = clock or SystemClock()
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        self._listeners.append(listener)

    def transition(
        self,
        order: Order,
        target: OrderStatus,
        reason: str = "",
        **values: Any,
    ) -> StateTransitionEvent:
        """
        Move ``order`` to ``target``.

        Raises:
            StateTransitionError: the transition is not allowed
        """
        current = OrderStatus(order.status)
        allowed, why = TransitionGuard.can_transition(current, target)
        if not allowed:
            raise StateTransitionError(
                f"Order {order.id}: {why}",
                from_state=current.value,
                to_state=target.value,
                reason=reason,
            )

        now = self._clock.now()
        event = StateTransitionEvent(
            order_id=order.id,
            from_status=current,
            to_status=target,
            timestamp=now,
            reason=reason,
            details=dict(values),
        )

        if target == OrderStatus.FILLED and "filled_at" not in values:
            values["filled_at"] = now
        self._repo.set_status(order, target, now, **values)

        if current == target:
            return event

        logger.info(f"Order {order.id} ({order.symbol} {order.tag}): {current.value} -> {target.value} ({reason})")

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"State listener error: {e}")

        return event

    def mark_open(self, order: Order, broker_order_id: Optional[str]) -> StateTransitionEvent:
        return self.transition(order, OrderStatus.OPEN, "Accepted by broker", broker_order_id=broker_order_id)

    def mark_filled(self, order: Order, quantity: float, price: float) -> StateTransitionEvent:
        return self.transition(
            order,
            OrderStatus.FILLED,
            "Order filled",
            filled_quantity=quantity,
            filled_price=price,
        )

    def mark_partially_filled(self, order: Order, quantity: float, price: Optional[float]) -> StateTransitionEvent:
        return self.transition(
            order,
            OrderStatus.PARTIALLY_FILLED,
            "Partial fill",
            filled_quantity=quantity,
            filled_price=price,
        )

    def mark_cancelled(self, order: Order, reason: str) -> StateTransitionEvent:
        return self.transition(order, OrderStatus.CANCELLED, reason, cancel_reason=reason)

    def mark_failed(self, order: Order, reason: str) -> StateTransitionEvent:
        return self.transition(order, OrderStatus.FAILED, reason, cancel_reason=reason)
