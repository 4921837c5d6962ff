"""
Order State Machine - Manages the order lifecycle.

The transition table is the single authority on which status may follow
which. Every writer of Order.status goes through `OrderStateMachine`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Final

from vending_engine.core.exceptions import InvalidOrderStateError
from vending_engine.core.models import Order
from vending_engine.core.value_objects import OrderStatus


# =============================================================================
# Transition Table
# =============================================================================


ORDER_TRANSITIONS: Final[dict[OrderStatus, frozenset[OrderStatus]]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset({OrderStatus.DISPENSING, OrderStatus.PENDING_DISPENSE}),
    OrderStatus.DISPENSING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.PENDING_DISPENSE: frozenset({OrderStatus.DISPENSING}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


# =============================================================================
# Order State Machine
# =============================================================================


class OrderStateMachine:
    """
    Validates and applies order status transitions.

    Stateless: the order record carries its own status, so one instance
    serves every order.
    """

    @staticmethod
    def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
        """Check whether `target` may follow `current`."""
        return target in ORDER_TRANSITIONS[current]

    def ensure(self, order: Order, *targets: OrderStatus) -> None:
        """
        Raise unless the order may move to at least one of `targets`.

        Raises:
            InvalidOrderStateError: If none of the targets is reachable.
        """
        if any(self.can_transition(order.status, target) for target in targets):
            return
        wanted = "/".join(target.value for target in targets)
        raise InvalidOrderStateError(
            f"Order {order.id} cannot move from {order.status.value} to {wanted}",
            current_status=order.status.value,
            details={"order_id": order.id},
        )

    def apply(self, order: Order, target: OrderStatus, now: datetime) -> None:
        """
        Move the order to `target`, stamping the matching timestamp.

        Args:
            order: Order to mutate in place.
            target: New status.
            now: Transition time.

        Raises:
            InvalidOrderStateError: If the transition is not allowed.
        """
        self.ensure(order, target)
        order.status = target

        if target == OrderStatus.PAID:
            order.paid_at = now
        elif target == OrderStatus.COMPLETED:
            order.dispensed_at = now
