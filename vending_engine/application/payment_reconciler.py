"""
Payment Reconciler - Applies payment signals to orders.

The gateway webhook and the operator verify call may arrive in any order,
more than once, or at the same time. Both go through one idempotent path
serialized per order, and a successful settlement hands the order to the
dispense flow through the internal event queue.
"""

from __future__ import annotations

from typing import Any

from vending_engine.core.exceptions import InvalidOrderStateError
from vending_engine.core.models import Order, Payment
from vending_engine.core.value_objects import (
    OrderStatus,
    PaymentStatus,
    ReconciliationResult,
)
from vending_engine.domain.locks import KeyedLock
from vending_engine.domain.payment_gateway import (
    map_transaction_status,
    require_fields,
    verify_signature,
)
from vending_engine.event_system import EventPublisher, EventType
from vending_engine.infrastructure.settings import GatewaySettings
from vending_engine.loggers import logger
from vending_engine.application.order_ledger import OrderLedger


class PaymentReconciler:
    """
    Service converging payment signals onto Order and Payment rows.
    """

    def __init__(
        self,
        ledger: OrderLedger,
        locks: KeyedLock,
        publisher: EventPublisher,
        settings: GatewaySettings,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            ledger: Order ledger.
            locks: Per-order locks shared with the dispense coordinator.
            publisher: Event publisher for settled payments.
            settings: Gateway settings (server key, signature check).
        """
        self._ledger = ledger
        self._locks = locks
        self._publisher = publisher
        self._settings = settings

    async def handle_webhook(self, payload: dict[str, Any]) -> ReconciliationResult:
        """
        Apply a gateway notification.

        Raises:
            ValidationError: If order_id or transaction_status is missing.
            InvalidSignatureError: If the signature does not match.
            OrderNotFoundError: If the order does not exist.
            StateConflictError: If the order can no longer take the signal.
        """
        require_fields(payload, "order_id", "transaction_status")
        order_id = str(payload["order_id"])
        if self._settings.verify_signature:
            verify_signature(payload, self._settings.server_key)

        target = map_transaction_status(str(payload["transaction_status"]))
        logger.info(
            f"Webhook for order {order_id}: {payload['transaction_status']} -> {target.value}"
        )
        return await self._reconcile(order_id, target, payload)

    async def verify(self, order_id: str, status: str = "SUCCESS") -> ReconciliationResult:
        """
        Operator confirmation of a payment.

        Any status other than SUCCESS marks the payment failed.
        """
        target = PaymentStatus.SUCCESS if str(status).upper() == "SUCCESS" else PaymentStatus.FAILED
        logger.info(f"Manual verify for order {order_id}: {target.value}")
        return await self._reconcile(
            order_id,
            target,
            {"source": "manual_verify", "status": str(status)},
        )

    async def _reconcile(
        self,
        order_id: str,
        target: PaymentStatus,
        payload: dict[str, Any],
    ) -> ReconciliationResult:
        async with self._locks.hold(order_id):
            # Persists expiry before the signal is judged
            await self._ledger.get_status(order_id)

            def mutate(order: Order, payment: Payment) -> tuple[bool, str]:
                if target == PaymentStatus.SUCCESS:
                    return self._settle(order, payment, payload)
                if target == PaymentStatus.FAILED:
                    return self._fail(order, payment, payload)
                if payment.status == PaymentStatus.PENDING:
                    payment.raw_payload = payload
                    return False, "Payment pending"
                return True, f"Payment already {payment.status.value}"

            order, payment, (already, message) = await self._ledger.update(order_id, mutate)

        if target == PaymentStatus.SUCCESS and not already:
            await self._publisher.publish(
                EventType.PAYMENT_SETTLED,
                order_id=order.id,
                machine_id=order.machine_id,
            )

        logger.info(f"Order {order_id} reconciled: {message}")
        return ReconciliationResult(
            order_id=order_id,
            order_status=order.status,
            payment_status=payment.status,
            already_processed=already,
            message=message,
        )

    def _settle(
        self,
        order: Order,
        payment: Payment,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        if payment.status == PaymentStatus.SUCCESS:
            return True, "Payment already processed"
        if order.status not in (OrderStatus.PENDING, OrderStatus.PAID):
            raise InvalidOrderStateError(
                f"Order {order.id} is {order.status.value}; payment cannot settle",
                current_status=order.status.value,
                details={"order_id": order.id},
            )

        now = self._ledger.now()
        if order.status == OrderStatus.PENDING:
            self._ledger.state_machine.apply(order, OrderStatus.PAID, now)
        payment.status = PaymentStatus.SUCCESS
        payment.gateway_transaction_id = payload.get("transaction_id") or payment.gateway_transaction_id
        payment.raw_payload = payload
        payment.processed_at = now
        return False, "Payment successful"

    def _fail(
        self,
        order: Order,
        payment: Payment,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        if payment.status == PaymentStatus.FAILED and order.status == OrderStatus.FAILED:
            return True, "Payment already failed"
        if payment.status == PaymentStatus.SUCCESS or order.status != OrderStatus.PENDING:
            raise InvalidOrderStateError(
                f"Order {order.id} is {order.status.value}; payment cannot fail",
                current_status=order.status.value,
                details={"order_id": order.id},
            )

        now = self._ledger.now()
        self._ledger.state_machine.apply(order, OrderStatus.FAILED, now)
        order.notes = f"Payment {payload.get('transaction_status') or 'failed'}"
        payment.status = PaymentStatus.FAILED
        payment.gateway_transaction_id = payload.get("transaction_id") or payment.gateway_transaction_id
        payment.raw_payload = payload
        payment.processed_at = now
        return False, "Payment failed"
