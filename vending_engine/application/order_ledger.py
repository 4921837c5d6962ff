"""
Order Ledger - Order creation and lifecycle.

Creates orders (single and multi-item) together with their payment rows in
one watched transaction, applies the order state machine on every status
write and expires abandoned PENDING orders.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from vending_engine.core.exceptions import (
    OrderNotFoundError,
    ProductInactiveError,
    StockInsufficientError,
    ValidationError,
)
from vending_engine.core.models import Order, OrderItem, Payment, Product, Slot
from vending_engine.core.value_objects import OrderStatus, PaymentStatus, utc_now
from vending_engine.domain.order_state_machine import OrderStateMachine
from vending_engine.domain.payment_gateway import new_payment_link
from vending_engine.event_system import EventPublisher, EventType
from vending_engine.infrastructure.redis_repository import (
    OrderRepository,
    ProductRepository,
    SlotRepository,
)
from vending_engine.infrastructure.settings import OrderSettings
from vending_engine.loggers import logger


T = TypeVar("T")

EXPIRED_REASON = "expired"


def generate_order_id(now: datetime) -> str:
    """Order id in the form ORD-YYYYMMDD-XXXXXXXX."""
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class OrderLedger:
    """
    Service owning Order, OrderItem and Payment rows.

    Every status change goes through `OrderStateMachine`; writes that
    would skip a state raise InvalidOrderStateError and change nothing.
    """

    def __init__(
        self,
        orders: OrderRepository,
        slots: SlotRepository,
        products: ProductRepository,
        settings: OrderSettings,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the order ledger.

        Args:
            orders: Order repository.
            slots: Slot repository.
            products: Product repository.
            settings: Order settings.
            publisher: Event publisher for status change notifications.
            clock: Time source.
        """
        self._orders = orders
        self._slots = slots
        self._products = products
        self._settings = settings
        self._publisher = publisher
        self._clock = clock
        self._state_machine = OrderStateMachine()

    @property
    def state_machine(self) -> OrderStateMachine:
        return self._state_machine

    def now(self) -> datetime:
        """Current time from the ledger clock."""
        return self._clock()

    # =========================================================================
    # Creation
    # =========================================================================

    def _check_quantity(self, quantity: Any) -> int:
        try:
            value = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid quantity: {quantity}") from None
        if not 1 <= value <= self._settings.max_quantity:
            raise ValidationError(
                f"Quantity must be between 1 and {self._settings.max_quantity}",
                details={"quantity": value},
            )
        return value

    async def _check_sellable(self, slot: Slot, quantity: int) -> Product:
        product = await self._products.get(slot.product_id)
        if not slot.is_active or product is None or not product.is_active:
            raise ProductInactiveError(
                f"Slot {slot.slot_number} on {slot.machine_id} is not available",
                details={"slot_id": slot.id},
            )
        if quantity > slot.current_stock:
            raise StockInsufficientError(
                f"Only {slot.current_stock} left in slot {slot.slot_number}",
                requested=quantity,
                available=slot.current_stock,
                details={"slot_id": slot.id},
            )
        return product

    def _new_rows(
        self,
        slot: Slot,
        product_id: int,
        quantity: int,
        total: int,
        customer_phone: Optional[str],
        payment_method: Optional[str],
        is_multi: bool = False,
    ) -> tuple[Order, Payment]:
        now = self._clock()
        method = payment_method or self._settings.default_payment_method
        payment_url, payment_token = new_payment_link(self._settings.payment_url_base)
        order = Order(
            id=generate_order_id(now),
            machine_id=slot.machine_id,
            slot_id=slot.id,
            slot_number=slot.slot_number,
            product_id=product_id,
            quantity=quantity,
            total_amount=total,
            payment_url=payment_url,
            payment_token=payment_token,
            payment_method=method,
            customer_phone=customer_phone or None,
            expires_at=now + timedelta(minutes=self._settings.expiry_minutes),
            created_at=now,
            is_multi=is_multi,
        )
        payment = Payment(
            order_id=order.id,
            gateway_name=self._settings.gateway_name,
            amount=total,
            payment_method=method,
        )
        return order, payment

    async def create(
        self,
        slot_id: int,
        quantity: int,
        customer_phone: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Order:
        """
        Create a PENDING order for one slot.

        Raises:
            ValidationError: If quantity is outside 1..max_quantity.
            SlotNotFoundError: If the slot does not exist.
            ProductInactiveError: If the slot or its product is disabled.
            StockInsufficientError: If the slot holds fewer items.
        """
        quantity = self._check_quantity(quantity)
        slot_id = int(slot_id)

        async def build(slots: dict[int, Slot]) -> tuple[Order, list[OrderItem], Payment]:
            slot = slots[slot_id]
            product = await self._check_sellable(slot, quantity)
            total = slot.unit_price(product) * quantity
            order, payment = self._new_rows(
                slot, product.id, quantity, total, customer_phone, payment_method
            )
            return order, [], payment

        order, _, _ = await self._orders.create([slot_id], build)
        logger.info(
            f"Order {order.id} created: slot {order.slot_number} x{quantity} "
            f"on {order.machine_id}, total {order.total_amount}"
        )
        return order

    async def create_multi(
        self,
        items: list[dict[str, Any]],
        customer_phone: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Order:
        """
        Create a PENDING order spanning several slots of one machine.

        Each item is `{slot_id, quantity}`. The order, its items and its
        payment are written together or not at all.

        Raises:
            ValidationError: For an empty list, a repeated slot, slots on
                different machines or a bad quantity.
            SlotNotFoundError, ProductInactiveError, StockInsufficientError:
                As for `create`, for any item.
        """
        if not items:
            raise ValidationError("Order must contain at least one item")

        requested: list[tuple[int, int]] = []
        for item in items:
            if item.get("slot_id") is None:
                raise ValidationError("Each item requires slot_id", details={"item": item})
            requested.append((int(item["slot_id"]), self._check_quantity(item.get("quantity"))))

        slot_ids = [slot_id for slot_id, _ in requested]
        if len(set(slot_ids)) != len(slot_ids):
            raise ValidationError("Each slot may appear only once per order")

        async def build(slots: dict[int, Slot]) -> tuple[Order, list[OrderItem], Payment]:
            machines = {slot.machine_id for slot in slots.values()}
            if len(machines) > 1:
                raise ValidationError(
                    "All items must come from the same machine",
                    details={"machines": sorted(machines)},
                )

            lines = []
            for slot_id, quantity in requested:
                slot = slots[slot_id]
                product = await self._check_sellable(slot, quantity)
                lines.append((slot, product, quantity))

            first_slot, first_product, _ = lines[0]
            total = sum(slot.unit_price(product) * qty for slot, product, qty in lines)
            order, payment = self._new_rows(
                first_slot,
                first_product.id,
                sum(qty for _, _, qty in lines),
                total,
                customer_phone,
                payment_method,
                is_multi=True,
            )
            order_items = [
                OrderItem(
                    order_id=order.id,
                    slot_id=slot.id,
                    slot_number=slot.slot_number,
                    product_id=product.id,
                    product_name=product.name,
                    unit_price=slot.unit_price(product),
                    quantity=qty,
                )
                for slot, product, qty in lines
            ]
            return order, order_items, payment

        order, order_items, _ = await self._orders.create(slot_ids, build)
        logger.info(
            f"Order {order.id} created with {len(order_items)} items "
            f"on {order.machine_id}, total {order.total_amount}"
        )
        return order

    # =========================================================================
    # Transitions
    # =========================================================================

    def _expire(self, order: Order, payment: Payment, now: datetime) -> bool:
        if not order.is_expired(now):
            return False
        self._state_machine.apply(order, OrderStatus.FAILED, now)
        order.notes = EXPIRED_REASON
        payment.status = PaymentStatus.FAILED
        payment.raw_payload = {**payment.raw_payload, "reason": EXPIRED_REASON}
        payment.processed_at = now
        return True

    async def update(
        self,
        order_id: str,
        mutate: Callable[[Order, Payment], T],
    ) -> tuple[Order, Payment, T]:
        """
        Read-modify-write an order and its payment atomically.

        Lazy expiry is applied before `mutate` sees the records, so a
        signal arriving after the deadline finds the order FAILED.
        Status changes are announced after commit.
        """
        before: dict[str, OrderStatus] = {}

        def guarded(order: Order, payment: Payment) -> T:
            before["status"] = order.status
            now = self._clock()
            if self._expire(order, payment, now):
                logger.info(f"Order {order.id} expired at {order.expires_at}")
            return mutate(order, payment)

        order, payment, result = await self._orders.update(order_id, guarded)
        if before.get("status") != order.status:
            await self._announce(order)
        return order, payment, result

    async def _transition(
        self,
        order_id: str,
        target: OrderStatus,
        note: Optional[str] = None,
    ) -> Order:
        def mutate(order: Order, _payment: Payment) -> None:
            self._state_machine.apply(order, target, self._clock())
            if note is not None:
                order.notes = note

        order, _, _ = await self.update(order_id, mutate)
        logger.info(f"Order {order_id} -> {target.value}")
        return order

    async def mark_paid(self, order_id: str) -> Order:
        """PENDING -> PAID, settling the payment row with it."""

        def mutate(order: Order, payment: Payment) -> None:
            now = self._clock()
            self._state_machine.apply(order, OrderStatus.PAID, now)
            payment.status = PaymentStatus.SUCCESS
            payment.processed_at = now

        order, _, _ = await self.update(order_id, mutate)
        logger.info(f"Order {order_id} -> PAID")
        return order

    async def mark_dispensing(self, order_id: str) -> Order:
        """PAID or PENDING_DISPENSE -> DISPENSING."""
        return await self._transition(order_id, OrderStatus.DISPENSING)

    async def mark_pending_dispense(self, order_id: str, reason: str) -> Order:
        """PAID -> PENDING_DISPENSE, recording why dispensing could not start."""
        return await self._transition(order_id, OrderStatus.PENDING_DISPENSE, note=reason)

    async def mark_terminal(
        self,
        order_id: str,
        outcome: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        """
        DISPENSING -> COMPLETED or FAILED.

        Raises:
            ValidationError: If `outcome` is not a terminal status.
        """
        if not OrderStatus(outcome).is_terminal:
            raise ValidationError(f"{outcome} is not a terminal status")
        return await self._transition(order_id, OrderStatus(outcome), note=reason)

    async def _announce(self, order: Order) -> None:
        if self._publisher is None:
            return
        await self._publisher.publish(
            EventType.ORDER_STATUS_CHANGED,
            order_id=order.id,
            machine_id=order.machine_id,
            status=order.status.value,
        )

    # =========================================================================
    # Expiry
    # =========================================================================

    async def get_status(self, order_id: str) -> Order:
        """
        Get an order, expiring it first if it is PENDING and overdue.

        Raises:
            OrderNotFoundError: If the order does not exist.
        """
        order = await self._orders.require(order_id)
        if order.is_expired(self._clock()):
            order, _, _ = await self.update(order_id, lambda o, p: None)
        return order

    async def expire_overdue(self) -> list[str]:
        """Expire every overdue PENDING order; returns the ids expired."""
        expired = []
        for order_id in await self._orders.overdue_pending(self._clock()):
            try:
                order = await self.get_status(order_id)
            except OrderNotFoundError:
                logger.warning(f"Pending index refers to missing order {order_id}")
                continue
            if order.status == OrderStatus.FAILED:
                expired.append(order_id)
        if expired:
            logger.info(f"Expired {len(expired)} overdue orders: {expired}")
        return expired

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_items(self, order_id: str) -> list[OrderItem]:
        """Items of a multi-item order; empty for single-item orders."""
        return await self._orders.get_items(order_id)

    async def get_order_details(self, order_id: str) -> dict[str, Any]:
        """Order with its items, after lazy expiry."""
        order = await self.get_status(order_id)
        items = await self.get_items(order_id)
        return {**order.to_dict(), "items": [item.to_dict() for item in items]}

    async def get_payment(self, order_id: str) -> dict[str, Any]:
        """
        Payment row joined with its order's status and total.

        Raises:
            OrderNotFoundError: If the order or its payment does not exist.
        """
        order = await self.get_status(order_id)
        payment = await self._orders.get_payment(order_id)
        if payment is None:
            raise OrderNotFoundError(order_id)
        return {
            **payment.to_dict(),
            "order_status": order.status.value,
            "total_amount": order.total_amount,
        }

    async def list_orders(
        self,
        machine_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Orders of a machine, newest first."""
        wanted = None
        if status:
            try:
                wanted = OrderStatus(status.upper())
            except ValueError:
                raise ValidationError(f"Unknown order status: {status}") from None

        now = self._clock()
        orders = []
        for order in await self._orders.list_for_machine(machine_id):
            if order.is_expired(now):
                order = await self.get_status(order.id)
            if wanted is None or order.status == wanted:
                orders.append(order)

        page = orders[offset:offset + limit]
        return {
            "machine_id": machine_id,
            "orders": [order.to_dict() for order in page],
            "total": len(orders),
            "limit": limit,
            "offset": offset,
        }
