"""
Tests for the order ledger: creation, transitions and expiry.
"""

import asyncio
import re
from datetime import timedelta

import pytest

from vending_engine.application.order_ledger import EXPIRED_REASON, OrderLedger
from vending_engine.core.exceptions import (
    InvalidOrderStateError,
    OrderNotFoundError,
    ProductInactiveError,
    SlotNotFoundError,
    StockInsufficientError,
    ValidationError,
)
from vending_engine.core.models import Slot
from vending_engine.core.value_objects import OrderStatus, PaymentStatus
from vending_engine.event_system import EventPublisher, EventType
from vending_engine.infrastructure.redis_repository import (
    OrderRepository,
    ProductRepository,
    SlotRepository,
)


@pytest.fixture
def events():
    return asyncio.Queue()


@pytest.fixture
def orders(redis):
    return OrderRepository(redis)


@pytest.fixture
def ledger(redis, settings, clock, provisioned, orders, events):
    return OrderLedger(
        orders,
        SlotRepository(redis),
        ProductRepository(redis),
        settings.orders,
        EventPublisher(events),
        clock,
    )


def drain(queue: asyncio.Queue) -> list[dict]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


# =============================================================================
# Creation Tests
# =============================================================================


class TestCreateOrder:
    """Tests for single-slot orders."""

    @pytest.mark.asyncio
    async def test_create_pending_order(self, ledger, orders, clock):
        """Test that a new order is PENDING with its payment row."""
        order = await ledger.create(1, 2, customer_phone="08123")

        assert re.fullmatch(r"ORD-20240115-[0-9A-F]{8}", order.id)
        assert order.status == OrderStatus.PENDING
        assert order.machine_id == "VM01"
        assert order.total_amount == 10000
        assert order.expires_at == clock.now + timedelta(minutes=15)
        assert order.payment_url.endswith(order.payment_token)

        payment = await orders.get_payment(order.id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == 10000
        assert payment.payment_method == "qris"

    @pytest.mark.asyncio
    async def test_price_override(self, ledger):
        """Test that the slot price override is charged."""
        order = await ledger.create(2, 1)
        assert order.total_amount == 6500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, 11, "two"])
    async def test_invalid_quantity(self, ledger, quantity):
        """Test quantity bounds."""
        with pytest.raises(ValidationError):
            await ledger.create(1, quantity)

    @pytest.mark.asyncio
    async def test_unknown_slot(self, ledger):
        """Test that an unknown slot is rejected."""
        with pytest.raises(SlotNotFoundError):
            await ledger.create(99, 1)

    @pytest.mark.asyncio
    async def test_inactive_product(self, ledger):
        """Test that a slot with an inactive product cannot sell."""
        with pytest.raises(ProductInactiveError):
            await ledger.create(3, 1)

    @pytest.mark.asyncio
    async def test_inactive_slot(self, ledger, provisioned):
        """Test that a disabled slot cannot sell."""
        slot = await provisioned.get(1)
        slot.is_active = False
        await provisioned.save(slot)
        with pytest.raises(ProductInactiveError):
            await ledger.create(1, 1)

    @pytest.mark.asyncio
    async def test_insufficient_stock_writes_nothing(self, ledger, orders):
        """Test that a rejected order leaves no rows behind."""
        with pytest.raises(StockInsufficientError) as exc_info:
            await ledger.create(4, 2)
        assert exc_info.value.details["available"] == 1
        assert await orders.list_for_machine("VM01") == []

    @pytest.mark.asyncio
    async def test_creation_does_not_reserve_stock(self, ledger, provisioned):
        """Test that stock only changes on confirmed dispense."""
        await ledger.create(1, 2)
        slot = await provisioned.get(1)
        assert slot.current_stock == 5


class TestCreateMultiOrder:
    """Tests for multi-slot orders."""

    @pytest.mark.asyncio
    async def test_create_multi(self, ledger):
        """Test totals and item snapshots."""
        order = await ledger.create_multi([
            {"slot_id": 1, "quantity": 2},
            {"slot_id": 2, "quantity": 1},
        ])
        assert order.is_multi
        assert order.total_amount == 2 * 5000 + 6500
        assert order.quantity == 3
        assert order.slot_id == 1

        items = await ledger.get_items(order.id)
        assert [(i.slot_number, i.quantity, i.line_total) for i in items] == [
            (1, 2, 10000),
            (2, 1, 6500),
        ]
        assert items[1].product_name == "Vitamin C"

    @pytest.mark.asyncio
    async def test_empty_items(self, ledger):
        """Test that an order needs at least one item."""
        with pytest.raises(ValidationError):
            await ledger.create_multi([])

    @pytest.mark.asyncio
    async def test_duplicate_slot(self, ledger):
        """Test that a slot may appear once."""
        with pytest.raises(ValidationError):
            await ledger.create_multi([{"slot_id": 1, "quantity": 1}, {"slot_id": 1, "quantity": 1}])

    @pytest.mark.asyncio
    async def test_mixed_machines(self, ledger, provisioned):
        """Test that all items come from one machine."""
        await provisioned.save(
            Slot(id=5, machine_id="VM02", slot_number=1, product_id=1, current_stock=5)
        )
        with pytest.raises(ValidationError):
            await ledger.create_multi([{"slot_id": 1, "quantity": 1}, {"slot_id": 5, "quantity": 1}])

    @pytest.mark.asyncio
    async def test_one_bad_item_rejects_all(self, ledger, orders):
        """Test all-or-nothing creation."""
        with pytest.raises(StockInsufficientError):
            await ledger.create_multi([{"slot_id": 1, "quantity": 1}, {"slot_id": 4, "quantity": 3}])
        assert await orders.list_for_machine("VM01") == []


# =============================================================================
# Transition Tests
# =============================================================================


class TestTransitions:
    """Tests for status writes."""

    @pytest.mark.asyncio
    async def test_mark_paid(self, ledger, orders, clock, events):
        """Test PENDING -> PAID settles the payment and announces it."""
        order = await ledger.create(1, 1)
        drain(events)

        paid = await ledger.mark_paid(order.id)
        assert paid.status == OrderStatus.PAID
        assert paid.paid_at == clock.now
        payment = await orders.get_payment(order.id)
        assert payment.status == PaymentStatus.SUCCESS

        announced = drain(events)
        assert announced == [{
            "type": EventType.ORDER_STATUS_CHANGED,
            "order_id": order.id,
            "machine_id": "VM01",
            "status": "PAID",
        }]

    @pytest.mark.asyncio
    async def test_cannot_skip_payment(self, ledger, orders):
        """Test that PENDING cannot start dispensing."""
        order = await ledger.create(1, 1)
        with pytest.raises(InvalidOrderStateError):
            await ledger.mark_dispensing(order.id)
        stored = await orders.get(order.id)
        assert stored.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_pending_dispense_and_resume(self, ledger):
        """Test PAID -> PENDING_DISPENSE -> DISPENSING."""
        order = await ledger.create(1, 1)
        await ledger.mark_paid(order.id)
        parked = await ledger.mark_pending_dispense(order.id, "machine offline")
        assert parked.status == OrderStatus.PENDING_DISPENSE
        assert parked.notes == "machine offline"

        resumed = await ledger.mark_dispensing(order.id)
        assert resumed.status == OrderStatus.DISPENSING

    @pytest.mark.asyncio
    async def test_mark_terminal_requires_terminal_outcome(self, ledger):
        """Test that mark_terminal only accepts COMPLETED or FAILED."""
        order = await ledger.create(1, 1)
        with pytest.raises(ValidationError):
            await ledger.mark_terminal(order.id, OrderStatus.PAID)

    @pytest.mark.asyncio
    async def test_completed_is_final(self, ledger, clock):
        """Test that nothing follows COMPLETED."""
        order = await ledger.create(1, 1)
        await ledger.mark_paid(order.id)
        await ledger.mark_dispensing(order.id)
        done = await ledger.mark_terminal(order.id, OrderStatus.COMPLETED)
        assert done.dispensed_at == clock.now

        with pytest.raises(InvalidOrderStateError):
            await ledger.mark_terminal(order.id, OrderStatus.FAILED)

    @pytest.mark.asyncio
    async def test_unknown_order(self, ledger):
        """Test transitions on a missing order."""
        with pytest.raises(OrderNotFoundError):
            await ledger.mark_paid("ORD-20240115-00000000")


# =============================================================================
# Expiry Tests
# =============================================================================


class TestExpiry:
    """Tests for lazy and swept expiry."""

    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self, ledger, orders, clock):
        """Test that reading an overdue order fails it."""
        order = await ledger.create(1, 1)
        clock.advance(minutes=16)

        expired = await ledger.get_status(order.id)
        assert expired.status == OrderStatus.FAILED
        assert expired.notes == EXPIRED_REASON

        payment = await orders.get_payment(order.id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.raw_payload["reason"] == EXPIRED_REASON

    @pytest.mark.asyncio
    async def test_not_expired_before_deadline(self, ledger, clock):
        """Test that an order inside its window stays PENDING."""
        order = await ledger.create(1, 1)
        clock.advance(minutes=14)
        assert (await ledger.get_status(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_expired_order_cannot_be_paid(self, ledger, clock):
        """Test that expiry is applied before a transition."""
        order = await ledger.create(1, 1)
        clock.advance(minutes=16)
        with pytest.raises(InvalidOrderStateError):
            await ledger.mark_paid(order.id)

    @pytest.mark.asyncio
    async def test_expire_overdue(self, ledger, clock):
        """Test the sweep expires only overdue PENDING orders."""
        abandoned = await ledger.create(1, 1)
        paid = await ledger.create(2, 1)
        await ledger.mark_paid(paid.id)
        clock.advance(minutes=10)
        fresh = await ledger.create(1, 1)
        clock.advance(minutes=6)

        assert await ledger.expire_overdue() == [abandoned.id]
        assert (await ledger.get_status(paid.id)).status == OrderStatus.PAID
        assert (await ledger.get_status(fresh.id)).status == OrderStatus.PENDING
        assert await ledger.expire_overdue() == []


# =============================================================================
# Query Tests
# =============================================================================


class TestQueries:
    """Tests for order listings and payment lookups."""

    @pytest.mark.asyncio
    async def test_list_orders_newest_first(self, ledger, clock):
        """Test listing order and status filter."""
        first = await ledger.create(1, 1)
        clock.advance(seconds=5)
        second = await ledger.create(2, 1)
        await ledger.mark_paid(second.id)

        listing = await ledger.list_orders("VM01")
        assert [o["order_id"] for o in listing["orders"]] == [second.id, first.id]
        assert listing["total"] == 2

        paid = await ledger.list_orders("VM01", status="paid")
        assert [o["order_id"] for o in paid["orders"]] == [second.id]

    @pytest.mark.asyncio
    async def test_list_orders_pagination(self, ledger, clock):
        """Test limit and offset."""
        for _ in range(3):
            await ledger.create(1, 1)
            clock.advance(seconds=1)
        page = await ledger.list_orders("VM01", limit=2, offset=2)
        assert len(page["orders"]) == 1
        assert page["total"] == 3

    @pytest.mark.asyncio
    async def test_list_orders_unknown_status(self, ledger):
        """Test that an unknown status filter is rejected."""
        with pytest.raises(ValidationError):
            await ledger.list_orders("VM01", status="SHIPPED")

    @pytest.mark.asyncio
    async def test_get_payment(self, ledger):
        """Test payment joined with order status."""
        order = await ledger.create(1, 2)
        payment = await ledger.get_payment(order.id)
        assert payment["order_status"] == "PENDING"
        assert payment["total_amount"] == 10000
        assert payment["gateway_name"] == "midtrans"

    @pytest.mark.asyncio
    async def test_get_payment_unknown(self, ledger):
        """Test payment lookup for a missing order."""
        with pytest.raises(OrderNotFoundError):
            await ledger.get_payment("ORD-20240115-00000000")
