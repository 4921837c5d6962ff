"""
Tests for the dispense coordinator: commands, confirmations and timers.
"""

import asyncio

import pytest

from vending_engine.application.api_facade import VendingFacade
from vending_engine.core.exceptions import (
    DownstreamUnavailable,
    InvalidOrderStateError,
    NotFoundError,
    OrderNotFoundError,
    ValidationError,
)
from vending_engine.tests.conftest import FakeSleep, signed_webhook


async def paid_order(api, slot_id: int = 1, quantity: int = 2) -> str:
    """Create and settle an order, leaving it DISPENSING."""
    order = await api.create_order(slot_id, quantity)
    await api.payment_webhook(signed_webhook(order["order_id"]))
    await api.wait_idle()
    # Let the supervising timer start
    await asyncio.sleep(0)
    return order["order_id"]


async def paid_multi_order(api, items: list[dict]) -> str:
    order = await api.create_multi_order(items)
    await api.verify_payment(order["order_id"])
    await api.wait_idle()
    # Let the supervising timer start
    await asyncio.sleep(0)
    return order["order_id"]


async def stock_of(api, slot_id: int) -> int:
    return (await api.slots.get(slot_id)).current_stock


async def fire_timers(api, sleeper: FakeSleep) -> None:
    """Let every supervising timer elapse and wait for its handling."""
    tasks = list(api.coordinator._timers.values())
    sleeper.release_all()
    await asyncio.gather(*tasks)


# =============================================================================
# Single Item Tests
# =============================================================================


class TestSingleItemDispense:
    """Tests for one-slot orders."""

    @pytest.mark.asyncio
    async def test_confirmed_dispense_decrements_stock(self, api, channel):
        """Test the full flow: stock 5, buy 2, confirm, stock 3."""
        order_id = await paid_order(api, slot_id=1, quantity=2)

        command = channel.commands[0]
        assert command.to_message() == {
            "cmd": "dispense",
            "slot": 1,
            "orderId": order_id,
            "timeoutMs": 1500,
        }
        assert api.coordinator.pending_timers == 1

        result = await api.confirm_dispense(order_id, 1, True, True, 1420)
        assert result == {
            "success": True,
            "order_id": order_id,
            "status": "COMPLETED",
            "already_processed": False,
        }
        assert await stock_of(api, 1) == 3
        assert api.coordinator.pending_timers == 0

        logs = await api.get_stock_logs("VM01", "DISPENSE")
        assert logs["total"] == 1
        entry = logs["logs"][0]
        assert entry["quantity_change"] == -2
        assert entry["order_id"] == order_id

        status = await api.get_dispense_status(order_id)
        assert status["status"] == "COMPLETED"
        assert status["dispensed_at"] is not None
        assert status["attempts"][0]["success"] is True
        assert status["attempts"][0]["duration_ms"] == 1420

    @pytest.mark.asyncio
    async def test_phantom_dispense_fails_order(self, api):
        """Test that success without a detected drop is a failure."""
        order_id = await paid_order(api)

        result = await api.confirm_dispense(order_id, 1, success=True, drop_detected=False)
        assert result["status"] == "FAILED"
        assert await stock_of(api, 1) == 5

        order = await api.get_order(order_id)
        assert order["notes"] == "drop not detected"

    @pytest.mark.asyncio
    async def test_device_error_fails_order(self, api):
        """Test that a reported device error is kept as the reason."""
        order_id = await paid_order(api)
        result = await api.confirm_dispense(order_id, 1, False, error="motor jam")
        assert result["status"] == "FAILED"
        assert (await api.get_order(order_id))["notes"] == "motor jam"

    @pytest.mark.asyncio
    async def test_duplicate_confirmation(self, api):
        """Test that a repeated confirmation does not decrement twice."""
        order_id = await paid_order(api)

        await api.confirm_dispense(order_id, 1, True, True)
        again = await api.confirm_dispense(order_id, 1, True, True)

        assert again["already_processed"] is True
        assert again["status"] == "COMPLETED"
        assert await stock_of(api, 1) == 3

    @pytest.mark.asyncio
    async def test_confirmation_without_attempt(self, api):
        """Test that a confirmation for an unsent slot is rejected."""
        order = await api.create_order(1, 1)
        with pytest.raises(NotFoundError):
            await api.confirm_dispense(order["order_id"], 1, True, True)

    @pytest.mark.asyncio
    async def test_confirmation_for_unknown_order(self, api):
        """Test that a confirmation for a missing order is rejected."""
        with pytest.raises(OrderNotFoundError):
            await api.confirm_dispense("ORD-20240115-00000000", 1, True, True)

    @pytest.mark.asyncio
    async def test_trigger_requires_paid_order(self, api):
        """Test that unpaid and already dispensing orders cannot trigger."""
        order = await api.create_order(1, 1)
        with pytest.raises(InvalidOrderStateError):
            await api.trigger_dispense(order["order_id"])

        order_id = await paid_order(api)
        with pytest.raises(InvalidOrderStateError):
            await api.trigger_dispense(order_id)

    @pytest.mark.asyncio
    async def test_device_message_completes_order(self, api, channel):
        """Test confirmation through the device channel handler."""
        order_id = await paid_order(api)
        handler = channel.handlers["dispense_result"][0]

        await handler("VM01", {
            "orderId": order_id,
            "slot": 1,
            "success": True,
            "dropDetected": True,
            "durationMs": 1300,
        })

        assert (await api.get_order(order_id))["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_malformed_device_message_ignored(self, api, channel):
        """Test that a result without orderId is dropped."""
        order_id = await paid_order(api)
        handler = channel.handlers["dispense_result"][0]

        await handler("VM01", {"slot": 1, "success": True})

        assert (await api.get_order(order_id))["status"] == "DISPENSING"

    @pytest.mark.asyncio
    async def test_result_from_other_machine_ignored(self, api, channel):
        """Test that a machine cannot confirm another machine's attempt."""
        order_id = await paid_order(api, slot_id=1, quantity=2)
        handler = channel.handlers["dispense_result"][0]
        result = {
            "orderId": order_id,
            "slot": 1,
            "success": True,
            "dropDetected": True,
        }

        await handler("VM02", result)
        assert (await api.get_order(order_id))["status"] == "DISPENSING"
        assert await stock_of(api, 1) == 5
        assert api.coordinator.pending_timers == 1

        await handler("VM01", result)
        assert (await api.get_order(order_id))["status"] == "COMPLETED"
        assert await stock_of(api, 1) == 3


# =============================================================================
# Concurrency Tests
# =============================================================================


class TestConcurrentOrders:
    """Tests for orders and sensors running side by side."""

    @pytest.mark.asyncio
    async def test_stalled_publish_does_not_block_other_orders(self, api, channel):
        """Test that a slow command for one order leaves the next order moving."""
        first = (await api.create_order(1, 1))["order_id"]
        second = (await api.create_order(2, 1))["order_id"]
        gate = asyncio.Event()
        second_sent = asyncio.Event()

        async def publish(machine_id, command):
            if command.order_id == first:
                await gate.wait()
            else:
                second_sent.set()
            return 1

        channel.publish_command.side_effect = publish
        await api.verify_payment(first)
        await api.verify_payment(second)

        await asyncio.wait_for(second_sent.wait(), timeout=2)
        assert (await api.get_order(first))["status"] == "PAID"

        gate.set()
        await api.wait_idle()
        assert (await api.get_order(first))["status"] == "DISPENSING"
        assert (await api.get_order(second))["status"] == "DISPENSING"
        assert channel.publish_command.await_count == 2

    @pytest.mark.asyncio
    async def test_telemetry_during_settlement_is_deferred(self, api, monkeypatch):
        """Test that a sensor report racing the decrement cannot be overwritten."""
        order_id = await paid_order(api, slot_id=1, quantity=2)
        apply_dispense = api.stock.apply_dispense
        applied = []

        async def with_sensor_report(*args, **kwargs):
            applied.append(await api.stock.apply_telemetry("VM01", [{"id": 1, "level": "HIGH"}]))
            return await apply_dispense(*args, **kwargs)

        monkeypatch.setattr(api.stock, "apply_dispense", with_sensor_report)
        result = await api.confirm_dispense(order_id, 1, True, True)

        assert result["status"] == "COMPLETED"
        assert applied == [[]]
        assert await stock_of(api, 1) == 3

        monkeypatch.undo()
        await api.stock.apply_telemetry("VM01", [{"id": 1, "level": "HIGH"}])
        assert await stock_of(api, 1) == 8

    @pytest.mark.asyncio
    async def test_failed_attempt_releases_slot(self, api):
        """Test that telemetry applies again once a failed attempt closes."""
        order_id = await paid_order(api, slot_id=1, quantity=2)
        await api.confirm_dispense(order_id, 1, False, False, error="motor jam")

        entries = await api.stock.apply_telemetry("VM01", [{"id": 1, "level": "LOW"}])
        assert len(entries) == 1
        assert await stock_of(api, 1) == 2


# =============================================================================
# Timer Tests)
# =============================================================================


class TestSupervisionTimers:
    """Tests for unconfirmed attempts."""

    @pytest.mark.asyncio
    async def test_supervision_window(self, api):
        """Test window is the larger of scaled motor time and the minimum."""
        assert api.coordinator.supervision_window(1500) == 5.0
        assert api.coordinator.supervision_window(2000) == 6.0

    @pytest.mark.asyncio
    async def test_timer_uses_slot_motor_duration(self, api, sleeper):
        """Test that the timer window follows the slot's motor budget."""
        await paid_order(api, slot_id=4, quantity=1)
        assert sleeper.delays == [6.0]

    @pytest.mark.asyncio
    async def test_timeout_fails_order(self, api, sleeper):
        """Test that an attempt never confirmed fails the order."""
        order_id = await paid_order(api)

        await fire_timers(api, sleeper)

        order = await api.get_order(order_id)
        assert order["status"] == "FAILED"
        assert order["notes"] == "timeout"
        status = await api.get_dispense_status(order_id)
        assert status["attempts"][0]["error_message"] == "timeout"
        assert await stock_of(api, 1) == 5

    @pytest.mark.asyncio
    async def test_late_confirmation_after_timeout(self, api, sleeper):
        """Test that a confirmation after timeout is not applied."""
        order_id = await paid_order(api)
        await fire_timers(api, sleeper)

        result = await api.confirm_dispense(order_id, 1, True, True)
        assert result["already_processed"] is True
        assert result["status"] == "FAILED"
        assert await stock_of(api, 1) == 5

    @pytest.mark.asyncio
    async def test_confirmation_cancels_timer(self, api, sleeper):
        """Test that a confirmed attempt does not time out later."""
        order_id = await paid_order(api)
        tasks = list(api.coordinator._timers.values())

        await api.confirm_dispense(order_id, 1, True, True)
        await asyncio.gather(*tasks, return_exceptions=True)

        assert all(task.cancelled() for task in tasks)
        assert (await api.get_order(order_id))["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_recover_open_attempts(self, api, redis, settings, channel, clock):
        """Test that a restarted engine re-arms timers for open attempts."""
        await paid_order(api)
        clock.advance(seconds=2)

        restarted_sleep = FakeSleep()
        restarted = VendingFacade(redis, settings, channel=channel, clock=clock, sleep=restarted_sleep)
        await restarted.start()
        try:
            await asyncio.sleep(0)
            assert restarted.coordinator.pending_timers == 1
            assert restarted_sleep.delays == [3.0]
        finally:
            await restarted.shutdown()


# =============================================================================
# Multi Item Tests
# =============================================================================


class TestMultiItemDispense:
    """Tests for orders spanning several slots."""

    @pytest.mark.asyncio
    async def test_completes_after_every_slot(self, api, channel):
        """Test that the order completes only when all slots dispensed."""
        order_id = await paid_multi_order(api, [
            {"slot_id": 1, "quantity": 2},
            {"slot_id": 2, "quantity": 1},
        ])
        assert [c.slot_number for c in channel.commands] == [1, 2]

        first = await api.confirm_dispense(order_id, 1, True, True)
        assert first["status"] == "DISPENSING"

        second = await api.confirm_dispense(order_id, 2, True, True)
        assert second["status"] == "COMPLETED"
        assert await stock_of(api, 1) == 3
        assert await stock_of(api, 2) == 2

    @pytest.mark.asyncio
    async def test_one_slot_fails(self, api):
        """Test that one failed slot fails the order and keeps the other decrement."""
        order_id = await paid_multi_order(api, [
            {"slot_id": 1, "quantity": 1},
            {"slot_id": 2, "quantity": 1},
        ])

        await api.confirm_dispense(order_id, 1, True, True)
        result = await api.confirm_dispense(order_id, 2, True, False)

        assert result["status"] == "FAILED"
        assert await stock_of(api, 1) == 4
        assert await stock_of(api, 2) == 3

    @pytest.mark.asyncio
    async def test_later_command_lost(self, api, channel):
        """Test that a lost command after the first fails the order."""
        channel.publish_command.side_effect = [
            1,
            DownstreamUnavailable("Machine VM01 unreachable: no subscriber"),
        ]
        order_id = await paid_multi_order(api, [
            {"slot_id": 1, "quantity": 1},
            {"slot_id": 2, "quantity": 1},
        ])

        order = await api.get_order(order_id)
        assert order["status"] == "FAILED"
        assert order["notes"].startswith("Command not delivered")


# =============================================================================
# Unreachable Machine Tests
# =============================================================================


class TestUnreachableMachine:
    """Tests for the PENDING_DISPENSE path."""

    @pytest.mark.asyncio
    async def test_parks_and_retries(self, api, channel):
        """Test that an unreachable machine parks the order for a retry."""
        channel.publish_command.side_effect = DownstreamUnavailable(
            "Machine VM01 unreachable: no subscriber"
        )
        order_id = await paid_order(api)

        order = await api.get_order(order_id)
        assert order["status"] == "PENDING_DISPENSE"
        assert "unreachable" in order["notes"]
        assert api.coordinator.pending_timers == 0

        with pytest.raises(DownstreamUnavailable):
            await api.trigger_dispense(order_id)
        assert (await api.get_order(order_id))["status"] == "PENDING_DISPENSE"

        channel.publish_command.side_effect = None
        result = await api.trigger_dispense(order_id)
        assert result["status"] == "DISPENSING"
        assert result["commands"] == 1

        done = await api.confirm_dispense(order_id, 1, True, True)
        assert done["status"] == "COMPLETED"
        assert await stock_of(api, 1) == 3

        status = await api.get_dispense_status(order_id)
        assert len(status["attempts"]) == 3


# =============================================================================
# Query Tests
# =============================================================================


class TestDispenseQueries:
    """Tests for dispense log queries."""

    @pytest.mark.asyncio
    async def test_machine_logs(self, api):
        """Test machine logs newest first with a total."""
        first = await paid_order(api, slot_id=1, quantity=1)
        second = await paid_order(api, slot_id=2, quantity=1)

        logs = await api.get_dispense_logs("VM01")
        assert logs["total"] == 2
        assert [log["order_id"] for log in logs["logs"]] == [second, first]

        page = await api.get_dispense_logs("VM01", limit=1, offset=1)
        assert [log["order_id"] for log in page["logs"]] == [first]

    @pytest.mark.asyncio
    async def test_invalid_paging(self, api):
        """Test that paging arguments are checked."""
        with pytest.raises(ValidationError):
            await api.get_dispense_logs("VM01", limit=0)
