"""
Dispense Coordinator - Drives paid orders through the machine.

Sends one dispense command per order line, records each attempt, applies
device confirmations exactly once and fails attempts the device never
confirms.

Attempt lifecycle: command_sent -> confirmed_success | confirmed_failure | timeout.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from vending_engine.core.exceptions import (
    DownstreamUnavailable,
    NotFoundError,
    ValidationError,
    VendingError,
)
from vending_engine.core.interfaces import DeviceChannel
from vending_engine.core.models import DispenseLog, Order, Payment
from vending_engine.core.value_objects import (
    DispenseCommand,
    DispenseResult,
    OrderStatus,
    utc_now,
)
from vending_engine.domain.locks import KeyedLock
from vending_engine.infrastructure.redis_repository import (
    DispenseLogRepository,
    OrderRepository,
    SlotRepository,
)
from vending_engine.infrastructure.settings import DispenseSettings
from vending_engine.loggers import logger
from vending_engine.application.order_ledger import OrderLedger
from vending_engine.application.stock_ledger import StockLedger


class DispenseTarget(NamedTuple):
    """One slot to run for an order."""

    slot_id: int
    slot_number: int
    quantity: int


class DispenseCoordinator:
    """
    Service owning DispenseLog attempts and their supervising timers.

    Every trigger and confirmation for an order runs under that order's
    lock, so a confirmation never observes a half-sent trigger.
    """

    def __init__(
        self,
        ledger: OrderLedger,
        stock: StockLedger,
        orders: OrderRepository,
        slots: SlotRepository,
        attempts: DispenseLogRepository,
        channel: DeviceChannel,
        locks: KeyedLock,
        settings: DispenseSettings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the dispense coordinator.

        Args:
            ledger: Order ledger for status transitions.
            stock: Stock ledger for confirmed decrements.
            orders: Order repository (items lookup).
            slots: Slot repository (motor durations).
            attempts: Dispense log repository.
            channel: Device channel for commands.
            locks: Per-order locks shared with the payment reconciler.
            settings: Timeout settings.
            clock: Time source.
            sleep: Delay function used by supervising timers.
        """
        self._ledger = ledger
        self._stock = stock
        self._orders = orders
        self._slots = slots
        self._attempts = attempts
        self._channel = channel
        self._locks = locks
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._timers: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Trigger
    # =========================================================================

    async def handle_payment_settled(self, event: dict[str, Any]) -> None:
        """Event handler: start dispensing a freshly paid order."""
        order_id = event["order_id"]
        try:
            await self.trigger(order_id)
        except VendingError as e:
            logger.error(f"Dispense trigger for order {order_id} failed: {e.message}")

    async def _targets(self, order: Order) -> list[DispenseTarget]:
        if not order.is_multi:
            return [DispenseTarget(order.slot_id, order.slot_number, order.quantity)]
        items = await self._orders.get_items(order.id)
        return [DispenseTarget(item.slot_id, item.slot_number, item.quantity) for item in items]

    async def trigger(self, order_id: str) -> dict[str, Any]:
        """
        Send dispense commands for a PAID (or PENDING_DISPENSE) order.

        Returns as soon as the commands are published; outcomes arrive
        later through `confirm`.

        Raises:
            OrderNotFoundError: If the order does not exist.
            InvalidOrderStateError: If the order is not ready to dispense.
            DownstreamUnavailable: If the machine could not be reached; the
                order is left PENDING_DISPENSE for an operator retry.
        """
        async with self._locks.hold(order_id):
            order = await self._ledger.get_status(order_id)
            self._ledger.state_machine.ensure(order, OrderStatus.DISPENSING)

            targets = await self._targets(order)
            for index, target in enumerate(targets):
                attempt = await self._open_attempt(order, target)
                command = DispenseCommand(order.id, target.slot_number, attempt.timeout_ms)
                try:
                    await self._channel.publish_command(order.machine_id, command)
                except DownstreamUnavailable as e:
                    await self._close(
                        attempt,
                        DispenseResult(order.id, target.slot_number, success=False, error=e.message),
                    )
                    if index == 0:
                        await self._park(order, e.message)
                        raise
                    logger.error(
                        f"Order {order.id} slot {target.slot_number} command lost: {e.message}"
                    )
                    await self._ledger.mark_terminal(
                        order.id, OrderStatus.FAILED, reason=f"Command not delivered: {e.message}"
                    )
                    return {
                        "success": False,
                        "order_id": order.id,
                        "status": OrderStatus.FAILED.value,
                        "message": e.message,
                    }

                if index == 0:
                    await self._ledger.mark_dispensing(order.id)
                self._schedule(attempt, self.supervision_window(attempt.timeout_ms))

        logger.info(f"Order {order_id} dispensing: {len(targets)} commands sent")
        return {
            "success": True,
            "order_id": order_id,
            "status": OrderStatus.DISPENSING.value,
            "commands": len(targets),
        }

    async def _open_attempt(self, order: Order, target: DispenseTarget) -> DispenseLog:
        slot = await self._slots.get(target.slot_id)
        timeout_ms = (slot.motor_duration_ms if slot else None) or self._settings.default_motor_duration_ms
        attempt = DispenseLog(
            id=uuid.uuid4().hex,
            order_id=order.id,
            machine_id=order.machine_id,
            slot_id=target.slot_id,
            slot_number=target.slot_number,
            quantity=target.quantity,
            timeout_ms=timeout_ms,
            command_sent_at=self._clock(),
        )
        await self._attempts.open(attempt)
        return attempt

    async def _park(self, order: Order, reason: str) -> None:
        note = f"Dispense not started: {reason}"
        if order.status == OrderStatus.PAID:
            await self._ledger.mark_pending_dispense(order.id, note)
        else:

            def mutate(current: Order, _payment: Payment) -> None:
                current.notes = note

            await self._ledger.update(order.id, mutate)
        logger.warning(f"Order {order.id} left PENDING_DISPENSE: {reason}")

    # =========================================================================
    # Confirmation
    # =========================================================================

    async def handle_dispense_result(self, machine_id: str, payload: dict[str, Any]) -> None:
        """Device channel handler for `dispense_result` messages."""
        try:
            result = DispenseResult.from_message(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed dispense result from {machine_id}: {payload} ({e})")
            return
        try:
            await self.apply_result(result, machine_id=machine_id)
        except VendingError as e:
            logger.error(
                f"Dispense result from {machine_id} for order {result.order_id} "
                f"rejected: {e.message}"
            )

    async def confirm(
        self,
        order_id: str,
        slot_number: int,
        success: bool,
        drop_detected: bool = False,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> dict[str, Any]:
        """Apply a dispense outcome reported for (order_id, slot_number)."""
        return await self.apply_result(
            DispenseResult(
                order_id=order_id,
                slot_number=int(slot_number),
                success=bool(success),
                drop_detected=bool(drop_detected),
                duration_ms=duration_ms,
                error=error,
            )
        )

    async def apply_result(
        self,
        result: DispenseResult,
        attempt_id: Optional[str] = None,
        machine_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Close the matching attempt and settle the order.

        Idempotent per (order, slot): a result for an attempt that is
        already closed is accepted and ignored.

        Args:
            result: Reported (or synthetic timeout) outcome.
            attempt_id: Close this attempt rather than the latest open one.
            machine_id: Machine that reported the result; attempts sent to
                another machine are left untouched.

        Raises:
            OrderNotFoundError: If the order does not exist.
            NotFoundError: If no attempt was ever sent for the slot.
            ValidationError: If the result came from another machine.
        """
        order_id = result.order_id
        async with self._locks.hold(order_id):
            await self._orders.require(order_id)
            attempts = [
                attempt
                for attempt in await self._attempts.list_for_order(order_id)
                if attempt.slot_number == result.slot_number
            ]
            if machine_id is not None and any(a.machine_id != machine_id for a in attempts):
                raise ValidationError(
                    f"Order {order_id} slot {result.slot_number} was not sent to {machine_id}",
                    details={"order_id": order_id, "machine_id": machine_id},
                )
            if not attempts:
                raise NotFoundError(
                    f"No dispense attempt for order {order_id} slot {result.slot_number}",
                    details={"order_id": order_id, "slot_number": result.slot_number},
                )

            if attempt_id is not None:
                candidates = [a for a in attempts if a.id == attempt_id and a.is_open]
            else:
                candidates = [a for a in attempts if a.is_open]
            closed = (
                await self._close(candidates[-1], result, release_slot=False)
                if candidates
                else None
            )
            if closed is None:
                logger.info(
                    f"Duplicate dispense result for order {order_id} slot "
                    f"{result.slot_number} ignored"
                )
                order = await self._orders.require(order_id)
                return self._response(order, already_processed=True)

            self._cancel_timer(closed.id)
            try:
                order = await self._settle(closed, result)
            finally:
                await self._slots.release_attempt(closed.slot_id, closed.id)
            return self._response(order, already_processed=False)

    async def _close(
        self,
        attempt: DispenseLog,
        result: DispenseResult,
        release_slot: bool = True,
    ) -> Optional[DispenseLog]:
        now = self._clock()

        def apply(current: DispenseLog) -> None:
            current.completed_at = now
            current.success = result.success
            current.drop_detected = result.drop_detected
            current.duration_ms = result.duration_ms
            current.error_message = result.error

        return await self._attempts.close(attempt.id, apply, release_slot)

    async def _settle(self, attempt: DispenseLog, result: DispenseResult) -> Order:
        order_id = attempt.order_id
        order = await self._orders.require(order_id)
        if order.status != OrderStatus.DISPENSING:
            logger.warning(
                f"Late dispense result for order {order_id} slot {attempt.slot_number} "
                f"recorded; order already {order.status.value}"
            )
            return order

        if not attempt.is_dispensed:
            reason = result.error or ("drop not detected" if result.success else "dispense failed")
            logger.error(f"Order {order_id} slot {attempt.slot_number} failed: {reason}")
            return await self._ledger.mark_terminal(order_id, OrderStatus.FAILED, reason=reason)

        # Releases the slot for telemetry in the same write as the decrement
        await self._stock.apply_dispense(
            attempt.slot_id, attempt.quantity, order_id, attempt_id=attempt.id
        )

        targets = await self._targets(order)
        latest: dict[int, DispenseLog] = {}
        for logged in await self._attempts.list_for_order(order_id):
            latest[logged.slot_number] = logged
        if all(
            target.slot_number in latest and latest[target.slot_number].is_dispensed
            for target in targets
        ):
            logger.info(f"Order {order_id} fully dispensed")
            return await self._ledger.mark_terminal(order_id, OrderStatus.COMPLETED)
        return order

    @staticmethod
    def _response(order: Order, already_processed: bool) -> dict[str, Any]:
        return {
            "success": True,
            "order_id": order.id,
            "status": order.status.value,
            "already_processed": already_processed,
        }

    # =========================================================================
    # Supervising timers
    # =========================================================================

    def supervision_window(self, timeout_ms: int) -> float:
        """Seconds to wait for a confirmation before failing the attempt."""
        window_ms = max(
            timeout_ms * self._settings.timeout_safety_factor,
            self._settings.min_timeout_ms,
        )
        return window_ms / 1000

    def _schedule(self, attempt: DispenseLog, delay: float) -> None:
        task = asyncio.create_task(self._expire_after(attempt, delay))
        self._timers[attempt.id] = task

    def _cancel_timer(self, attempt_id: str) -> None:
        task = self._timers.pop(attempt_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after(self, attempt: DispenseLog, delay: float) -> None:
        await self._sleep(delay)
        self._timers.pop(attempt.id, None)
        logger.warning(
            f"No dispense result for order {attempt.order_id} slot {attempt.slot_number} "
            f"after {delay:.1f}s"
        )
        try:
            await self.apply_result(
                DispenseResult.timed_out(attempt.order_id, attempt.slot_number),
                attempt_id=attempt.id,
            )
        except VendingError as e:
            logger.error(f"Timeout handling for order {attempt.order_id} failed: {e.message}")

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    async def recover_open_attempts(self) -> int:
        """
        Re-arm timers for attempts left open by a previous process.

        Returns:
            Number of attempts now supervised.
        """
        now = self._clock()
        recovered = 0
        for attempt in await self._attempts.list_open():
            if attempt.id in self._timers:
                continue
            window = self.supervision_window(attempt.timeout_ms)
            elapsed = (now - attempt.command_sent_at).total_seconds() if attempt.command_sent_at else window
            self._schedule(attempt, max(0.0, window - elapsed))
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} open dispense attempts")
        return recovered

    async def shutdown(self) -> None:
        """Cancel every supervising timer."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_logs(self, machine_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        """Dispense attempts of a machine, newest first."""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        logs = await self._attempts.list_for_machine(machine_id, limit, offset)
        return {
            "machine_id": machine_id,
            "logs": [log.to_dict() for log in logs],
            "total": await self._attempts.count_for_machine(machine_id),
            "limit": limit,
            "offset": offset,
        }

    async def get_status(self, order_id: str) -> dict[str, Any]:
        """Order status with every dispense attempt made for it."""
        order = await self._ledger.get_status(order_id)
        attempts = await self._attempts.list_for_order(order_id)
        return {
            "order_id": order.id,
            "status": order.status.value,
            "dispensed_at": order.to_dict()["dispensed_at"],
            "attempts": [attempt.to_dict() for attempt in attempts],
        }
