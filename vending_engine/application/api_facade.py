"""
API Facade - Unified interface for the vending engine.

Builds the repositories, ledgers and event plumbing once and exposes every
operation the outer surfaces (Redis commands, HTTP) need.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis

from vending_engine.application.dispense_coordinator import DispenseCoordinator
from vending_engine.application.machine_service import MachineService
from vending_engine.application.order_ledger import OrderLedger
from vending_engine.application.payment_reconciler import PaymentReconciler
from vending_engine.application.stock_ledger import StockLedger
from vending_engine.core.interfaces import DeviceChannel, Notifier
from vending_engine.core.value_objects import MessageType, StockChangeType, utc_now
from vending_engine.domain.locks import KeyedLock
from vending_engine.event_system import EventConsumer, EventPublisher, EventType
from vending_engine.infrastructure.device_channel import RedisDeviceChannel
from vending_engine.infrastructure.redis_repository import (
    DispenseLogRepository,
    MachineRepository,
    OrderRepository,
    ProductRepository,
    SlotRepository,
    StockLogRepository,
)
from vending_engine.infrastructure.settings import Settings, get_settings
from vending_engine.loggers import logger


class VendingFacade:
    """
    Facade for the vending engine API.

    Methods return plain dictionaries and raise VendingError subclasses;
    the outer surfaces translate both.
    """

    def __init__(
        self,
        redis: Redis,
        settings: Optional[Settings] = None,
        channel: Optional[DeviceChannel] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the vending facade.

        Args:
            redis: Redis client instance.
            settings: Settings; defaults to the environment settings.
            channel: Device channel; defaults to Redis pub/sub.
            notifier: Kiosk notifier for order status changes.
            clock: Time source shared by every service.
            sleep: Delay function for timers and publish retries.
        """
        self._redis = redis
        self._settings = settings or get_settings()
        self._channel = channel or RedisDeviceChannel(redis, self._settings.channel, sleep=sleep)
        self._notifier = notifier

        # Event system
        self._event_queue: asyncio.Queue = asyncio.Queue()
        self._event_publisher = EventPublisher(self._event_queue)
        self._event_consumer = EventConsumer(self._event_queue)
        self._locks = KeyedLock()

        # Repositories
        retries = self._settings.stock.max_cas_retries
        self._orders = OrderRepository(redis, retries)
        self._slots = SlotRepository(redis, retries)
        self._products = ProductRepository(redis, retries)
        self._stock_logs = StockLogRepository(redis, retries)
        self._attempts = DispenseLogRepository(redis, retries)
        self._machines = MachineRepository(redis, retries)

        # Services
        self._stock = StockLedger(self._slots, self._stock_logs, self._settings.stock, clock)
        self._ledger = OrderLedger(
            self._orders,
            self._slots,
            self._products,
            self._settings.orders,
            self._event_publisher,
            clock,
        )
        self._reconciler = PaymentReconciler(
            self._ledger,
            self._locks,
            self._event_publisher,
            self._settings.gateway,
        )
        self._coordinator = DispenseCoordinator(
            self._ledger,
            self._stock,
            self._orders,
            self._slots,
            self._attempts,
            self._channel,
            self._locks,
            self._settings.dispense,
            clock,
            sleep,
        )
        self._machine_service = MachineService(self._machines, self._slots, clock)

        self._register_handlers()
        self._is_started = False

    def _register_handlers(self) -> None:
        """Register handlers for internal events and device messages."""
        self._event_consumer.register_handler(
            EventType.PAYMENT_SETTLED,
            self._coordinator.handle_payment_settled,
        )
        if self._notifier is not None:
            self._event_consumer.register_handler(
                EventType.ORDER_STATUS_CHANGED,
                self._notifier.handle_order_status,
            )

        self._channel.register_handler(
            MessageType.DISPENSE_RESULT.value,
            self._coordinator.handle_dispense_result,
        )
        self._channel.register_handler(MessageType.TELEMETRY.value, self.handle_telemetry)
        self._channel.register_handler(MessageType.STATUS.value, self._machine_service.handle_status)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def channel(self) -> DeviceChannel:
        return self._channel

    @property
    def slots(self) -> SlotRepository:
        return self._slots

    @property
    def products(self) -> ProductRepository:
        return self._products

    @property
    def coordinator(self) -> DispenseCoordinator:
        return self._coordinator

    @property
    def stock(self) -> StockLedger:
        return self._stock

    async def start(self) -> None:
        """Start consuming events and re-arm timers of open attempts."""
        if self._is_started:
            return
        await self._event_consumer.start_consuming()
        await self._coordinator.recover_open_attempts()
        self._is_started = True
        logger.info("Vending engine started")

    async def shutdown(self) -> None:
        """Stop timers and the event consumer."""
        await self._coordinator.shutdown()
        await self._event_consumer.stop_consuming()
        self._is_started = False
        logger.info("Vending engine shut down")

    async def wait_idle(self) -> None:
        """Wait until every queued event and its handlers have finished."""
        await self._event_consumer.drain()

    async def health(self) -> dict[str, Any]:
        """Redis round trip and engine status."""
        redis_ok = bool(await self._redis.ping())
        return {
            "status": "ok" if redis_ok else "degraded",
            "redis": redis_ok,
            "started": self._is_started,
            "machine_id": self._settings.machine_id,
        }

    # =========================================================================
    # Orders
    # =========================================================================

    async def create_order(
        self,
        slot_id: int,
        quantity: int,
        customer_phone: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> dict[str, Any]:
        order = await self._ledger.create(slot_id, quantity, customer_phone, payment_method)
        return {**order.to_dict(), "qr_string": order.payment_url}

    async def create_multi_order(
        self,
        items: list[dict[str, Any]],
        customer_phone: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> dict[str, Any]:
        order = await self._ledger.create_multi(items, customer_phone, payment_method)
        items_rows = await self._ledger.get_items(order.id)
        return {
            **order.to_dict(),
            "qr_string": order.payment_url,
            "items": [item.to_dict() for item in items_rows],
        }

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await self._ledger.get_order_details(order_id)

    async def list_orders(
        self,
        machine_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        return await self._ledger.list_orders(machine_id, status, limit, offset)

    async def expire_overdue(self) -> dict[str, Any]:
        expired = await self._ledger.expire_overdue()
        return {"expired": expired, "count": len(expired)}

    # =========================================================================
    # Payments
    # =========================================================================

    async def payment_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self._reconciler.handle_webhook(payload)
        return result.to_dict()

    async def verify_payment(self, order_id: str, status: str = "SUCCESS") -> dict[str, Any]:
        result = await self._reconciler.verify(order_id, status)
        return result.to_dict()

    async def get_payment(self, order_id: str) -> dict[str, Any]:
        return await self._ledger.get_payment(order_id)

    # =========================================================================
    # Dispensing
    # =========================================================================

    async def trigger_dispense(self, order_id: str) -> dict[str, Any]:
        return await self._coordinator.trigger(order_id)

    async def confirm_dispense(
        self,
        order_id: str,
        slot_number: int,
        success: bool,
        drop_detected: bool = False,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> dict[str, Any]:
        return await self._coordinator.confirm(
            order_id, slot_number, success, drop_detected, duration_ms, error
        )

    async def get_dispense_logs(
        self,
        machine_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        return await self._coordinator.get_logs(machine_id, limit, offset)

    async def get_dispense_status(self, order_id: str) -> dict[str, Any]:
        return await self._coordinator.get_status(order_id)

    # =========================================================================
    # Stock
    # =========================================================================

    async def get_stock(self, machine_id: str) -> dict[str, Any]:
        return await self._stock.get_machine_stock(machine_id)

    async def update_stock(
        self,
        slot_id: int,
        quantity: int,
        change_type: str = StockChangeType.MANUAL_ADJUST.value,
        reason: str = "",
        performed_by: str = "operator",
    ) -> dict[str, Any]:
        entry = await self._stock.set_stock(
            int(slot_id), int(quantity), change_type, reason, performed_by
        )
        return {"success": True, "log": entry.to_dict()}

    async def get_stock_logs(
        self,
        machine_id: str,
        change_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        return await self._stock.get_logs(machine_id, change_type, limit, offset)

    async def report_stock(self, machine_id: str) -> dict[str, Any]:
        entries = await self._stock.report_snapshot(machine_id)
        return {"machine_id": machine_id, "reported": len(entries)}

    async def replay_stock(self, slot_id: int) -> dict[str, Any]:
        return await self._stock.replay(int(slot_id))

    # =========================================================================
    # Machines
    # =========================================================================

    async def get_machine(self, machine_id: str) -> dict[str, Any]:
        return await self._machine_service.get_machine(machine_id)

    async def handle_telemetry(self, machine_id: str, payload: dict[str, Any]) -> None:
        """Device channel handler for `telemetry` messages."""
        await self._machine_service.touch(machine_id, payload)
        readings = payload.get("slots")
        if isinstance(readings, list):
            await self._stock.apply_telemetry(machine_id, readings)
