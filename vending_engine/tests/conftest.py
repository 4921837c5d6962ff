"""
Pytest configuration for vending engine tests.

Provides an in-process Redis, a controllable clock and timer, a recording
device channel and a facade wired to all three.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

# Keep test log output out of the working tree
os.environ.setdefault(
    "VENDING_LOG_FILE", os.path.join(tempfile.gettempdir(), "vending_engine_tests.log")
)

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from vending_engine.application.api_facade import VendingFacade
from vending_engine.core.models import Product, Slot
from vending_engine.domain.payment_gateway import compute_signature
from vending_engine.infrastructure.settings import (
    ChannelSettings,
    GatewaySettings,
    Settings,
)


SERVER_KEY = "test-server-key"
MACHINE_ID = "VM01"


# =============================================================================
# Test doubles
# =============================================================================


class FakeClock:
    """Clock the test moves by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSleep:
    """Sleep that parks every caller until the test releases it."""

    def __init__(self) -> None:
        self.calls: list[tuple[float, asyncio.Event]] = []

    async def __call__(self, delay: float) -> None:
        event = asyncio.Event()
        self.calls.append((delay, event))
        await event.wait()

    @property
    def delays(self) -> list[float]:
        return [delay for delay, _ in self.calls]

    def release_all(self) -> None:
        for _, event in self.calls:
            event.set()


class FakeChannel:
    """Device channel recording published commands."""

    def __init__(self) -> None:
        self.publish_command = AsyncMock(return_value=1)
        self.handlers: dict[str, list] = {}

    def register_handler(self, message_type, handler) -> None:
        self.handlers.setdefault(message_type, []).append(handler)

    @property
    def commands(self) -> list:
        return [call.args[1] for call in self.publish_command.await_args_list]


def signed_webhook(
    order_id: str,
    transaction_status: str = "settlement",
    gross_amount: str = "10000.00",
    status_code: str = "200",
    server_key: str = SERVER_KEY,
    **extra,
) -> dict:
    """Gateway notification body with a valid signature."""
    return {
        "order_id": order_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "signature_key": compute_signature(order_id, status_code, gross_amount, server_key),
        **extra,
    }


# =============================================================================
# Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def redis():
    """Fresh in-process Redis for each test."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def settings():
    """Settings with a known gateway key and no retry delay."""
    return Settings(
        machine_id=MACHINE_ID,
        channel=ChannelSettings(retry_delay=0),
        gateway=GatewaySettings(server_key=SERVER_KEY),
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleeper():
    return FakeSleep()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest_asyncio.fixture
async def provisioned(redis, settings, clock):
    """
    Catalog and slots on VM01, each slot with its provisioning log entry.

    Slot 1: product 1 at 5000, stock 5/10.
    Slot 2: product 2 with price override 6500, stock 3/10.
    Slot 3: inactive product 3, stock 4/10.
    Slot 4: product 1, stock 1/10, motor 2000 ms.
    """
    from vending_engine.application.stock_ledger import StockLedger
    from vending_engine.infrastructure.redis_repository import (
        ProductRepository,
        SlotRepository,
        StockLogRepository,
    )

    products = ProductRepository(redis)
    slots = SlotRepository(redis)
    stock = StockLedger(slots, StockLogRepository(redis), settings.stock, clock)
    for product in (
        Product(id=1, name="Paracetamol", price=5000),
        Product(id=2, name="Vitamin C", price=7000),
        Product(id=3, name="Discontinued", price=3000, is_active=False),
    ):
        await products.save(product)
    for slot in (
        Slot(id=1, machine_id=MACHINE_ID, slot_number=1, product_id=1, current_stock=5),
        Slot(id=2, machine_id=MACHINE_ID, slot_number=2, product_id=2, current_stock=3,
             price_override=6500),
        Slot(id=3, machine_id=MACHINE_ID, slot_number=3, product_id=3, current_stock=4),
        Slot(id=4, machine_id=MACHINE_ID, slot_number=4, product_id=1, current_stock=1,
             motor_duration_ms=2000),
    ):
        await stock.provision(slot)
    return slots


@pytest_asyncio.fixture
async def api(redis, settings, channel, clock, sleeper, provisioned):
    """Started facade over the fake Redis, channel, clock and timers."""
    facade = VendingFacade(redis, settings, channel=channel, clock=clock, sleep=sleeper)
    await facade.start()
    yield facade
    await facade.shutdown()
