"""
Infrastructure layer - External dependencies and implementations.

Contains:
- Repository implementations (Redis)
- Device channel (Redis pub/sub)
- Configuration
"""

from .device_channel import RedisDeviceChannel
from .redis_repository import (
    RedisStateRepository,
    DispenseLogRepository,
    MachineRepository,
    OrderRepository,
    ProductRepository,
    SlotRepository,
    StockLogRepository,
)
from .settings import (
    Settings,
    get_settings,
)


__all__ = [
    # Channel
    "RedisDeviceChannel",
    # Repositories
    "RedisStateRepository",
    "DispenseLogRepository",
    "MachineRepository",
    "OrderRepository",
    "ProductRepository",
    "SlotRepository",
    "StockLogRepository",
    # Settings
    "Settings",
    "get_settings",
]
