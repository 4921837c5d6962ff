"""
Core module - Foundation layer with no dependencies on other layers.

Contains:
- Exceptions
- Interfaces (Protocols)
- Value Objects
- Entities
"""

from .exceptions import (
    VendingError,
    ValidationError,
    InvalidSignatureError,
    NotFoundError,
    OrderNotFoundError,
    SlotNotFoundError,
    StateConflictError,
    InvalidOrderStateError,
    StockInsufficientError,
    ProductInactiveError,
    DownstreamUnavailable,
    RepositoryError,
    RedisConnectionError,
    ConcurrentUpdateError,
)
from .interfaces import (
    DeviceChannel,
    MessageHandler,
    Notifier,
)
from .models import (
    DispenseLog,
    Machine,
    Order,
    OrderItem,
    Payment,
    Product,
    Slot,
    StockLogEntry,
)
from .value_objects import (
    DispenseCommand,
    DispenseResult,
    MachineStatus,
    MessageType,
    OrderStatus,
    PaymentStatus,
    ReconciliationResult,
    StockChange,
    StockChangeType,
    utc_now,
)


__all__ = [
    # Exceptions
    "VendingError",
    "ValidationError",
    "InvalidSignatureError",
    "NotFoundError",
    "OrderNotFoundError",
    "SlotNotFoundError",
    "StateConflictError",
    "InvalidOrderStateError",
    "StockInsufficientError",
    "ProductInactiveError",
    "DownstreamUnavailable",
    "RepositoryError",
    "RedisConnectionError",
    "ConcurrentUpdateError",
    # Interfaces
    "DeviceChannel",
    "MessageHandler",
    "Notifier",
    # Entities
    "DispenseLog",
    "Machine",
    "Order",
    "OrderItem",
    "Payment",
    "Product",
    "Slot",
    "StockLogEntry",
    # Value Objects
    "DispenseCommand",
    "DispenseResult",
    "MachineStatus",
    "MessageType",
    "OrderStatus",
    "PaymentStatus",
    "ReconciliationResult",
    "StockChange",
    "StockChangeType",
    "utc_now",
]
