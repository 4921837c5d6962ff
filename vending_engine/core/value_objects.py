"""
Value Objects for the vending engine.

Immutable objects that represent values in the domain.
Value objects are compared by value, not by identity.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Enums
# =============================================================================


class OrderStatus(str, Enum):
    """Lifecycle status of an order."""

    PENDING = "PENDING"
    PAID = "PAID"
    DISPENSING = "DISPENSING"
    PENDING_DISPENSE = "PENDING_DISPENSE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is allowed."""
        return self in (OrderStatus.COMPLETED, OrderStatus.FAILED)


class PaymentStatus(str, Enum):
    """Status of a payment record."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class StockChangeType(str, Enum):
    """Kinds of stock log entries."""

    DISPENSE = "DISPENSE"
    RESTOCK = "RESTOCK"
    MANUAL_ADJUST = "MANUAL_ADJUST"
    AUDIT = "AUDIT"


class MachineStatus(str, Enum):
    """Connectivity status of a machine."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    MAINTENANCE = "MAINTENANCE"


class MessageType(str, Enum):
    """Message types carried on the device channel."""

    TELEMETRY = "telemetry"
    DISPENSE_RESULT = "dispense_result"
    STATUS = "status"
    COMMAND = "command"


# =============================================================================
# Time helpers
# =============================================================================


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> str:
    """Serialize a datetime for storage; empty string for None."""
    return value.isoformat() if value else ""


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored datetime; naive values are assumed UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Dispense Command Value Object
# =============================================================================


@dataclass(frozen=True)
class DispenseCommand:
    """
    Command sent to the machine to run one slot motor.

    Attributes:
        order_id: Order the dispense belongs to.
        slot_number: Physical slot number on the machine.
        timeout_ms: Motor run budget reported by the slot.
    """

    order_id: str
    slot_number: int
    timeout_ms: int

    def to_message(self) -> dict[str, Any]:
        """Wire format published on the command topic."""
        return {
            "cmd": "dispense",
            "slot": self.slot_number,
            "orderId": self.order_id,
            "timeoutMs": self.timeout_ms,
        }


# =============================================================================
# Dispense Result Value Object
# =============================================================================


@dataclass(frozen=True)
class DispenseResult:
    """
    Outcome reported by the machine for one dispense attempt.

    Attributes:
        order_id: Order the attempt belongs to.
        slot_number: Slot that ran.
        success: Whether the motor cycle completed.
        drop_detected: Whether the drop sensor saw the item fall.
        duration_ms: Motor run time.
        error: Device error text, if any.
    """

    order_id: str
    slot_number: int
    success: bool
    drop_detected: bool = False
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_dispensed(self) -> bool:
        """Mechanical success without a detected drop counts as failure."""
        return self.success and self.drop_detected

    @staticmethod
    def _flag(data: dict[str, Any], name: str) -> bool:
        value = data.get(name, False)
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean, got {value!r}")
        return value

    @classmethod
    def from_message(cls, data: dict[str, Any]) -> "DispenseResult":
        """
        Build from a device `dispense_result` payload.

        Raises:
            KeyError: If orderId or slot is missing.
            ValueError: If a flag is not a JSON boolean.
        """
        duration = data.get("durationMs")
        return cls(
            order_id=str(data["orderId"]),
            slot_number=int(data["slot"]),
            success=cls._flag(data, "success"),
            drop_detected=cls._flag(data, "dropDetected"),
            duration_ms=int(duration) if duration is not None else None,
            error=data.get("error"),
        )

    @classmethod
    def timed_out(cls, order_id: str, slot_number: int) -> "DispenseResult":
        """Synthetic result for an attempt that never confirmed."""
        return cls(
            order_id=order_id,
            slot_number=slot_number,
            success=False,
            error="timeout",
        )


# =============================================================================
# Reconciliation Result Value Object
# =============================================================================


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Result of applying a payment signal to an order.

    Attributes:
        order_id: Order the signal was applied to.
        order_status: Order status after the signal.
        payment_status: Payment status after the signal.
        already_processed: True when the signal was a no-op duplicate.
        message: Human-readable message.
    """

    order_id: str
    order_status: OrderStatus
    payment_status: PaymentStatus
    already_processed: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "success": True,
            "order_id": self.order_id,
            "status": self.order_status.value,
            "payment_status": self.payment_status.value,
            "already_processed": self.already_processed,
            "message": self.message,
        }


# =============================================================================
# Stock Change Value Object
# =============================================================================


@dataclass(frozen=True)
class StockChange:
    """
    A stock write computed by the ledger before it is applied.

    Attributes:
        quantity_before: Stock read under watch.
        quantity_after: Clamped target stock.
        change_type: Log entry type.
        reason: Free-text reason.
        performed_by: Actor name.
        is_estimate: True for sensor overwrites that break replay.
        order_id: Order responsible for a dispense.
    """

    quantity_before: int
    quantity_after: int
    change_type: StockChangeType
    reason: str = ""
    performed_by: str = "system"
    is_estimate: bool = False
    order_id: Optional[str] = None

    @property
    def delta(self) -> int:
        """Signed change applied to the slot."""
        return self.quantity_after - self.quantity_before
