"""
Entities persisted by the vending engine.

Each record knows how to flatten itself into a Redis hash (string values
only) and how to rebuild itself from one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from vending_engine.core.value_objects import (
    MachineStatus,
    OrderStatus,
    PaymentStatus,
    StockChangeType,
    from_iso,
    to_iso,
)


def _bool(value: Optional[str]) -> bool:
    return value == "1"


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _opt_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


def _opt_str(value: Optional[int | str]) -> str:
    return "" if value is None else str(value)


# =============================================================================
# Catalog / Provisioning
# =============================================================================


@dataclass
class Product:
    """Product bound to slots; owned by the catalog, read only here."""

    id: int
    name: str
    price: int
    is_active: bool = True

    def to_hash(self) -> dict[str, str]:
        return {
            "id": str(self.id),
            "name": self.name,
            "price": str(self.price),
            "is_active": _flag(self.is_active),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> Product:
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            price=int(data.get("price", 0)),
            is_active=_bool(data.get("is_active")),
        )


@dataclass
class Slot:
    """
    A physical dispensing channel.

    Attributes:
        id: Global slot id.
        machine_id: Machine the slot belongs to.
        slot_number: Position on the machine, as used on the wire.
        product_id: Bound product.
        current_stock: Items left, always within 0..capacity.
        capacity: Maximum items the slot holds.
        price_override: Slot-specific price replacing the product price.
        is_active: Whether the slot may sell.
        motor_duration_ms: Motor run budget reported by the device.
    """

    id: int
    machine_id: str
    slot_number: int
    product_id: int
    current_stock: int = 0
    capacity: int = 10
    price_override: Optional[int] = None
    is_active: bool = True
    motor_duration_ms: Optional[int] = None

    def unit_price(self, product: Product) -> int:
        """Price charged per item, override first."""
        return self.price_override or product.price

    def clamp(self, quantity: int) -> int:
        """Clamp a stock value to the slot bounds."""
        return min(max(quantity, 0), self.capacity)

    def to_hash(self) -> dict[str, str]:
        return {
            "id": str(self.id),
            "machine_id": self.machine_id,
            "slot_number": str(self.slot_number),
            "product_id": str(self.product_id),
            "current_stock": str(self.current_stock),
            "capacity": str(self.capacity),
            "price_override": _opt_str(self.price_override),
            "is_active": _flag(self.is_active),
            "motor_duration_ms": _opt_str(self.motor_duration_ms),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> Slot:
        return cls(
            id=int(data["id"]),
            machine_id=data["machine_id"],
            slot_number=int(data["slot_number"]),
            product_id=int(data["product_id"]),
            current_stock=int(data.get("current_stock", 0)),
            capacity=int(data.get("capacity", 0)),
            price_override=_opt_int(data.get("price_override")),
            is_active=_bool(data.get("is_active")),
            motor_duration_ms=_opt_int(data.get("motor_duration_ms")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.id,
            "machine_id": self.machine_id,
            "slot_number": self.slot_number,
            "product_id": self.product_id,
            "current_stock": self.current_stock,
            "capacity": self.capacity,
            "price_override": self.price_override,
            "is_active": self.is_active,
            "motor_duration_ms": self.motor_duration_ms,
        }


@dataclass
class Machine:
    """Machine connectivity record updated from the device channel."""

    id: str
    status: MachineStatus = MachineStatus.OFFLINE
    door: Optional[str] = None
    rssi: Optional[int] = None
    firmware: Optional[str] = None
    last_seen: Optional[datetime] = None
    last_telemetry: dict[str, Any] = field(default_factory=dict)

    def to_hash(self) -> dict[str, str]:
        return {
            "id": self.id,
            "status": self.status.value,
            "door": _opt_str(self.door),
            "rssi": _opt_str(self.rssi),
            "firmware": _opt_str(self.firmware),
            "last_seen": to_iso(self.last_seen),
            "last_telemetry": json.dumps(self.last_telemetry),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> Machine:
        return cls(
            id=data["id"],
            status=MachineStatus(data.get("status") or MachineStatus.OFFLINE.value),
            door=data.get("door") or None,
            rssi=_opt_int(data.get("rssi")),
            firmware=data.get("firmware") or None,
            last_seen=from_iso(data.get("last_seen")),
            last_telemetry=json.loads(data.get("last_telemetry") or "{}"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": self.id,
            "status": self.status.value,
            "door": self.door,
            "rssi": self.rssi,
            "firmware": self.firmware,
            "last_seen": to_iso(self.last_seen) or None,
            "last_telemetry": self.last_telemetry,
        }


# =============================================================================
# Orders
# =============================================================================


@dataclass
class Order:
    """
    One buyer transaction.

    Single-item orders carry their slot and quantity here; multi-item
    orders additionally own OrderItem rows and point at the first item's
    slot.
    """

    id: str
    machine_id: str
    slot_id: int
    slot_number: int
    product_id: int
    quantity: int
    total_amount: int
    status: OrderStatus = OrderStatus.PENDING
    payment_url: str = ""
    payment_token: str = ""
    payment_method: str = ""
    customer_phone: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    dispensed_at: Optional[datetime] = None
    notes: str = ""
    is_multi: bool = False

    def is_expired(self, now: datetime) -> bool:
        """PENDING orders past their expiry are abandoned."""
        return (
            self.status == OrderStatus.PENDING
            and self.expires_at is not None
            and now > self.expires_at
        )

    def to_hash(self) -> dict[str, str]:
        return {
            "id": self.id,
            "machine_id": self.machine_id,
            "slot_id": str(self.slot_id),
            "slot_number": str(self.slot_number),
            "product_id": str(self.product_id),
            "quantity": str(self.quantity),
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "payment_url": self.payment_url,
            "payment_token": self.payment_token,
            "payment_method": self.payment_method,
            "customer_phone": _opt_str(self.customer_phone),
            "expires_at": to_iso(self.expires_at),
            "created_at": to_iso(self.created_at),
            "paid_at": to_iso(self.paid_at),
            "dispensed_at": to_iso(self.dispensed_at),
            "notes": self.notes,
            "is_multi": _flag(self.is_multi),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> Order:
        return cls(
            id=data["id"],
            machine_id=data["machine_id"],
            slot_id=int(data["slot_id"]),
            slot_number=int(data["slot_number"]),
            product_id=int(data["product_id"]),
            quantity=int(data["quantity"]),
            total_amount=int(data["total_amount"]),
            status=OrderStatus(data["status"]),
            payment_url=data.get("payment_url", ""),
            payment_token=data.get("payment_token", ""),
            payment_method=data.get("payment_method", ""),
            customer_phone=data.get("customer_phone") or None,
            expires_at=from_iso(data.get("expires_at")),
            created_at=from_iso(data.get("created_at")),
            paid_at=from_iso(data.get("paid_at")),
            dispensed_at=from_iso(data.get("dispensed_at")),
            notes=data.get("notes", ""),
            is_multi=_bool(data.get("is_multi")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.id,
            "machine_id": self.machine_id,
            "slot_id": self.slot_id,
            "slot_number": self.slot_number,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "payment_url": self.payment_url,
            "payment_token": self.payment_token,
            "payment_method": self.payment_method,
            "customer_phone": self.customer_phone,
            "expires_at": to_iso(self.expires_at) or None,
            "created_at": to_iso(self.created_at) or None,
            "paid_at": to_iso(self.paid_at) or None,
            "dispensed_at": to_iso(self.dispensed_at) or None,
            "notes": self.notes,
            "is_multi": self.is_multi,
        }


@dataclass(frozen=True)
class OrderItem:
    """One slot line of a multi-item order, with a product snapshot."""

    order_id: str
    slot_id: int
    slot_number: int
    product_id: int
    product_name: str
    unit_price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> OrderItem:
        data = json.loads(raw)
        return cls(
            order_id=data["order_id"],
            slot_id=int(data["slot_id"]),
            slot_number=int(data["slot_number"]),
            product_id=int(data["product_id"]),
            product_name=data["product_name"],
            unit_price=int(data["unit_price"]),
            quantity=int(data["quantity"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "slot_id": self.slot_id,
            "slot_number": self.slot_number,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "line_total": self.line_total,
        }


@dataclass
class Payment:
    """Gateway payment record, one per order."""

    order_id: str
    gateway_name: str
    amount: int
    payment_method: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_transaction_id: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    processed_at: Optional[datetime] = None

    def to_hash(self) -> dict[str, str]:
        return {
            "order_id": self.order_id,
            "gateway_name": self.gateway_name,
            "amount": str(self.amount),
            "payment_method": self.payment_method,
            "status": self.status.value,
            "gateway_transaction_id": _opt_str(self.gateway_transaction_id),
            "raw_payload": json.dumps(self.raw_payload),
            "processed_at": to_iso(self.processed_at),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> Payment:
        return cls(
            order_id=data["order_id"],
            gateway_name=data.get("gateway_name", ""),
            amount=int(data.get("amount", 0)),
            payment_method=data.get("payment_method", ""),
            status=PaymentStatus(data.get("status") or PaymentStatus.PENDING.value),
            gateway_transaction_id=data.get("gateway_transaction_id") or None,
            raw_payload=json.loads(data.get("raw_payload") or "{}"),
            processed_at=from_iso(data.get("processed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "gateway_name": self.gateway_name,
            "amount": self.amount,
            "payment_method": self.payment_method,
            "status": self.status.value,
            "gateway_transaction_id": self.gateway_transaction_id,
            "raw_payload": self.raw_payload,
            "processed_at": to_iso(self.processed_at) or None,
        }


# =============================================================================
# Append-only logs
# =============================================================================


@dataclass(frozen=True)
class StockLogEntry:
    """Immutable audit row explaining one change to a slot's stock."""

    id: str
    machine_id: str
    slot_id: int
    change_type: StockChangeType
    quantity_before: int
    quantity_after: int
    reason: str = ""
    performed_by: str = "system"
    is_estimate: bool = False
    order_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def quantity_change(self) -> int:
        return self.quantity_after - self.quantity_before

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> StockLogEntry:
        data = json.loads(raw)
        return cls(
            id=data["id"],
            machine_id=data["machine_id"],
            slot_id=int(data["slot_id"]),
            change_type=StockChangeType(data["change_type"]),
            quantity_before=int(data["quantity_before"]),
            quantity_after=int(data["quantity_after"]),
            reason=data.get("reason", ""),
            performed_by=data.get("performed_by", "system"),
            is_estimate=bool(data.get("is_estimate", False)),
            order_id=data.get("order_id"),
            created_at=from_iso(data.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "machine_id": self.machine_id,
            "slot_id": self.slot_id,
            "change_type": self.change_type.value,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "quantity_change": self.quantity_change,
            "reason": self.reason,
            "performed_by": self.performed_by,
            "is_estimate": self.is_estimate,
            "order_id": self.order_id,
            "created_at": to_iso(self.created_at) or None,
        }


@dataclass
class DispenseLog:
    """One command/confirmation cycle for an order and slot."""

    id: str
    order_id: str
    machine_id: str
    slot_id: int
    slot_number: int
    quantity: int
    timeout_ms: int
    command_sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    success: bool = False
    drop_detected: bool = False
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    @property
    def is_dispensed(self) -> bool:
        return self.success and self.drop_detected

    def to_hash(self) -> dict[str, str]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "machine_id": self.machine_id,
            "slot_id": str(self.slot_id),
            "slot_number": str(self.slot_number),
            "quantity": str(self.quantity),
            "timeout_ms": str(self.timeout_ms),
            "command_sent_at": to_iso(self.command_sent_at),
            "completed_at": to_iso(self.completed_at),
            "success": _flag(self.success),
            "drop_detected": _flag(self.drop_detected),
            "duration_ms": _opt_str(self.duration_ms),
            "error_message": _opt_str(self.error_message),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> DispenseLog:
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            machine_id=data["machine_id"],
            slot_id=int(data["slot_id"]),
            slot_number=int(data["slot_number"]),
            quantity=int(data["quantity"]),
            timeout_ms=int(data["timeout_ms"]),
            command_sent_at=from_iso(data.get("command_sent_at")),
            completed_at=from_iso(data.get("completed_at")),
            success=_bool(data.get("success")),
            drop_detected=_bool(data.get("drop_detected")),
            duration_ms=_opt_int(data.get("duration_ms")),
            error_message=data.get("error_message") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "machine_id": self.machine_id,
            "slot_id": self.slot_id,
            "slot_number": self.slot_number,
            "quantity": self.quantity,
            "timeout_ms": self.timeout_ms,
            "command_sent_at": to_iso(self.command_sent_at) or None,
            "completed_at": to_iso(self.completed_at) or None,
            "success": self.success,
            "drop_detected": self.drop_detected,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
        }
