"""
Stock Ledger - Single owner of slot stock counts.

Three writers change `Slot.current_stock`: confirmed dispenses, sensor
telemetry and operator adjustments. Each write is a compare-and-set on the
slot that appends its audit entry in the same transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from vending_engine.core.exceptions import SlotNotFoundError, ValidationError
from vending_engine.core.models import Slot, StockLogEntry
from vending_engine.core.value_objects import StockChange, StockChangeType, utc_now
from vending_engine.domain.stock_policy import (
    classify_level,
    estimate_from_level,
    fill_percentage,
    replay,
)
from vending_engine.infrastructure.redis_repository import SlotRepository, StockLogRepository
from vending_engine.infrastructure.settings import StockSettings
from vending_engine.loggers import logger


SENSOR_ACTOR = "sensor"
SNAPSHOT_REASON = "Automated stock report"
PROVISION_ACTOR = "provisioning"
PROVISION_REASON = "Slot provisioned"


def _change_type(value: str | StockChangeType) -> StockChangeType:
    if isinstance(value, StockChangeType):
        return value
    try:
        return StockChangeType(str(value).upper())
    except ValueError:
        raise ValidationError(f"Unknown stock change type: {value}") from None


class StockLedger:
    """
    Service owning every stock write.

    Invariant: 0 <= current_stock <= capacity after every write.
    """

    def __init__(
        self,
        slots: SlotRepository,
        logs: StockLogRepository,
        settings: StockSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the stock ledger.

        Args:
            slots: Slot repository.
            logs: Stock log repository.
            settings: Level thresholds.
            clock: Time source.
        """
        self._slots = slots
        self._logs = logs
        self._settings = settings
        self._clock = clock

    def _entry(self, slot: Slot, change: StockChange) -> StockLogEntry:
        return StockLogEntry(
            id=uuid.uuid4().hex,
            machine_id=slot.machine_id,
            slot_id=slot.id,
            change_type=change.change_type,
            quantity_before=change.quantity_before,
            quantity_after=change.quantity_after,
            reason=change.reason,
            performed_by=change.performed_by,
            is_estimate=change.is_estimate,
            order_id=change.order_id,
            created_at=self._clock(),
        )

    # =========================================================================
    # Writers
    # =========================================================================

    async def apply_dispense(
        self,
        slot_id: int,
        quantity: int,
        order_id: str,
        attempt_id: Optional[str] = None,
    ) -> StockLogEntry:
        """
        Decrement stock for a confirmed dispense.

        The decrement is exact and floored at zero.

        Args:
            slot_id: Slot that dispensed.
            quantity: Items dispensed.
            order_id: Order responsible.
            attempt_id: Attempt released from the slot with this write.

        Returns:
            The DISPENSE log entry.
        """

        def compute(slot: Slot, _open_attempts: int) -> StockLogEntry:
            return self._entry(
                slot,
                StockChange(
                    quantity_before=slot.current_stock,
                    quantity_after=slot.clamp(slot.current_stock - quantity),
                    change_type=StockChangeType.DISPENSE,
                    reason=f"Order {order_id}",
                    order_id=order_id,
                ),
            )

        slot, entry = await self._slots.apply_stock_change(slot_id, compute, release_attempt=attempt_id)
        logger.info(
            f"Slot {slot_id} dispensed {quantity} for order {order_id}: "
            f"{entry.quantity_before} -> {entry.quantity_after}"
        )
        return entry

    async def apply_telemetry(
        self,
        machine_id: str,
        readings: list[dict[str, Any]],
    ) -> list[StockLogEntry]:
        """
        Overwrite stock with sensor estimates.

        Each reading is `{id: slot_number, level: EMPTY|LOW|MEDIUM|HIGH|FULL}`.
        Latest report wins, except for slots with a dispense in flight,
        which keep their count until the next report.

        Returns:
            AUDIT entries written, one per applied reading.
        """
        entries = []
        for reading in readings:
            slot_number = reading.get("id")
            level = reading.get("level")
            if slot_number is None or not level:
                logger.warning(f"Incomplete telemetry reading from {machine_id}: {reading}")
                continue

            slot = await self._slots.get_by_number(machine_id, int(slot_number))
            if slot is None:
                logger.warning(f"Telemetry for unknown slot {slot_number} on {machine_id}")
                continue
            if estimate_from_level(level, slot.capacity) is None:
                logger.warning(f"Unknown stock level {level!r} for slot {slot_number} on {machine_id}")
                continue

            entry = await self._apply_estimate(slot.id, str(level))
            if entry is not None:
                entries.append(entry)
        return entries

    async def _apply_estimate(self, slot_id: int, level: str) -> Optional[StockLogEntry]:
        def compute(slot: Slot, open_attempts: int) -> Optional[StockLogEntry]:
            if open_attempts:
                return None
            return self._entry(
                slot,
                StockChange(
                    quantity_before=slot.current_stock,
                    quantity_after=estimate_from_level(level, slot.capacity),
                    change_type=StockChangeType.AUDIT,
                    reason=f"Sensor level {level.upper()}",
                    performed_by=SENSOR_ACTOR,
                    is_estimate=True,
                ),
            )

        slot, entry = await self._slots.apply_stock_change(slot_id, compute)
        if entry is None:
            logger.info(f"Telemetry for slot {slot_id} deferred: dispense in flight")
        else:
            logger.debug(
                f"Slot {slot_id} estimated at {entry.quantity_after} "
                f"(was {entry.quantity_before})"
            )
        return entry

    async def set_stock(
        self,
        slot_id: int,
        target: int,
        change_type: StockChangeType = StockChangeType.MANUAL_ADJUST,
        reason: str = "",
        performed_by: str = "operator",
    ) -> StockLogEntry:
        """
        Set a slot to an absolute stock level.

        The target is clamped to 0..capacity. RESTOCK may only add items.

        Raises:
            ValidationError: For a DISPENSE change type, or a RESTOCK that
                would lower the count.
        """
        change_type = _change_type(change_type)
        if change_type == StockChangeType.DISPENSE:
            raise ValidationError(
                "Dispense changes are recorded by the dispense flow only",
                details={"slot_id": slot_id},
            )

        def compute(slot: Slot, _open_attempts: int) -> StockLogEntry:
            after = slot.clamp(int(target))
            if change_type == StockChangeType.RESTOCK and after < slot.current_stock:
                raise ValidationError(
                    f"Restock cannot lower stock from {slot.current_stock} to {after}",
                    details={"slot_id": slot_id, "current_stock": slot.current_stock},
                )
            return self._entry(
                slot,
                StockChange(
                    quantity_before=slot.current_stock,
                    quantity_after=after,
                    change_type=change_type,
                    reason=reason,
                    performed_by=performed_by,
                ),
            )

        slot, entry = await self._slots.apply_stock_change(slot_id, compute)
        logger.info(
            f"Slot {slot_id} {change_type.value} by {performed_by}: "
            f"{entry.quantity_before} -> {entry.quantity_after}"
        )
        return entry

    async def provision(self, slot: Slot) -> StockLogEntry:
        """
        Save a slot and log its starting stock as the first replayable entry.

        Re-provisioning an existing slot logs the move from its old count.
        """
        existing = await self._slots.get(slot.id)
        slot.current_stock = slot.clamp(slot.current_stock)
        entry = self._entry(
            slot,
            StockChange(
                quantity_before=existing.current_stock if existing else 0,
                quantity_after=slot.current_stock,
                change_type=StockChangeType.AUDIT,
                reason=PROVISION_REASON,
                performed_by=PROVISION_ACTOR,
            ),
        )
        await self._slots.save(slot, entry)
        logger.info(f"Slot {slot.id} on {slot.machine_id} provisioned with {slot.current_stock}")
        return entry

    async def report_snapshot(self, machine_id: str) -> list[StockLogEntry]:
        """Write a zero-delta AUDIT entry for every slot of a machine."""
        slots = await self._slots.list_for_machine(machine_id)
        if not slots:
            raise SlotNotFoundError(
                f"No slots provisioned on machine {machine_id}",
                details={"machine_id": machine_id},
            )

        entries = []
        for slot in slots:

            def compute(current: Slot, _open_attempts: int) -> StockLogEntry:
                return self._entry(
                    current,
                    StockChange(
                        quantity_before=current.current_stock,
                        quantity_after=current.current_stock,
                        change_type=StockChangeType.AUDIT,
                        reason=SNAPSHOT_REASON,
                    ),
                )

            _, entry = await self._slots.apply_stock_change(slot.id, compute)
            entries.append(entry)
        logger.info(f"Stock snapshot recorded for {machine_id}: {len(entries)} slots")
        return entries

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_machine_stock(self, machine_id: str) -> dict[str, Any]:
        """
        Per-slot stock with fill percentage and level, plus summary counts.
        """
        slots = await self._slots.list_for_machine(machine_id)
        rows = []
        summary = {"total_slots": len(slots), "empty": 0, "low": 0, "medium": 0, "full": 0}
        for slot in slots:
            level = classify_level(slot, self._settings.low_ratio, self._settings.medium_ratio)
            summary[level.lower()] += 1
            rows.append({
                **slot.to_dict(),
                "stock_percentage": fill_percentage(slot),
                "stock_level": level,
            })
        return {"machine_id": machine_id, "slots": rows, "summary": summary}

    async def get_logs(
        self,
        machine_id: str,
        change_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Audit entries of a machine, newest first."""
        entries = await self._logs.list_for_machine(machine_id)
        if change_type:
            wanted = _change_type(change_type)
            entries = [entry for entry in entries if entry.change_type == wanted]
        page = entries[offset:offset + limit]
        return {
            "machine_id": machine_id,
            "logs": [entry.to_dict() for entry in page],
            "total": len(entries),
            "limit": limit,
            "offset": offset,
        }

    async def replay(self, slot_id: int) -> dict[str, Any]:
        """
        Check a slot's stock against its audit trail.

        Replay starts from the last sensor estimate, or from zero when the
        slot was never estimated.
        """
        slot = await self._slots.require(slot_id)
        entries = await self._logs.list_for_slot(slot_id)
        base, net = replay(entries)
        expected = (base or 0) + net
        return {
            "slot_id": slot_id,
            "current_stock": slot.current_stock,
            "base_estimate": base,
            "net_change": net,
            "expected_stock": expected,
            "consistent": expected == slot.current_stock,
        }
