"""
Machine Service - Connectivity state of vending machines.

Keeps each machine's reported status, last contact time and latest
telemetry snapshot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from vending_engine.core.exceptions import NotFoundError
from vending_engine.core.models import Machine
from vending_engine.core.value_objects import MachineStatus, utc_now
from vending_engine.infrastructure.redis_repository import MachineRepository, SlotRepository
from vending_engine.loggers import logger


class MachineService:
    """Service for machine status and telemetry snapshots."""

    def __init__(
        self,
        machines: MachineRepository,
        slots: SlotRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._machines = machines
        self._slots = slots
        self._clock = clock

    async def _load(self, machine_id: str) -> Machine:
        return await self._machines.get(machine_id) or Machine(id=machine_id)

    async def handle_status(self, machine_id: str, payload: dict[str, Any]) -> Machine:
        """
        Apply a device `status` report.

        OFFLINE and MAINTENANCE are taken as reported; anything else means
        the machine is online.
        """
        reported = str(payload.get("status", "")).upper()
        if reported in (MachineStatus.OFFLINE.value, MachineStatus.MAINTENANCE.value):
            status = MachineStatus(reported)
        else:
            status = MachineStatus.ONLINE

        machine = await self._load(machine_id)
        previous = machine.status
        machine.status = status
        machine.door = payload.get("door", machine.door)
        machine.rssi = payload.get("rssi", machine.rssi)
        machine.firmware = payload.get("fw", machine.firmware)
        machine.last_seen = self._clock()
        await self._machines.save(machine)

        if previous != status:
            logger.info(f"Machine {machine_id} is now {status.value}")
        return machine

    async def touch(self, machine_id: str, telemetry: dict[str, Any]) -> Machine:
        """Record a telemetry snapshot and the contact time."""
        machine = await self._load(machine_id)
        machine.last_seen = self._clock()
        machine.last_telemetry = telemetry
        await self._machines.save(machine)
        return machine

    async def get_machine(self, machine_id: str) -> dict[str, Any]:
        """
        Machine record with its slots.

        Raises:
            NotFoundError: If the machine was never provisioned nor heard from.
        """
        machine = await self._machines.get(machine_id)
        slots = await self._slots.list_for_machine(machine_id)
        if machine is None and not slots:
            raise NotFoundError(
                f"Machine not found: {machine_id}",
                details={"machine_id": machine_id},
            )
        machine = machine or Machine(id=machine_id)
        return {**machine.to_dict(), "slots": [slot.to_dict() for slot in slots]}
