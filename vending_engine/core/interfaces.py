"""
Interfaces (Protocols) for the vending engine.

Defines contracts between the ledgers and their collaborators using
Python's Protocol for structural subtyping (duck typing with type hints).
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from vending_engine.core.value_objects import DispenseCommand


# Async callback invoked with (machine_id, payload) for one inbound message
MessageHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


# =============================================================================
# Device Channel Interface
# =============================================================================


@runtime_checkable
class DeviceChannel(Protocol):
    """Protocol for the machine publish/subscribe transport."""

    async def publish_command(
        self,
        machine_id: str,
        command: DispenseCommand,
    ) -> int:
        """
        Publish a dispense command to a machine.

        Returns the number of receivers.

        Raises:
            DownstreamUnavailable: If the command could not be delivered.
        """
        ...

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """Register a handler for an inbound message type."""
        ...


# =============================================================================
# Notifier Interface
# =============================================================================


@runtime_checkable
class Notifier(Protocol):
    """Protocol for pushing order updates to the kiosk UI."""

    async def notify(self, event: str, data: dict[str, Any]) -> bool:
        """Send an event; returns False when it could not be delivered."""
        ...

    async def handle_order_status(self, event: dict[str, Any]) -> None:
        """Forward an internal order status event."""
        ...
