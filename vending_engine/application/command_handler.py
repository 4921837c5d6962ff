"""
Command Handler - Routes Redis commands to facade methods.

Provides command routing with argument validation and error handling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Awaitable, Optional

from vending_engine.core.exceptions import VendingError
from vending_engine.loggers import logger


# Type alias for command handlers
CommandHandlerFunc = Callable[..., Awaitable[dict[str, Any]]]


@dataclass
class CommandResponse:
    """
    Standardized response for command execution.

    Attributes:
        command_id: The ID of the executed command.
        success: Whether the command succeeded.
        message: Human-readable message.
        data: Optional response data.
    """

    command_id: Optional[Any] = None
    success: bool = False
    message: Optional[str] = None
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the response to a dictionary."""
        return {
            "command_id": self.command_id,
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }


@dataclass
class CommandDefinition:
    """
    Definition of a command.

    Attributes:
        name: Command name.
        handler: Handler function.
        required_args: Argument names that must be present.
        optional_args: Argument names passed through when present.
        description: Human-readable description.
    """

    name: str
    handler: CommandHandlerFunc
    required_args: list[str]
    optional_args: list[str] = field(default_factory=list)
    description: str = ""


class CommandHandler:
    """
    Routes commands to their appropriate handlers.

    Registers every facade operation under a command name and dispatches
    `{command, command_id, data}` messages to it.
    """

    def __init__(self, api: Any) -> None:
        """
        Initialize the command handler.

        Args:
            api: The VendingFacade instance.
        """
        self._api = api
        self._commands: dict[str, CommandDefinition] = {}
        self._register_default_commands()

    def _register_default_commands(self) -> None:
        """Register all default command handlers."""
        # Orders
        self.register(
            "create_order",
            self._api.create_order,
            ["slot_id", "quantity"],
            "Create a pending order for one slot",
            ["customer_phone", "payment_method"],
        )
        self.register(
            "create_multi_order",
            self._api.create_multi_order,
            ["items"],
            "Create a pending order spanning several slots",
            ["customer_phone", "payment_method"],
        )
        self.register(
            "get_order",
            self._api.get_order,
            ["order_id"],
            "Get an order with its items",
        )
        self.register(
            "list_orders",
            self._api.list_orders,
            ["machine_id"],
            "List orders of a machine",
            ["status", "limit", "offset"],
        )

        # Payments
        self.register(
            "payment_webhook",
            self._api.payment_webhook,
            ["payload"],
            "Apply a payment gateway notification",
        )
        self.register(
            "verify_payment",
            self._api.verify_payment,
            ["order_id"],
            "Operator confirmation of a payment",
            ["status"],
        )
        self.register(
            "get_payment",
            self._api.get_payment,
            ["order_id"],
            "Get payment detail of an order",
        )

        # Dispensing
        self.register(
            "trigger_dispense",
            self._api.trigger_dispense,
            ["order_id"],
            "Send dispense commands for a paid order",
        )
        self.register(
            "confirm_dispense",
            self._api.confirm_dispense,
            ["order_id", "slot_number", "success"],
            "Apply a dispense outcome",
            ["drop_detected", "duration_ms", "error"],
        )
        self.register(
            "dispense_logs",
            self._api.get_dispense_logs,
            ["machine_id"],
            "List dispense attempts of a machine",
            ["limit", "offset"],
        )
        self.register(
            "dispense_status",
            self._api.get_dispense_status,
            ["order_id"],
            "Get dispense attempts of an order",
        )

        # Stock
        self.register(
            "get_stock",
            self._api.get_stock,
            ["machine_id"],
            "Get stock of every slot of a machine",
        )
        self.register(
            "update_stock",
            self._api.update_stock,
            ["slot_id", "quantity"],
            "Set a slot to an absolute stock level",
            ["change_type", "reason", "performed_by"],
        )
        self.register(
            "stock_logs",
            self._api.get_stock_logs,
            ["machine_id"],
            "List stock log entries of a machine",
            ["change_type", "limit", "offset"],
        )
        self.register(
            "report_stock",
            self._api.report_stock,
            ["machine_id"],
            "Record a stock snapshot for every slot",
        )
        self.register(
            "replay_stock",
            self._api.replay_stock,
            ["slot_id"],
            "Check a slot's stock against its log",
        )

        # Machines
        self.register(
            "get_machine",
            self._api.get_machine,
            ["machine_id"],
            "Get a machine with its slots",
        )
        self.register(
            "expire_orders",
            self._api.expire_overdue,
            [],
            "Expire overdue pending orders",
        )
        self.register(
            "health",
            self._api.health,
            [],
            "Engine health",
        )

    def register(
        self,
        command_name: str,
        handler: CommandHandlerFunc,
        required_args: list[str],
        description: str = "",
        optional_args: Optional[list[str]] = None,
    ) -> None:
        """
        Register a command handler.

        Args:
            command_name: The name of the command.
            handler: The async handler function.
            required_args: List of required argument names.
            description: Human-readable description.
            optional_args: Argument names passed only when present.
        """
        self._commands[command_name] = CommandDefinition(
            name=command_name,
            handler=handler,
            required_args=required_args,
            optional_args=optional_args or [],
            description=description,
        )

    def get_available_commands(self) -> list[dict[str, Any]]:
        """Get list of available commands with their descriptions."""
        return [
            {
                "name": cmd.name,
                "required_args": cmd.required_args,
                "optional_args": cmd.optional_args,
                "description": cmd.description,
            }
            for cmd in self._commands.values()
        ]

    async def execute(self, command_data: dict[str, Any]) -> dict[str, Any]:
        """
        Execute a command based on command data.

        Args:
            command_data: Dictionary containing 'command', 'command_id', and 'data'.

        Returns:
            Response dictionary with execution result.
        """
        command = command_data.get("command")
        command_id = command_data.get("command_id")
        data = command_data.get("data", {}) or {}

        response = CommandResponse(command_id=command_id)

        # Validate command exists
        if command not in self._commands:
            logger.warning(f"Unknown command: {command}")
            response.message = f"Unknown command: {command}"
            return response.to_dict()

        definition = self._commands[command]

        kwargs = {arg: data.get(arg) for arg in definition.required_args}
        missing = [arg for arg in definition.required_args if kwargs.get(arg) is None]
        if missing:
            response.message = f"Missing required arguments: {missing}"
            return response.to_dict()
        kwargs.update({arg: data[arg] for arg in definition.optional_args if arg in data})

        try:
            response.data = await definition.handler(**kwargs)
            response.success = True
        except VendingError as e:
            logger.error(f"Command '{command}' rejected: {e.message}")
            response.message = e.message
            response.data = e.to_dict()

        return response.to_dict()


async def vending_engine_commands(
    command_data: dict[str, Any],
    api: Any,
) -> dict[str, Any]:
    """
    Execute a command on the vending engine API.

    This is the main entry point for command execution from Redis pub/sub.

    Args:
        command_data: Dictionary containing command name, ID, and data.
        api: The VendingFacade instance.

    Returns:
        Response dictionary with execution result.
    """
    handler = CommandHandler(api)
    return await handler.execute(command_data)
