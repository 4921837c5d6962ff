"""
Device Channel - Redis pub/sub transport to vending machines.

Topics follow `{prefix}/{machine_id}/{message_type}`. Commands are
published on `{prefix}/{machine_id}/command`; telemetry, dispense results
and status reports arrive on their own topics and are dispatched to the
registered handlers, each message on its own task.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnError
from redis.exceptions import TimeoutError as RedisTimeoutError

from vending_engine.core.exceptions import DownstreamUnavailable
from vending_engine.core.interfaces import MessageHandler
from vending_engine.core.value_objects import DispenseCommand, MessageType
from vending_engine.infrastructure.settings import ChannelSettings
from vending_engine.loggers import logger


INBOUND_TYPES: tuple[str, ...] = (
    MessageType.TELEMETRY.value,
    MessageType.DISPENSE_RESULT.value,
    MessageType.STATUS.value,
)


class RedisDeviceChannel:
    """
    Publish/subscribe gateway between the engine and its machines.

    Delivery of commands is at-least-once: a publish that reached no
    subscriber (or failed on the connection) is retried before giving up
    with DownstreamUnavailable.
    """

    def __init__(
        self,
        redis: Redis,
        settings: ChannelSettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the channel.

        Args:
            redis: Redis client instance.
            settings: Topic and retry settings.
            sleep: Delay function between publish attempts.
        """
        self._redis = redis
        self._settings = settings
        self._sleep = sleep
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listen_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Outbound
    # =========================================================================

    async def publish_command(self, machine_id: str, command: DispenseCommand) -> int:
        """
        Publish a dispense command to a machine.

        Args:
            machine_id: Target machine.
            command: Command to send.

        Returns:
            Number of subscribers that received the command.

        Raises:
            DownstreamUnavailable: If every attempt failed.
        """
        topic = self._settings.topic(machine_id, MessageType.COMMAND.value)
        payload = json.dumps(command.to_message())
        attempts = max(1, self._settings.command_retries)
        last_error = "no subscriber"

        for attempt in range(1, attempts + 1):
            try:
                receivers = await self._redis.publish(topic, payload)
                if receivers > 0 or not self._settings.require_subscriber:
                    logger.info(
                        f"Command sent to {topic} for order {command.order_id} "
                        f"slot {command.slot_number} ({receivers} receivers)"
                    )
                    return receivers
                last_error = "no subscriber"
            except (RedisConnError, RedisTimeoutError) as e:
                last_error = str(e)

            logger.warning(
                f"Command to {topic} for order {command.order_id} not delivered "
                f"(attempt {attempt}/{attempts}): {last_error}"
            )
            if attempt < attempts:
                await self._sleep(self._settings.retry_delay)

        raise DownstreamUnavailable(
            f"Machine {machine_id} unreachable: {last_error}",
            target=topic,
            details={"order_id": command.order_id},
        )

    # =========================================================================
    # Inbound
    # =========================================================================

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """Register a handler for an inbound message type."""
        self._handlers.setdefault(message_type, []).append(handler)

    def parse_topic(self, topic: str) -> Optional[tuple[str, str]]:
        """Split a topic into (machine_id, message_type); None if foreign."""
        parts = topic.split("/")
        if len(parts) != 3 or parts[0] != self._settings.topic_prefix or not parts[1]:
            return None
        return parts[1], parts[2]

    def dispatch(self, topic: str, raw: str) -> list[asyncio.Task]:
        """
        Start one task per handler for an inbound message.

        Returns:
            Tasks started for the message.
        """
        parsed = self.parse_topic(topic)
        if parsed is None:
            logger.debug(f"Ignoring message on foreign topic {topic}")
            return []
        machine_id, message_type = parsed

        handlers = self._handlers.get(message_type)
        if not handlers:
            logger.debug(f"No handler for {message_type} from {machine_id}")
            return []

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Malformed {message_type} message from {machine_id}: {e}")
            return []
        if not isinstance(payload, dict):
            logger.error(f"Malformed {message_type} message from {machine_id}: not an object")
            return []

        tasks = []
        for handler in handlers:
            task = asyncio.create_task(self._run_handler(handler, machine_id, message_type, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _run_handler(
        self,
        handler: MessageHandler,
        machine_id: str,
        message_type: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            await handler(machine_id, payload)
        except Exception as e:
            logger.error(f"Error handling {message_type} from {machine_id}: {e}")

    async def listen(self) -> None:
        """Subscribe to inbound topics and dispatch messages until cancelled."""
        patterns = self._settings.subscribe_patterns(INBOUND_TYPES)
        pubsub = self._redis.pubsub()
        await pubsub.psubscribe(*patterns)
        logger.info(f"Listening for device messages on: {patterns}")

        try:
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                self.dispatch(message["channel"], message["data"])
        finally:
            await pubsub.punsubscribe(*patterns)
            await pubsub.aclose()

    async def start(self) -> None:
        """Start the listener in the background."""
        if self._listen_task is None:
            self._listen_task = asyncio.create_task(self.listen())

    async def stop(self) -> None:
        """Stop the listener and wait for in-flight handlers."""
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        await self.drain()

    async def drain(self) -> None:
        """Wait until every dispatched handler task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
