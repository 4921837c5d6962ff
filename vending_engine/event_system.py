"""
Event system for the vending engine.

This module provides a publish-subscribe event system that decouples
payment settlement from dispensing and carries order status changes to
the kiosk notifier.
"""

import asyncio
import inspect
from enum import Enum
from typing import Callable, Any, Union

from vending_engine.loggers import logger


class EventType(str, Enum):
    """
    Enumeration of internal event types.

    These events are published after a state change has been committed.
    """

    PAYMENT_SETTLED = "payment_settled"
    ORDER_STATUS_CHANGED = "order_status_changed"


class EventPublisher:
    """
    Publisher for sending events to the event queue.

    Provides a simple interface for publishing events with associated data.

    Attributes:
        event_queue: The asyncio queue to publish events to.
    """

    def __init__(self, event_queue: asyncio.Queue) -> None:
        """
        Initialize the event publisher.

        Args:
            event_queue: The asyncio queue for event distribution.
        """
        self.event_queue = event_queue

    async def publish(self, event_type: Union[EventType, str], **data: Any) -> None:
        """
        Publish an event to the queue.

        Args:
            event_type: The type of event to publish.
            **data: Additional event data as keyword arguments.
        """
        event = {"type": event_type, **data}
        await self.event_queue.put(event)


class EventConsumer:
    """
    Consumer for processing events from the event queue.

    Handles event dispatch to registered handlers based on event type.

    Attributes:
        event_queue: The asyncio queue to consume events from.
        handlers: Mapping of event types to their handler functions.
        is_consuming: Flag indicating if the consumer is active.
    """

    def __init__(self, event_queue: asyncio.Queue) -> None:
        """
        Initialize the event consumer.

        Args:
            event_queue: The asyncio queue to consume events from.
        """
        self.event_queue = event_queue
        self.handlers: dict[Union[EventType, str], list[Callable]] = {}
        self.is_consuming = False
        self._consume_task: asyncio.Task | None = None
        self._handler_tasks: set[asyncio.Task] = set()

    def register_handler(
        self,
        event_type: Union[EventType, str],
        handler: Callable,
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The event type to handle.
            handler: The handler function (sync or async).
        """
        self.handlers.setdefault(event_type, []).append(handler)

    async def _run_handler(self, handler: Callable, event: dict[str, Any]) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Handler for {event.get('type')} failed on {event}: {e}")

    async def _process_event(self, event: dict[str, Any]) -> None:
        """
        Start every handler registered for the event on its own task.

        A slow handler for one order never holds up events of another.
        Handler failures are logged; they never stop the other handlers.

        Args:
            event: The event dictionary containing type and data.
        """
        for handler in self.handlers.get(event.get("type"), []):
            task = asyncio.create_task(self._run_handler(handler, event))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def drain(self) -> None:
        """
        Wait until the queue is empty and every running handler finished.

        Handlers may publish further events, so this loops until both
        are quiet.
        """
        while True:
            await self.event_queue.join()
            if not self._handler_tasks:
                return
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def _consume_loop(self) -> None:
        """
        Main consumption loop that processes events from the queue.
        """
        while self.is_consuming:
            try:
                # Timeout lets the loop notice is_consuming going False
                event = await asyncio.wait_for(
                    self.event_queue.get(),
                    timeout=0.5,
                )
            except asyncio.TimeoutError:
                continue

            try:
                await self._process_event(event)
            finally:
                self.event_queue.task_done()

    async def start_consuming(self) -> None:
        """
        Start the event consumption loop.
        """
        if self.is_consuming:
            return

        self.is_consuming = True
        self._consume_task = asyncio.create_task(self._consume_loop())

    async def stop_consuming(self) -> None:
        """
        Stop the event consumption loop and cancel its task.
        """
        self.is_consuming = False

        if self._consume_task:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass
            self._consume_task = None

        handler_tasks = list(self._handler_tasks)
        for task in handler_tasks:
            task.cancel()
        await asyncio.gather(*handler_tasks, return_exceptions=True)
