"""
WebSocket client for pushing order updates to the kiosk UI.

This module provides a notifier that forwards order status changes to the
kiosk's WebSocket server so the screen can follow payment and dispensing.
"""

import json
from typing import Any, Optional

import websockets
from websockets.exceptions import WebSocketException

from vending_engine.loggers import logger


async def send_to_ws(
    event: str,
    data: Optional[dict[str, Any]],
    ws_url: str,
) -> bool:
    """
    Send an event to the WebSocket server.

    Args:
        event: The event name/type to send.
        data: Optional dictionary of event data.
        ws_url: WebSocket URL to connect to.

    Returns:
        True if the message was sent successfully, False otherwise.

    Example:
        await send_to_ws(
            event='orderStatus',
            data={'order_id': 'ORD-20240101-1A2B3C4D', 'status': 'PAID'},
            ws_url='ws://localhost:8005/ws',
        )
    """
    message = {"event": event, "data": data}

    try:
        async with websockets.connect(ws_url) as ws:
            await ws.send(json.dumps(message))
            logger.debug(f"WebSocket message sent: {event}")
            return True
    except WebSocketException as e:
        logger.warning(f"WebSocket connection error: {e}")
        return False
    except OSError as e:
        logger.error(f"Failed to send WebSocket message: {e}")
        return False


class WebSocketNotifier:
    """
    Notifier forwarding order events to the kiosk.

    Disabled (every call returns False) when no URL is configured.
    """

    ORDER_STATUS_EVENT = "orderStatus"

    def __init__(self, ws_url: Optional[str]) -> None:
        self._ws_url = ws_url

    @property
    def enabled(self) -> bool:
        return bool(self._ws_url)

    async def notify(self, event: str, data: dict[str, Any]) -> bool:
        if not self._ws_url:
            return False
        return await send_to_ws(event, data, self._ws_url)

    async def handle_order_status(self, event: dict[str, Any]) -> None:
        """Event handler for order status changes."""
        await self.notify(
            self.ORDER_STATUS_EVENT,
            {
                "order_id": event.get("order_id"),
                "machine_id": event.get("machine_id"),
                "status": event.get("status"),
            },
        )
