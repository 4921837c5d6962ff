"""
Vending Engine - Main entry point.

Starts the device channel listener, the Redis command listener, the
expiry sweeper and the HTTP server on one event loop.
"""

import asyncio
import json

import uvicorn
from redis.asyncio import Redis

from vending_engine.api.http_app import create_app
from vending_engine.application.api_facade import VendingFacade
from vending_engine.application.command_handler import CommandHandler
from vending_engine.infrastructure.device_channel import RedisDeviceChannel
from vending_engine.infrastructure.settings import Settings, get_settings
from vending_engine.loggers import logger
from vending_engine.notifier import WebSocketNotifier


# =============================================================================
# Redis Command Listener
# =============================================================================


async def listen_to_redis(redis: Redis, api: VendingFacade, settings: Settings) -> None:
    """
    Listen for commands on Redis pub/sub and process them.

    Args:
        redis: Redis client instance.
        api: VendingFacade instance for command execution.
        settings: Settings holding the channel names.
    """
    command_channel = settings.channel.command_channel
    response_channel = settings.channel.response_channel
    handler = CommandHandler(api)

    pubsub = redis.pubsub()
    await pubsub.subscribe(command_channel)
    logger.info(f"Listening for commands on channel: {command_channel}")

    async for message in pubsub.listen():
        if message.get("type") != "message":
            continue

        raw_data = message.get("data")

        # Handle ping messages
        if raw_data == "ping":
            continue

        try:
            command = json.loads(raw_data)
        except json.JSONDecodeError as e:
            logger.error(f"Command parsing error: {e}")
            continue

        logger.info(f"Received command: {command}")
        response = await handler.execute(command)
        await redis.publish(response_channel, json.dumps(response, default=str))
        logger.info(f"Response sent to {response_channel}: {response}")


# =============================================================================
# Expiry Sweeper
# =============================================================================


async def sweep_expired_orders(api: VendingFacade, interval: float) -> None:
    """Expire overdue PENDING orders every `interval` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await api.expire_overdue()
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}")


# =============================================================================
# Main Entry Point
# =============================================================================


async def main() -> None:
    """
    Main entry point for the vending engine service.

    Initializes the Redis connection and the facade, then runs every
    listener until interrupted.
    """
    settings = get_settings()

    redis = Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        decode_responses=settings.redis.decode_responses,
    )

    channel = RedisDeviceChannel(redis, settings.channel)
    api = VendingFacade(
        redis,
        settings,
        channel=channel,
        notifier=WebSocketNotifier(settings.services.websocket_url),
    )
    await api.start()

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(api),
            host=settings.services.http_host,
            port=settings.services.http_port,
            log_config=None,
        )
    )

    try:
        await asyncio.gather(
            channel.listen(),
            listen_to_redis(redis, api, settings),
            sweep_expired_orders(api, settings.orders.sweep_interval_seconds),
            server.serve(),
        )
    finally:
        await channel.stop()
        await api.shutdown()
        await redis.aclose()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application stopped by user")


if __name__ == "__main__":
    run()
