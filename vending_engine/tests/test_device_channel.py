"""
Tests for the Redis pub/sub device channel.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnError

from vending_engine.core.exceptions import DownstreamUnavailable
from vending_engine.core.value_objects import DispenseCommand
from vending_engine.infrastructure.device_channel import INBOUND_TYPES, RedisDeviceChannel
from vending_engine.infrastructure.settings import ChannelSettings


COMMAND = DispenseCommand(order_id="ORD-20240115-1A2B3C4D", slot_number=2, timeout_ms=1500)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def device_channel(redis, sleep):
    return RedisDeviceChannel(redis, ChannelSettings(retry_delay=0.5), sleep=sleep)


async def wait_for_listener(redis, topic: str, payload: dict) -> None:
    """Publish until the listener's pattern subscription receives it."""
    for _ in range(200):
        if await redis.publish(topic, json.dumps(payload)) > 0:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("listener never subscribed")


# =============================================================================
# Settings Tests
# =============================================================================


class TestTopics:
    """Tests for topic naming."""

    def test_topic(self):
        """Test topic layout."""
        assert ChannelSettings().topic("VM01", "command") == "vm/VM01/command"

    def test_inbound_patterns_exclude_commands(self):
        """Test that the engine never subscribes to its own command topic."""
        patterns = ChannelSettings().subscribe_patterns(INBOUND_TYPES)
        assert patterns == ["vm/*/telemetry", "vm/*/dispense_result", "vm/*/status"]

    def test_parse_topic(self, device_channel):
        """Test splitting topics into machine and type."""
        assert device_channel.parse_topic("vm/VM01/telemetry") == ("VM01", "telemetry")
        assert device_channel.parse_topic("kiosk/VM01/telemetry") is None
        assert device_channel.parse_topic("vm//telemetry") is None
        assert device_channel.parse_topic("vm/VM01") is None


# =============================================================================
# Outbound Tests
# =============================================================================


class TestPublishCommand:
    """Tests for command publishing."""

    @pytest.mark.asyncio
    async def test_delivered_to_subscriber(self, redis, device_channel):
        """Test that a listening machine receives the command."""
        pubsub = redis.pubsub()
        await pubsub.subscribe("vm/VM01/command")
        try:
            receivers = await device_channel.publish_command("VM01", COMMAND)
            assert receivers == 1

            message = None
            for _ in range(50):
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.05)
                if message:
                    break
            assert json.loads(message["data"]) == {
                "cmd": "dispense",
                "slot": 2,
                "orderId": "ORD-20240115-1A2B3C4D",
                "timeoutMs": 1500,
            }
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    @pytest.mark.asyncio
    async def test_no_subscriber_retries_then_fails(self, device_channel, sleep):
        """Test retries when nobody listens."""
        with pytest.raises(DownstreamUnavailable) as exc_info:
            await device_channel.publish_command("VM01", COMMAND)

        assert exc_info.value.details["target"] == "vm/VM01/command"
        assert exc_info.value.details["order_id"] == COMMAND.order_id
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_subscriber_not_required(self, redis, sleep):
        """Test fire-and-forget mode."""
        channel = RedisDeviceChannel(
            redis, ChannelSettings(require_subscriber=False), sleep=sleep
        )
        assert await channel.publish_command("VM01", COMMAND) == 0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_error_then_success(self, sleep):
        """Test that a transient connection error is retried."""
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=[RedisConnError("reset"), 1])
        channel = RedisDeviceChannel(redis, ChannelSettings(), sleep=sleep)

        assert await channel.publish_command("VM01", COMMAND) == 1
        assert redis.publish.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_down(self, sleep):
        """Test that a persistent connection error is reported."""
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=RedisConnError("refused"))
        channel = RedisDeviceChannel(redis, ChannelSettings(command_retries=2), sleep=sleep)

        with pytest.raises(DownstreamUnavailable) as exc_info:
            await channel.publish_command("VM01", COMMAND)
        assert "refused" in exc_info.value.message
        assert redis.publish.await_count == 2


# =============================================================================
# Inbound Tests
# =============================================================================


class TestDispatch:
    """Tests for inbound message dispatch."""

    @pytest.mark.asyncio
    async def test_dispatch_to_handlers(self, device_channel):
        """Test that every handler of the type receives the message."""
        first, second = AsyncMock(), AsyncMock()
        device_channel.register_handler("telemetry", first)
        device_channel.register_handler("telemetry", second)

        tasks = device_channel.dispatch("vm/VM01/telemetry", json.dumps({"temp": 21}))
        assert len(tasks) == 2
        await device_channel.drain()

        first.assert_awaited_once_with("VM01", {"temp": 21})
        second.assert_awaited_once_with("VM01", {"temp": 21})

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, device_channel):
        """Test that a failing handler does not affect the others."""
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        working = AsyncMock()
        device_channel.register_handler("status", failing)
        device_channel.register_handler("status", working)

        device_channel.dispatch("vm/VM01/status", json.dumps({"status": "ONLINE"}))
        await device_channel.drain()

        working.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "topic, raw",
        [
            ("other/VM01/telemetry", "{}"),
            ("vm/VM01/unknown", "{}"),
            ("vm/VM01/telemetry", "not json"),
            ("vm/VM01/telemetry", "[1, 2]"),
        ],
    )
    async def test_ignored_messages(self, device_channel, topic, raw):
        """Test that foreign, unhandled and malformed messages are dropped."""
        handler = AsyncMock()
        device_channel.register_handler("telemetry", handler)

        assert device_channel.dispatch(topic, raw) == []
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listener_end_to_end(self, redis, device_channel):
        """Test that the listener receives device messages but not commands."""
        received = asyncio.Event()
        payloads = []

        async def on_result(machine_id, payload):
            payloads.append((machine_id, payload))
            received.set()

        device_channel.register_handler("dispense_result", on_result)
        await device_channel.start()
        try:
            message = {"orderId": "ORD-1", "slot": 1, "success": True, "dropDetected": True}
            await wait_for_listener(redis, "vm/VM02/dispense_result", message)
            await asyncio.wait_for(received.wait(), timeout=2)

            assert payloads[0] == ("VM02", message)
            assert await redis.publish("vm/VM02/command", "{}") == 0
        finally:
            await device_channel.stop()
