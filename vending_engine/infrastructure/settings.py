"""
Application settings.

Provides typed configuration sections with environment variable support.
"""

import os
from dataclasses import dataclass, field
from typing import Final, Optional

from vending_engine import configs


# =============================================================================
# Configuration Classes
# =============================================================================


@dataclass(frozen=True)
class RedisSettings:
    """Redis connection settings."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    decode_responses: bool = True


@dataclass(frozen=True)
class ChannelSettings:
    """Device channel (pub/sub) settings."""

    topic_prefix: str = "vm"
    command_retries: int = 3
    retry_delay: float = 0.2
    require_subscriber: bool = True
    command_channel: str = "vending_engine_commands"

    @property
    def response_channel(self) -> str:
        """Get response channel name."""
        return f"{self.command_channel}_response"

    def topic(self, machine_id: str, message_type: str) -> str:
        """Build a device topic name."""
        return f"{self.topic_prefix}/{machine_id}/{message_type}"

    def subscribe_patterns(self, message_types: tuple[str, ...]) -> list[str]:
        """Patterns matching the given inbound topics on every machine."""
        return [f"{self.topic_prefix}/*/{message_type}" for message_type in message_types]


@dataclass(frozen=True)
class OrderSettings:
    """Order placement settings."""

    expiry_minutes: int = 15
    max_quantity: int = 10
    gateway_name: str = "midtrans"
    default_payment_method: str = "qris"
    payment_url_base: str = "https://sandbox.midtrans.com/v2/qris"
    sweep_interval_seconds: float = 30.0


@dataclass(frozen=True)
class GatewaySettings:
    """Payment gateway webhook settings."""

    server_key: str = ""
    verify_signature: bool = True


@dataclass(frozen=True)
class DispenseSettings:
    """Dispense command and supervision settings."""

    default_motor_duration_ms: int = 1500
    timeout_safety_factor: float = 3.0
    min_timeout_ms: int = 5000


@dataclass(frozen=True)
class StockSettings:
    """Stock reconciliation settings."""

    low_ratio: float = 0.2
    medium_ratio: float = 0.5
    max_cas_retries: int = 10


@dataclass(frozen=True)
class ServiceSettings:
    """External service URLs and local endpoints."""

    loki_url: Optional[str] = None
    websocket_url: Optional[str] = None
    http_host: str = "0.0.0.0"
    http_port: int = 3001
    log_file: str = "logs/vending_engine.log"


# =============================================================================
# Main Settings
# =============================================================================


@dataclass
class Settings:
    """
    Main application settings.

    Aggregates all configuration sections.
    """

    machine_id: str = "VM01"
    redis: RedisSettings = field(default_factory=RedisSettings)
    channel: ChannelSettings = field(default_factory=ChannelSettings)
    orders: OrderSettings = field(default_factory=OrderSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    dispense: DispenseSettings = field(default_factory=DispenseSettings)
    stock: StockSettings = field(default_factory=StockSettings)
    services: ServiceSettings = field(default_factory=ServiceSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from `VENDING_*` environment variables.

        Unset variables keep their defaults.

        Returns:
            Settings instance.
        """
        env = os.environ
        return cls(
            machine_id=configs.MACHINE_ID,
            redis=RedisSettings(
                host=configs.REDIS_HOST,
                port=configs.REDIS_PORT,
                db=configs.REDIS_DB,
            ),
            channel=ChannelSettings(
                command_retries=int(env.get("VENDING_COMMAND_RETRIES", 3)),
                require_subscriber=_env_flag("VENDING_REQUIRE_SUBSCRIBER", True),
            ),
            orders=OrderSettings(
                expiry_minutes=int(env.get("VENDING_ORDER_EXPIRY_MINUTES", 15)),
            ),
            gateway=GatewaySettings(
                server_key=env.get("VENDING_GATEWAY_SERVER_KEY", ""),
                verify_signature=_env_flag("VENDING_VERIFY_SIGNATURE", True),
            ),
            dispense=DispenseSettings(
                timeout_safety_factor=float(env.get("VENDING_DISPENSE_SAFETY_FACTOR", 3.0)),
            ),
            services=ServiceSettings(
                loki_url=configs.LOKI_URL,
                websocket_url=configs.WS_URL,
                http_port=int(env.get("VENDING_HTTP_PORT", 3001)),
                log_file=configs.LOG_FILE,
            ),
        )


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Settings Singleton
# =============================================================================


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


# =============================================================================
# Default Mappings
# =============================================================================


# Fixed point estimates for qualitative sensor levels
LEVEL_ESTIMATES: Final[dict[str, int]] = {
    "EMPTY": 0,
    "LOW": 2,
    "MEDIUM": 5,
    "HIGH": 8,
    "FULL": 10,
}

WEBHOOK_STATUS_MAP: Final[dict[str, str]] = {
    "capture": "SUCCESS",
    "settlement": "SUCCESS",
    "pending": "PENDING",
    "deny": "FAILED",
    "cancel": "FAILED",
    "expire": "FAILED",
    "failure": "FAILED",
}
