"""
Configuration module for the vending engine.

Environment-backed constants shared by the logger and the settings
sections. Kept free of package imports so any module may import it.
"""

import os
from typing import Final, Optional


# =============================================================================
# System Configuration
# =============================================================================

MACHINE_ID: Final[str] = os.getenv("VENDING_MACHINE_ID", "VM01")
LOG_FILE: Final[str] = os.getenv("VENDING_LOG_FILE", "logs/vending_engine.log")


# =============================================================================
# Redis Configuration
# =============================================================================

REDIS_HOST: Final[str] = os.getenv("VENDING_REDIS_HOST", "localhost")
REDIS_PORT: Final[int] = int(os.getenv("VENDING_REDIS_PORT", "6379"))
REDIS_DB: Final[int] = int(os.getenv("VENDING_REDIS_DB", "0"))


# =============================================================================
# External Services Configuration
# =============================================================================

LOKI_URL: Final[Optional[str]] = os.getenv("VENDING_LOKI_URL") or None
WS_URL: Final[Optional[str]] = os.getenv("VENDING_WS_URL") or None
