"""
Domain layer - Business rules with no I/O.

Contains:
- Order state machine
- Keyed locks
- Payment gateway rules
- Stock policy
"""

from .locks import KeyedLock
from .order_state_machine import (
    ORDER_TRANSITIONS,
    OrderStateMachine,
)
from .payment_gateway import (
    compute_signature,
    map_transaction_status,
    new_payment_link,
    require_fields,
    verify_signature,
)
from .stock_policy import (
    classify_level,
    estimate_from_level,
    fill_percentage,
    replay,
)


__all__ = [
    # Locks
    "KeyedLock",
    # Order State
    "ORDER_TRANSITIONS",
    "OrderStateMachine",
    # Payment Gateway
    "compute_signature",
    "map_transaction_status",
    "new_payment_link",
    "require_fields",
    "verify_signature",
    # Stock Policy
    "classify_level",
    "estimate_from_level",
    "fill_percentage",
    "replay",
]
