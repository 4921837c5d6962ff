"""
Stock policy.

Pure rules used by the stock ledger: sensor level estimates, fill level
classification and replay of the audit trail.
"""

from __future__ import annotations

from typing import Iterable, Optional

from vending_engine.core.models import Slot, StockLogEntry
from vending_engine.infrastructure.settings import LEVEL_ESTIMATES


def estimate_from_level(level: str, capacity: int) -> Optional[int]:
    """
    Translate a qualitative sensor level into a stock estimate.

    Returns:
        The estimate clamped to capacity, or None for an unknown level.
    """
    estimate = LEVEL_ESTIMATES.get(str(level).upper())
    if estimate is None:
        return None
    return min(max(estimate, 0), capacity)


def fill_percentage(slot: Slot) -> int:
    """Stock as a rounded percentage of capacity."""
    if slot.capacity <= 0:
        return 0
    return round(slot.current_stock * 100 / slot.capacity)


def classify_level(slot: Slot, low_ratio: float, medium_ratio: float) -> str:
    """
    Classify a slot as EMPTY, LOW, MEDIUM or FULL.

    LOW and MEDIUM are inclusive upper bounds on the fill ratio.
    """
    if slot.current_stock <= 0 or slot.capacity <= 0:
        return "EMPTY"
    ratio = slot.current_stock / slot.capacity
    if ratio <= low_ratio:
        return "LOW"
    if ratio <= medium_ratio:
        return "MEDIUM"
    return "FULL"


def replay(entries: Iterable[StockLogEntry]) -> tuple[Optional[int], int]:
    """
    Replay a slot's audit trail in write order.

    Estimate entries overwrite stock, so replay restarts from the last one.

    Returns:
        (base, net): the stock set by the last estimate (None when there
        is none) and the sum of exact deltas written after it.
    """
    base: Optional[int] = None
    net = 0
    for entry in entries:
        if entry.is_estimate:
            base = entry.quantity_after
            net = 0
        else:
            net += entry.quantity_change
    return base, net
