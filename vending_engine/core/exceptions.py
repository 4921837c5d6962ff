"""
Custom exceptions for the vending engine.

Provides a hierarchy of typed exceptions so that callers can tell input
errors, unknown records, state conflicts and downstream outages apart.
"""

from typing import Any, Optional


class VendingError(Exception):
    """Base exception for all vending engine errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Optional error code for programmatic handling.
            details: Optional additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Input Errors
# =============================================================================


class ValidationError(VendingError):
    """Malformed input, rejected before any state change."""

    pass


class InvalidSignatureError(ValidationError):
    """Payment gateway signature did not match the payload."""

    pass


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(VendingError):
    """Requested record does not exist."""

    pass


class OrderNotFoundError(NotFoundError):
    """Unknown order id."""

    def __init__(self, order_id: str, **kwargs: Any) -> None:
        super().__init__(f"Order not found: {order_id}", **kwargs)
        self.details["order_id"] = order_id


class SlotNotFoundError(NotFoundError):
    """Unknown slot, or slot not provisioned on the machine."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


# =============================================================================
# State Errors
# =============================================================================


class StateConflictError(VendingError):
    """Transition attempted from an invalid current state."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.current_status = current_status
        if current_status:
            self.details["current_status"] = current_status


class InvalidOrderStateError(StateConflictError):
    """Order is not in a state that accepts the requested operation."""

    pass


class StockInsufficientError(VendingError):
    """Requested quantity exceeds the slot's current stock."""

    def __init__(
        self,
        message: str,
        requested: int = 0,
        available: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.details["requested"] = requested
        self.details["available"] = available


class ProductInactiveError(VendingError):
    """Slot or its bound product is disabled."""

    pass


# =============================================================================
# Downstream Errors
# =============================================================================


class DownstreamUnavailable(VendingError):
    """Device channel or payment gateway unreachable."""

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        if target:
            self.details["target"] = target


# =============================================================================
# Repository Errors
# =============================================================================


class RepositoryError(VendingError):
    """Base exception for repository errors."""

    pass


class RedisConnectionError(RepositoryError):
    """Error connecting to Redis."""

    pass


class ConcurrentUpdateError(RepositoryError):
    """Compare-and-set retries exhausted under contention."""

    pass
