"""
HTTP API for the vending engine.

Thin FastAPI layer: parses requests, delegates to the facade and maps
engine errors to HTTP status codes.
"""

from typing import Any, Optional

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from vending_engine import __version__
from vending_engine.application.api_facade import VendingFacade
from vending_engine.core.exceptions import (
    DownstreamUnavailable,
    InvalidSignatureError,
    NotFoundError,
    ProductInactiveError,
    StateConflictError,
    StockInsufficientError,
    ValidationError,
    VendingError,
)
from vending_engine.loggers import logger


# =============================================================================
# Request Models
# =============================================================================


class OrderRequest(BaseModel):
    """Single-slot order."""

    slot_id: int
    quantity: int = 1
    customer_phone: Optional[str] = None
    payment_method: Optional[str] = None


class OrderItemRequest(BaseModel):
    slot_id: int
    quantity: int = 1


class MultiOrderRequest(BaseModel):
    """Order spanning several slots."""

    items: list[OrderItemRequest]
    customer_phone: Optional[str] = None
    payment_method: Optional[str] = None


class VerifyRequest(BaseModel):
    status: str = "SUCCESS"


class TriggerRequest(BaseModel):
    order_id: str


class ConfirmRequest(BaseModel):
    """Dispense outcome reported by an operator or a bridge."""

    order_id: str
    slot_number: int
    success: bool
    drop_detected: bool = False
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class StockUpdateRequest(BaseModel):
    """Absolute stock level for one slot."""

    slot_id: int
    quantity: int
    change_type: str = "MANUAL_ADJUST"
    reason: str = ""
    performed_by: str = "system"


# =============================================================================
# Error Mapping
# =============================================================================


def status_for(error: VendingError) -> int:
    """HTTP status code for an engine error."""
    if isinstance(error, InvalidSignatureError):
        return 401
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (StateConflictError, StockInsufficientError, ProductInactiveError)):
        return 409
    if isinstance(error, DownstreamUnavailable):
        return 503
    return 500


# =============================================================================
# Application Factory
# =============================================================================


def create_app(api: VendingFacade) -> FastAPI:
    """
    Build the HTTP application around a facade.

    Args:
        api: Facade shared with the Redis command listener.

    Returns:
        FastAPI application.
    """
    app = FastAPI(title="Vending Engine", version=__version__)

    @app.exception_handler(VendingError)
    async def vending_error_handler(request: Request, exc: VendingError) -> JSONResponse:
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(f"{request.method} {request.url.path} -> {status_code}: {exc.message} {exc.details}")
        return JSONResponse(status_code=status_code, content={"success": False, **exc.to_dict()})

    # Orders

    @app.post("/orders", status_code=201)
    async def create_order(req: OrderRequest) -> dict[str, Any]:
        return await api.create_order(
            req.slot_id, req.quantity, req.customer_phone, req.payment_method
        )

    @app.post("/orders/multi", status_code=201)
    async def create_multi_order(req: MultiOrderRequest) -> dict[str, Any]:
        return await api.create_multi_order(
            [item.model_dump() for item in req.items],
            req.customer_phone,
            req.payment_method,
        )

    @app.get("/orders/machine/{machine_id}")
    async def list_orders(
        machine_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        return await api.list_orders(machine_id, status, limit, offset)

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str) -> dict[str, Any]:
        return await api.get_order(order_id)

    # Payments

    @app.post("/payments/webhook")
    async def payment_webhook(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        return await api.payment_webhook(payload)

    @app.post("/payments/verify/{order_id}")
    async def verify_payment(order_id: str, req: Optional[VerifyRequest] = None) -> dict[str, Any]:
        return await api.verify_payment(order_id, req.status if req else "SUCCESS")

    @app.get("/payments/{order_id}")
    async def get_payment(order_id: str) -> dict[str, Any]:
        return await api.get_payment(order_id)

    # Dispensing

    @app.post("/dispense/trigger", status_code=202)
    async def trigger_dispense(req: TriggerRequest) -> dict[str, Any]:
        return await api.trigger_dispense(req.order_id)

    @app.post("/dispense/confirm")
    async def confirm_dispense(req: ConfirmRequest) -> dict[str, Any]:
        return await api.confirm_dispense(
            req.order_id,
            req.slot_number,
            req.success,
            req.drop_detected,
            req.duration_ms,
            req.error,
        )

    @app.get("/dispense/logs/{machine_id}")
    async def dispense_logs(machine_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        return await api.get_dispense_logs(machine_id, limit, offset)

    @app.get("/dispense/status/{order_id}")
    async def dispense_status(order_id: str) -> dict[str, Any]:
        return await api.get_dispense_status(order_id)

    # Stock

    @app.get("/stock/logs/{machine_id}")
    async def stock_logs(
        machine_id: str,
        change_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        return await api.get_stock_logs(machine_id, change_type, limit, offset)

    @app.post("/stock/update")
    async def update_stock(req: StockUpdateRequest) -> dict[str, Any]:
        return await api.update_stock(
            req.slot_id, req.quantity, req.change_type, req.reason, req.performed_by
        )

    @app.post("/stock/report/{machine_id}")
    async def report_stock(machine_id: str) -> dict[str, Any]:
        return await api.report_stock(machine_id)

    @app.get("/stock/{machine_id}")
    async def get_stock(machine_id: str) -> dict[str, Any]:
        return await api.get_stock(machine_id)

    # Machines / health

    @app.get("/machines/{machine_id}")
    async def get_machine(machine_id: str) -> dict[str, Any]:
        return await api.get_machine(machine_id)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return await api.health()

    return app
