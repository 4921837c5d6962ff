"""
Application layer - Application services and use cases.

Contains:
- Order, payment, dispense and stock services
- Machine service
- API facade and command handler
"""

from .stock_ledger import StockLedger
from .order_ledger import OrderLedger
from .payment_reconciler import PaymentReconciler
from .dispense_coordinator import DispenseCoordinator
from .machine_service import MachineService
from .api_facade import VendingFacade
from .command_handler import CommandHandler, CommandResponse


__all__ = [
    "StockLedger",
    "OrderLedger",
    "PaymentReconciler",
    "DispenseCoordinator",
    "MachineService",
    "VendingFacade",
    "CommandHandler",
    "CommandResponse",
]
