"""SQLAlchemy models."""

from app.models.restaurant import Restaurant
from app.models.order import Order, OrderStatus, TERMINAL_STATUSES
from app.models.printer import (
    ConnectionType,
    Printer,
    PrinterStatus,
    PrinterType,
    PrintJob,
    PrintJobStatus,
    PrintType,
)

__all__ = [
    "Restaurant",
    "Order",
    "OrderStatus",
    "TERMINAL_STATUSES",
    "Printer",
    "PrinterType",
    "ConnectionType",
    "PrinterStatus",
    "PrintJob",
    "PrintJobStatus",
    "PrintType",
]
