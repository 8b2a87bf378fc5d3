# Services module

from app.services.order_events import OrderEvents, OrderStatusChanged
from app.services.order_status_service import (
    BulkStatusResult,
    GuestContact,
    OrderStatusMachine,
)
from app.services.order_service import OrderService
from app.services.print_queue_service import PrintJobQueue
from app.services.printer_registry_service import ConnectionTestResult, PrinterRegistry
from app.services.print_dispatcher_service import PrintDispatcher
from app.services.fulfillment_service import FulfillmentCoordinator, build_order_events

__all__ = [
    "OrderEvents",
    "OrderStatusChanged",
    "OrderStatusMachine",
    "BulkStatusResult",
    "GuestContact",
    "OrderService",
    "PrintJobQueue",
    "PrinterRegistry",
    "ConnectionTestResult",
    "PrintDispatcher",
    "FulfillmentCoordinator",
    "build_order_events",
]
