"""Fulfillment coordinator: turns order events into print jobs."""

import logging
from typing import Callable, List, Optional, Union

from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import OrderDeskError
from app.models.order import OrderStatus
from app.models.printer import Printer, PrinterType, PrintJob, PrintType
from app.services.order_events import OrderEvents, OrderStatusChanged
from app.services.print_dispatcher_service import notify_printer
from app.services.print_queue_service import PrintJobQueue

logger = logging.getLogger(__name__)


PRINT_TYPE_FOR_PRINTER = {
    PrinterType.KITCHEN: PrintType.KITCHEN_TICKET,
    PrinterType.RECEIPT: PrintType.RECEIPT,
    PrinterType.LABEL: PrintType.LABEL,
}


def print_type_for(printer_type: PrinterType) -> PrintType:
    return PRINT_TYPE_FOR_PRINTER[printer_type]


class FulfillmentCoordinator:
    """Listens to order status changes and queues the matching print jobs."""

    def __init__(self, db: Session, queue: Optional[PrintJobQueue] = None, clock: Clock = system_clock):
        self.db = db
        self.queue = queue or PrintJobQueue(db, clock=clock)

    def handle_status_changed(self, event: OrderStatusChanged) -> None:
        if event.new_status == OrderStatus.RECEIVED:
            self.auto_print(event.order_id, event.restaurant_id)
        elif event.new_status == OrderStatus.CANCELLED:
            self.queue.cancel_for_order(event.order_id)

    def auto_print(self, order_id: int, restaurant_id: int) -> List[PrintJob]:
        """Queue one job per enabled auto-print printer of the restaurant.

        A printer that cannot take the job is logged and skipped.
        """
        printers = (
            self.db.query(Printer)
            .filter(
                Printer.restaurant_id == restaurant_id,
                Printer.enabled.is_(True),
                Printer.auto_print_orders.is_(True),
            )
            .order_by(Printer.id)
            .all()
        )
        printer_ids = [(printer.id, printer.type) for printer in printers]

        jobs = []
        for printer_id, printer_type in printer_ids:
            try:
                jobs.append(self.queue.enqueue(order_id, printer_id, print_type_for(printer_type)))
            except OrderDeskError as e:
                self.db.rollback()
                logger.warning(f"Skipped auto-print of order {order_id} on printer {printer_id}: {e.message}")

        if jobs:
            logger.info(f"Auto-print queued {len(jobs)} job(s) for order {order_id}")
        return jobs

    def print_order(self, order_id: int, printer_id: int, print_type: Union[PrintType, str]) -> PrintJob:
        """Explicit print request for one order on one printer."""
        return self.queue.enqueue(order_id, printer_id, print_type)


def build_order_events(db: Session, notifier: Optional[Callable[[int], None]] = notify_printer) -> OrderEvents:
    """Order events for a request, with the fulfillment coordinator subscribed."""
    events = OrderEvents()
    coordinator = FulfillmentCoordinator(db, PrintJobQueue(db, notifier=notifier))
    events.subscribe(coordinator.handle_status_changed)
    return events
