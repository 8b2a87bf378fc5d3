"""Printer registry: configuration, validation and reachability of printers."""

import asyncio
import ipaddress
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.config import settings
from app.core.exceptions import NotFound, TransportError, ValidationError
from app.models.printer import ConnectionType, Printer, PrinterStatus, PrinterType
from app.models.restaurant import Restaurant
from app.services.print_queue_service import PRINTER_REMOVED, PrintJobQueue
from app.services.printer_transport import PrinterTransport, transport_for_printer

logger = logging.getLogger(__name__)

CONNECTION_FIELDS = {
    ConnectionType.NETWORK: ("ip_address", "port"),
    ConnectionType.USB: ("usb_device",),
    ConnectionType.BLUETOOTH: ("bluetooth_address",),
}
ALL_CONNECTION_FIELDS = ("ip_address", "port", "usb_device", "bluetooth_address")
CONFIG_FIELDS = ("name", "type", "connection_type", *ALL_CONNECTION_FIELDS, "auto_print_orders", "enabled")

BLUETOOTH_ADDRESS = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    timestamp: datetime


def validate_printer_config(config: Dict[str, Any]) -> List[str]:
    """Return every violation in a printer configuration (empty when valid)."""
    errors: List[str] = []

    name = config.get("name")
    if not name or not str(name).strip():
        errors.append("Name is required")

    printer_type = config.get("type")
    if not printer_type:
        errors.append("Type is required")
    elif printer_type not in {t.value for t in PrinterType}:
        errors.append(f"Type must be one of: {', '.join(t.value for t in PrinterType)}")

    connection_type = config.get("connection_type")
    if not connection_type:
        errors.append("Connection type is required")
    elif connection_type not in {c.value for c in ConnectionType}:
        errors.append(
            f"Connection type must be one of: {', '.join(c.value for c in ConnectionType)}"
        )

    if connection_type == ConnectionType.NETWORK.value:
        ip_address = config.get("ip_address")
        if not ip_address:
            errors.append("IP address is required for network printers")
        else:
            try:
                ipaddress.ip_address(str(ip_address))
            except ValueError:
                errors.append(f"IP address {ip_address} is not valid")

        port = config.get("port")
        if port is None:
            errors.append("A port is required for network printers")
        elif not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
            errors.append("Network port must be between 1 and 65535")

    elif connection_type == ConnectionType.USB.value:
        if not config.get("usb_device"):
            errors.append("USB device path is required for USB printers")

    elif connection_type == ConnectionType.BLUETOOTH.value:
        address = config.get("bluetooth_address")
        if address and not BLUETOOTH_ADDRESS.match(str(address)):
            errors.append(f"Bluetooth address {address} must look like AA:BB:CC:DD:EE:FF")

    return errors


def _normalized(config: Dict[str, Any]) -> Dict[str, Any]:
    """Enum values as plain strings so configs from the API and the ORM compare alike."""
    return {
        key: (value.value if hasattr(value, "value") else value)
        for key, value in config.items()
    }


class PrinterRegistry:
    """CRUD and connection tests for a restaurant's printers."""

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        notifier: Optional[Callable[[int], None]] = None,
        transport_factory: Callable[[Printer], PrinterTransport] = transport_for_printer,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.transport_factory = transport_factory

    def _notify(self, printer_id: int) -> None:
        if self.notifier is not None:
            self.notifier(printer_id)

    def _get_restaurant(self, restaurant_id: int) -> Restaurant:
        restaurant = self.db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFound(f"Restaurant {restaurant_id} not found")
        return restaurant

    def _apply(self, printer: Printer, config: Dict[str, Any]) -> None:
        connection_type = ConnectionType(config["connection_type"])
        printer.name = str(config["name"]).strip()
        printer.type = PrinterType(config["type"])
        printer.connection_type = connection_type
        relevant = CONNECTION_FIELDS[connection_type]
        for field_name in ALL_CONNECTION_FIELDS:
            setattr(printer, field_name, config.get(field_name) if field_name in relevant else None)
        printer.auto_print_orders = bool(config.get("auto_print_orders", False))
        printer.enabled = bool(config.get("enabled", True))

    def get(self, restaurant_id: int, printer_id: int) -> Printer:
        printer = self.db.get(Printer, printer_id)
        if printer is None or printer.restaurant_id != restaurant_id:
            raise NotFound(f"Printer {printer_id} not found")
        return printer

    def list(self, restaurant_id: int, enabled_only: bool = False) -> List[Printer]:
        self._get_restaurant(restaurant_id)
        query = self.db.query(Printer).filter(Printer.restaurant_id == restaurant_id)
        if enabled_only:
            query = query.filter(Printer.enabled.is_(True))
        return query.order_by(Printer.name, Printer.id).all()

    def create(self, restaurant_id: int, config: Dict[str, Any]) -> Printer:
        self._get_restaurant(restaurant_id)
        config = _normalized(config)
        errors = validate_printer_config(config)
        if errors:
            raise ValidationError(errors)

        printer = Printer(restaurant_id=restaurant_id, status=PrinterStatus.UNKNOWN)
        self._apply(printer, config)
        self.db.add(printer)
        self.db.commit()
        self.db.refresh(printer)

        logger.info(f"Printer {printer.id} ({printer.name}) added to restaurant {restaurant_id}")
        self._notify(printer.id)
        return printer

    def update(self, restaurant_id: int, printer_id: int, partial: Dict[str, Any]) -> Printer:
        """Merge the supplied fields into the stored config and re-validate it.

        A field given as ``None`` keeps its stored value.
        """
        printer = self.get(restaurant_id, printer_id)
        merged = _normalized({name: getattr(printer, name) for name in CONFIG_FIELDS})
        supplied = {k: v for k, v in partial.items() if k in CONFIG_FIELDS and v is not None}
        merged.update(_normalized(supplied))

        errors = validate_printer_config(merged)
        if errors:
            raise ValidationError(errors)

        self._apply(printer, merged)
        self.db.commit()
        self.db.refresh(printer)

        logger.info(f"Printer {printer_id} updated")
        self._notify(printer.id)
        return printer

    def delete(self, restaurant_id: int, printer_id: int) -> int:
        """Delete a printer, failing its queued jobs. Returns how many were failed."""
        printer = self.get(restaurant_id, printer_id)
        failed = PrintJobQueue(self.db, clock=self.clock).fail_queued_for_printer(
            printer_id, PRINTER_REMOVED
        )
        self.db.delete(printer)
        self.db.commit()

        logger.info(f"Printer {printer_id} deleted; {failed} queued job(s) failed")
        self._notify(printer_id)
        return failed

    def _record_probe(self, printer: Printer, success: bool) -> datetime:
        now = self.clock.now()
        printer.status = PrinterStatus.ONLINE if success else PrinterStatus.ERROR
        printer.last_checked = now
        self.db.commit()
        return now

    async def test_connection(self, restaurant_id: int, printer_id: int) -> ConnectionTestResult:
        """Probe the printer and record the outcome. Probe failures never raise.

        Session work runs in a worker thread, off the event loop.
        """
        printer = await asyncio.to_thread(self.get, restaurant_id, printer_id)
        try:
            transport = self.transport_factory(printer)
            message = await transport.probe(settings.printer_test_timeout_seconds)
            success = True
        except TransportError as e:
            message = e.message
            success = False

        now = await asyncio.to_thread(self._record_probe, printer, success)

        log = logger.info if success else logger.warning
        log(f"Connection test for printer {printer_id}: {message}")
        return ConnectionTestResult(success=success, message=message, timestamp=now)
