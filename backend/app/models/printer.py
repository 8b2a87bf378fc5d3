"""Printer and print job models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.clock import utcnow
from app.db.base import Base, TimestampMixin
from app.models.validators import in_range


class PrinterType(str, Enum):
    KITCHEN = "kitchen"
    RECEIPT = "receipt"
    LABEL = "label"


class ConnectionType(str, Enum):
    NETWORK = "network"
    USB = "usb"
    BLUETOOTH = "bluetooth"


class PrinterStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"
    UNKNOWN = "unknown"


class PrintType(str, Enum):
    KITCHEN_TICKET = "kitchen_ticket"
    RECEIPT = "receipt"
    LABEL = "label"


class PrintJobStatus(str, Enum):
    QUEUED = "queued"
    PRINTING = "printing"
    COMPLETED = "completed"
    FAILED = "failed"


class Printer(Base, TimestampMixin):
    """A configured printer of a restaurant.

    Only the connection fields of ``connection_type`` are populated; the
    others are kept null.
    """

    __tablename__ = "printers"
    # Ids are never reused: print jobs keep a printer_id after the printer is deleted
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[PrinterType] = mapped_column(SQLEnum(PrinterType), nullable=False)
    connection_type: Mapped[ConnectionType] = mapped_column(SQLEnum(ConnectionType), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    usb_device: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bluetooth_address: Mapped[Optional[str]] = mapped_column(String(17), nullable=True)
    auto_print_orders: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[PrinterStatus] = mapped_column(
        SQLEnum(PrinterStatus), default=PrinterStatus.UNKNOWN, nullable=False
    )
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @validates("port")
    def _validate_port(self, key, value):
        return in_range(key, value, 1, 65535)


class PrintJob(Base):
    """One attempt-tracked delivery of an order document to a printer.

    ``printer_id`` is not a foreign key: jobs outlive the printers they were
    addressed to.
    """

    __tablename__ = "print_jobs"
    __table_args__ = (
        Index("ix_print_jobs_printer_status", "printer_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    printer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    print_type: Mapped[PrintType] = mapped_column(SQLEnum(PrintType), nullable=False)
    status: Mapped[PrintJobStatus] = mapped_column(
        SQLEnum(PrintJobStatus), default=PrintJobStatus.QUEUED, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    not_before: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PrintJob {self.id} order={self.order_id} printer={self.printer_id} "
            f"{self.status.value} attempts={self.attempts}/{self.max_attempts}>"
        )
