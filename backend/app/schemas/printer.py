"""Printer and print queue schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from app.models.printer import (
    ConnectionType, PrinterStatus, PrinterType, PrintJobStatus, PrintType,
)


class PrinterCreate(BaseModel):
    """Printer configuration.

    Fields are loosely typed; the registry validates them and reports every
    violation at once.
    """

    name: Optional[str] = None
    type: Optional[str] = None
    connection_type: Optional[str] = None
    ip_address: Optional[str] = None
    port: Optional[int] = None
    usb_device: Optional[str] = None
    bluetooth_address: Optional[str] = None
    auto_print_orders: bool = False
    enabled: bool = True


class PrinterUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    connection_type: Optional[str] = None
    ip_address: Optional[str] = None
    port: Optional[int] = None
    usb_device: Optional[str] = None
    bluetooth_address: Optional[str] = None
    auto_print_orders: Optional[bool] = None
    enabled: Optional[bool] = None


class PrinterResponse(BaseModel):
    id: int
    restaurant_id: int
    name: str
    type: PrinterType
    connection_type: ConnectionType
    ip_address: Optional[str] = None
    port: Optional[int] = None
    usb_device: Optional[str] = None
    bluetooth_address: Optional[str] = None
    auto_print_orders: bool
    enabled: bool
    status: PrinterStatus
    last_checked: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    timestamp: datetime


class PrintOrderRequest(BaseModel):
    printer_id: int
    print_type: PrintType


class PrintJobResponse(BaseModel):
    id: int
    restaurant_id: int
    order_id: int
    printer_id: int
    print_type: PrintType
    status: PrintJobStatus
    attempts: int
    max_attempts: int
    not_before: Optional[datetime] = None
    cancel_requested: bool
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PurgeResponse(BaseModel):
    deleted: int
