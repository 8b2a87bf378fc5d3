"""Printer transports: network (TCP/IP), USB and Bluetooth.

A printer's connection fields are turned into one connection variant, and
each variant has a transport able to ``send`` a payload and ``probe``
reachability. Every failure surfaces as ``TransportError``; every operation is
bounded by a timeout.
"""

import asyncio
import logging
import os
import socket
from dataclasses import dataclass
from typing import Optional, Union

from app.core.config import settings
from app.core.exceptions import TransportError
from app.models.printer import ConnectionType, Printer

logger = logging.getLogger(__name__)


# ============================================================================
# Connection variants
# ============================================================================

@dataclass(frozen=True)
class NetworkConnection:
    host: str
    port: int


@dataclass(frozen=True)
class UsbConnection:
    device: str


@dataclass(frozen=True)
class BluetoothConnection:
    """RFCOMM peer address; None means the OS-paired serial device."""
    address: Optional[str] = None


PrinterConnection = Union[NetworkConnection, UsbConnection, BluetoothConnection]


def connection_for(printer: Printer) -> PrinterConnection:
    """Build the connection variant for a stored printer."""
    if printer.connection_type == ConnectionType.NETWORK:
        if not printer.ip_address or not printer.port:
            raise TransportError(f"Printer {printer.id} has no IP address or port")
        return NetworkConnection(host=printer.ip_address, port=printer.port)
    if printer.connection_type == ConnectionType.USB:
        if not printer.usb_device:
            raise TransportError(f"Printer {printer.id} has no USB device path")
        return UsbConnection(device=printer.usb_device)
    if printer.connection_type == ConnectionType.BLUETOOTH:
        return BluetoothConnection(address=printer.bluetooth_address or None)
    raise TransportError(f"Unsupported connection type: {printer.connection_type}")


# ============================================================================
# Transports
# ============================================================================

class PrinterTransport:
    """Sends raw bytes to a printer."""

    async def send(self, data: bytes, timeout: float) -> None:
        raise NotImplementedError

    async def probe(self, timeout: float) -> str:
        """Check reachability; returns a human readable success message."""
        raise NotImplementedError


class NetworkTransport(PrinterTransport):
    """Raw TCP, usually port 9100 (JetDirect)."""

    def __init__(self, connection: NetworkConnection):
        self.host = connection.host
        self.port = connection.port

    async def _open(self, timeout: float):
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Connection to {self.host}:{self.port} timed out after {timeout:g}s")
        except OSError as e:
            raise TransportError(f"Cannot connect to {self.host}:{self.port}: {e}")

    async def _close(self, writer) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing printer connection {self.host}:{self.port}: {e}")

    async def send(self, data: bytes, timeout: float) -> None:
        _, writer = await self._open(timeout)
        try:
            writer.write(data)
            await asyncio.wait_for(writer.drain(), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Sending to {self.host}:{self.port} timed out after {timeout:g}s")
        except OSError as e:
            raise TransportError(f"Failed to send data to {self.host}:{self.port}: {e}")
        finally:
            await self._close(writer)

    async def probe(self, timeout: float) -> str:
        _, writer = await self._open(timeout)
        await self._close(writer)
        return f"Connected to {self.host}:{self.port}"


class DeviceFileTransport(PrinterTransport):
    """Writes to a character device: USB printers and paired Bluetooth serial links."""

    def __init__(self, device: str, label: str = "USB device"):
        self.device = device
        self.label = label

    def _write(self, data: bytes) -> None:
        with open(self.device, "wb", buffering=0) as fh:
            fh.write(data)

    async def send(self, data: bytes, timeout: float) -> None:
        try:
            await asyncio.wait_for(asyncio.to_thread(self._write, data), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Writing to {self.label} {self.device} timed out after {timeout:g}s")
        except OSError as e:
            raise TransportError(f"Failed to write to {self.label} {self.device}: {e}")

    async def probe(self, timeout: float) -> str:
        if not os.path.exists(self.device):
            raise TransportError(f"{self.label} {self.device} not found")
        if not os.access(self.device, os.W_OK):
            raise TransportError(f"{self.label} {self.device} is not writable")
        return f"{self.label} {self.device} is available"


class RfcommTransport(PrinterTransport):
    """Bluetooth RFCOMM socket to a printer address."""

    def __init__(self, address: str, channel: int):
        self.address = address
        self.channel = channel

    def _connect(self, timeout: float) -> socket.socket:
        if not hasattr(socket, "AF_BLUETOOTH"):
            raise TransportError("Bluetooth sockets are not supported on this host")
        sock = socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
        sock.settimeout(timeout)
        try:
            sock.connect((self.address, self.channel))
        except OSError:
            sock.close()
            raise
        return sock

    def _send_blocking(self, data: bytes, timeout: float) -> None:
        sock = self._connect(timeout)
        try:
            sock.sendall(data)
        finally:
            sock.close()

    def _probe_blocking(self, timeout: float) -> None:
        self._connect(timeout).close()

    async def _run(self, func, *args, timeout: float) -> None:
        try:
            await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Bluetooth printer {self.address} timed out after {timeout:g}s")
        except OSError as e:
            raise TransportError(f"Bluetooth printer {self.address} unreachable: {e}")

    async def send(self, data: bytes, timeout: float) -> None:
        await self._run(self._send_blocking, data, timeout, timeout=timeout)

    async def probe(self, timeout: float) -> str:
        await self._run(self._probe_blocking, timeout, timeout=timeout)
        return f"Connected to Bluetooth printer {self.address}"


def transport_for(connection: PrinterConnection) -> PrinterTransport:
    if isinstance(connection, NetworkConnection):
        return NetworkTransport(connection)
    if isinstance(connection, UsbConnection):
        return DeviceFileTransport(connection.device, label="USB device")
    if isinstance(connection, BluetoothConnection):
        if connection.address:
            return RfcommTransport(connection.address, settings.bluetooth_rfcomm_channel)
        return DeviceFileTransport(settings.bluetooth_default_device, label="Bluetooth device")
    raise TransportError(f"Unsupported connection: {connection!r}")


def transport_for_printer(printer: Printer) -> PrinterTransport:
    return transport_for(connection_for(printer))
