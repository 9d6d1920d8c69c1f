"""pyserial-backed transport and port discovery."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

import serial
import serial.tools.list_ports

from adapters.interfaces.services import PortProvider, Transport
from core.entities.chip import UsbHint
from modules.timecast_flash.errors import map_transport_error


logger = logging.getLogger(__name__)


class SerialTransport(Transport):
    """Transport over a local serial port.

    Reads poll the OS input buffer until data shows up or the deadline
    passes, so a timed-out read never leaves a pending read behind.
    """

    POLL_INTERVAL = 0.005

    def __init__(self, device: str, usb_hint: Optional[UsbHint] = None, description: str = ""):
        self._device = device
        self._usb_hint = usb_hint
        self.description = description
        self._serial: Optional[serial.Serial] = None

    @classmethod
    def from_port_info(cls, port) -> "SerialTransport":
        """Build a transport from a serial.tools.list_ports ComPort entry."""
        hint = None
        if getattr(port, "vid", None) is not None:
            hint = UsbHint(port.vid, port.pid)
        return cls(port.device, hint, port.description or "")

    @property
    def device(self) -> str:
        return self._device

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def get_descriptor(self) -> Optional[UsbHint]:
        return self._usb_hint

    async def open(self, baud_rate: int) -> None:
        if self.is_open:
            return
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port=self._device,
                baudrate=baud_rate,
                timeout=0,
                write_timeout=1.0,
            )
        except (serial.SerialException, OSError) as e:
            self._serial = None
            raise map_transport_error(e, self._device, "apertura del puerto") from e
        logger.debug(f"Opened {self._device} at {baud_rate} baud")

    async def close(self) -> None:
        port, self._serial = self._serial, None
        if port is not None and port.is_open:
            await asyncio.to_thread(port.close)
            logger.debug(f"Closed {self._device}")

    async def write(self, data: bytes) -> None:
        port = self._require_open()
        try:
            await asyncio.to_thread(self._write_sync, port, data)
        except (serial.SerialException, OSError) as e:
            raise map_transport_error(e, self._device, "escritura") from e

    async def read(self, timeout: float) -> bytes:
        port = self._require_open()
        deadline = time.monotonic() + timeout
        try:
            while True:
                waiting = port.in_waiting
                if waiting:
                    return port.read(waiting)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                await asyncio.sleep(min(self.POLL_INTERVAL, remaining))
        except (serial.SerialException, OSError) as e:
            raise map_transport_error(e, self._device, "lectura") from e

    async def set_control_lines(self, dtr: bool, rts: bool) -> None:
        port = self._require_open()
        try:
            port.dtr = dtr
            port.rts = rts
        except (serial.SerialException, OSError) as e:
            raise map_transport_error(e, self._device, "señales DTR/RTS") from e

    @staticmethod
    def _write_sync(port: serial.Serial, data: bytes) -> None:
        port.write(data)
        port.flush()

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise serial.PortNotOpenError()
        return self._serial

    def __repr__(self) -> str:
        return f"SerialTransport({self._device!r}, {self._usb_hint})"


PortChooser = Callable[[List[SerialTransport]], Awaitable[Optional[SerialTransport]]]


class SerialPortProvider(PortProvider):
    """Grants serial transports to install sessions.

    ``chooser`` plays the role of the user-facing port picker: it receives
    the candidate ports and returns one, or None when the user declines.
    Without a chooser the explicit ``device`` is used.
    """

    def __init__(self, chooser: Optional[PortChooser] = None, device: Optional[str] = None):
        self._chooser = chooser
        self._device = device

    def scan_ports(self) -> List[SerialTransport]:
        """List serial ports as transports."""
        ports = serial.tools.list_ports.comports()
        transports = [SerialTransport.from_port_info(port) for port in ports]
        logger.info(f"Found {len(transports)} serial ports")
        return transports

    async def request_port(self) -> Optional[SerialTransport]:
        candidates = self.scan_ports()

        if self._device is not None:
            for transport in candidates:
                if transport.device == self._device:
                    return transport
            return SerialTransport(self._device)

        if self._chooser is None:
            logger.warning("No port chooser configured and no device given")
            return None
        return await self._chooser(candidates)

    async def find_port(self, vendor_id: int) -> Optional[SerialTransport]:
        logger.info(f"Looking for a port with USB vendor 0x{vendor_id:04X}…")
        for transport in self.scan_ports():
            hint = transport.get_descriptor()
            if hint is not None and hint.vendor_id == vendor_id:
                logger.info(f"Port found: {transport.device}")
                return transport

        # fallback: ask the user to pick the port again
        return await self.request_port()
