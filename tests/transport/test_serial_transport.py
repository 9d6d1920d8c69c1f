"""Tests for the pyserial transport and port provider."""

import threading
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import pytest
import serial

from core.entities.chip import UsbHint
from infrastructure.serial_transport import SerialPortProvider, SerialTransport
from modules.timecast_flash.errors import DeviceLostError, FlashError, PortBusyError


def port_info(device, vid=None, pid=None, description="n/a"):
    return SimpleNamespace(device=device, vid=vid, pid=pid, description=description)


class TestSerialTransport:

    def setup_method(self):
        self.port = MagicMock()
        self.port.is_open = True
        self.port.in_waiting = 0

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.Serial')
    async def test_open(self, mock_serial):
        mock_serial.return_value = self.port
        transport = SerialTransport("/dev/ttyUSB0")

        await transport.open(115200)

        mock_serial.assert_called_once_with(port="/dev/ttyUSB0", baudrate=115200, timeout=0, write_timeout=1.0)
        assert transport.is_open

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.Serial')
    async def test_open_busy_port(self, mock_serial):
        mock_serial.side_effect = serial.SerialException(
            "[Errno 16] could not open port /dev/ttyUSB0: [Errno 16] Device or resource busy"
        )
        transport = SerialTransport("/dev/ttyUSB0")

        with pytest.raises(PortBusyError):
            await transport.open(115200)
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        await transport.close()
        await transport.close()

        self.port.close.assert_called_once()
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_write_flushes(self):
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        await transport.write(b"\xc0\x00\xc0")

        self.port.write.assert_called_once_with(b"\xc0\x00\xc0")
        self.port.flush.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_runs_off_event_loop(self):
        loop_thread = threading.get_ident()
        writer_threads = []
        self.port.write.side_effect = lambda data: writer_threads.append(threading.get_ident())
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        await transport.write(b"\xc0")

        assert writer_threads and writer_threads[0] != loop_thread

    @pytest.mark.asyncio
    async def test_write_timeout_is_mapped(self):
        self.port.write.side_effect = serial.SerialTimeoutException("Write timeout")
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        with pytest.raises(FlashError):
            await transport.write(b"\xc0")

    @pytest.mark.asyncio
    async def test_read_returns_waiting_bytes(self):
        self.port.in_waiting = 3
        self.port.read.return_value = b"abc"
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        assert await transport.read(0.1) == b"abc"
        self.port.read.assert_called_once_with(3)

    @pytest.mark.asyncio
    async def test_read_times_out_empty(self):
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        assert await transport.read(0.02) == b""
        self.port.read.assert_not_called()

    @pytest.mark.asyncio
    async def test_zero_timeout_read_checks_once(self):
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        assert await transport.read(0) == b""

    @pytest.mark.asyncio
    async def test_read_on_unplugged_device(self):
        type(self.port).in_waiting = PropertyMock(side_effect=OSError(5, "Input/output error"))
        transport = SerialTransport("/dev/ttyACM0")
        transport._serial = self.port

        with pytest.raises(DeviceLostError):
            await transport.read(0.1)

    @pytest.mark.asyncio
    async def test_control_lines(self):
        transport = SerialTransport("/dev/ttyUSB0")
        transport._serial = self.port

        await transport.set_control_lines(dtr=False, rts=True)

        assert self.port.dtr is False
        assert self.port.rts is True

    @pytest.mark.asyncio
    async def test_requires_open_port(self):
        transport = SerialTransport("/dev/ttyUSB0")

        with pytest.raises(serial.PortNotOpenError):
            await transport.write(b"x")

    def test_from_port_info(self):
        transport = SerialTransport.from_port_info(port_info("/dev/ttyACM0", 0x303A, 0x0002, "ESP32-S2"))

        assert transport.device == "/dev/ttyACM0"
        assert transport.get_descriptor() == UsbHint(0x303A, 0x0002)
        assert transport.description == "ESP32-S2"

    def test_from_port_info_without_usb(self):
        transport = SerialTransport.from_port_info(port_info("/dev/ttyS0"))
        assert transport.get_descriptor() is None


class TestSerialPortProvider:

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_explicit_device(self, mock_comports):
        mock_comports.return_value = [port_info("/dev/ttyUSB0", 0x10C4, 0xEA60)]
        provider = SerialPortProvider(device="/dev/ttyUSB0")

        transport = await provider.request_port()

        assert transport.device == "/dev/ttyUSB0"
        assert transport.get_descriptor() == UsbHint(0x10C4, 0xEA60)

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_explicit_device_not_listed(self, mock_comports):
        mock_comports.return_value = []
        provider = SerialPortProvider(device="/dev/ttyUSB9")

        transport = await provider.request_port()

        assert transport.device == "/dev/ttyUSB9"
        assert transport.get_descriptor() is None

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_chooser_receives_candidates(self, mock_comports):
        mock_comports.return_value = [port_info("/dev/ttyS0"), port_info("/dev/ttyACM0", 0x303A, 0x1001)]
        chooser = AsyncMock(side_effect=lambda candidates: candidates[1])
        provider = SerialPortProvider(chooser=chooser)

        transport = await provider.request_port()

        assert transport.device == "/dev/ttyACM0"
        assert len(chooser.await_args.args[0]) == 2

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_declined_chooser(self, mock_comports):
        mock_comports.return_value = [port_info("/dev/ttyS0")]
        provider = SerialPortProvider(chooser=AsyncMock(return_value=None))

        assert await provider.request_port() is None

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_no_chooser_no_device(self, mock_comports):
        mock_comports.return_value = [port_info("/dev/ttyS0")]
        assert await SerialPortProvider().request_port() is None

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_find_port_by_vendor(self, mock_comports):
        mock_comports.return_value = [
            port_info("/dev/ttyUSB0", 0x10C4, 0xEA60),
            port_info("/dev/ttyACM1", 0x303A, 0x0002),
        ]
        chooser = AsyncMock()
        provider = SerialPortProvider(chooser=chooser)

        transport = await provider.find_port(0x303A)

        assert transport.device == "/dev/ttyACM1"
        chooser.assert_not_awaited()

    @pytest.mark.asyncio
    @patch('infrastructure.serial_transport.serial.tools.list_ports.comports')
    async def test_find_port_falls_back_to_chooser(self, mock_comports):
        mock_comports.return_value = [port_info("/dev/ttyUSB0", 0x10C4, 0xEA60)]
        chooser = AsyncMock(return_value=None)
        provider = SerialPortProvider(chooser=chooser)

        assert await provider.find_port(0x303A) is None
        chooser.assert_awaited_once()
