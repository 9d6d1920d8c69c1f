"""Tests for the esptool-backed flash loader."""

from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
import serial
from esptool.loader import ESPLoader
from esptool.util import FatalError

from adapters.interfaces.services import ConnectMode, ResetPolicy
from core.entities.firmware import FlashImage
from infrastructure.esptool_adapter import ESPToolLoader, ProgressLogger, esptool_loader_factory
from modules.timecast_flash.errors import DeviceLostError, FatalFlashError, FlashError, PortBusyError


def make_transport(device="/dev/ttyUSB0"):
    transport = Mock()
    transport.device = device
    transport.close = AsyncMock()
    return transport


class TestProgressLogger:

    def teardown_method(self):
        ProgressLogger.progress_sink = None

    def test_progress_bar_feeds_sink(self):
        sink = Mock()
        ProgressLogger.progress_sink = sink

        ProgressLogger().progress_bar(5, 20)

        sink.assert_called_once_with(0.25)

    def test_progress_bar_ignores_zero_total(self):
        sink = Mock()
        ProgressLogger.progress_sink = sink

        ProgressLogger().progress_bar(0, 0)

        sink.assert_not_called()

    def test_progress_bar_without_sink(self):
        ProgressLogger().progress_bar(1, 2)


@patch('infrastructure.esptool_adapter.serial.serial_for_url')
@patch('infrastructure.esptool_adapter.esptool_log')
class TestESPToolLoader:
    """ESPToolLoader with the esptool commands patched out."""

    def setup_method(self):
        self.esp = MagicMock()
        self.esp.CHIP_NAME = "ESP32"
        self.transport = make_transport()
        self.sink = Mock()

    def teardown_method(self):
        ProgressLogger.progress_sink = None

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.attach_flash')
    @patch('infrastructure.esptool_adapter.run_stub')
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_connect(self, mock_detect, mock_run_stub, mock_attach, mock_log, mock_serial_for_url):
        mock_detect.return_value = self.esp
        mock_run_stub.return_value = self.esp
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)

        chip = await loader.connect(ConnectMode.DEFAULT_RESET)

        assert chip == "ESP32"
        self.transport.close.assert_awaited_once()
        port = mock_serial_for_url.return_value
        mock_serial_for_url.assert_called_once_with("/dev/ttyUSB0", exclusive=True, do_not_open=True)
        port.open.assert_called_once()
        mock_detect.assert_called_once_with(port, 115200, "default-reset")
        mock_run_stub.assert_called_once_with(self.esp)
        self.esp.change_baud.assert_called_once_with(460800)
        mock_attach.assert_called_once_with(self.esp)
        mock_log.set_logger.assert_called_once()
        assert ProgressLogger.progress_sink is self.sink

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.attach_flash')
    @patch('infrastructure.esptool_adapter.run_stub')
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_no_reset_policy_wins(self, mock_detect, mock_run_stub, mock_attach, mock_log, mock_serial_for_url):
        mock_detect.return_value = self.esp
        mock_run_stub.return_value = self.esp
        loader = ESPToolLoader(self.transport, 115200, ResetPolicy(no_reset=True), self.sink)

        await loader.connect(ConnectMode.DEFAULT_RESET)

        mock_detect.assert_called_once_with(mock_serial_for_url.return_value, 115200, "no-reset")
        self.esp.change_baud.assert_not_called()

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.attach_flash')
    @patch('infrastructure.esptool_adapter.run_stub')
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_usb_reset_policy(self, mock_detect, mock_run_stub, mock_attach, mock_log, mock_serial_for_url):
        mock_detect.return_value = self.esp
        mock_run_stub.return_value = self.esp
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(usb_reset=True), self.sink)

        await loader.connect(ConnectMode.DEFAULT_RESET)

        assert mock_detect.call_args.args[2] == "usb-reset"

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_connect_busy_port(self, mock_detect, mock_log, mock_serial_for_url):
        mock_serial_for_url.return_value.open.side_effect = serial.SerialException(
            "could not open port /dev/ttyUSB0: [Errno 13] Permission denied"
        )
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)

        with pytest.raises(PortBusyError):
            await loader.connect(ConnectMode.DEFAULT_RESET)
        mock_detect.assert_not_called()

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_connect_failure_is_fatal(self, mock_detect, mock_log, mock_serial_for_url):
        mock_detect.side_effect = RuntimeError("Failed to connect to ESP32: No serial data received.")
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)

        with pytest.raises(FatalFlashError):
            await loader.connect(ConnectMode.DEFAULT_RESET)
        mock_serial_for_url.return_value.close.assert_called_once()
        assert loader._esp is None

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.attach_flash')
    @patch('infrastructure.esptool_adapter.run_stub')
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_stub_failure_closes_port(self, mock_detect, mock_run_stub, mock_attach, mock_log, mock_serial_for_url):
        mock_detect.return_value = self.esp
        mock_run_stub.side_effect = OSError(5, "Input/output error")
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)

        with pytest.raises(DeviceLostError):
            await loader.connect(ConnectMode.DEFAULT_RESET)
        mock_serial_for_url.return_value.close.assert_called_once()
        mock_attach.assert_not_called()

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.attach_flash')
    @patch('infrastructure.esptool_adapter.run_stub')
    @patch('infrastructure.esptool_adapter.detect_chip')
    async def test_connected_port_stays_open(self, mock_detect, mock_run_stub, mock_attach, mock_log, mock_serial_for_url):
        mock_detect.return_value = self.esp
        mock_run_stub.return_value = self.esp
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)

        await loader.connect(ConnectMode.DEFAULT_RESET)

        mock_serial_for_url.return_value.close.assert_not_called()

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.write_flash')
    async def test_write_image(self, mock_write_flash, mock_log, mock_serial_for_url):
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)
        loader._esp = self.esp

        await loader.write_image(FlashImage(b"\xe9data", 0x10000, erase_all=False))

        args, kwargs = mock_write_flash.call_args
        assert args[0] is self.esp
        address, stream = args[1][0]
        assert address == 0x10000
        assert stream.read() == b"\xe9data"
        assert kwargs == {"flash_size": "keep", "erase_all": False, "compress": True}

    @pytest.mark.asyncio
    async def test_write_requires_connection(self, mock_log, mock_serial_for_url):
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)

        with pytest.raises(RuntimeError, match="not connected"):
            await loader.write_image(FlashImage(b"x", 0x0, erase_all=True))

    @pytest.mark.asyncio
    @patch('infrastructure.esptool_adapter.reset_chip')
    async def test_hard_reset(self, mock_reset_chip, mock_log, mock_serial_for_url):
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)
        loader._esp = self.esp

        await loader.hard_reset()

        mock_reset_chip.assert_called_once_with(self.esp, "hard-reset")

    @pytest.mark.asyncio
    async def test_disconnect_closes_port_once(self, mock_log, mock_serial_for_url):
        loader = ESPToolLoader(self.transport, 460800, ResetPolicy(), self.sink)
        loader._esp = self.esp

        await loader.disconnect()
        await loader.disconnect()

        self.esp._port.close.assert_called_once()

    def test_factory(self, mock_log, mock_serial_for_url):
        loader = esptool_loader_factory(self.transport, 115200, ResetPolicy(no_reset=True), self.sink)

        assert isinstance(loader, ESPToolLoader)
        assert loader.baud_rate == 115200
        assert loader.progress_sink is self.sink


@patch('infrastructure.esptool_adapter.esptool_log')
class TestESPToolLoaderLoopback:
    """ESPToolLoader against a pyserial loopback port, with the ROM handshake failing."""

    def setup_method(self):
        self.opened = []
        open_port = serial.serial_for_url

        def recording_serial_for_url(*args, **kwargs):
            port = open_port(*args, **kwargs)
            self.opened.append(port)
            return port

        self.serial_for_url = recording_serial_for_url

    def teardown_method(self):
        ProgressLogger.progress_sink = None
        for port in self.opened:
            port.close()

    @pytest.mark.asyncio
    async def test_failed_handshake_releases_port(self, mock_log):
        loader = ESPToolLoader(make_transport("loop://"), 115200, ResetPolicy(no_reset=True), None)

        with patch('infrastructure.esptool_adapter.serial.serial_for_url', self.serial_for_url), \
                patch.object(ESPLoader, "connect", side_effect=FatalError("Failed to connect to ESP32")):
            with pytest.raises(FlashError):
                await loader.connect(ConnectMode.DEFAULT_RESET)

        assert len(self.opened) == 1
        assert not self.opened[0].is_open

        await loader.disconnect()
        assert loader._esp is None
