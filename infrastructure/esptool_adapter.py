"""ESPTool adapter for flashing ESP32/ESP8266 devices."""

import asyncio
import io
import logging
import sys
from typing import Optional

import serial
from esptool.cmds import attach_flash, detect_chip, reset_chip, run_stub, write_flash
from esptool.loader import ESPLoader
from esptool.logger import TemplateLogger, log as esptool_log

from adapters.interfaces.services import ConnectMode, FlashLoader, ProgressSink, ResetPolicy, Transport
from core.entities.firmware import FlashImage
from modules.timecast_flash.errors import map_transport_error


logger = logging.getLogger(__name__)


class ProgressLogger(TemplateLogger):
    """Routes esptool output to logging and its progress bar to a sink.

    esptool swaps the class of its global logger instead of keeping the
    instance, so the sink lives on the class.
    """

    progress_sink: Optional[ProgressSink] = None

    def print(self, message="", *args, **kwargs):
        text = str(message).strip()
        if text:
            logger.info(text)

    def note(self, message):
        logger.info(f"Note: {message}")

    def warning(self, message):
        logger.warning(message)

    def error(self, message):
        logger.error(message)

    def stage(self, finish=False):
        pass

    def progress_bar(self, cur_iter, total_iters, prefix="", suffix="", bar_length=30):
        sink = type(self).progress_sink
        if sink and total_iters:
            sink(cur_iter / total_iters)

    def set_verbosity(self, verbosity):
        pass


class ESPToolLoader(FlashLoader):
    """FlashLoader backed by the esptool library.

    The loader opens the serial port itself and hands the open port to
    esptool, so it can close it when connecting fails halfway. The session
    transport is closed first. Blocking esptool calls run in the default
    executor.
    """

    def __init__(
        self,
        transport: Transport,
        baud_rate: int,
        reset_policy: ResetPolicy,
        progress_sink: Optional[ProgressSink] = None,
    ):
        self.transport = transport
        self.baud_rate = baud_rate
        self.reset_policy = reset_policy
        self.progress_sink = progress_sink
        self._esp = None

    async def connect(self, mode: ConnectMode) -> str:
        await self.transport.close()
        ProgressLogger.progress_sink = self.progress_sink
        esptool_log.set_logger(ProgressLogger())

        connect_mode = mode
        if self.reset_policy.no_reset:
            connect_mode = ConnectMode.NO_RESET
        elif self.reset_policy.usb_reset:
            connect_mode = ConnectMode.USB_RESET

        try:
            self._esp = await asyncio.to_thread(self._connect_sync, connect_mode.value)
        except Exception as e:
            raise map_transport_error(e, self.transport.device, "conexión") from e
        return self._esp.CHIP_NAME

    def _connect_sync(self, connect_mode: str):
        port = serial.serial_for_url(self.transport.device, exclusive=True, do_not_open=True)
        if sys.platform == "win32":
            # Opening a port on Windows asserts RTS/DTR and resets the chip
            port.rts = False
            port.dtr = False
        port.open()
        try:
            esp = detect_chip(port, ESPLoader.ESP_ROM_BAUD, connect_mode)
            esp = run_stub(esp)
            if self.baud_rate > ESPLoader.ESP_ROM_BAUD:
                esp.change_baud(self.baud_rate)
            attach_flash(esp)
        except Exception:
            port.close()
            raise
        return esp

    async def write_image(self, image: FlashImage) -> None:
        if self._esp is None:
            raise RuntimeError("Loader not connected")

        addr_data = [(image.address, io.BytesIO(image.data))]
        await asyncio.to_thread(
            write_flash,
            self._esp,
            addr_data,
            flash_size="keep",
            erase_all=image.erase_all,
            compress=image.compress,
        )

    async def hard_reset(self) -> None:
        if self._esp is None:
            raise RuntimeError("Loader not connected")
        await asyncio.to_thread(reset_chip, self._esp, "hard-reset")

    async def disconnect(self) -> None:
        esp, self._esp = self._esp, None
        if esp is not None:
            await asyncio.to_thread(esp._port.close)


def esptool_loader_factory(transport: Transport, baud_rate: int, reset_policy: ResetPolicy,
                           progress_sink: ProgressSink) -> ESPToolLoader:
    return ESPToolLoader(transport, baud_rate, reset_policy, progress_sink)
