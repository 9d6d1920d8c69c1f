"""Loader connection settings per chip family."""

from dataclasses import dataclass

from adapters.interfaces.services import ConnectMode, ResetPolicy
from core.entities.chip import ChipFamily


DEFAULT_FLASH_BAUD = 460800
S2_FLASH_BAUD = 115200


@dataclass(frozen=True)
class LoaderSettings:
    """Everything the loader factory needs besides the transport."""
    baud_rate: int
    connect_mode: ConnectMode
    reset_policy: ResetPolicy


def select_loader_settings(family: ChipFamily, native_usb: bool) -> LoaderSettings:
    """Choose baud rate, connect mode and reset policy for a chip.

    Native-USB S2 parts never reset on their own and only talk reliably at
    the ROM baud rate. Native-USB S3/C3 parts need the USB-JTAG reset.
    """
    if family is ChipFamily.ESP32_S2:
        return LoaderSettings(S2_FLASH_BAUD, ConnectMode.NO_RESET, ResetPolicy(no_reset=True))

    if family is ChipFamily.ESP32:
        return LoaderSettings(DEFAULT_FLASH_BAUD, ConnectMode.NO_RESET, ResetPolicy())

    if family in (ChipFamily.ESP32_C3, ChipFamily.ESP32_S3) and native_usb:
        return LoaderSettings(DEFAULT_FLASH_BAUD, ConnectMode.USB_RESET, ResetPolicy(usb_reset=True))

    return LoaderSettings(DEFAULT_FLASH_BAUD, ConnectMode.DEFAULT_RESET, ResetPolicy())


def supports_uart_reset(family: ChipFamily, native_usb: bool) -> bool:
    """True when the chip can be rebooted over the DTR line after flashing."""
    if family in (ChipFamily.ESP8266, ChipFamily.ESP32):
        return True
    return family is ChipFamily.ESP32_S3 and not native_usb
