"""Chip family domain entity."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


ESPRESSIF_VENDOR_ID = 0x303A


class ChipFamily(Enum):
    """Espressif chip families the installer can tell apart."""
    ESP8266 = "ESP8266"
    ESP32 = "ESP32"
    ESP32_C2 = "ESP32-C2"
    ESP32_C3 = "ESP32-C3"
    ESP32_C6 = "ESP32-C6"
    ESP32_H2 = "ESP32-H2"
    ESP32_S2 = "ESP32-S2"
    ESP32_S3 = "ESP32-S3"
    UNKNOWN = "Unknown ESP"

    @property
    def is_known(self) -> bool:
        return self is not ChipFamily.UNKNOWN

    @property
    def is_esp32(self) -> bool:
        """True for every 32-bit family (names starting with ESP32)."""
        return self.value.startswith("ESP32")


# Ordered: lookup is first-match, repeated values are silicon-revision aliases.
MAGIC_ALIASES: tuple[tuple[tuple[int, ...], ChipFamily], ...] = (
    ((0xFFF0C101, 0xC101), ChipFamily.ESP8266),
    ((0x00F01D83,), ChipFamily.ESP32),
    ((0x00000009, 0x00000000, 0x9), ChipFamily.ESP32_S3),
    ((0x6921506F, 0x1B31506F, 0x4881606F, 0x09), ChipFamily.ESP32_C3),
    ((0x000007C6, 0x00004359, 0x4359, 0x07C6), ChipFamily.ESP32_S2),
    ((0x2CE0806F, 0x2CE0106F), ChipFamily.ESP32_C6),
    ((0xD422F199,), ChipFamily.ESP32_H2),
    ((0x1101406F,), ChipFamily.ESP32_C2),
)


def resolve_magic(magic: Optional[int]) -> ChipFamily:
    """Map a magic register value onto a chip family."""
    if magic is None:
        return ChipFamily.UNKNOWN
    for values, family in MAGIC_ALIASES:
        if magic in values:
            return family
    return ChipFamily.UNKNOWN


class UsbHintKind(Enum):
    """What the USB descriptor alone says about the attached chip."""
    NONE = "none"
    NATIVE_CDC = "native_cdc"
    ESP32_S2 = "esp32_s2"
    ESP32_C3 = "esp32_c3"


@dataclass(frozen=True)
class UsbHint:
    """USB descriptor of a serial port, read before any protocol bytes."""
    vendor_id: Optional[int]
    product_id: Optional[int]

    # Native CDC PIDs are shared by the S3 and C3, so they only flag native USB.
    NATIVE_CDC_PIDS = frozenset({0x1001, 0x1002, 0x1003})
    ESP32_S2_PIDS = frozenset({0x0002, 0x0003})
    ESP32_C3_PIDS = frozenset()

    @property
    def is_espressif(self) -> bool:
        return self.vendor_id == ESPRESSIF_VENDOR_ID

    @property
    def kind(self) -> UsbHintKind:
        if not self.is_espressif:
            return UsbHintKind.NONE
        if self.product_id in self.ESP32_S2_PIDS:
            return UsbHintKind.ESP32_S2
        if self.product_id in self.ESP32_C3_PIDS:
            return UsbHintKind.ESP32_C3
        if self.product_id in self.NATIVE_CDC_PIDS:
            return UsbHintKind.NATIVE_CDC
        return UsbHintKind.NONE

    def __str__(self) -> str:
        vid = f"{self.vendor_id:04X}" if self.vendor_id is not None else "----"
        pid = f"{self.product_id:04X}" if self.product_id is not None else "----"
        return f"USB VID:PID={vid}:{pid}"
