"""Firmware domain entity."""

from dataclasses import dataclass
from enum import Enum

from core.entities.chip import ChipFamily


FACTORY_ADDRESS = 0x0000
APP_ADDRESS = 0x10000


class FirmwareVariant(Enum):
    """Which image of a build gets flashed."""
    FACTORY = "factory"  # whole device, settings erased
    UPDATE = "update"    # application region only, settings kept

    @classmethod
    def for_keep_data(cls, keep_data: bool) -> "FirmwareVariant":
        return cls.UPDATE if keep_data else cls.FACTORY


@dataclass(frozen=True)
class FirmwareBuild:
    """Firmware images registered for one chip family."""

    chip_family: ChipFamily
    factory: str
    update: str

    def image_for(self, variant: FirmwareVariant) -> str:
        """Return the image path for a variant."""
        return self.update if variant is FirmwareVariant.UPDATE else self.factory


@dataclass
class FlashImage:
    """A binary image ready for the flash loader."""

    data: bytes
    address: int
    erase_all: bool
    compress: bool = True

    @property
    def size(self) -> int:
        return len(self.data)


def select_flash_address(family: ChipFamily, keep_data: bool) -> int:
    """Pick the flash offset for an image.

    Update images only cover the application partition on 32-bit families;
    the ESP8266 image is always a full image written at offset zero.
    """
    if keep_data and family.is_esp32:
        return APP_ADDRESS
    return FACTORY_ADDRESS
