"""Service interface definitions."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from core.entities.chip import UsbHint
from core.entities.firmware import FlashImage


ProgressSink = Callable[[float], None]


class Transport(ABC):
    """Interface for a point-to-point duplex byte stream."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while a data connection is open."""
        pass

    @property
    @abstractmethod
    def device(self) -> str:
        """Name of the underlying port (e.g. '/dev/ttyUSB0', 'COM3')."""
        pass

    @abstractmethod
    async def open(self, baud_rate: int) -> None:
        """Open the data connection."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the data connection. Closing a closed transport is a no-op."""
        pass

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write raw bytes."""
        pass

    @abstractmethod
    async def read(self, timeout: float) -> bytes:
        """Read whatever arrives before the deadline; empty bytes on timeout."""
        pass

    @abstractmethod
    async def set_control_lines(self, dtr: bool, rts: bool) -> None:
        """Drive the DTR/RTS lines."""
        pass

    @abstractmethod
    def get_descriptor(self) -> Optional[UsbHint]:
        """USB descriptor of the port, if it has one."""
        pass


class PortProvider(ABC):
    """Interface for granting transports to a session."""

    @abstractmethod
    async def request_port(self) -> Optional[Transport]:
        """Ask the user for a port. None means the user declined."""
        pass

    @abstractmethod
    async def find_port(self, vendor_id: int) -> Optional[Transport]:
        """Find an already known port by USB vendor, falling back to request_port."""
        pass


class ConnectMode(Enum):
    """How the loader brings the chip into its bootloader."""
    DEFAULT_RESET = "default-reset"
    NO_RESET = "no-reset"
    USB_RESET = "usb-reset"


@dataclass(frozen=True)
class ResetPolicy:
    """Reset behaviour handed to the loader."""
    no_reset: bool = False
    usb_reset: bool = False


class FlashLoader(ABC):
    """Interface for the erase/program engine.

    Implementations are constructed with a transport, a baud rate, a
    ResetPolicy and a progress sink receiving fractions in [0, 1].
    """

    @abstractmethod
    async def connect(self, mode: ConnectMode) -> str:
        """Connect to the bootloader and return the chip name it reports."""
        pass

    @abstractmethod
    async def write_image(self, image: FlashImage) -> None:
        """Erase and program an image."""
        pass

    @abstractmethod
    async def hard_reset(self) -> None:
        """Reset the chip into the freshly written firmware."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the loader's hold on the port."""
        pass


LoaderFactory = Callable[[Transport, int, ResetPolicy, ProgressSink], FlashLoader]
