"""Chip identification over the ROM bootloader protocol.

The identifier syncs with the ROM loader, reads the chip magic register and
maps the value onto a ChipFamily. The USB descriptor is consulted first: a
native-USB ESP32-S2 is trusted from its descriptor alone, because probing it
further is unreliable.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from adapters.interfaces.services import Transport
from core.entities.chip import ChipFamily, UsbHint, UsbHintKind, resolve_magic
from modules.timecast_flash.errors import SyncTimeoutError, map_transport_error
from modules.timecast_flash.slip import READ_REG_FRAME, SYNC_FRAME


logger = logging.getLogger(__name__)

MAGIC_PATTERN = re.compile(r"010a0[24]00([0-9a-f]{4,8})")


@dataclass(frozen=True)
class IdentifyResult:
    """Outcome of one identification run."""
    family: ChipFamily
    magic: Optional[int] = None
    usb_hint: Optional[UsbHint] = None
    from_descriptor: bool = False

    @property
    def is_known(self) -> bool:
        return self.family.is_known

    @property
    def native_usb(self) -> bool:
        """True when the chip's own USB controller drives the port."""
        if self.family is ChipFamily.ESP32_S2:
            return True
        return self.usb_hint is not None and self.usb_hint.is_espressif


def is_sync_ack(data: bytes) -> bool:
    """Check a sync reply.

    Bytes are rendered as unpadded hex and concatenated, so the 0x01 0x08
    direction/opcode pair of the ROM reply reads as "18".
    """
    return "18" in "".join(f"{byte:x}" for byte in data)


def parse_magic(response_hex: str) -> Optional[int]:
    """Extract the little-endian magic value from accumulated response hex."""
    match = MAGIC_PATTERN.search(response_hex)
    if not match:
        return None
    raw = match.group(1)
    pairs = [raw[i:i + 2] for i in range(0, len(raw) - 1, 2)]
    return int("".join(reversed(pairs)), 16)


class ChipIdentifier:
    """Identifies the Espressif chip behind a transport."""

    BAUD_RATE = 115200
    SYNC_ATTEMPTS = 20
    SYNC_READ_TIMEOUT = 0.1
    RESET_AFTER_ATTEMPT = 11
    RESET_HOLD = 0.1
    QUIESCENCE_DELAY = 0.2
    PROBE_ATTEMPTS = 5
    PROBE_SLICES = 10
    PROBE_SLICE_TIMEOUT = 0.06
    PROBE_BACKOFF = 0.1

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep

    async def identify(self, transport: Transport, usb_hint: Optional[UsbHint] = None) -> IdentifyResult:
        """Identify the chip attached to a transport.

        Args:
            transport: Closed transport granted for this session
            usb_hint: Descriptor read from the port before any traffic

        Returns:
            IdentifyResult; family is ChipFamily.UNKNOWN when inconclusive.

        Raises:
            SyncTimeoutError: The ROM loader never acknowledged a sync frame.
            DeviceLostError: The port vanished mid-identification.
        """
        hint_kind = usb_hint.kind if usb_hint else UsbHintKind.NONE
        if usb_hint:
            logger.info(f"Port descriptor: {usb_hint}")

        if hint_kind is UsbHintKind.ESP32_S2:
            logger.info("ESP32-S2 detected via native USB, skipping ROM probe")
            return IdentifyResult(ChipFamily.ESP32_S2, usb_hint=usb_hint, from_descriptor=True)

        if hint_kind is UsbHintKind.NATIVE_CDC:
            logger.info("Native USB CDC descriptor, family undetermined until probed")
        elif hint_kind is UsbHintKind.ESP32_C3:
            logger.info("ESP32-C3 detected via USB PID, continuing with ROM probe")

        family = ChipFamily.UNKNOWN
        magic = None
        try:
            await transport.open(self.BAUD_RATE)
            await self._sync(transport)

            logger.info("SYNC OK. Waiting for silence...")
            await self._sleep(self.QUIESCENCE_DELAY)
            stale = await transport.read(0)
            if stale:
                logger.debug(f"Discarded {len(stale)} stale bytes after sync")

            magic = await self._read_magic(transport)
            if hint_kind is UsbHintKind.ESP32_C3:
                family = ChipFamily.ESP32_C3
            else:
                family = resolve_magic(magic)
        except (OSError, EOFError) as e:
            raise map_transport_error(e, transport.device, "identificación") from e

        raw = f"0x{magic:X}" if magic is not None else "null"
        logger.info(f"Raw value: {raw}")
        logger.info(f"RESULT: {family.value}")

        if family is not ChipFamily.ESP32_S2:
            await transport.close()
            logger.info("Port closed. Ready for flasher handover.")

        return IdentifyResult(family, magic=magic, usb_hint=usb_hint)

    async def _sync(self, transport: Transport) -> None:
        logger.info("Sending Sync...")
        for attempt in range(1, self.SYNC_ATTEMPTS + 1):
            await transport.write(SYNC_FRAME)
            reply = await transport.read(self.SYNC_READ_TIMEOUT)
            if reply and is_sync_ack(reply):
                logger.debug(f"Sync acknowledged on attempt {attempt}")
                return
            if attempt == self.RESET_AFTER_ATTEMPT:
                logger.info("No response. Trying DTR/RTS Reset...")
                await self._pulse_reset(transport)

        raise SyncTimeoutError(self.SYNC_ATTEMPTS)

    async def _pulse_reset(self, transport: Transport) -> None:
        """Reset into the ROM loader via the DTR/RTS auto-program circuit."""
        await transport.set_control_lines(dtr=False, rts=True)
        await self._sleep(self.RESET_HOLD)
        await transport.set_control_lines(dtr=True, rts=False)
        await self._sleep(self.RESET_HOLD)
        await transport.set_control_lines(dtr=False, rts=False)

    async def _read_magic(self, transport: Transport) -> Optional[int]:
        logger.info("Requesting Chip ID...")
        for attempt in range(1, self.PROBE_ATTEMPTS + 1):
            await transport.write(READ_REG_FRAME)
            response_hex = ""
            for _ in range(self.PROBE_SLICES):
                chunk = await transport.read(self.PROBE_SLICE_TIMEOUT)
                if chunk:
                    response_hex += chunk.hex()

            magic = parse_magic(response_hex)
            if magic is not None:
                logger.info(f"Magic: 0x{magic:X}")
                return magic

            logger.debug(f"No magic in probe {attempt}: {response_hex or '<empty>'}")
            await self._sleep(self.PROBE_BACKOFF)

        logger.warning(f"No magic value after {self.PROBE_ATTEMPTS} probes")
        return None
