"""TimeCast Flash Module.

This module identifies Espressif chips over their ROM bootloader and
drives the firmware install session for ESP8266, ESP32 and the ESP32-S/C/H
families.
"""

from modules.timecast_flash.identifier import ChipIdentifier, IdentifyResult
from modules.timecast_flash.orchestrator import (
    FlashOrchestrator,
    SessionOutcome,
    SessionResult,
    SessionState,
)
from modules.timecast_flash.firmware_registry import FirmwareRegistry

__version__ = "0.1.0"

__all__ = [
    "ChipIdentifier",
    "FirmwareRegistry",
    "FlashOrchestrator",
    "IdentifyResult",
    "SessionOutcome",
    "SessionResult",
    "SessionState",
]
