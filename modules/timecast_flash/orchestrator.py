"""Install session orchestration.

One FlashOrchestrator drives one session: port grant, chip identification,
user confirmation, flashing under a bounded retry policy, and the post-flash
reset. The presentation layer only sees state changes, status lines,
percentages and the final SessionResult.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from adapters.interfaces.services import FlashLoader, LoaderFactory, PortProvider, Transport
from core.entities.chip import ESPRESSIF_VENDOR_ID, ChipFamily
from core.entities.firmware import FirmwareBuild, FirmwareVariant, FlashImage, select_flash_address
from modules.timecast_flash.connect_policy import select_loader_settings, supports_uart_reset
from modules.timecast_flash.errors import (
    BootloaderRequiredError,
    DeviceLostError,
    FatalFlashError,
    FlashError,
    TransientDesyncError,
    UnknownDeviceError,
    UnsupportedBoardError,
)
from modules.timecast_flash.firmware_registry import FirmwareRegistry
from modules.timecast_flash.identifier import ChipIdentifier, IdentifyResult
from modules.timecast_flash.progress import ProgressDelegate, ProgressTracker


logger = logging.getLogger(__name__)


class SessionState(Enum):
    """States of an install session."""
    IDLE = "idle"
    PORT_ACQUIRED = "port_acquired"
    IDENTIFYING = "identifying"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    FLASHING = "flashing"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    UNSUPPORTED = "unsupported"
    FATAL = "fatal"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionState.SUCCESS,
            SessionState.CANCELLED,
            SessionState.UNSUPPORTED,
            SessionState.FATAL,
        )


class SessionOutcome(Enum):
    """Terminal outcome reported to the presentation layer."""
    SUCCESS = ("success", SessionState.SUCCESS)
    CANCELLED = ("cancelled", SessionState.CANCELLED)
    UNKNOWN_DEVICE = ("unknown_device", SessionState.UNSUPPORTED)
    UNSUPPORTED_BOARD = ("unsupported_board", SessionState.UNSUPPORTED)
    BOOTLOADER_REQUIRED = ("bootloader_required", SessionState.FATAL)
    DEVICE_LOST = ("device_lost", SessionState.FATAL)
    FATAL_ERROR = ("fatal_error", SessionState.FATAL)

    def __init__(self, label: str, state: SessionState):
        self.label = label
        self.state = state


@dataclass
class RetryBudget:
    """Per-session state consulted by the retry policy."""
    family: ChipFamily
    attempt: int = 0
    started_at: float = 0.0

    def begin(self, now: float) -> None:
        self.attempt += 1
        self.started_at = now

    def elapsed_ms(self, now: float) -> float:
        return (now - self.started_at) * 1000.0


@dataclass
class InstallSession:
    """Mutable context of one identification + flash run."""
    transport: Optional[Transport] = None
    identify_result: Optional[IdentifyResult] = None
    build: Optional[FirmwareBuild] = None
    variant: Optional[FirmwareVariant] = None
    keep_data: bool = False
    chip_name: Optional[str] = None
    attempts: int = 0
    reacquisitions: int = 0
    manual_reset_required: bool = False

    @property
    def family(self) -> ChipFamily:
        if self.identify_result is None:
            return ChipFamily.UNKNOWN
        return self.identify_result.family

    @property
    def native_usb(self) -> bool:
        return self.identify_result is not None and self.identify_result.native_usb


@dataclass
class SessionResult:
    """What the session ended with."""
    outcome: SessionOutcome
    family: ChipFamily = ChipFamily.UNKNOWN
    attempts: int = 0
    reacquisitions: int = 0
    error: Optional[FlashError] = None
    chip_name: Optional[str] = None
    manual_reset_required: bool = False

    @property
    def state(self) -> SessionState:
        return self.outcome.state

    @property
    def success(self) -> bool:
        return self.outcome is SessionOutcome.SUCCESS


class _PortNotReacquired(Exception):
    """The user aborted the port lookup after a transient desync."""


ConfirmCallback = Callable[[ChipFamily, FirmwareBuild], Awaitable[bool]]


class FlashOrchestrator:
    """Runs install sessions against a port provider and a flash loader."""

    MAX_ATTEMPTS = 3
    S2_BOOTLOADER_TIMEOUT_MS = 15000
    REACQUIRE_DELAY = 1.0

    def __init__(
        self,
        ports: PortProvider,
        loader_factory: LoaderFactory,
        registry: FirmwareRegistry,
        preferences,
        confirm: ConfirmCallback,
        identifier: Optional[ChipIdentifier] = None,
        progress_delegates: Optional[list[ProgressDelegate]] = None,
        on_state_changed: Optional[Callable[[SessionState], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            ports: Grants and re-acquires transports
            loader_factory: Builds a FlashLoader per attempt
            registry: Firmware builds per chip family
            preferences: Object exposing a boolean ``keep_data``
            confirm: Asks the user to confirm the install
            identifier: Chip identifier (a default one is built if None)
            progress_delegates: Receivers of status lines and percentages
            on_state_changed: Called on every state transition
            clock: Monotonic clock in seconds, used for attempt durations
            sleep: Coroutine used for the re-acquire pause
        """
        self._ports = ports
        self._loader_factory = loader_factory
        self._registry = registry
        self._preferences = preferences
        self._confirm = confirm
        self._identifier = identifier or ChipIdentifier()
        self._progress = ProgressTracker(progress_delegates)
        self._on_state_changed = on_state_changed
        self._clock = clock
        self._sleep = sleep
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    async def run(self) -> SessionResult:
        """Run one session to a terminal outcome.

        The transport is always released before this returns, even when the
        session ends with an unexpected exception. Such an exception also
        leaves the session in the FATAL state.
        """
        self._state = SessionState.IDLE
        session = InstallSession()
        try:
            return await self._run(session)
        except Exception:
            if not self._state.is_terminal:
                self._transition(SessionState.FATAL)
            raise
        finally:
            await self._release(session)

    async def _run(self, session: InstallSession) -> SessionResult:
        logger.info("Requesting port…")
        transport = await self._ports.request_port()
        if transport is None:
            logger.info("Port selection canceled by user.")
            return await self._finish(session, SessionOutcome.CANCELLED)

        session.transport = transport
        self._transition(SessionState.PORT_ACQUIRED)
        usb_hint = transport.get_descriptor()

        self._transition(SessionState.IDENTIFYING)
        try:
            result = await self._identifier.identify(transport, usb_hint)
        except DeviceLostError as e:
            logger.error(f"Device lost during identification: {e}")
            return await self._finish(session, SessionOutcome.DEVICE_LOST, e)
        except Exception as e:
            logger.error(f"Identification failed: {e}")
            error = FatalFlashError(f"Identification failed on {transport.device}", e)
            return await self._finish(session, SessionOutcome.FATAL_ERROR, error)

        session.identify_result = result
        family = result.family
        self._progress.status(f"{family.value} detected")

        if not result.is_known:
            return await self._finish(session, SessionOutcome.UNKNOWN_DEVICE, UnknownDeviceError(result.magic))

        build = self._registry.find(family)
        if build is None:
            logger.warning(f"No firmware build registered for {family.value}")
            return await self._finish(
                session, SessionOutcome.UNSUPPORTED_BOARD, UnsupportedBoardError(family.value)
            )
        session.build = build

        self._transition(SessionState.AWAITING_CONFIRMATION)
        if not await self._confirm(family, build):
            logger.info("User cancelled installation")
            return await self._finish(session, SessionOutcome.CANCELLED)

        session.keep_data = bool(self._preferences.keep_data)
        session.variant = FirmwareVariant.for_keep_data(session.keep_data)

        self._transition(SessionState.FLASHING)
        return await self._flash_with_retry(session)

    async def _flash_with_retry(self, session: InstallSession) -> SessionResult:
        budget = RetryBudget(family=session.family)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.MAX_ATTEMPTS),
            wait=wait_fixed(self.REACQUIRE_DELAY),
            retry=retry_if_exception_type(TransientDesyncError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt(session, budget)
        except _PortNotReacquired:
            logger.info("Port selection canceled by user during re-detect.")
            return await self._finish(session, SessionOutcome.CANCELLED)
        except BootloaderRequiredError as e:
            logger.error("S2 Bootloader Timeout: Device was detected but didn't respond.")
            return await self._finish(session, SessionOutcome.BOOTLOADER_REQUIRED, e)
        except FlashError as e:
            return await self._finish(session, SessionOutcome.FATAL_ERROR, e)

        logger.info("Flash succeeded!")
        return await self._finish(session, SessionOutcome.SUCCESS)

    async def _attempt(self, session: InstallSession, budget: RetryBudget) -> None:
        """One flashing attempt; failures come out classified."""
        if session.transport is None:
            await self._reacquire(session)

        budget.begin(self._clock())
        session.attempts = budget.attempt
        logger.info(f"Flash attempt {budget.attempt} of {self.MAX_ATTEMPTS}...")

        try:
            await self._flash_once(session)
        except Exception as e:
            elapsed_ms = budget.elapsed_ms(self._clock())
            logger.warning(f"Attempt {budget.attempt} failed after {elapsed_ms / 1000:.0f}s: {e}")
            classified = await self._classify_failure(session, budget, elapsed_ms, e)
            raise classified from e

    async def _classify_failure(self, session: InstallSession, budget: RetryBudget,
                                elapsed_ms: float, error: Exception) -> FlashError:
        if budget.family is ChipFamily.ESP32_S2 and elapsed_ms >= self.S2_BOOTLOADER_TIMEOUT_MS:
            return BootloaderRequiredError(elapsed_ms, error)

        if budget.attempt == 1 and budget.family is ChipFamily.ESP32_S2:
            logger.warning("Fast failure. Cleaning up port for re-sync...")
            await self._release(session)
            return TransientDesyncError(elapsed_ms, error)

        if isinstance(error, FatalFlashError):
            return error
        return FatalFlashError(f"Flash attempt {budget.attempt} failed", error)

    async def _reacquire(self, session: InstallSession) -> None:
        session.reacquisitions += 1
        transport = await self._ports.find_port(ESPRESSIF_VENDOR_ID)
        if transport is None:
            raise _PortNotReacquired()
        logger.info(f"Re-acquired port {transport.device}")
        session.transport = transport

    async def _flash_once(self, session: InstallSession) -> None:
        family = session.family
        settings = select_loader_settings(family, session.native_usb)
        self._progress.start(f"Flashing {family.value}")

        loader = self._loader_factory(
            session.transport, settings.baud_rate, settings.reset_policy, self._progress.update_fraction
        )
        try:
            logger.info(f"Connecting to {family.value}...")
            session.chip_name = await loader.connect(settings.connect_mode)
            logger.info(f"Connected. Chip: {session.chip_name}")

            image_path = session.build.image_for(session.variant)
            data = await self._registry.load_image(image_path)
            address = select_flash_address(family, session.keep_data)

            logger.info("INSTALL SESSION")
            logger.info(f"Chip: {family.value}")
            logger.info(f"Mode: {'Update (Keep Data)' if session.keep_data else 'Factory (Erase All)'}")
            logger.info(f"Firmware File: {image_path}")
            logger.info(f"Flash Address: 0x{address:X}")
            logger.info(f"Erase All Before Flash: {not session.keep_data}")

            image = FlashImage(data, address, erase_all=not session.keep_data, compress=True)
            logger.info(f"Image Size: {image.size} bytes")

            self._progress.status("Writing firmware…")
            await loader.write_image(image)

            self._progress.status("Finalizing...")
            session.manual_reset_required = not await self._reset_device(loader, session)
        finally:
            await self._disconnect(loader)

    async def _reset_device(self, loader: FlashLoader, session: InstallSession) -> bool:
        """Reboot into the new firmware where the board allows it.

        Returns:
            True if the chip was reset, False if the user has to replug it.
        """
        family = session.family
        if not supports_uart_reset(family, session.native_usb):
            logger.info(f"UART reset not available on this board: {family.value}")
            return False

        logger.info(f"Will perform UART reset for {family.value}...")
        try:
            await loader.hard_reset()
        except Exception as e:
            logger.warning(f"Reboot handling failed: {e}")
            return False
        logger.info(f"{family.value} UART reset complete.")
        return True

    async def _disconnect(self, loader: FlashLoader) -> None:
        try:
            await loader.disconnect()
        except Exception as e:
            logger.warning(f"Transport disconnect failed: {e}")

    async def _release(self, session: InstallSession) -> None:
        """Close the session transport; failures are logged, never raised."""
        transport = session.transport
        session.transport = None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Error closing port: {e}")

    async def _finish(self, session: InstallSession, outcome: SessionOutcome,
                      error: Optional[FlashError] = None) -> SessionResult:
        flashing = self._state is SessionState.FLASHING
        await self._release(session)
        self._transition(outcome.state)

        if flashing:
            self._progress.finish(outcome is SessionOutcome.SUCCESS, str(error) if error else "")

        if error is not None:
            logger.error(f"Session ended with {outcome.label}: {error}")
        else:
            logger.info(f"Session ended with {outcome.label}")

        return SessionResult(
            outcome=outcome,
            family=session.family,
            attempts=session.attempts,
            reacquisitions=session.reacquisitions,
            error=error,
            chip_name=session.chip_name,
            manual_reset_required=session.manual_reset_required,
        )

    def _transition(self, state: SessionState) -> None:
        logger.debug(f"Session state: {self._state.value} -> {state.value}")
        self._state = state
        if self._on_state_changed:
            try:
                self._on_state_changed(state)
            except Exception as e:
                logger.warning(f"State listener error: {e}")
