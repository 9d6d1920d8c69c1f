"""Installer service: wires the real collaborators into install sessions."""

import logging
from typing import Callable, Optional

from adapters.interfaces.services import LoaderFactory, PortProvider
from config.settings import InstallerSettings, PreferenceStore
from infrastructure.esptool_adapter import esptool_loader_factory
from infrastructure.serial_transport import PortChooser, SerialPortProvider
from modules.timecast_flash.firmware_registry import FirmwareRegistry
from modules.timecast_flash.orchestrator import (
    ConfirmCallback,
    FlashOrchestrator,
    SessionResult,
    SessionState,
)
from modules.timecast_flash.progress import ProgressDelegate


logger = logging.getLogger(__name__)


class SessionAlreadyRunningError(RuntimeError):
    """Raised when a session is started while another one is running."""


class InstallerService:
    """Starts install sessions, one at a time."""

    def __init__(
        self,
        settings: InstallerSettings,
        confirm: ConfirmCallback,
        chooser: Optional[PortChooser] = None,
        progress_delegates: Optional[list[ProgressDelegate]] = None,
        on_state_changed: Optional[Callable[[SessionState], None]] = None,
        ports: Optional[PortProvider] = None,
        loader_factory: LoaderFactory = esptool_loader_factory,
        registry: Optional[FirmwareRegistry] = None,
    ):
        self.settings = settings
        self.preferences = PreferenceStore(settings.preferences_path)
        self.registry = registry or self._build_registry(settings)
        self._confirm = confirm
        self._ports = ports or SerialPortProvider(chooser=chooser, device=settings.port)
        self._loader_factory = loader_factory
        self._progress_delegates = progress_delegates or []
        self._on_state_changed = on_state_changed
        self.is_running = False
        logger.info(f"Installer ready: {self.registry.name} v{self.registry.version}")

    @staticmethod
    def _build_registry(settings: InstallerSettings) -> FirmwareRegistry:
        if settings.manifest_path is not None:
            return FirmwareRegistry.from_file(settings.manifest_path, settings.firmware_base)
        return FirmwareRegistry.default(settings.firmware_base)

    @property
    def keep_data(self) -> bool:
        return self.preferences.keep_data

    @keep_data.setter
    def keep_data(self, value: bool) -> None:
        self.preferences.keep_data = value

    def create_orchestrator(self) -> FlashOrchestrator:
        return FlashOrchestrator(
            ports=self._ports,
            loader_factory=self._loader_factory,
            registry=self.registry,
            preferences=self.preferences,
            confirm=self._confirm,
            progress_delegates=self._progress_delegates,
            on_state_changed=self._on_state_changed,
        )

    async def start_session(self) -> SessionResult:
        """Run one detect + install session to completion.

        Raises:
            SessionAlreadyRunningError: If a session is already in progress.
        """
        if self.is_running:
            raise SessionAlreadyRunningError("An install session is already running")

        self.is_running = True
        try:
            result = await self.create_orchestrator().run()
        finally:
            self.is_running = False

        logger.info(f"Session result: {result.outcome.label} ({result.family.value})")
        return result
