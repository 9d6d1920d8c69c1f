"""Módulo de progreso para el instalador.

Este módulo proporciona delegados que reciben líneas de estado y
porcentajes durante la sesión de instalación: barra de progreso CLI,
callbacks personalizados y un coordinador de múltiples delegados.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from tqdm import tqdm


logger = logging.getLogger(__name__)


class ProgressDelegate(ABC):
    """Interface abstracta para delegados de progreso.

    Permite implementar diferentes tipos de reportes de progreso
    (CLI, GUI, logging, etc.) de manera uniforme.
    """

    @abstractmethod
    def on_start(self, operation: str = "Flashing") -> None:
        """Llamado al inicio de un intento de flasheo.

        Args:
            operation: Descripción de la operación
        """
        pass

    @abstractmethod
    def on_status(self, message: str) -> None:
        """Llamado con cada línea de estado textual.

        Args:
            message: Línea de estado
        """
        pass

    @abstractmethod
    def on_progress(self, percent: int) -> None:
        """Llamado con el porcentaje acumulado (0-100).

        Args:
            percent: Porcentaje de la imagen escrita
        """
        pass

    @abstractmethod
    def on_end(self, success: bool, message: str = "") -> None:
        """Llamado al finalizar la operación.

        Args:
            success: True si la operación fue exitosa
            message: Mensaje adicional (error o éxito)
        """
        pass


class ProgressPrinter(ProgressDelegate):
    """Implementación de progreso para CLI usando tqdm."""

    def __init__(self, description: str = "Flash Progress"):
        self.description = description
        self.pbar: Optional[tqdm] = None
        self.start_time: Optional[float] = None
        self._last_percent = 0

    def on_start(self, operation: str = "Flashing") -> None:
        """Inicia la barra de progreso."""
        self.start_time = time.time()
        self._last_percent = 0
        self.pbar = tqdm(
            total=100,
            desc=self.description,
            unit="%",
            bar_format="{l_bar}{bar}| {n:.0f}/{total:.0f}% [{elapsed}<{remaining}]"
        )
        self.pbar.set_description(operation)

    def on_status(self, message: str) -> None:
        """Muestra la línea de estado sin romper la barra."""
        if self.pbar:
            self.pbar.write(message)
        else:
            tqdm.write(message)

    def on_progress(self, percent: int) -> None:
        """Avanza la barra hasta el porcentaje indicado."""
        if self.pbar and percent > self._last_percent:
            self.pbar.update(percent - self._last_percent)
            self._last_percent = percent

    def on_end(self, success: bool, message: str = "") -> None:
        """Finaliza la barra de progreso."""
        if self.pbar:
            self.pbar.set_description("✅ Completado" if success else "❌ Error")
            self.pbar.close()
            self.pbar = None

        if message:
            status_icon = "✅" if success else "❌"
            tqdm.write(f"{status_icon} {message}")

        if self.start_time:
            elapsed = time.time() - self.start_time
            tqdm.write(f"⏱️  Tiempo total: {elapsed:.2f}s")


class CallbackProgressDelegate(ProgressDelegate):
    """Delegado que ejecuta callbacks personalizados.

    Útil para integrar con interfaces gráficas.
    """

    def __init__(
        self,
        on_status_callback: Optional[Callable[[str], None]] = None,
        on_progress_callback: Optional[Callable[[int], None]] = None,
        on_end_callback: Optional[Callable[[bool, str], None]] = None
    ):
        self._on_status_callback = on_status_callback
        self._on_progress_callback = on_progress_callback
        self._on_end_callback = on_end_callback

    def on_start(self, operation: str = "Flashing") -> None:
        """Publica el inicio como línea de estado."""
        self.on_status(operation)

    def on_status(self, message: str) -> None:
        if self._on_status_callback:
            self._on_status_callback(message)

    def on_progress(self, percent: int) -> None:
        if self._on_progress_callback:
            self._on_progress_callback(percent)

    def on_end(self, success: bool, message: str = "") -> None:
        if self._on_end_callback:
            self._on_end_callback(success, message)


class SilentProgressDelegate(ProgressDelegate):
    """Delegado silencioso que no muestra progreso."""

    def on_start(self, operation: str = "Flashing") -> None:
        pass

    def on_status(self, message: str) -> None:
        pass

    def on_progress(self, percent: int) -> None:
        pass

    def on_end(self, success: bool, message: str = "") -> None:
        pass


class ProgressTracker:
    """Tracker de progreso que coordina múltiples delegados.

    Un delegado que falla nunca interrumpe la sesión: el error se registra
    y se continúa con el siguiente.
    """

    def __init__(self, delegates: Optional[list[ProgressDelegate]] = None):
        self.delegates = list(delegates or [])
        self.percent = 0

    def start(self, operation: str = "Flashing") -> None:
        """Inicia el tracking en todos los delegados."""
        self.percent = 0
        self._dispatch("on_start", operation)

    def status(self, message: str) -> None:
        """Reenvía una línea de estado."""
        self._dispatch("on_status", message)

    def update_fraction(self, fraction: float) -> None:
        """Convierte la fracción del cargador en porcentaje.

        Solo se reenvían porcentajes mayores que cero.
        """
        percent = round(max(0.0, min(1.0, fraction)) * 100)
        if percent > 0:
            self.percent = percent
            self._dispatch("on_progress", percent)

    def finish(self, success: bool, message: str = "") -> None:
        """Finaliza el tracking en todos los delegados."""
        if success:
            self.percent = 100
            self._dispatch("on_progress", 100)
        self._dispatch("on_end", success, message)

    def _dispatch(self, method: str, *args) -> None:
        for delegate in self.delegates:
            try:
                getattr(delegate, method)(*args)
            except Exception as e:
                logger.warning(f"Progress delegate error on {method}: {e}")
