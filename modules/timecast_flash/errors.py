"""Excepciones específicas del instalador.

Este módulo define las excepciones del proceso de detección y flasheo,
proporcionando mensajes de error amigables y específicos.
"""

from typing import Optional


class FlashError(Exception):
    """Excepción base para errores de detección y flasheo.

    Todas las excepciones específicas del instalador heredan de esta clase.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """Inicializa la excepción base.

        Args:
            message: Mensaje de error amigable
            original_error: Excepción original que causó este error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Retorna representación string del error."""
        if self.original_error:
            return f"{self.message} (Causa: {self.original_error})"
        return self.message


class PortBusyError(FlashError):
    """Error cuando el puerto serie está ocupado o sin permisos.

    Se lanza cuando:
    - El puerto está siendo usado por otra aplicación
    - No hay permisos para acceder al puerto
    """

    def __init__(self, port: str, original_error: Optional[Exception] = None):
        message = (
            f"Puerto {port} no disponible. "
            "Verifica que no esté siendo usado por otra aplicación "
            "(monitor serie, IDE, etc.)"
        )
        super().__init__(message, original_error)
        self.port = port


class SyncTimeoutError(FlashError):
    """El dispositivo no respondió al handshake de sincronización."""

    def __init__(self, attempts: int, original_error: Optional[Exception] = None):
        message = (
            f"No se pudo sincronizar con el dispositivo tras {attempts} intentos. "
            "Asegúrate de que esté en modo bootloader."
        )
        super().__init__(message, original_error)
        self.attempts = attempts


class TransientDesyncError(FlashError):
    """Fallo rápido de un ESP32-S2; se recupera re-detectando el puerto.

    Nunca llega al llamador: el orquestador lo consume dentro del límite
    de reintentos.
    """

    def __init__(self, elapsed_ms: float, original_error: Optional[Exception] = None):
        message = f"Desincronización transitoria tras {elapsed_ms:.0f} ms"
        super().__init__(message, original_error)
        self.elapsed_ms = elapsed_ms


class BootloaderRequiredError(FlashError):
    """El ESP32-S2 fue detectado pero no respondió en modo bootloader.

    Solo se resuelve manteniendo pulsado BOOT mientras se conecta el cable.
    """

    def __init__(self, elapsed_ms: float, original_error: Optional[Exception] = None):
        message = (
            "El dispositivo fue detectado pero no respondió. "
            "Mantén presionado el botón BOOT mientras lo conectas."
        )
        super().__init__(message, original_error)
        self.elapsed_ms = elapsed_ms


class DeviceLostError(FlashError):
    """El puerto desapareció durante la sesión.

    Suele ocurrir cuando el firmware en ejecución reinicia el chip y el
    puerto USB nativo se vuelve a enumerar.
    """

    def __init__(self, port: str = "desconocido", original_error: Optional[Exception] = None):
        message = f"Se perdió la conexión con el dispositivo en {port}"
        super().__init__(message, original_error)
        self.port = port


class UnsupportedBoardError(FlashError):
    """Chip reconocido pero sin firmware registrado."""

    def __init__(self, detected_chip: str, original_error: Optional[Exception] = None):
        message = f"Placa {detected_chip} no soportada: no hay firmware para este chip"
        super().__init__(message, original_error)
        self.detected_chip = detected_chip


class UnknownDeviceError(FlashError):
    """La identificación no fue concluyente."""

    def __init__(self, magic: Optional[int] = None, original_error: Optional[Exception] = None):
        raw = f"0x{magic:X}" if magic is not None else "null"
        message = f"Dispositivo ESP desconocido (valor leído: {raw})"
        super().__init__(message, original_error)
        self.magic = magic


class InvalidFirmwareError(FlashError):
    """Error cuando la imagen de firmware no se puede usar.

    Se lanza cuando:
    - El archivo no existe o no se pudo descargar
    - La imagen está vacía
    """

    def __init__(self, reason: str, file_path: Optional[str] = None, original_error: Optional[Exception] = None):
        file_info = f" ({file_path})" if file_path else ""
        message = f"Archivo de firmware inválido{file_info}: {reason}"
        super().__init__(message, original_error)
        self.reason = reason
        self.file_path = file_path


class FatalFlashError(FlashError):
    """Fallo de flasheo sin clasificación recuperable."""


_DEVICE_LOST_MARKERS = (
    "device has been lost",
    "not available",
    "device disconnected",
    "device reports readiness to read but returned no data",
    "no such file or directory",
    "no such device",
    "input/output error",
)

_PORT_BUSY_MARKERS = (
    "permission denied",
    "access is denied",
    "resource busy",
    "could not exclusively lock",
)


def map_transport_error(error: Exception, port: str = "desconocido", context: str = "") -> FlashError:
    """Mapea errores de pyserial/OS a nuestras excepciones específicas.

    Args:
        error: Excepción original
        port: Puerto serie involucrado
        context: Contexto adicional sobre cuándo ocurrió el error

    Returns:
        FlashError: Excepción específica mapeada
    """
    if isinstance(error, FlashError):
        return error

    error_str = str(error).lower()

    if any(marker in error_str for marker in _PORT_BUSY_MARKERS):
        return PortBusyError(port, error)

    if any(marker in error_str for marker in _DEVICE_LOST_MARKERS):
        return DeviceLostError(port, error)

    if isinstance(error, (ConnectionError, EOFError)):
        return DeviceLostError(port, error)

    where = f" durante {context}" if context else ""
    return FatalFlashError(f"Error{where}: {error}", error)
