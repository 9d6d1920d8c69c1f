"""Descarga de imágenes de firmware publicadas por HTTP(S).

Los fallos de red se reintentan con tenacity; las respuestas 4xx/5xx se
reportan de inmediato.
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)


logger = logging.getLogger(__name__)


class HttpClientError(Exception):
    """La descarga no se pudo completar."""


class HttpClient:
    """Cliente asíncrono para descargar binarios.

    Debe usarse como context manager: la sesión httpx vive lo que dura el
    bloque ``async with``.
    """

    USER_AGENT = "timecast-installer"

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={"User-Agent": self.USER_AGENT},
            follow_redirects=True
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.RequestError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def _get(self, url: str) -> httpx.Response:
        response = await self._client.get(url)
        response.raise_for_status()
        return response

    async def get_bytes(self, url: str) -> bytes:
        """Descarga el contenido completo de una URL.

        Los errores de red se reintentan hasta 3 veces; los errores HTTP
        (4xx/5xx) no se reintentan.

        Raises:
            HttpClientError: Si la descarga falla.
        """
        if not self._client:
            raise HttpClientError("Cliente no inicializado. Usar como context manager.")

        try:
            response = await self._get(url)
        except httpx.HTTPStatusError as e:
            logger.error(f"Error HTTP {e.response.status_code} para {url}")
            raise HttpClientError(f"Error HTTP {e.response.status_code}: {url}") from e
        except httpx.RequestError as e:
            logger.error(f"Error de conexión para {url}: {e}")
            raise HttpClientError(f"Error de conexión: {e}") from e

        return response.content
