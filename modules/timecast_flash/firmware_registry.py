"""Firmware registry for the installer.

Maps chip families to their factory/update images, following the
manifest layout of the web installer, and loads image bytes from a local
directory or an HTTP(S) base URL.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from core.entities.chip import ChipFamily
from core.entities.firmware import FirmwareBuild
from modules.timecast_flash.errors import InvalidFirmwareError
from modules.timecast_flash.http_client import HttpClient, HttpClientError


logger = logging.getLogger(__name__)

DEFAULT_MANIFEST: Dict[str, Any] = {
    "name": "ESPTimeCast",
    "version": "1.0.1",
    "builds": [
        {"chipFamily": "ESP8266", "factory": "esp8266.bin", "update": "esp8266.bin"},
        {"chipFamily": "ESP32", "factory": "esp32_full.bin", "update": "esp32_app.bin"},
        {"chipFamily": "ESP32-C3", "factory": "esp32c3_full.bin", "update": "esp32c3_app.bin"},
        {"chipFamily": "ESP32-S2", "factory": "esp32s2_full.bin", "update": "esp32s2_app.bin"},
        {"chipFamily": "ESP32-S3", "factory": "esp32s3_full.bin", "update": "esp32s3_app.bin"},
    ],
}


class FirmwareRegistry:
    """Lookup of firmware builds by chip family."""

    def __init__(self, name: str, version: str, builds: Dict[ChipFamily, FirmwareBuild],
                 base: Union[str, Path] = "bins"):
        self.name = name
        self.version = version
        self.base = str(base)
        self._builds = builds

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any], base: Union[str, Path] = "bins") -> "FirmwareRegistry":
        """Build a registry from a manifest dict.

        Image paths are prefixed with ``v<version>/``. Builds for chip names
        the installer does not know are skipped.
        """
        version = str(manifest.get("version", ""))
        prefix = f"v{version}/" if version else ""
        builds: Dict[ChipFamily, FirmwareBuild] = {}

        for entry in manifest.get("builds", []):
            try:
                family = ChipFamily(entry["chipFamily"])
            except (KeyError, ValueError):
                logger.warning(f"Skipping manifest build with unknown chip family: {entry}")
                continue
            builds[family] = FirmwareBuild(
                chip_family=family,
                factory=prefix + entry["factory"],
                update=prefix + entry.get("update", entry["factory"]),
            )

        return cls(manifest.get("name", ""), version, builds, base)

    @classmethod
    def from_file(cls, manifest_path: Path, base: Union[str, Path, None] = None) -> "FirmwareRegistry":
        """Load a manifest JSON file; images default to its directory."""
        with open(manifest_path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
        return cls.from_manifest(manifest, base if base is not None else manifest_path.parent)

    @classmethod
    def default(cls, base: Union[str, Path] = "bins") -> "FirmwareRegistry":
        return cls.from_manifest(DEFAULT_MANIFEST, base)

    def find(self, family: ChipFamily) -> Optional[FirmwareBuild]:
        """Return the build for a family, or None when there is none."""
        return self._builds.get(family)

    @property
    def families(self) -> list[ChipFamily]:
        return list(self._builds)

    def resolve(self, image_path: str) -> str:
        """Join an image path onto the registry base."""
        if self._is_remote:
            return f"{self.base.rstrip('/')}/{image_path}"
        return str(Path(self.base) / image_path)

    async def load_image(self, image_path: str) -> bytes:
        """Fetch the bytes of an image.

        Raises:
            InvalidFirmwareError: If the image cannot be read or is empty.
        """
        location = self.resolve(image_path)
        logger.info(f"Fetching firmware {location}")

        try:
            if self._is_remote:
                async with HttpClient() as client:
                    data = await client.get_bytes(location)
            else:
                data = await asyncio.to_thread(Path(location).read_bytes)
        except (HttpClientError, OSError) as e:
            raise InvalidFirmwareError("no se pudo leer la imagen", location, e) from e

        if not data:
            raise InvalidFirmwareError("imagen vacía", location)

        logger.info(f"Firmware loaded: {len(data)} bytes")
        return data

    @property
    def _is_remote(self) -> bool:
        return self.base.startswith(("http://", "https://"))
