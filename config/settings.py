"""Installer settings and persisted user preferences.

Settings are validated with Pydantic; the only user preference, the
"keep data" flag, lives in a small JSON file.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "timecast-installer"


class InstallerSettings(BaseModel):
    """Settings for an installer instance."""

    firmware_base: str = Field(
        "bins",
        min_length=1,
        description="Local directory or HTTP(S) base URL holding the firmware images"
    )

    manifest_path: Optional[Path] = Field(
        None,
        description="Manifest JSON; the built-in manifest is used when empty"
    )

    preferences_path: Path = Field(
        DEFAULT_CONFIG_DIR / "preferences.json",
        description="Where the keep-data preference is stored"
    )

    port: Optional[str] = Field(
        None,
        description="Serial device to use instead of asking the user"
    )

    @field_validator('firmware_base')
    @classmethod
    def validate_firmware_base(cls, v):
        """Validar la base de firmware.

        Raises:
            ValueError: Si la base está vacía o usa un esquema no soportado
        """
        v = v.strip()
        if not v:
            raise ValueError("firmware_base no puede estar vacío")
        if "://" in v and not v.startswith(("http://", "https://")):
            raise ValueError("firmware_base solo admite rutas locales o URLs http(s)")
        return v


class PreferenceStore:
    """Persisted user preferences (currently only ``keepData``)."""

    KEEP_DATA_KEY = "keepData"

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def keep_data(self) -> bool:
        """True if the user wants to preserve current data. Defaults to False."""
        return self._load().get(self.KEEP_DATA_KEY) is True

    @keep_data.setter
    def keep_data(self, value: bool) -> None:
        data = self._load()
        data[self.KEEP_DATA_KEY] = bool(value)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Preference {self.KEEP_DATA_KEY} set to {bool(value)}")
