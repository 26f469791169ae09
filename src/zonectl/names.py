"""
User-chosen device names, keyed by serial number.
"""

import json
import logging
import os
import platform
from pathlib import Path
from typing import Dict, Optional, Protocol

from .devices import Device

logger = logging.getLogger(__name__)


def get_data_dir() -> Path:
    """Standard per-user data directory for zonectl."""
    # Check XDG_DATA_HOME first (Linux/Unix standard)
    data_dir = os.environ.get("XDG_DATA_HOME")
    if data_dir:
        return Path(data_dir) / "zonectl"

    system = platform.system()
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "zonectl"
    if system == "Windows":
        appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
        return Path(appdata) / "zonectl"
    return Path.home() / ".local" / "share" / "zonectl"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Store persisted as a flat JSON object."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or get_data_dir() / "device_names.json"

    def _load(self) -> Dict[str, str]:
        try:
            if self.path.exists():
                with open(self.path, "r") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load device names: {e}")
        return {}

    def _save(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save device names: {e}")

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)


class NameOverrides:
    """Display names for devices, falling back to the advertised name."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def custom_name(self, device: Device) -> Optional[str]:
        return self._store.get(device.key)

    def display_name(self, device: Device) -> str:
        return self.custom_name(device) or device.name

    def rename(self, device: Device, name: Optional[str]) -> None:
        """Set a custom name; a blank name removes the override."""
        if name and name.strip():
            self._store.set(device.key, name.strip())
            logger.info(f"Renamed {device.key} to {name.strip()}")
        else:
            self._store.delete(device.key)
            logger.info(f"Cleared custom name for {device.key}")
