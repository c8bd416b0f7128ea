"""Settings access helpers for JSON-based configuration."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger

from photomap.infrastructure.utils import get_app_data_dir

SETTINGS_FILE_NAME = "settings.json"


def default_settings_path() -> Path:
    """Location of `settings.json` in the application data directory."""
    return get_app_data_dir() / SETTINGS_FILE_NAME


class JsonSettings:
    """Lightweight JSON settings reader with dotted-key access.

    A missing file yields empty settings so every lookup falls back to its
    default. A file that exists but is not valid JSON is an error.
    """

    def __init__(self, settings_path: str | Path | None = None, data: dict[str, Any] | None = None) -> None:
        self._path = Path(settings_path) if settings_path is not None else default_settings_path()
        if data is not None:
            self._data = data
        elif self._path.exists():
            with self._path.open("r", encoding="utf-8") as f:
                self._data = json.load(f)
            if not isinstance(self._data, dict):
                raise ValueError(f"settings root must be an object: {self._path}")
        else:
            logger.info("No settings file at {}, using defaults", self._path)
            self._data = {}

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any | None = None) -> Any:
        """Return value for dotted `key`, or `default` if not present."""
        parts = key.split(".")
        node: Any = self._data
        for part in parts:
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node

    def get_int(self, key: str, default: int, minimum: int | None = None) -> int:
        """Integer setting; invalid values fall back to `default`."""
        value = self.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning("Setting {} must be a number, got {!r}", key, value)
            return default
        result = int(value)
        if minimum is not None and result < minimum:
            logger.warning("Setting {}={} below minimum {}", key, result, minimum)
            return default
        return result

    def get_float(self, key: str, default: float) -> float:
        """Float setting; invalid values fall back to `default`."""
        value = self.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning("Setting {} must be a number, got {!r}", key, value)
            return default
        return float(value)

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key, default)
        return value if isinstance(value, bool) else default

    def get_str_list(self, key: str, default: list[str] | None = None) -> list[str]:
        """List of strings; a single string is accepted as a one-item list."""
        value = self.get(key)
        if value is None:
            return list(default or [])
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [str(item) for item in value if isinstance(item, str) and item]
        logger.warning("Setting {} must be a list of strings, got {!r}", key, value)
        return list(default or [])


def parse_default_sort(settings: JsonSettings) -> list[tuple[str, bool]]:
    """Read `sorting.defaults`, a list like `[{"field": "datetime", "asc": false}]`."""
    raw = settings.get("sorting.defaults", [])
    result: list[tuple[str, bool]] = []
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict) and "field" in item:
                field = str(item.get("field"))
                asc = bool(item.get("asc", True))
                result.append((field, asc))
    return result
