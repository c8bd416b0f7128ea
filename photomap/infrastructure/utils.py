"""Filesystem helpers: application data directory, root paths and timestamps.

Helpers are best-effort and will not raise on errors; callers should expect
`None` when data is not available.
"""

from __future__ import annotations

from datetime import datetime
import os
from pathlib import Path
import sys

from loguru import logger

from photomap.core.services.exif_fields import format_datetime

APP_NAME = "PhotoMap"


def get_app_data_dir() -> Path:
    """Per-user application data directory (not created)."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / APP_NAME
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / APP_NAME


def normalize_root(root: str | os.PathLike[str]) -> str:
    """Absolute, normalized form of a root folder used for comparisons."""
    return os.path.normcase(os.path.abspath(os.path.expanduser(os.fspath(root))))


def normalize_roots(roots: list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Normalize `roots`, dropping duplicates while keeping the first occurrence order."""
    seen: dict[str, None] = {}
    for root in roots:
        seen.setdefault(normalize_root(root), None)
    return tuple(seen)


def same_root_set(left: list[str] | tuple[str, ...], right: list[str] | tuple[str, ...]) -> bool:
    """True when both collections name the same folders, in any order."""
    return set(normalize_roots(left)) == set(normalize_roots(right))


def get_filesystem_modified_datetime(path: str) -> str | None:
    """Best-effort file modification time in canonical datetime form."""
    try:
        ts = os.path.getmtime(path)
        return format_datetime(datetime.fromtimestamp(ts))
    except (OSError, ValueError, OverflowError) as ex:
        logger.debug("getmtime failed for {}: {}", path, ex)
        return None
