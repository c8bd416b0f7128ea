"""Core domain models for extracted photo metadata and the persisted cache."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath


@dataclass(frozen=True)
class PhotoRecord:
    """A single photo placed on the map, produced by the extraction pipeline."""

    relative_path: str
    absolute_path: str
    latitude: float | None
    longitude: float | None
    datetime: str | None = None
    orientation: int = 1
    is_heif: bool = False

    @property
    def file_name(self) -> str:
        """Base name of the relative path."""
        return PurePosixPath(self.relative_path).name

    @property
    def has_gps(self) -> bool:
        """True when both coordinates are present."""
        return self.latitude is not None and self.longitude is not None

    @property
    def year(self) -> int | None:
        """Capture year taken from the canonical datetime, if any."""
        if not self.datetime or len(self.datetime) < 4 or not self.datetime[:4].isdigit():
            return None
        return int(self.datetime[:4])


@dataclass(frozen=True)
class ExtractedFields:
    """Metadata fields an extractor recovered from one file.

    Attributes:
        latitude: Signed degrees, or None when no valid coordinate was found.
        longitude: Signed degrees, or None when no valid coordinate was found.
        datetime: Canonical `YYYY-MM-DD HH:MM:SS` capture time, if known.
        orientation: EXIF orientation 1-8.
        source: Name of the strategy that produced the coordinate.
    """

    latitude: float | None = None
    longitude: float | None = None
    datetime: str | None = None
    orientation: int = 1
    source: str | None = None

    @property
    def has_gps(self) -> bool:
        """True when both coordinates are present."""
        return self.latitude is not None and self.longitude is not None

    @property
    def is_empty(self) -> bool:
        """True when nothing beyond the default orientation was recovered."""
        return not self.has_gps and self.datetime is None and self.orientation == 1


@dataclass(frozen=True)
class CachedStore:
    """Snapshot of the record store together with its provenance."""

    format_version: int
    source_roots: tuple[str, ...]
    records: tuple[PhotoRecord, ...] = field(default_factory=tuple)
