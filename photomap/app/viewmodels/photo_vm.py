"""Lightweight view model wrapper around `PhotoRecord`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from photomap.core.models import PhotoRecord
from photomap.core.services.exif_fields import orientation_to_transform


@dataclass
class PhotoVM:
    """Expose convenient properties for the serving layer and renderer."""

    record: PhotoRecord

    @property
    def file_name(self) -> str:
        """Base name of the relative path."""
        return self.record.file_name

    @property
    def folder(self) -> str:
        """Folder portion of the relative path (root label included)."""
        parent = PurePosixPath(self.record.relative_path).parent
        return "" if str(parent) == "." else parent.as_posix()

    @property
    def year(self) -> int | None:
        return self.record.year

    @property
    def rotation_degrees(self) -> int:
        """Clockwise rotation the renderer applies for the EXIF orientation."""
        return orientation_to_transform(self.record.orientation)[0]

    @property
    def mirrored(self) -> bool:
        return orientation_to_transform(self.record.orientation)[1]

    @property
    def coordinates(self) -> tuple[float, float] | None:
        """`(lat, lng)` when the record has GPS."""
        if not self.record.has_gps:
            return None
        return self.record.latitude, self.record.longitude  # type: ignore[return-value]

    def to_dict(self) -> dict[str, Any]:
        """Marker payload for the map client."""
        return {
            "filename": self.file_name,
            "relative_path": self.record.relative_path,
            "file_path": self.record.absolute_path,
            "lat": self.record.latitude,
            "lng": self.record.longitude,
            "datetime": self.record.datetime or "",
            "year": self.year,
            "orientation": self.record.orientation,
            "is_heif": self.record.is_heif,
        }
