"""Structured EXIF reading through Pillow.

Two extraction strategies are built on Pillow's TIFF directory loader, which
skips unsupported or truncated entries instead of failing the whole block:

- `primary_ifd_fields`: `Image.Exif` with GPS from `get_ifd(GPSInfo)`, the
  location used by nearly every camera.
- `any_ifd_fields`: walks every directory reachable from IFD0 (the IFD chain
  and the Exif, GPS and Interop sub-directories) and takes the first
  coordinate/reference pair it finds, for devices that store GPS outside the
  conventional directory.

The walk is iterative and bounded by `MAX_DIRECTORIES`; revisited offsets are
skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import io
import struct
from typing import Any

from PIL import ExifTags, Image, TiffImagePlugin, TiffTags

from photomap.core.models import ExtractedFields
from photomap.core.services.exif_fields import (
    combine_gps,
    normalize_datetime,
    normalize_orientation,
)

TAG_ORIENTATION = 0x0112
TAG_DATETIME = 0x0132
TAG_DATETIME_ORIGINAL = 0x9003
TAG_DATETIME_DIGITIZED = 0x9004

GPS_LATITUDE_REF = 0x0001
GPS_LATITUDE = 0x0002
GPS_LONGITUDE_REF = 0x0003
GPS_LONGITUDE = 0x0004

SUB_IFD_POINTERS = {
    ExifTags.IFD.Exif: "Exif",
    ExifTags.IFD.GPSInfo: "GPS",
    ExifTags.IFD.Interop: "Interop",
}
_PRIMARY_PARENTS = {"IFD0", "Exif"}
_RATIONAL_TYPES = (TiffTags.RATIONAL, TiffTags.SIGNED_RATIONAL)

MAX_DIRECTORIES = 32
MAX_CHAINED_IFDS = 8

# errors Pillow raises on malformed TIFF data
_PILLOW_ERRORS = (SyntaxError, OSError, ValueError, TypeError, KeyError, struct.error)

# (directory, tag) in order of preference
_DATETIME_SOURCES = (
    ("Exif", TAG_DATETIME_ORIGINAL),
    ("IFD0", TAG_DATETIME),
    ("Exif", TAG_DATETIME_DIGITIZED),
)


class ExifFormatError(ValueError):
    """The block is not a TIFF structure."""


@dataclass(frozen=True)
class TiffField:
    """One decoded IFD entry."""

    tag: int
    type: int
    values: Any


@dataclass
class IfdDirectory:
    """A named image file directory and its fields keyed by tag."""

    name: str
    offset: int
    fields: dict[int, TiffField] = field(default_factory=dict)

    def get(self, tag: int) -> Any:
        """Return decoded values for `tag`, or None if absent."""
        entry = self.fields.get(tag)
        return entry.values if entry is not None else None


@dataclass
class ExifData:
    """Every directory found in a TIFF block, in discovery order."""

    byte_order: str
    directories: list[IfdDirectory] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def directory(self, name: str) -> IfdDirectory | None:
        """Return the directory called `name`, if it was found."""
        for directory in self.directories:
            if directory.name == name:
                return directory
        return None

    def value(self, directory_name: str, tag: int) -> Any:
        """Return decoded values of `tag` in `directory_name`, or None."""
        directory = self.directory(directory_name)
        return directory.get(tag) if directory is not None else None


def _pointer(value: Any) -> int | None:
    if isinstance(value, tuple):
        value = value[0] if value else None
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


class TiffReader:
    """Walks the directories of a TIFF block held in memory."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._fp = io.BytesIO(data)
        self._head = data[:8]
        self._endian = "<"
        self._warnings: list[str] = []
        self._visited: set[int] = set()

    def read(self) -> ExifData:
        """Parse the block; raises `ExifFormatError` when the TIFF header is invalid."""
        try:
            header = TiffImagePlugin.ImageFileDirectory_v2(self._head)
        except _PILLOW_ERRORS as ex:
            raise ExifFormatError(f"not a TIFF block: {ex}") from ex
        self._endian = "<" if self._head[:2] == b"II" else ">"

        directories: list[IfdDirectory] = []
        # depth-first: sub-directories of an IFD come before the next IFD in the chain
        stack: list[tuple[int, str, int | None]] = [(header.next, "IFD0", None)]
        while stack:
            if len(directories) >= MAX_DIRECTORIES:
                self._warnings.append(
                    f"directory limit {MAX_DIRECTORIES} reached, {len(stack)} directories not read"
                )
                break
            offset, name, group = stack.pop()
            directory = self._read_ifd(offset, name, group)
            if directory is None:
                continue
            directories.append(directory)

            if group is None:
                index = int(name[3:])
                next_offset = self._next_offset(offset, name)
                if next_offset and index + 1 < MAX_CHAINED_IFDS:
                    stack.append((next_offset, f"IFD{index + 1}", None))
            children = []
            for tag, kind in SUB_IFD_POINTERS.items():
                child_offset = _pointer(directory.get(tag))
                if child_offset is None:
                    continue
                child_name = kind if name in _PRIMARY_PARENTS else f"{kind}:{name}"
                children.append((child_offset, child_name, int(tag)))
            stack.extend(reversed(children))
        return ExifData(byte_order=self._endian, directories=directories, warnings=self._warnings)

    def _read_ifd(self, offset: int, name: str, group: int | None) -> IfdDirectory | None:
        if offset in self._visited:
            self._warnings.append(f"{name}: offset {offset} already visited")
            return None
        if offset + 2 > len(self._data):
            self._warnings.append(f"{name}: offset {offset} out of range")
            return None
        self._visited.add(offset)

        ifd = TiffImagePlugin.ImageFileDirectory_v2(self._head, group=group)
        self._fp.seek(offset)
        try:
            ifd.load(self._fp)
        except _PILLOW_ERRORS as ex:
            self._warnings.append(f"{name}: {ex}")
            return None

        directory = IfdDirectory(name=name, offset=offset)
        for tag in list(ifd):
            try:
                values = ifd[tag]
            except _PILLOW_ERRORS as ex:
                self._warnings.append(f"{name}: tag 0x{tag:04X} undecodable ({ex})")
                continue
            directory.fields[tag] = TiffField(tag=tag, type=ifd.tagtype.get(tag, 0), values=values)
        return directory

    def _next_offset(self, offset: int, name: str) -> int:
        (count,) = struct.unpack_from(self._endian + "H", self._data, offset)
        pos = offset + 2 + 12 * count
        if pos + 4 > len(self._data):
            self._warnings.append(f"{name}: entry table truncated")
            return 0
        (next_offset,) = struct.unpack_from(self._endian + "I", self._data, pos)
        return next_offset


def read_exif(tiff: bytes) -> ExifData:
    """Parse a TIFF block (bytes starting with `II*\\0` or `MM\\0*`)."""
    return TiffReader(tiff).read()


def _coordinate(
    lat: Any, lat_ref: Any, lon: Any, lon_ref: Any
) -> tuple[float, float] | None:
    if not isinstance(lat, tuple) or not isinstance(lon, tuple):
        return None
    return combine_gps(lat, lat_ref, lon, lon_ref)


def gps_from_directory(
    directory: IfdDirectory, require_ascii_refs: bool = False
) -> tuple[float, float] | None:
    """Decode the GPS coordinate stored in `directory`, if it holds a valid one."""
    lat = directory.fields.get(GPS_LATITUDE)
    lon = directory.fields.get(GPS_LONGITUDE)
    lat_ref = directory.fields.get(GPS_LATITUDE_REF)
    lon_ref = directory.fields.get(GPS_LONGITUDE_REF)
    if lat is None or lon is None or lat_ref is None or lon_ref is None:
        return None
    if lat.type not in _RATIONAL_TYPES or lon.type not in _RATIONAL_TYPES:
        return None
    if require_ascii_refs and (lat_ref.type != TiffTags.ASCII or lon_ref.type != TiffTags.ASCII):
        return None
    return _coordinate(lat.values, lat_ref.values, lon.values, lon_ref.values)


def datetime_from_exif(exif: ExifData) -> str | None:
    """Canonical capture time: DateTimeOriginal, then DateTime, then DateTimeDigitized."""
    for directory, tag in _DATETIME_SOURCES:
        normalized = normalize_datetime(exif.value(directory, tag))
        if normalized:
            return normalized
    return None


def orientation_from_exif(exif: ExifData) -> int:
    """EXIF orientation from IFD0, defaulting to 1."""
    return normalize_orientation(exif.value("IFD0", TAG_ORIENTATION))


def _build_fields(
    gps: tuple[float, float] | None, datetime: str | None, orientation: int, source: str
) -> ExtractedFields | None:
    fields = ExtractedFields(
        latitude=gps[0] if gps else None,
        longitude=gps[1] if gps else None,
        datetime=datetime,
        orientation=orientation,
        source=source if gps else None,
    )
    return None if fields.is_empty else fields


def primary_ifd_fields(tiff: bytes) -> ExtractedFields | None:
    """Fast path: GPS from the GPS directory linked from IFD0."""
    exif = Image.Exif()
    try:
        exif.load(tiff)
        gps_ifd = exif.get_ifd(ExifTags.IFD.GPSInfo) or {}
        exif_ifd = exif.get_ifd(ExifTags.IFD.Exif) or {}
        gps = _coordinate(
            gps_ifd.get(GPS_LATITUDE),
            gps_ifd.get(GPS_LATITUDE_REF),
            gps_ifd.get(GPS_LONGITUDE),
            gps_ifd.get(GPS_LONGITUDE_REF),
        )
        candidates = (
            exif_ifd.get(TAG_DATETIME_ORIGINAL),
            exif.get(TAG_DATETIME),
            exif_ifd.get(TAG_DATETIME_DIGITIZED),
        )
        orientation = normalize_orientation(exif.get(TAG_ORIENTATION))
    except _PILLOW_ERRORS:
        return None
    datetime = next((dt for dt in map(normalize_datetime, candidates) if dt), None)
    return _build_fields(gps, datetime, orientation, "primary_ifd")


def any_ifd_fields(tiff: bytes) -> ExtractedFields | None:
    """Exhaustive path: first coordinate/reference pair found in any directory."""
    try:
        exif = read_exif(tiff)
    except ExifFormatError:
        return None
    gps = None
    for directory in exif.directories:
        is_gps_dir = directory.name.split(":", 1)[0] == "GPS"
        gps = gps_from_directory(directory, require_ascii_refs=not is_gps_dir)
        if gps is not None:
            break
    return _build_fields(gps, datetime_from_exif(exif), orientation_from_exif(exif), "any_ifd")
