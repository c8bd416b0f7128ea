"""Low-level EXIF byte scanner used as the last-resort extraction tier.

Unlike the structured reader this parser never slices the APP1 segment to its
declared length: offsets are resolved against the whole buffer, so a segment
whose length field was truncated by an editing tool still yields its GPS
block. It reads only what is needed (GPS IFD, orientation, capture time) and
returns None on anything it cannot make sense of.
"""

from __future__ import annotations

import struct

from photomap.core.models import ExtractedFields
from photomap.core.services.exif_fields import (
    combine_gps,
    normalize_datetime,
    normalize_orientation,
)

EXIF_SIGNATURE = b"Exif\x00\x00"

_SOI = b"\xff\xd8"
_APP1 = 0xE1
_SOS = 0xDA
_EOI = 0xD9
_STANDALONE_MARKERS = frozenset({0x01, *range(0xD0, 0xD8)})

_ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 2, 3, 4, 5, 10
_MAX_ENTRIES = 1024

_TAG_ORIENTATION = 0x0112
_TAG_DATETIME = 0x0132
_TAG_EXIF_IFD = 0x8769
_TAG_GPS_IFD = 0x8825
_TAG_DATETIME_ORIGINAL = 0x9003

# entry: (type, count, absolute position of the 4-byte value/offset field)
_Entry = tuple[int, int, int]


def find_exif_segment(data: bytes) -> tuple[int, int] | None:
    """Locate the EXIF TIFF block in JPEG bytes.

    Returns `(tiff_start, declared_end)` where `declared_end` is the end of the
    APP1 segment according to its length field. When the marker chain is
    broken the `Exif\\0\\0` signature is searched instead and the declared end
    is the end of the buffer.
    """
    if data[:2] == _SOI:
        pos = 2
        while pos + 4 <= len(data):
            if data[pos] != 0xFF:
                break
            marker = data[pos + 1]
            if marker == 0xFF:
                pos += 1
                continue
            if marker in _STANDALONE_MARKERS:
                pos += 2
                continue
            if marker in (_SOS, _EOI):
                break
            (length,) = struct.unpack_from(">H", data, pos + 2)
            if marker == _APP1 and data[pos + 4 : pos + 10] == EXIF_SIGNATURE:
                return pos + 10, min(len(data), pos + 2 + length)
            if length < 2:
                break
            pos += 2 + length

    index = data.find(EXIF_SIGNATURE)
    if index < 0:
        return None
    return index + len(EXIF_SIGNATURE), len(data)


class _RawTiff:
    """Absolute-offset view over a TIFF block embedded in a larger buffer."""

    def __init__(self, data: bytes, base: int, endian: str) -> None:
        self.data = data
        self.base = base
        self.endian = endian

    def unpack(self, fmt: str, pos: int) -> tuple:
        return struct.unpack_from(self.endian + fmt, self.data, pos)

    def entries(self, offset: int) -> tuple[dict[int, _Entry], int]:
        """Return the IFD entries at `offset` and the next-IFD offset (0 if none)."""
        pos = self.base + offset
        if offset <= 0 or pos + 2 > len(self.data):
            return {}, 0
        (count,) = self.unpack("H", pos)
        if count > _MAX_ENTRIES:
            return {}, 0
        pos += 2
        found: dict[int, _Entry] = {}
        for _ in range(count):
            if pos + 12 > len(self.data):
                return found, 0
            tag, field_type, value_count = self.unpack("HHI", pos)
            found.setdefault(tag, (field_type, value_count, pos + 8))
            pos += 12
        next_offset = self.unpack("I", pos)[0] if pos + 4 <= len(self.data) else 0
        return found, next_offset

    def pointer(self, entry: _Entry | None) -> int:
        if entry is None or entry[0] not in (_LONG, 13):
            return 0
        return self.unpack("I", entry[2])[0]

    def short(self, entry: _Entry | None) -> int | None:
        if entry is None or entry[0] != _SHORT or entry[1] < 1:
            return None
        return self.unpack("H", entry[2])[0]

    def ascii(self, entry: _Entry | None) -> str | None:
        if entry is None or entry[0] != _ASCII or entry[1] < 1:
            return None
        _, count, value_pos = entry
        start = value_pos if count <= 4 else self.base + self.unpack("I", value_pos)[0]
        if start + count > len(self.data):
            return None
        return self.data[start : start + count].split(b"\x00", 1)[0].decode("latin-1")

    def rationals(self, entry: _Entry | None) -> list[tuple[int, int]] | None:
        if entry is None or entry[0] not in (_RATIONAL, _SRATIONAL) or entry[1] != 3:
            return None
        start = self.base + self.unpack("I", entry[2])[0]
        if start + 24 > len(self.data):
            return None
        code = "6I" if entry[0] == _RATIONAL else "6i"
        ints = self.unpack(code, start)
        return [(ints[0], ints[1]), (ints[2], ints[3]), (ints[4], ints[5])]


def _gps(tiff: _RawTiff, gps_offset: int) -> tuple[float, float] | None:
    entries, _ = tiff.entries(gps_offset)
    if not entries:
        return None
    return combine_gps(
        tiff.rationals(entries.get(0x0002)),
        tiff.ascii(entries.get(0x0001)),
        tiff.rationals(entries.get(0x0004)),
        tiff.ascii(entries.get(0x0003)),
    )


def raw_tiff_fields(data: bytes, tiff_start: int) -> ExtractedFields | None:
    """Decode GPS, orientation and capture time from the TIFF block at `tiff_start`."""
    try:
        if tiff_start < 0 or tiff_start + 8 > len(data):
            return None
        order = data[tiff_start : tiff_start + 2]
        if order == b"II":
            endian = "<"
        elif order == b"MM":
            endian = ">"
        else:
            return None
        tiff = _RawTiff(data, tiff_start, endian)
        magic, ifd0_offset = tiff.unpack("HI", tiff_start + 2)
        if magic != 42:
            return None

        ifd0, ifd1_offset = tiff.entries(ifd0_offset)
        gps_offset = tiff.pointer(ifd0.get(_TAG_GPS_IFD))
        if not gps_offset and ifd1_offset:
            ifd1, _ = tiff.entries(ifd1_offset)
            gps_offset = tiff.pointer(ifd1.get(_TAG_GPS_IFD))
        gps = _gps(tiff, gps_offset) if gps_offset else None

        datetime = None
        exif_offset = tiff.pointer(ifd0.get(_TAG_EXIF_IFD))
        if exif_offset:
            exif, _ = tiff.entries(exif_offset)
            datetime = normalize_datetime(tiff.ascii(exif.get(_TAG_DATETIME_ORIGINAL)))
        if datetime is None:
            datetime = normalize_datetime(tiff.ascii(ifd0.get(_TAG_DATETIME)))
        orientation = normalize_orientation(tiff.short(ifd0.get(_TAG_ORIENTATION)))
    except struct.error:
        return None

    fields = ExtractedFields(
        latitude=gps[0] if gps else None,
        longitude=gps[1] if gps else None,
        datetime=datetime,
        orientation=orientation,
        source="raw_scan" if gps else None,
    )
    return None if fields.is_empty else fields


def raw_block_fields(tiff: bytes) -> ExtractedFields | None:
    """Raw scan over a standalone TIFF block (as extracted from HEIF)."""
    return raw_tiff_fields(tiff, 0)


def raw_jpeg_fields(data: bytes) -> ExtractedFields | None:
    """Raw scan over whole JPEG bytes, ignoring the APP1 declared length."""
    segment = find_exif_segment(data)
    if segment is None:
        return None
    return raw_tiff_fields(data, segment[0])
