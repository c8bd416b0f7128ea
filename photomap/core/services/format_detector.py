"""Content-based file classification (JPEG / HEIF / unsupported)."""

from __future__ import annotations

import struct

from photomap.core.services.interfaces import FileFormat

HEADER_SIZE = 64

JPEG_SOI = b"\xff\xd8\xff"

HEIF_BRANDS = frozenset(
    {
        b"heic",
        b"heix",
        b"heim",
        b"heis",
        b"hevc",
        b"hevx",
        b"hevm",
        b"hevs",
        b"mif1",
        b"msf1",
        b"avif",
        b"avis",
    }
)


def _ftyp_brands(header: bytes) -> list[bytes]:
    """Return major and compatible brands of a leading `ftyp` box, if any."""
    if len(header) < 12 or header[4:8] != b"ftyp":
        return []
    (size,) = struct.unpack_from(">I", header, 0)
    end = min(size, len(header)) if size >= 16 else len(header)
    brands = [header[8:12]]
    # skip minor_version (4 bytes) after the major brand
    for pos in range(16, end - 3, 4):
        brands.append(header[pos : pos + 4])
    return brands


def detect_format(header: bytes) -> FileFormat:
    """Classify a file by its first bytes; the file name plays no part.

    A `.heic`-named file that actually holds JPEG bytes is reported as JPEG.
    """
    if header.startswith(JPEG_SOI):
        return FileFormat.JPEG
    if any(brand in HEIF_BRANDS for brand in _ftyp_brands(header[:HEADER_SIZE])):
        return FileFormat.HEIF
    return FileFormat.UNSUPPORTED
