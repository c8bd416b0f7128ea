"""HEIC/HEIF/AVIF metadata extraction.

The EXIF block of an HEIF file is an item of type `Exif` inside the top-level
`meta` box. Its location is listed in `iloc`, either as file offsets or as a
range of the `idat` box. The item payload starts with a 4-byte big-endian
offset to the TIFF header. Once the TIFF block is isolated the same strategy
tiers as for JPEG are applied.

When the box structure cannot be walked, pillow-heif (libheif) gets a chance to
recover the EXIF block before the file is reported as corrupt.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
import io
import struct

from loguru import logger
import pillow_heif

from photomap.core.models import ExtractedFields
from photomap.core.services.exif_reader import any_ifd_fields, primary_ifd_fields
from photomap.core.services.interfaces import CorruptContainerError
from photomap.core.services.jpeg_extractor import (
    JPEG_SOI,
    Strategy,
    extract_jpeg,
    run_strategies,
)
from photomap.core.services.raw_exif_parser import EXIF_SIGNATURE, raw_block_fields

TIFF_STRATEGIES: tuple[Strategy, ...] = (primary_ifd_fields, any_ifd_fields, raw_block_fields)
TIFF_STRATEGIES_RAW_FIRST: tuple[Strategy, ...] = (raw_block_fields, primary_ifd_fields, any_ifd_fields)

_TIFF_MARKERS = (b"II*\x00", b"MM\x00*")
_TIFF_SEARCH_WINDOW = 64


@dataclass(frozen=True)
class Box:
    """An ISO-BMFF box: `start` is the first payload byte, `end` is exclusive."""

    type: bytes
    start: int
    end: int


def iter_boxes(data: bytes, start: int, end: int) -> Iterator[Box]:
    """Yield the boxes laid out between `start` and `end`.

    Raises:
        CorruptContainerError: a box header is truncated or a size overruns its parent.
    """
    pos = start
    while pos < end:
        if pos + 8 > end:
            raise CorruptContainerError(f"truncated box header at offset {pos}")
        size, box_type = struct.unpack_from(">I4s", data, pos)
        header = 8
        if size == 1:
            if pos + 16 > end:
                raise CorruptContainerError(f"truncated large box header at offset {pos}")
            (size,) = struct.unpack_from(">Q", data, pos + 8)
            header = 16
        elif size == 0:
            size = end - pos
        if size < header or pos + size > end:
            raise CorruptContainerError(f"box {box_type!r} at offset {pos} has invalid size {size}")
        yield Box(box_type, pos + header, pos + size)
        pos += size


def _find(boxes: list[Box], box_type: bytes) -> Box | None:
    return next((box for box in boxes if box.type == box_type), None)


def _read_uint(data: bytes, pos: int, size: int, limit: int) -> int:
    if size == 0:
        return 0
    if pos + size > limit:
        raise CorruptContainerError("iloc box truncated")
    return int.from_bytes(data[pos : pos + size], "big")


def _exif_item_ids(data: bytes, iinf: Box) -> list[int]:
    pos = iinf.start
    version = data[pos]
    pos += 6 if version == 0 else 8  # full box header + entry count
    ids: list[int] = []
    for infe in iter_boxes(data, pos, iinf.end):
        if infe.type != b"infe":
            continue
        p = infe.start
        infe_version = data[p]
        if infe_version < 2:
            continue
        p += 4
        if infe_version == 2:
            (item_id,) = struct.unpack_from(">H", data, p)
            p += 2
        else:
            (item_id,) = struct.unpack_from(">I", data, p)
            p += 4
        p += 2  # item_protection_index
        if data[p : p + 4] == b"Exif":
            ids.append(item_id)
    return ids


def _parse_iloc(data: bytes, iloc: Box) -> dict[int, tuple[int, list[tuple[int, int]]]]:
    """Map item id -> (construction method, [(offset, length), ...])."""
    limit = iloc.end
    pos = iloc.start
    version = data[pos]
    if version > 2:
        raise CorruptContainerError(f"unsupported iloc version {version}")
    pos += 4
    offset_size, length_size = data[pos] >> 4, data[pos] & 0x0F
    base_offset_size = data[pos + 1] >> 4
    index_size = data[pos + 1] & 0x0F if version in (1, 2) else 0
    pos += 2
    count_size = 2 if version < 2 else 4
    item_count = _read_uint(data, pos, count_size, limit)
    pos += count_size

    items: dict[int, tuple[int, list[tuple[int, int]]]] = {}
    for _ in range(item_count):
        item_id = _read_uint(data, pos, count_size, limit)
        pos += count_size
        method = 0
        if version in (1, 2):
            method = _read_uint(data, pos, 2, limit) & 0x0F
            pos += 2
        pos += 2  # data_reference_index
        base_offset = _read_uint(data, pos, base_offset_size, limit)
        pos += base_offset_size
        extent_count = _read_uint(data, pos, 2, limit)
        pos += 2
        extents = []
        for _ in range(extent_count):
            pos += index_size
            extent_offset = _read_uint(data, pos, offset_size, limit)
            pos += offset_size
            extent_length = _read_uint(data, pos, length_size, limit)
            pos += length_size
            extents.append((base_offset + extent_offset, extent_length))
        items[item_id] = (method, extents)
    return items


def _read_item(data: bytes, method: int, extents: list[tuple[int, int]], idat: Box | None) -> bytes:
    if method == 0:
        base, limit = 0, len(data)
    elif method == 1:
        if idat is None:
            raise CorruptContainerError("Exif item stored in idat but no idat box")
        base, limit = idat.start, idat.end
    else:
        raise CorruptContainerError(f"unsupported iloc construction method {method}")
    chunks = []
    for offset, length in extents:
        start = base + offset
        end = limit if length == 0 else start + length
        if end > limit:
            raise CorruptContainerError(f"Exif extent {offset}+{length} out of range")
        chunks.append(data[start:end])
    return b"".join(chunks)


def tiff_from_exif_payload(payload: bytes) -> bytes | None:
    """Strip the offset prefix (and any `Exif\\0\\0` marker) from an Exif item."""
    if len(payload) >= 4:
        (offset,) = struct.unpack_from(">I", payload, 0)
        start = 4 + offset
        if payload[start : start + 4] in _TIFF_MARKERS:
            return payload[start:]
    if payload.startswith(EXIF_SIGNATURE):
        payload = payload[len(EXIF_SIGNATURE) :]
    if payload[:4] in _TIFF_MARKERS:
        return payload
    hits = [i for i in (payload.find(m, 0, _TIFF_SEARCH_WINDOW) for m in _TIFF_MARKERS) if i >= 0]
    return payload[min(hits) :] if hits else None


def locate_exif_block(data: bytes) -> bytes | None:
    """Return the TIFF block of the `Exif` item, or None if there is none.

    Raises:
        CorruptContainerError: the box structure is invalid.
    """
    try:
        boxes = iter_boxes(data, 0, len(data))
        first = next(boxes, None)
        if first is None or first.type != b"ftyp":
            raise CorruptContainerError("missing leading ftyp box")
        meta = next((box for box in boxes if box.type == b"meta"), None)
        if meta is None:
            raise CorruptContainerError("missing meta box")
        children = list(iter_boxes(data, meta.start + 4, meta.end))
        iinf = _find(children, b"iinf")
        if iinf is None:
            raise CorruptContainerError("missing iinf box")
        exif_ids = _exif_item_ids(data, iinf)
        if not exif_ids:
            return None
        iloc = _find(children, b"iloc")
        if iloc is None:
            raise CorruptContainerError("missing iloc box")
        locations = _parse_iloc(data, iloc)
        for item_id in exif_ids:
            if item_id not in locations:
                continue
            method, extents = locations[item_id]
            tiff = tiff_from_exif_payload(_read_item(data, method, extents, _find(children, b"idat")))
            if tiff is not None:
                return tiff
    except (struct.error, IndexError) as ex:
        raise CorruptContainerError(f"truncated HEIF structure: {ex}") from ex
    raise CorruptContainerError("Exif item has no readable TIFF block")


def exif_via_pillow_heif(data: bytes) -> bytes | None:
    """Let libheif locate the EXIF block; None when it cannot open the file."""
    try:
        heif_file = pillow_heif.open_heif(io.BytesIO(data))
        exif = heif_file.info.get("exif")
    except (OSError, ValueError, RuntimeError, SyntaxError, EOFError) as ex:
        logger.debug("pillow-heif could not open container: {}", ex)
        return None
    if not exif:
        return None
    return tiff_from_exif_payload(bytes(exif))


def extract_heif(data: bytes, prefer_raw: bool = False) -> ExtractedFields | None:
    """Extract GPS, capture time and orientation from HEIF bytes.

    JPEG bytes (a phone saving JPEG under a `.heic` name) are handed to the
    JPEG extractor. A valid container without an `Exif` item yields None.

    Raises:
        CorruptContainerError: the container is broken and libheif cannot read it either.
    """
    if data.startswith(JPEG_SOI):
        return extract_jpeg(data, prefer_raw=prefer_raw)
    try:
        tiff = locate_exif_block(data)
    except CorruptContainerError as ex:
        tiff = exif_via_pillow_heif(data)
        if tiff is None:
            raise
        logger.debug("HEIF box walk failed ({}), EXIF recovered through pillow-heif", ex)
    if tiff is None:
        return None
    strategies = TIFF_STRATEGIES_RAW_FIRST if prefer_raw else TIFF_STRATEGIES
    return run_strategies(strategies, tiff)
