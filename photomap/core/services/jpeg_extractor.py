"""JPEG metadata extraction through an ordered list of strategy tiers.

Each tier is a pure function `bytes -> ExtractedFields | None`:

1. `primary_ifd`: structured reader, GPS directory linked from IFD0.
2. `any_ifd`: structured reader, every directory searched for GPS.
3. Tolerance comes from Pillow's directory loader used by tiers 1 and 2: bad
   entries are skipped instead of failing the parse.
4. `raw_scan`: byte scanner resolving offsets against the whole file.

The first tier that yields a coordinate wins. Tiers that only recover a
capture time or orientation are kept as a fallback result.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Optional

from photomap.core.models import ExtractedFields
from photomap.core.services.exif_reader import any_ifd_fields, primary_ifd_fields
from photomap.core.services.interfaces import CorruptContainerError
from photomap.core.services.raw_exif_parser import find_exif_segment, raw_jpeg_fields

JPEG_SOI = b"\xff\xd8"

Strategy = Callable[[bytes], Optional[ExtractedFields]]


def _segment_tiff(data: bytes) -> bytes | None:
    segment = find_exif_segment(data)
    if segment is None:
        return None
    start, end = segment
    return data[start:end]


def primary_ifd(data: bytes) -> ExtractedFields | None:
    """Tier 1 over the APP1 segment as declared."""
    tiff = _segment_tiff(data)
    return primary_ifd_fields(tiff) if tiff else None


def any_ifd(data: bytes) -> ExtractedFields | None:
    """Tier 2 over the APP1 segment as declared."""
    tiff = _segment_tiff(data)
    return any_ifd_fields(tiff) if tiff else None


def raw_scan(data: bytes) -> ExtractedFields | None:
    """Tier 4 over the whole file."""
    return raw_jpeg_fields(data)


JPEG_STRATEGIES: tuple[Strategy, ...] = (primary_ifd, any_ifd, raw_scan)
JPEG_STRATEGIES_RAW_FIRST: tuple[Strategy, ...] = (raw_scan, primary_ifd, any_ifd)


def _merge(found: ExtractedFields, fallback: ExtractedFields | None) -> ExtractedFields:
    """Fill capture time and orientation missing from `found` with `fallback`."""
    if fallback is None:
        return found
    return replace(
        found,
        datetime=found.datetime or fallback.datetime,
        orientation=found.orientation if found.orientation != 1 else fallback.orientation,
    )


def run_strategies(strategies: Sequence[Strategy], data: bytes) -> ExtractedFields | None:
    """Run `strategies` in order and stop at the first result with GPS.

    When no tier finds a coordinate the first non-empty result is returned so
    the capture time still reaches the skip statistics.
    """
    fallback: ExtractedFields | None = None
    for strategy in strategies:
        fields = strategy(data)
        if fields is None:
            continue
        if fields.has_gps:
            return _merge(fields, fallback)
        if fallback is None:
            fallback = fields
    return fallback


def extract_jpeg(data: bytes, prefer_raw: bool = False) -> ExtractedFields | None:
    """Extract GPS, capture time and orientation from JPEG bytes.

    Returns None when the file carries no EXIF segment at all.

    Raises:
        CorruptContainerError: `data` does not start with a JPEG SOI marker.
    """
    if not data.startswith(JPEG_SOI):
        raise CorruptContainerError("missing JPEG start-of-image marker")
    if find_exif_segment(data) is None:
        return None
    strategies = JPEG_STRATEGIES_RAW_FIRST if prefer_raw else JPEG_STRATEGIES
    return run_strategies(strategies, data)
