"""Field-level helpers shared by every metadata extractor.

GPS degree/minute/second decoding with hemisphere signs, multi-format
datetime parsing and EXIF orientation handling live here so that the JPEG,
HEIF and fallback parsers apply exactly the same rules. The helpers are
best-effort: they return None instead of raising on malformed values.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
import math
import re
from typing import Any

CANONICAL_DT_FMT = "%Y-%m-%d %H:%M:%S"

_DATETIME_FORMATS = (
    "%Y:%m:%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%Y:%m:%d %H:%M",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M",
    "%Y/%m/%d %H:%M",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%Y:%m:%d",
    "%Y-%m-%d",
    "%d.%m.%Y",
)

# Date part (year-first or day-first), optional time; trailing sub-seconds
# and UTC offsets are left out of the match.
_DATETIME_RE = re.compile(
    r"\d{4}[:\-/]\d{2}[:\-/]\d{2}(?:[ T]\d{2}:\d{2}(?::\d{2})?)?"
    r"|\d{2}\.\d{2}\.\d{4}(?: \d{2}:\d{2}(?::\d{2})?)?"
)

# orientation -> (clockwise rotation in degrees, mirrored after rotation)
_ORIENTATION_TRANSFORMS: dict[int, tuple[int, bool]] = {
    1: (0, False),
    2: (0, True),
    3: (180, False),
    4: (180, True),
    5: (270, True),
    6: (90, False),
    7: (90, True),
    8: (270, False),
}


def rational_to_float(value: Any) -> float | None:
    """Convert a `(numerator, denominator)` pair or a plain number to float."""
    if value is None:
        return None
    try:
        if isinstance(value, (tuple, list)):
            if len(value) != 2:
                return None
            num, den = value
            if den == 0:
                return None
            result = float(num) / float(den)
        else:
            result = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    return result if math.isfinite(result) else None


def dms_to_degrees(values: Sequence[Any] | None) -> float | None:
    """Combine a degree/minute/second triple into decimal degrees."""
    if values is None or len(values) != 3:
        return None
    parts = [rational_to_float(v) for v in values]
    if any(p is None for p in parts):
        return None
    degrees, minutes, seconds = parts  # type: ignore[misc]
    return degrees + minutes / 60.0 + seconds / 3600.0


def hemisphere_letter(ref: Any) -> str | None:
    """Normalize a GPS reference tag value (`b"N\\x00"`, `"s"`, ...) to one letter."""
    if isinstance(ref, (tuple, list)):
        ref = ref[0] if ref else None
    if ref is None:
        return None
    if isinstance(ref, (bytes, bytearray)):
        ref = bytes(ref).decode("ascii", errors="ignore")
    text = str(ref).strip("\x00 \t").upper()
    return text[:1] or None


def apply_hemisphere(
    magnitude: float | None, ref: Any, positive: str = "N", negative: str = "S"
) -> float | None:
    """Return `magnitude` signed by its hemisphere reference.

    A missing or unrecognized reference yields None; the coordinate is then
    treated as invalid rather than guessed.
    """
    if magnitude is None:
        return None
    letter = hemisphere_letter(ref)
    if letter == positive:
        return magnitude
    if letter == negative:
        return -magnitude
    return None


def signed_latitude(magnitude: float | None, ref: Any) -> float | None:
    """Latitude negated for the `S` reference."""
    return apply_hemisphere(magnitude, ref, positive="N", negative="S")


def signed_longitude(magnitude: float | None, ref: Any) -> float | None:
    """Longitude negated for the `W` reference."""
    return apply_hemisphere(magnitude, ref, positive="E", negative="W")


def is_valid_coordinate(latitude: float | None, longitude: float | None) -> bool:
    """True when both values are finite and within the WGS84 ranges."""
    if latitude is None or longitude is None:
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def combine_gps(
    lat_values: Sequence[Any] | None,
    lat_ref: Any,
    lon_values: Sequence[Any] | None,
    lon_ref: Any,
) -> tuple[float, float] | None:
    """Decode raw GPS tag values into a signed `(latitude, longitude)` pair.

    Returns None when either axis is missing, structurally invalid, lacks a
    hemisphere reference, or falls outside the valid range.
    """
    latitude = signed_latitude(dms_to_degrees(lat_values), lat_ref)
    longitude = signed_longitude(dms_to_degrees(lon_values), lon_ref)
    if not is_valid_coordinate(latitude, longitude):
        return None
    return latitude, longitude  # type: ignore[return-value]


def parse_datetime(value: Any) -> datetime | None:
    """Parse a capture timestamp from any of the accepted source encodings.

    Accepts EXIF `YYYY:MM:DD HH:MM:SS`, ISO-like dash or `T` separated
    values, slash separated values and the day-first `DD.MM.YYYY HH:MM`
    form, optionally surrounded by labels, sub-seconds or UTC offsets.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("ascii", errors="ignore")
    match = _DATETIME_RE.search(str(value).replace("\x00", " "))
    if not match:
        return None
    text = match.group(0)
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def format_datetime(dt: datetime | None) -> str | None:
    """Format `dt` in the canonical storage form."""
    if dt is None:
        return None
    return dt.strftime(CANONICAL_DT_FMT)


def normalize_datetime(value: Any) -> str | None:
    """Parse `value` and return it in the canonical storage form."""
    return format_datetime(parse_datetime(value))


def datetime_year(value: Any) -> int | None:
    """Year of a timestamp in any accepted encoding."""
    dt = parse_datetime(value)
    return dt.year if dt else None


def normalize_orientation(value: Any) -> int:
    """Return the EXIF orientation 1-8, defaulting to 1 when absent or invalid."""
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    try:
        orientation = int(value)
    except (TypeError, ValueError):
        return 1
    return orientation if orientation in _ORIENTATION_TRANSFORMS else 1


def orientation_to_transform(orientation: Any) -> tuple[int, bool]:
    """Map an EXIF orientation to `(clockwise_degrees, mirrored)`."""
    return _ORIENTATION_TRANSFORMS[normalize_orientation(orientation)]
