"""Compare our GPS extraction with Pillow's EXIF decoder, file by file.

Used to validate the parsers against a photo library: every file is decoded
twice and the coordinates are compared with an angular tolerance.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
import io

from loguru import logger
from PIL import Image
from pillow_heif import register_heif_opener

from photomap.core.services.exif_fields import combine_gps
from photomap.core.services.extraction_service import ExtractionService
from photomap.core.services.interfaces import ExtractionError, FileFormat
from photomap.infrastructure.scanner import DEFAULT_IGNORED_DIRS, scan_roots

register_heif_opener()

GPS_IFD = 0x8825
TOLERANCE_DEGREES = 1e-4


class Verdict(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    OURS_ONLY = "ours_only"
    REFERENCE_ONLY = "reference_only"
    NEITHER = "neither"


@dataclass
class CrossCheckReport:
    """Per-verdict counters plus the paths that disagree."""

    match: int = 0
    mismatch: int = 0
    ours_only: int = 0
    reference_only: int = 0
    neither: int = 0
    disagreements: list[tuple[str, Verdict]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.match + self.mismatch + self.ours_only + self.reference_only + self.neither

    def add(self, path: str, verdict: Verdict) -> None:
        setattr(self, verdict.value, getattr(self, verdict.value) + 1)
        if verdict in (Verdict.MISMATCH, Verdict.REFERENCE_ONLY):
            self.disagreements.append((path, verdict))


def reference_gps(data: bytes) -> tuple[float, float] | None:
    """GPS coordinate as decoded by Pillow (HEIF through pillow-heif)."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            gps = im.getexif().get_ifd(GPS_IFD)
    except (OSError, ValueError, SyntaxError) as ex:
        logger.debug("Reference decoder failed: {}", ex)
        return None
    if not gps:
        return None
    return combine_gps(gps.get(2), gps.get(1), gps.get(4), gps.get(3))


def compare(
    ours: tuple[float, float] | None,
    reference: tuple[float, float] | None,
    tolerance: float = TOLERANCE_DEGREES,
) -> Verdict:
    if ours is None and reference is None:
        return Verdict.NEITHER
    if reference is None:
        return Verdict.OURS_ONLY
    if ours is None:
        return Verdict.REFERENCE_ONLY
    if abs(ours[0] - reference[0]) <= tolerance and abs(ours[1] - reference[1]) <= tolerance:
        return Verdict.MATCH
    return Verdict.MISMATCH


def crosscheck_file(path: str, service: ExtractionService | None = None) -> Verdict:
    """Decode `path` with both decoders and compare the coordinates."""
    service = service or ExtractionService()
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as ex:
        logger.warning("Cannot read {}: {}", path, ex)
        return Verdict.NEITHER

    ours = None
    fmt = service.detect(data)
    if fmt is not FileFormat.UNSUPPORTED:
        try:
            fields = service.extract(fmt, data)
        except ExtractionError as ex:
            logger.debug("Extraction failed for {}: {}", path, ex)
            fields = None
        if fields is not None and fields.has_gps:
            ours = (fields.latitude, fields.longitude)
    verdict = compare(ours, reference_gps(data))
    if verdict is Verdict.MISMATCH:
        logger.warning("GPS mismatch for {}", path)
    return verdict


def crosscheck_roots(
    roots: Iterable[str],
    ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
    service: ExtractionService | None = None,
) -> CrossCheckReport:
    """Cross-check every supported file under `roots`."""
    service = service or ExtractionService()
    report = CrossCheckReport()
    for candidate in scan_roots(roots, ignored_dirs, on_root_error=lambda ex: logger.warning("{}", ex)):
        report.add(candidate.path, crosscheck_file(candidate.path, service))
    logger.info(
        "Cross-check: {} match, {} mismatch, {} ours only, {} reference only, {} neither",
        report.match,
        report.mismatch,
        report.ours_only,
        report.reference_only,
        report.neither,
    )
    return report
