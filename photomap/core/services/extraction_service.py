"""Dispatch from content classification to the matching extractor."""

from __future__ import annotations

from photomap.core.models import ExtractedFields
from photomap.core.services.format_detector import detect_format
from photomap.core.services.heif_extractor import extract_heif
from photomap.core.services.interfaces import FileFormat
from photomap.core.services.jpeg_extractor import extract_jpeg


class ExtractionService:
    """Stateless facade used by the extraction workers.

    Args:
        prefer_raw: Run the raw byte scanner before the structured reader.
    """

    def __init__(self, prefer_raw: bool = False) -> None:
        self._prefer_raw = prefer_raw

    @property
    def prefer_raw(self) -> bool:
        return self._prefer_raw

    def detect(self, header: bytes) -> FileFormat:
        """Classify a file from its first bytes."""
        return detect_format(header)

    def extract(self, fmt: FileFormat, data: bytes) -> ExtractedFields | None:
        """Run the extractor for `fmt` over the whole file contents.

        Raises:
            CorruptContainerError: the container is not parseable.
            ValueError: `fmt` is `UNSUPPORTED`.
        """
        if fmt is FileFormat.JPEG:
            return extract_jpeg(data, prefer_raw=self._prefer_raw)
        if fmt is FileFormat.HEIF:
            return extract_heif(data, prefer_raw=self._prefer_raw)
        raise ValueError(f"no extractor for {fmt.value} content")
