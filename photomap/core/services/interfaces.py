"""Core service interfaces and shared data structures.

This module defines the error taxonomy, the per-file outcomes produced by
extraction workers, and the progress events published while a processing run
is in flight. They are shared by the extractors, the pipeline and the library
view-model.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from photomap.core.models import PhotoRecord


class FileFormat(Enum):
    """Content classification of a candidate file."""

    JPEG = "jpeg"
    HEIF = "heif"
    UNSUPPORTED = "unsupported"


class FailureReason(str, Enum):
    """Why a file did not end up on the map."""

    UNSUPPORTED_FORMAT = "unsupported_format"
    CORRUPT_CONTAINER = "corrupt_container"
    NO_GPS = "no_gps"
    INVALID_GPS = "invalid_gps"
    CACHE_INCOMPATIBLE = "cache_incompatible"
    IO_FAILURE = "io_failure"


class ExtractionError(Exception):
    """Base class for per-file extraction failures."""

    reason = FailureReason.CORRUPT_CONTAINER


class CorruptContainerError(ExtractionError):
    """Bytes claim a supported format but the container cannot be parsed."""


class ProcessingError(Exception):
    """Pipeline-wide condition that terminates a processing run."""


class NoRootsConfiguredError(ProcessingError):
    """Processing was requested without any root folder."""


class RootFolderError(ProcessingError):
    """A configured root folder is missing or unreadable."""

    reason = FailureReason.IO_FAILURE

    def __init__(self, root: str, message: str) -> None:
        super().__init__(f"{message}: {root}")
        self.root = root


@dataclass(frozen=True)
class Kept:
    """File with a usable coordinate; stored and shown on the map."""

    record: PhotoRecord


@dataclass(frozen=True)
class SkippedNoGps:
    """File parsed fine but without a usable coordinate."""

    path: str
    datetime: str | None = None
    is_heif: bool = False


@dataclass(frozen=True)
class Failed:
    """File that could not be read or parsed.

    Attributes:
        path: Absolute path of the file.
        reason: Failure classification.
        message: Human-readable detail for the log.
    """

    path: str
    reason: FailureReason
    message: str


@dataclass(frozen=True)
class Unsupported:
    """File whose content signature is neither JPEG nor HEIF."""

    path: str


Outcome = Union[Kept, SkippedNoGps, Failed, Unsupported]


@dataclass(frozen=True)
class Started:
    """Scanning finished; `total` candidates will be extracted."""

    total: int


@dataclass(frozen=True)
class Progress:
    """Monotonic progress of the extraction phase."""

    processed: int
    total: int


@dataclass(frozen=True)
class Completed:
    """Run finished (or was superseded when `cancelled` is set).

    Attributes:
        kept: Files stored as records (found, on map).
        skipped: Files parsed without usable GPS (found, no GPS).
        failed: Files that could not be read (failed to read).
        unsupported: Files whose content is neither JPEG nor HEIF.
        heif_files: Kept or skipped files that went through the HEIF extractor.
        elapsed_seconds: Wall-clock duration of the run.
        cancelled: True when a newer run superseded this one.
    """

    kept: int
    skipped: int
    failed: int
    unsupported: int = 0
    heif_files: int = 0
    elapsed_seconds: float = 0.0
    cancelled: bool = False


@dataclass(frozen=True)
class Error:
    """Error surfaced to the UI; `fatal` errors end the run."""

    message: str
    fatal: bool = True


ProgressEvent = Union[Started, Progress, Completed, Error]

ProgressSink = Callable[[ProgressEvent], None]


def is_terminal(event: ProgressEvent) -> bool:
    """Return True if no further events follow `event` for the same run."""
    return isinstance(event, Completed) or (isinstance(event, Error) and event.fatal)
