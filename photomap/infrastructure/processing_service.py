"""Parallel scan-and-extract pipeline.

A run walks every root, then fans the candidates out over a thread pool.
Workers are stateless (`process_candidate`) and hand typed outcomes back to
the coordinating thread, which alone touches statistics, batches and the
progress sink. Kept records reach the store in batches tagged with the run's
store generation.
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
import os
import threading
import time

from loguru import logger

from photomap.core.models import PhotoRecord
from photomap.core.services.extraction_service import ExtractionService
from photomap.core.services.format_detector import HEADER_SIZE
from photomap.core.services.interfaces import (
    Completed,
    Error,
    ExtractionError,
    Failed,
    FailureReason,
    FileFormat,
    Kept,
    NoRootsConfiguredError,
    Outcome,
    ProcessingError,
    ProgressEvent,
    ProgressSink,
    RootFolderError,
    SkippedNoGps,
    Started,
    Unsupported,
)
from photomap.infrastructure.progress import ProgressThrottle
from photomap.infrastructure.record_store import RecordStore
from photomap.infrastructure.scanner import DEFAULT_IGNORED_DIRS, ScanCandidate, scan_roots
from photomap.infrastructure.settings import JsonSettings
from photomap.infrastructure.utils import get_filesystem_modified_datetime, normalize_roots


class PipelineState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessingOptions:
    """Tuning knobs of a processing run.

    Attributes:
        workers: Thread pool size; None means the CPU count.
        batch_size: Kept records per store commit.
        progress_every: Files between two progress events.
        progress_interval: Seconds between two progress events.
        mtime_fallback: Use the file modification time when EXIF has no capture time.
        prefer_raw_parser: Run the raw byte scanner before the structured reader.
        ignored_dirs: Directory names never descended into.
    """

    workers: int | None = None
    batch_size: int = 500
    progress_every: int = 100
    progress_interval: float = 0.5
    mtime_fallback: bool = True
    prefer_raw_parser: bool = False
    ignored_dirs: frozenset[str] = DEFAULT_IGNORED_DIRS

    @classmethod
    def from_settings(cls, settings: JsonSettings) -> ProcessingOptions:
        workers = settings.get("processing.workers")
        if workers is not None:
            workers = settings.get_int("processing.workers", 0, minimum=1) or None
        return cls(
            workers=workers,
            batch_size=settings.get_int("processing.batch_size", cls.batch_size, minimum=1),
            progress_every=settings.get_int("processing.progress_every", cls.progress_every, minimum=1),
            progress_interval=settings.get_float("processing.progress_interval", cls.progress_interval),
            mtime_fallback=settings.get_bool("processing.mtime_fallback", cls.mtime_fallback),
            prefer_raw_parser=settings.get_bool("extraction.prefer_raw_parser", cls.prefer_raw_parser),
            ignored_dirs=frozenset(
                settings.get_str_list("scanner.ignored_dirs", sorted(DEFAULT_IGNORED_DIRS))
            ),
        )

    @property
    def worker_count(self) -> int:
        return self.workers or os.cpu_count() or 4


@dataclass
class ProcessingStats:
    """Counters of one run; `failures` keeps the failed files for the log."""

    total: int = 0
    kept: int = 0
    skipped: int = 0
    failed: int = 0
    unsupported: int = 0
    heif_files: int = 0
    elapsed_seconds: float = 0.0
    cancelled: bool = False
    failures: list[Failed] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.kept + self.skipped + self.failed + self.unsupported

    def record(self, outcome: Outcome) -> None:
        if isinstance(outcome, Kept):
            self.kept += 1
            self.heif_files += int(outcome.record.is_heif)
        elif isinstance(outcome, SkippedNoGps):
            self.skipped += 1
            self.heif_files += int(outcome.is_heif)
        elif isinstance(outcome, Failed):
            self.failed += 1
            self.failures.append(outcome)
        else:
            self.unsupported += 1

    def to_event(self) -> Completed:
        return Completed(
            kept=self.kept,
            skipped=self.skipped,
            failed=self.failed,
            unsupported=self.unsupported,
            heif_files=self.heif_files,
            elapsed_seconds=self.elapsed_seconds,
            cancelled=self.cancelled,
        )


def process_candidate(
    candidate: ScanCandidate, service: ExtractionService, mtime_fallback: bool = True
) -> Outcome:
    """Read, classify and extract one file. Never raises."""
    path = candidate.path
    try:
        with open(path, "rb") as f:
            header = f.read(HEADER_SIZE)
            fmt = service.detect(header)
            if fmt is FileFormat.UNSUPPORTED:
                return Unsupported(path)
            data = header + f.read()
    except OSError as ex:
        return Failed(path, FailureReason.IO_FAILURE, str(ex))

    try:
        fields = service.extract(fmt, data)
    except ExtractionError as ex:
        return Failed(path, ex.reason, str(ex))
    except Exception as ex:  # pylint: disable=broad-exception-caught
        logger.opt(exception=ex).debug("Unexpected extractor failure for {}", path)
        return Failed(path, FailureReason.CORRUPT_CONTAINER, f"unreadable metadata: {ex!r}")

    is_heif = fmt is FileFormat.HEIF
    datetime = fields.datetime if fields is not None else None
    if datetime is None and mtime_fallback:
        datetime = get_filesystem_modified_datetime(path)
    if fields is None or not fields.has_gps:
        return SkippedNoGps(path, datetime, is_heif)
    return Kept(
        PhotoRecord(
            relative_path=candidate.relative_path,
            absolute_path=path,
            latitude=fields.latitude,
            longitude=fields.longitude,
            datetime=datetime,
            orientation=fields.orientation,
            is_heif=is_heif,
        )
    )


class ProcessingService:
    """Runs full scan-and-extract passes into a `RecordStore`."""

    def __init__(
        self,
        store: RecordStore,
        sink: ProgressSink | None = None,
        options: ProcessingOptions | None = None,
        extraction: ExtractionService | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._options = options or ProcessingOptions()
        self._extraction = extraction or ExtractionService(prefer_raw=self._options.prefer_raw_parser)
        self._cancel = threading.Event()
        self._state = PipelineState.IDLE

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop submitting work; results of in-flight files are discarded."""
        self._cancel.set()

    def _emit(self, event: ProgressEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Progress sink failed on {}", event)

    def _fail(self, error: ProcessingError) -> None:
        self._state = PipelineState.FAILED
        logger.error("Processing failed: {}", error)
        self._emit(Error(str(error), fatal=True))
        raise error

    def run(self, roots: Iterable[str], generation: int | None = None) -> ProcessingStats:
        """Process every supported file under `roots`.

        Args:
            roots: Root folders to scan.
            generation: Store generation the run writes into; batches are
                dropped and the run cancelled once the store moves past it.

        Raises:
            NoRootsConfiguredError: `roots` is empty.
            ProcessingError: none of the roots is accessible.
        """
        started_at = time.monotonic()
        stats = ProcessingStats()
        roots = normalize_roots(list(roots))
        if not roots:
            self._fail(NoRootsConfiguredError("no root folders configured"))

        self._state = PipelineState.SCANNING
        failed_roots: list[str] = []

        def _on_root_error(ex: RootFolderError) -> None:
            failed_roots.append(ex.root)
            logger.warning("Skipping root folder: {}", ex)
            self._emit(Error(str(ex), fatal=False))

        candidates = list(scan_roots(roots, self._options.ignored_dirs, on_root_error=_on_root_error))
        if len(failed_roots) == len(roots):
            self._fail(ProcessingError("none of the configured root folders is accessible"))

        stats.total = len(candidates)
        logger.info("Found {} candidate files in {} root folder(s)", stats.total, len(roots))
        self._emit(Started(total=stats.total))

        if not self._cancel.is_set():
            self._state = PipelineState.EXTRACTING
            self._extract_all(candidates, stats, generation)

        stats.cancelled = self._cancel.is_set()
        stats.elapsed_seconds = time.monotonic() - started_at
        self._state = PipelineState.IDLE
        self._log_summary(stats)
        self._emit(stats.to_event())
        return stats

    def _extract_all(
        self, candidates: list[ScanCandidate], stats: ProcessingStats, generation: int | None
    ) -> None:
        options = self._options
        throttle = ProgressThrottle(stats.total, options.progress_every, options.progress_interval)
        workers = options.worker_count
        window = workers * 4
        batch: list[PhotoRecord] = []
        remaining = iter(candidates)
        pending: set[Future] = set()
        exhausted = False

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="photomap-extract") as pool:
            while True:
                while not exhausted and not self._cancel.is_set() and len(pending) < window:
                    candidate = next(remaining, None)
                    if candidate is None:
                        exhausted = True
                        break
                    pending.add(
                        pool.submit(process_candidate, candidate, self._extraction, options.mtime_fallback)
                    )
                if not pending or self._cancel.is_set():
                    break
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                if self._cancel.is_set():
                    break
                for future in done:
                    outcome = future.result()
                    stats.record(outcome)
                    self._log_outcome(outcome)
                    if isinstance(outcome, Kept):
                        batch.append(outcome.record)
                    event = throttle.update(stats.processed)
                    if event is not None:
                        self._emit(event)
                if len(batch) >= options.batch_size:
                    self._commit(batch, generation)
                    batch = []
            for future in pending:
                future.cancel()

        if self._cancel.is_set():
            return
        if batch:
            self._commit(batch, generation)
        final = throttle.finish(stats.processed)
        if final is not None and not self._cancel.is_set():
            self._emit(final)

    def _commit(self, batch: list[PhotoRecord], generation: int | None) -> None:
        previous, self._state = self._state, PipelineState.COMMITTING
        try:
            applied = self._store.insert_batch(batch, generation)
        finally:
            self._state = previous
        if generation is not None and applied == 0:
            logger.info("Store moved past generation {}, cancelling run", generation)
            self._cancel.set()

    @staticmethod
    def _log_outcome(outcome: Outcome) -> None:
        if isinstance(outcome, Failed):
            logger.warning("Failed to read {}: {} ({})", outcome.path, outcome.reason.value, outcome.message)
        elif isinstance(outcome, Unsupported):
            logger.debug("Unsupported content, skipped: {}", outcome.path)

    @staticmethod
    def _log_summary(stats: ProcessingStats) -> None:
        logger.info(
            "Processing {} in {:.2f}s: {} on map, {} without GPS, {} failed, {} unsupported, {} HEIF",
            "cancelled" if stats.cancelled else "finished",
            stats.elapsed_seconds,
            stats.kept,
            stats.skipped,
            stats.failed,
            stats.unsupported,
            stats.heif_files,
        )
