"""ViewModel orchestrating cache loading, background processing and record queries."""

from __future__ import annotations

from collections.abc import Iterable
import threading

from loguru import logger

from photomap.app.viewmodels.photo_vm import PhotoVM
from photomap.core.models import PhotoRecord
from photomap.core.services.interfaces import Error, ProcessingError, ProgressEvent, ProgressSink
from photomap.core.services.sort_service import SortService
from photomap.infrastructure.cache_repository import BinaryCacheRepository
from photomap.infrastructure.processing_service import (
    ProcessingOptions,
    ProcessingService,
    ProcessingStats,
)
from photomap.infrastructure.progress import ProgressChannel, ProgressSubscription
from photomap.infrastructure.record_store import RecordStore
from photomap.infrastructure.utils import normalize_roots

DEFAULT_SORT: list[tuple[str, bool]] = [("datetime", False)]


class MainVM:
    """Main library view-model.

    Owns the record store on behalf of the serving layer: loads the cache at
    startup, runs processing in a background thread, saves the cache when a
    run completes, and answers record queries at any time.
    """

    def __init__(
        self,
        store: RecordStore,
        cache_repo: BinaryCacheRepository,
        options: ProcessingOptions | None = None,
        sink: ProgressSink | None = None,
        sorter: SortService | None = None,
        default_sort: list[tuple[str, bool]] | None = None,
    ) -> None:
        """Create a MainVM.

        Args:
            store: Record store shared with request handlers.
            cache_repo: Repository with `load(roots)`, `save(records, roots)` and `delete()`.
            options: Processing options for every run.
            sink: External progress sink (e.g. a server-sent events bridge).
            sorter: Sorting service (defaults to `SortService`).
            default_sort: List of (field_name, ascending) used by `all_records`.
        """
        self._store = store
        self._cache = cache_repo
        self._options = options or ProcessingOptions()
        self._sink = sink
        self._sorter = sorter or SortService()
        self._default_sort = default_sort or list(DEFAULT_SORT)
        self._run_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._service: ProcessingService | None = None
        self._thread: threading.Thread | None = None
        self._roots: tuple[str, ...] = ()
        self.last_stats: ProcessingStats | None = None
        self.last_error: Exception | None = None

    @property
    def roots(self) -> tuple[str, ...]:
        return self._roots

    @property
    def store(self) -> RecordStore:
        return self._store

    def open_library(self, roots: Iterable[str]) -> bool:
        """Load the cache for `roots` into the store.

        Returns:
            True when a valid cache was loaded; False leaves the store empty and
            the caller is expected to start processing.
        """
        self._roots = normalize_roots(list(roots))
        cached = self._cache.load(self._roots) if self._roots else None
        if cached is None:
            self._store.clear()
            return False
        self._store.replace_all(cached.records)
        logger.info("Library opened from cache with {} records", len(cached.records))
        return True

    def start_processing(self, roots: Iterable[str] | None = None) -> ProgressSubscription:
        """Start a full run in the background, superseding any running one.

        The store is cleared first; the returned subscription yields the run's
        progress events up to its terminal event.
        """
        with self._run_lock:
            if roots is not None:
                self._roots = normalize_roots(list(roots))
            self._cancel_current()
            generation = self._store.clear()
            channel = ProgressChannel()
            subscription = channel.subscribe()
            forward = self._forwarder(channel)
            service = ProcessingService(self._store, sink=forward, options=self._options)
            thread = threading.Thread(
                target=self._run,
                args=(service, self._roots, generation, forward),
                name="photomap-processing",
                daemon=True,
            )
            self._service = service
            self._thread = thread
            thread.start()
        logger.info("Processing started for {} root folder(s), generation {}", len(self._roots), generation)
        return subscription

    def reprocess(self, roots: Iterable[str] | None = None) -> ProgressSubscription:
        """Cancel the current run, drop the cache and the store, and start over."""
        with self._run_lock:
            self._cancel_current()
        with self._cache_lock:
            self._cache.delete()
        return self.start_processing(roots)

    def cancel(self) -> None:
        with self._run_lock:
            self._cancel_current()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current run (cache save included) is done."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    @property
    def is_processing(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def record_count(self) -> int:
        return len(self._store)

    def all_records(self) -> list[PhotoRecord]:
        """Snapshot of the store ordered by `default_sort`."""
        return self._sorter.sort(self._store.snapshot(), self._default_sort)

    def photos(self) -> list[PhotoVM]:
        return [PhotoVM(record) for record in self.all_records()]

    def _cancel_current(self) -> None:
        if self._service is not None:
            self._service.cancel()

    def _forwarder(self, channel: ProgressChannel) -> ProgressSink:
        def forward(event: ProgressEvent) -> None:
            channel.publish(event)
            if self._sink is None:
                return
            try:
                self._sink(event)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("External progress sink failed on {}", event)

        return forward

    def _run(
        self, service: ProcessingService, roots: tuple[str, ...], generation: int, forward: ProgressSink
    ) -> None:
        try:
            stats = service.run(roots, generation)
        except ProcessingError as ex:
            self.last_error = ex
            return
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.exception("Processing run for generation {} crashed", generation)
            self.last_error = ex
            forward(Error(f"processing failed: {ex}", fatal=True))
            return
        self.last_stats = stats
        if stats.cancelled or self._store.generation != generation:
            logger.info("Run for generation {} superseded, cache not saved", generation)
            return
        self._save_cache(roots, generation)

    def _save_cache(self, roots: tuple[str, ...], generation: int) -> None:
        with self._cache_lock:
            if self._store.generation != generation:
                return
            records = self._store.snapshot()
            try:
                self._cache.save(records, roots)
            except OSError as ex:
                logger.error("Failed to save cache {}: {}", self._cache.path, ex)
