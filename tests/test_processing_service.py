"""Tests for the scan-and-extract pipeline."""

from builders import exif_tiff, heif_bytes, jpeg_bytes, nested_exif_tiff
import pytest

from photomap.core.services.extraction_service import ExtractionService
from photomap.core.services.interfaces import (
    Completed,
    Error,
    Failed,
    FailureReason,
    Kept,
    NoRootsConfiguredError,
    ProcessingError,
    Progress,
    SkippedNoGps,
    Started,
    Unsupported,
)
from photomap.infrastructure.processing_service import (
    PipelineState,
    ProcessingOptions,
    ProcessingService,
    process_candidate,
)
from photomap.infrastructure.record_store import RecordStore
from photomap.infrastructure.scanner import ScanCandidate
from photomap.infrastructure.settings import JsonSettings


def _candidate(path, name="x.jpg"):
    return ScanCandidate(root=str(path.parent), path=str(path), relative_path=f"Photos/{name}")


class StateRecordingStore(RecordStore):
    """Records the pipeline state seen by each batch insert."""

    def __init__(self):
        super().__init__()
        self.service = None
        self.states = []

    def insert_batch(self, records, generation=None):
        self.states.append(self.service.state)
        return super().insert_batch(records, generation)


class ExplodingExtraction(ExtractionService):
    def extract(self, fmt, data):
        raise RecursionError("maximum recursion depth exceeded")


class TestRun:
    def test_counts_and_records(self, photo_root, fast_options):
        store = RecordStore()
        stats = ProcessingService(store, options=fast_options).run([str(photo_root)])
        assert (stats.kept, stats.skipped, stats.failed, stats.unsupported) == (2, 1, 1, 0)
        assert stats.total == 4
        assert stats.heif_files == 0
        assert not stats.cancelled
        assert sorted(r.relative_path for r in store.snapshot()) == [
            "Photos/trip/paris.jpg",
            "Photos/trip/sydney.JPG",
        ]
        sydney = store.get("Photos/trip/sydney.JPG")
        assert sydney.latitude == pytest.approx(-33.8688, abs=1e-6)
        assert sydney.orientation == 6
        assert sydney.datetime == "2022-12-24 08:00:00"

    def test_failure_is_classified(self, photo_root, fast_options):
        stats = ProcessingService(RecordStore(), options=fast_options).run([str(photo_root)])
        (failure,) = stats.failures
        assert failure.path.endswith("broken.heic")
        assert failure.reason is FailureReason.CORRUPT_CONTAINER

    def test_event_sequence(self, photo_root, fast_options):
        events = []
        service = ProcessingService(RecordStore(), sink=events.append, options=fast_options)
        service.run([str(photo_root)])
        assert events[0] == Started(total=4)
        assert isinstance(events[-1], Completed)
        assert (events[-1].kept, events[-1].skipped, events[-1].failed) == (2, 1, 1)
        progress = [e.processed for e in events[1:-1]]
        assert all(isinstance(e, Progress) for e in events[1:-1])
        assert progress == sorted(progress)
        assert progress[-1] == 4
        assert service.state is PipelineState.IDLE

    def test_single_worker_gives_same_result(self, photo_root):
        store = RecordStore()
        options = ProcessingOptions(workers=1, batch_size=500)
        stats = ProcessingService(store, options=options).run([str(photo_root)])
        assert (stats.kept, stats.skipped, stats.failed) == (2, 1, 1)
        assert len(store) == 2

    def test_heif_files_are_counted(self, photo_root, fast_options):
        tiff = exif_tiff(35.6762, 139.6503, datetime="2024:02:03 04:05:06")
        (photo_root / "tokyo.heic").write_bytes(heif_bytes(tiff))
        store = RecordStore()
        stats = ProcessingService(store, options=fast_options).run([str(photo_root)])
        assert stats.kept == 3
        assert stats.heif_files == 1
        assert store.get("Photos/tokyo.heic").is_heif

    def test_empty_root(self, temp_dir, fast_options):
        events = []
        service = ProcessingService(RecordStore(), sink=events.append, options=fast_options)
        stats = service.run([str(temp_dir)])
        assert stats.total == 0
        assert events[0] == Started(total=0)
        assert isinstance(events[-1], Completed)

    def test_sink_errors_do_not_stop_the_run(self, photo_root, fast_options):
        def broken_sink(_event):
            raise RuntimeError("client went away")

        store = RecordStore()
        stats = ProcessingService(store, sink=broken_sink, options=fast_options).run([str(photo_root)])
        assert stats.kept == 2
        assert len(store) == 2


    def test_every_commit_runs_in_committing_state(self, photo_root, fast_options):
        store = StateRecordingStore()
        store.service = ProcessingService(store, options=fast_options)
        store.service.run([str(photo_root)])
        assert store.states == [PipelineState.COMMITTING] * 2
        assert store.service.state is PipelineState.IDLE

    def test_deeply_nested_exif_does_not_abort_the_run(self, temp_dir, fast_options):
        root = temp_dir / "Photos"
        root.mkdir()
        (root / "nested.jpg").write_bytes(jpeg_bytes(nested_exif_tiff(3000)))
        (root / "ok.jpg").write_bytes(jpeg_bytes(exif_tiff(1.0, 2.0)))
        stats = ProcessingService(RecordStore(), options=fast_options).run([str(root)])
        assert stats.processed == 2
        assert stats.kept == 1
        assert not stats.cancelled


class TestRootErrors:
    def test_no_roots_is_fatal(self, fast_options):
        events = []
        service = ProcessingService(RecordStore(), sink=events.append, options=fast_options)
        with pytest.raises(NoRootsConfiguredError):
            service.run([])
        assert events == [Error("no root folders configured", fatal=True)]
        assert service.state is PipelineState.FAILED

    def test_missing_root_is_reported_and_skipped(self, temp_dir, photo_root, fast_options):
        events = []
        service = ProcessingService(RecordStore(), sink=events.append, options=fast_options)
        stats = service.run([str(temp_dir / "missing"), str(photo_root)])
        assert stats.kept == 2
        errors = [e for e in events if isinstance(e, Error)]
        assert len(errors) == 1
        assert not errors[0].fatal
        assert isinstance(events[-1], Completed)

    def test_all_roots_missing_is_fatal(self, temp_dir, fast_options):
        events = []
        service = ProcessingService(RecordStore(), sink=events.append, options=fast_options)
        with pytest.raises(ProcessingError):
            service.run([str(temp_dir / "a"), str(temp_dir / "b")])
        assert service.state is PipelineState.FAILED
        assert [e.fatal for e in events] == [False, False, True]
        assert not any(isinstance(e, Completed) for e in events)


class TestCancellation:
    def test_cancel_before_run(self, photo_root, fast_options):
        events = []
        store = RecordStore()
        service = ProcessingService(store, sink=events.append, options=fast_options)
        service.cancel()
        stats = service.run([str(photo_root)])
        assert stats.cancelled
        assert len(store) == 0
        assert events[-1].cancelled

    def test_stale_generation_cancels_run(self, photo_root, fast_options):
        store = RecordStore()
        old = store.clear()
        store.clear()
        stats = ProcessingService(store, options=fast_options).run([str(photo_root)], generation=old)
        assert stats.cancelled
        assert len(store) == 0

    def test_current_generation_commits(self, photo_root, fast_options):
        store = RecordStore()
        generation = store.clear()
        stats = ProcessingService(store, options=fast_options).run([str(photo_root)], generation=generation)
        assert not stats.cancelled
        assert len(store) == 2


class TestProcessCandidate:
    def test_kept(self, temp_dir):
        path = temp_dir / "a.jpg"
        path.write_bytes(jpeg_bytes(exif_tiff(1.0, 2.0, datetime="2020:01:02 03:04:05")))
        outcome = process_candidate(_candidate(path), ExtractionService())
        assert isinstance(outcome, Kept)
        assert outcome.record.relative_path == "Photos/x.jpg"
        assert outcome.record.absolute_path == str(path)
        assert outcome.record.datetime == "2020-01-02 03:04:05"

    def test_mtime_fallback(self, temp_dir):
        path = temp_dir / "a.jpg"
        path.write_bytes(jpeg_bytes(exif_tiff(1.0, 2.0)))
        with_fallback = process_candidate(_candidate(path), ExtractionService())
        without = process_candidate(_candidate(path), ExtractionService(), mtime_fallback=False)
        assert with_fallback.record.datetime is not None
        assert len(with_fallback.record.datetime) == 19
        assert without.record.datetime is None

    def test_no_exif_is_skipped(self, temp_dir):
        path = temp_dir / "a.jpg"
        path.write_bytes(jpeg_bytes())
        outcome = process_candidate(_candidate(path), ExtractionService(), mtime_fallback=False)
        assert outcome == SkippedNoGps(str(path), None, False)

    def test_unsupported_content(self, temp_dir):
        path = temp_dir / "a.jpg"
        path.write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(64))
        assert process_candidate(_candidate(path), ExtractionService()) == Unsupported(str(path))

    def test_jpeg_named_heic(self, temp_dir):
        path = temp_dir / "a.heic"
        path.write_bytes(jpeg_bytes(exif_tiff(5.0, 6.0)))
        outcome = process_candidate(_candidate(path, "a.heic"), ExtractionService())
        assert isinstance(outcome, Kept)
        assert not outcome.record.is_heif

    def test_missing_file_is_io_failure(self, temp_dir):
        outcome = process_candidate(_candidate(temp_dir / "gone.jpg"), ExtractionService())
        assert isinstance(outcome, Failed)
        assert outcome.reason is FailureReason.IO_FAILURE

    def test_unexpected_extractor_error_is_a_failure(self, temp_dir):
        path = temp_dir / "a.jpg"
        path.write_bytes(jpeg_bytes(exif_tiff(1.0, 2.0)))
        outcome = process_candidate(_candidate(path), ExplodingExtraction())
        assert isinstance(outcome, Failed)
        assert outcome.reason is FailureReason.CORRUPT_CONTAINER
        assert "RecursionError" in outcome.message


class TestOptions:
    def test_from_settings(self):
        settings = JsonSettings(
            data={
                "processing": {"workers": 3, "batch_size": 50, "mtime_fallback": False},
                "extraction": {"prefer_raw_parser": True},
                "scanner": {"ignored_dirs": ["raw", "export"]},
            }
        )
        options = ProcessingOptions.from_settings(settings)
        assert options.workers == 3
        assert options.worker_count == 3
        assert options.batch_size == 50
        assert options.mtime_fallback is False
        assert options.prefer_raw_parser is True
        assert options.ignored_dirs == frozenset({"raw", "export"})

    def test_defaults_and_invalid_values(self):
        settings = JsonSettings(data={"processing": {"workers": 0, "batch_size": "lots"}})
        options = ProcessingOptions.from_settings(settings)
        assert options.workers is None
        assert options.worker_count >= 1
        assert options.batch_size == 500
        assert options.mtime_fallback is True
        assert options.prefer_raw_parser is False
