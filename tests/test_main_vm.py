"""Tests for MainVM: cache-first startup, background runs and queries."""

import threading

import pytest

from photomap.app.viewmodels.main_vm import MainVM
from photomap.core.services.interfaces import Completed, Error, ProcessingError, Progress, Started
from photomap.infrastructure.cache_repository import BinaryCacheRepository
from photomap.infrastructure.processing_service import ProcessingService
from photomap.infrastructure.record_store import RecordStore


class GenerationRecordingStore(RecordStore):
    """Logs the generation and applied count of every batch insert."""

    def __init__(self):
        super().__init__()
        self.inserts = []

    def insert_batch(self, records, generation=None):
        applied = super().insert_batch(records, generation)
        self.inserts.append((generation, applied))
        return applied


@pytest.fixture
def cache_repo(temp_dir):
    return BinaryCacheRepository(temp_dir / "photomap.cache")


@pytest.fixture
def vm(cache_repo, fast_options):
    return MainVM(RecordStore(), cache_repo, options=fast_options)


def _run(vm, roots=None):
    events = list(vm.start_processing(roots))
    assert vm.wait(timeout=30)
    return events


class TestStartup:
    def test_without_cache_store_is_empty(self, vm, photo_root):
        assert vm.open_library([str(photo_root)]) is False
        assert vm.record_count == 0

    def test_processing_saves_cache_for_next_start(self, vm, cache_repo, photo_root, fast_options):
        vm.open_library([str(photo_root)])
        _run(vm)
        assert cache_repo.exists()

        fresh = MainVM(RecordStore(), cache_repo, options=fast_options)
        assert fresh.open_library([str(photo_root)]) is True
        assert fresh.record_count == 2
        assert {r.relative_path for r in fresh.all_records()} == {
            r.relative_path for r in vm.all_records()
        }

    def test_cache_for_other_roots_is_ignored(self, vm, cache_repo, photo_root, temp_dir, fast_options):
        _run(vm, [str(photo_root)])
        other = temp_dir / "Other"
        other.mkdir()
        fresh = MainVM(RecordStore(), cache_repo, options=fast_options)
        assert fresh.open_library([str(other)]) is False
        assert not cache_repo.exists()


class TestProcessing:
    def test_subscription_yields_run_events(self, vm, photo_root):
        events = _run(vm, [str(photo_root)])
        assert events[0] == Started(total=4)
        assert isinstance(events[-1], Completed)
        assert vm.last_stats.kept == 2
        assert not vm.is_processing

    def test_external_sink_receives_events(self, cache_repo, fast_options, photo_root):
        received = []
        vm = MainVM(RecordStore(), cache_repo, options=fast_options, sink=received.append)
        _run(vm, [str(photo_root)])
        assert isinstance(received[0], Started)
        assert isinstance(received[-1], Completed)

    def test_all_records_newest_first(self, vm, photo_root):
        _run(vm, [str(photo_root)])
        assert [r.file_name for r in vm.all_records()] == ["paris.jpg", "sydney.JPG"]
        assert [p.to_dict()["filename"] for p in vm.photos()] == ["paris.jpg", "sydney.JPG"]

    def test_reprocess_gives_same_records(self, vm, cache_repo, photo_root):
        _run(vm, [str(photo_root)])
        first = {(r.relative_path, r.latitude, r.longitude) for r in vm.all_records()}
        events = list(vm.reprocess())
        assert vm.wait(timeout=30)
        second = {(r.relative_path, r.latitude, r.longitude) for r in vm.all_records()}
        assert first == second
        assert isinstance(events[-1], Completed)
        assert cache_repo.exists()

    def test_failed_run_keeps_error_and_skips_cache(self, vm, cache_repo, temp_dir):
        events = _run(vm, [str(temp_dir / "missing")])
        assert isinstance(events[-1], Error)
        assert events[-1].fatal
        assert isinstance(vm.last_error, ProcessingError)
        assert not cache_repo.exists()

    def test_unexpected_run_error_is_published_as_fatal(self, vm, cache_repo, photo_root, monkeypatch):
        def boom(self, roots, generation=None):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(ProcessingService, "run", boom)
        events = _run(vm, [str(photo_root)])
        assert len(events) == 1
        assert isinstance(events[0], Error)
        assert events[0].fatal
        assert "disk on fire" in events[0].message
        assert isinstance(vm.last_error, RuntimeError)
        assert not cache_repo.exists()

    def test_reprocess_during_run_drops_old_batches(self, cache_repo, fast_options, photo_root):
        reached = threading.Event()
        release = threading.Event()

        def blocking_sink(event):
            if isinstance(event, Progress) and not reached.is_set():
                reached.set()
                release.wait(10)

        store = GenerationRecordingStore()
        vm = MainVM(store, cache_repo, options=fast_options, sink=blocking_sink)
        first = vm.start_processing([str(photo_root)])
        old_generation = store.generation
        assert reached.wait(10)

        second = vm.reprocess()
        release.set()
        second_events = list(second)
        first_events = list(first)
        assert vm.wait(timeout=30)

        assert first_events[-1].cancelled
        assert not second_events[-1].cancelled
        assert store.generation != old_generation
        assert all(applied == 0 for generation, applied in store.inserts if generation == old_generation)
        assert vm.record_count == 2
        assert cache_repo.exists()

    def test_wait_without_run(self, vm):
        assert vm.wait(timeout=0.1)
        assert not vm.is_processing
