"""In-memory record store shared by the pipeline and request handlers.

Writers serialize on a lock and publish a new immutable view per write
(copy-on-write). Readers never lock: they pick up whichever view is current
and therefore always see a complete pre- or post-write state, never a
partially applied batch.

Every `clear()`/`replace_all()` starts a new generation. A pipeline run
remembers the generation it was started for; its batches are rejected once
the store has moved on, so a superseded run cannot write into a fresh store.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from threading import Lock
from types import MappingProxyType

from loguru import logger

from photomap.core.models import PhotoRecord


@dataclass(frozen=True)
class _View:
    generation: int
    records: tuple[PhotoRecord, ...] = ()
    index: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))


class RecordStore:
    """Concurrent, read-optimized collection of `PhotoRecord` keyed by relative path."""

    def __init__(self, records: Iterable[PhotoRecord] = ()) -> None:
        self._lock = Lock()
        self._view = _View(generation=0)
        initial = list(records)
        if initial:
            self.insert_batch(initial)

    @property
    def generation(self) -> int:
        return self._view.generation

    def __len__(self) -> int:
        return len(self._view.records)

    def snapshot(self) -> tuple[PhotoRecord, ...]:
        """All records in insertion order, as one consistent view."""
        return self._view.records

    def get(self, relative_path: str) -> PhotoRecord | None:
        view = self._view
        pos = view.index.get(relative_path)
        return view.records[pos] if pos is not None else None

    def insert_batch(self, records: Iterable[PhotoRecord], generation: int | None = None) -> int:
        """Upsert `records` by `relative_path` as one atomic unit.

        Returns:
            Number of records applied; 0 when `generation` is given and no longer current.
        """
        batch = list(records)
        with self._lock:
            view = self._view
            if generation is not None and generation != view.generation:
                logger.debug(
                    "Rejecting stale batch of {} records (generation {} != {})",
                    len(batch),
                    generation,
                    view.generation,
                )
                return 0
            if not batch:
                return 0
            items = list(view.records)
            index = dict(view.index)
            for record in batch:
                pos = index.get(record.relative_path)
                if pos is None:
                    index[record.relative_path] = len(items)
                    items.append(record)
                else:
                    items[pos] = record
            self._view = _View(view.generation, tuple(items), MappingProxyType(index))
        return len(batch)

    def clear(self) -> int:
        """Empty the store and start a new generation, which is returned."""
        with self._lock:
            generation = self._view.generation + 1
            self._view = _View(generation=generation)
        logger.debug("Record store cleared, generation {}", generation)
        return generation

    def replace_all(self, records: Iterable[PhotoRecord]) -> int:
        """Install a full record set (later duplicates win) under a new generation."""
        by_path: dict[str, PhotoRecord] = {}
        for record in records:
            by_path[record.relative_path] = record
        items = tuple(by_path.values())
        index = {record.relative_path: pos for pos, record in enumerate(items)}
        with self._lock:
            generation = self._view.generation + 1
            self._view = _View(generation, items, MappingProxyType(index))
        return generation
