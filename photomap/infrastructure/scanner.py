"""Directory walking over the configured photo roots.

Candidates are filtered by extension before any byte is read; the format
detector then decides by content. Each root gets a stable label that prefixes
the relative paths of its files, so identical sub-paths under different roots
never collide in the record store.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
import os
from pathlib import Path

from loguru import logger

from photomap.core.services.interfaces import RootFolderError
from photomap.infrastructure.utils import normalize_root

SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".heic", ".heif", ".avif"})
DEFAULT_IGNORED_DIRS = frozenset({".git", "node_modules", "target", "__pycache__"})


@dataclass(frozen=True)
class ScanCandidate:
    """A file worth handing to an extractor."""

    root: str
    path: str
    relative_path: str


def is_supported_extension(name: str) -> bool:
    """True for the photo extensions the pipeline handles (case-insensitive)."""
    return os.path.splitext(name)[1].lower() in SUPPORTED_EXTENSIONS


def is_ignored_dir(name: str, ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS) -> bool:
    """Hidden directories and the configured names are never descended into."""
    return name.startswith(".") or name in ignored_dirs


def root_labels(roots: Iterable[str]) -> dict[str, str]:
    """Assign each root a label: its folder name, suffixed `-2`, `-3` on collisions.

    Labels are handed out in normalized path order, so a root keeps its label
    whatever order the roots are configured in.
    """
    labels: dict[str, str] = {}
    used: set[str] = set()
    for root in sorted(dict.fromkeys(roots), key=normalize_root):
        base = Path(os.path.abspath(root)).name or "root"
        label = base
        suffix = 2
        while label.lower() in used:
            label = f"{base}-{suffix}"
            suffix += 1
        used.add(label.lower())
        labels[root] = label
    return labels


def _walk(root: str, label: str, ignored_dirs: frozenset[str]) -> Iterator[ScanCandidate]:
    root_path = Path(root)

    def _on_error(err: OSError) -> None:
        logger.warning("Skipping unreadable directory {}: {}", err.filename, err.strerror or err)

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
        dirnames[:] = sorted(d for d in dirnames if not is_ignored_dir(d, ignored_dirs))
        for name in sorted(filenames):
            if name.startswith(".") or not is_supported_extension(name):
                continue
            path = os.path.join(dirpath, name)
            relative = Path(path).relative_to(root_path).as_posix()
            yield ScanCandidate(root=root, path=path, relative_path=f"{label}/{relative}")


def scan_root(
    root: str, label: str | None = None, ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS
) -> Iterator[ScanCandidate]:
    """Validate `root` and return an iterator over its candidates.

    Raises:
        RootFolderError: the root is missing, not a directory, or unreadable.
    """
    if not os.path.exists(root):
        raise RootFolderError(root, "root folder does not exist")
    if not os.path.isdir(root):
        raise RootFolderError(root, "root folder is not a directory")
    try:
        with os.scandir(root):
            pass
    except OSError as ex:
        raise RootFolderError(root, f"root folder is unreadable ({ex.strerror})") from ex
    if label is None:
        label = root_labels([root])[root]
    return _walk(root, label, frozenset(ignored_dirs))


def scan_roots(
    roots: Iterable[str],
    ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
    on_root_error: Callable[[RootFolderError], None] | None = None,
) -> Iterator[ScanCandidate]:
    """Yield candidates of every root in order.

    A failing root is reported to `on_root_error` and skipped; without a
    callback the `RootFolderError` propagates.
    """
    roots = list(roots)
    labels = root_labels(roots)
    ignored = frozenset(ignored_dirs)
    for root in roots:
        try:
            candidates = scan_root(root, labels[root], ignored)
        except RootFolderError as ex:
            if on_root_error is None:
                raise
            on_root_error(ex)
            continue
        yield from candidates
