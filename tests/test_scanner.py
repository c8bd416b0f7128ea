"""Tests for root walking, filtering and root labels."""

import pytest

from photomap.core.services.interfaces import RootFolderError
from photomap.infrastructure.scanner import (
    is_supported_extension,
    root_labels,
    scan_root,
    scan_roots,
)


def _touch(path, content=b"x"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class TestFiltering:
    @pytest.mark.parametrize("name", ["a.jpg", "b.JPEG", "c.heic", "d.HEIF", "e.avif"])
    def test_supported(self, name):
        assert is_supported_extension(name)

    @pytest.mark.parametrize("name", ["a.png", "b.mov", "c", "d.jpg.txt"])
    def test_unsupported(self, name):
        assert not is_supported_extension(name)

    def test_ignored_and_hidden_entries_are_skipped(self, temp_dir):
        root = temp_dir / "Photos"
        _touch(root / "keep.jpg")
        _touch(root / "sub" / "keep.heic")
        _touch(root / ".hidden.jpg")
        _touch(root / ".thumbnails" / "x.jpg")
        _touch(root / "node_modules" / "x.jpg")
        _touch(root / "__pycache__" / "x.jpg")
        _touch(root / "notes.txt")
        paths = [c.relative_path for c in scan_root(str(root))]
        assert paths == ["Photos/keep.jpg", "Photos/sub/keep.heic"]

    def test_custom_ignored_dirs(self, temp_dir):
        root = temp_dir / "Photos"
        _touch(root / "raw" / "a.jpg")
        _touch(root / "node_modules" / "b.jpg")
        paths = [c.relative_path for c in scan_root(str(root), ignored_dirs={"raw"})]
        assert paths == ["Photos/node_modules/b.jpg"]


class TestRoots:
    def test_labels_disambiguate_same_folder_names(self):
        labels = root_labels(["/a/Photos", "/b/Photos", "/c/photos", "/d/Trips"])
        assert labels == {
            "/a/Photos": "Photos",
            "/b/Photos": "Photos-2",
            "/c/photos": "photos-3",
            "/d/Trips": "Trips",
        }

    def test_same_relative_path_under_two_roots_does_not_collide(self, temp_dir):
        first = temp_dir / "a" / "Photos"
        second = temp_dir / "b" / "Photos"
        _touch(first / "IMG_0001.jpg")
        _touch(second / "IMG_0001.jpg")
        candidates = list(scan_roots([str(first), str(second)]))
        assert [c.relative_path for c in candidates] == ["Photos/IMG_0001.jpg", "Photos-2/IMG_0001.jpg"]
        assert candidates[0].path != candidates[1].path

    def test_labels_do_not_depend_on_root_order(self):
        roots = ["/a/Photos", "/b/Photos", "/c/photos"]
        assert root_labels(list(reversed(roots))) == root_labels(roots)

    def test_relative_paths_do_not_depend_on_root_order(self, temp_dir):
        first = temp_dir / "a" / "Photos"
        second = temp_dir / "b" / "Photos"
        _touch(first / "IMG_0001.jpg")
        _touch(second / "IMG_0002.jpg")
        forward = {c.path: c.relative_path for c in scan_roots([str(first), str(second)])}
        backward = {c.path: c.relative_path for c in scan_roots([str(second), str(first)])}
        assert forward == backward
        assert forward[str(first / "IMG_0001.jpg")] == "Photos/IMG_0001.jpg"

    def test_missing_root_raises(self, temp_dir):
        with pytest.raises(RootFolderError) as info:
            scan_root(str(temp_dir / "missing"))
        assert info.value.root == str(temp_dir / "missing")

    def test_file_root_raises(self, temp_dir):
        _touch(temp_dir / "file.jpg")
        with pytest.raises(RootFolderError):
            scan_root(str(temp_dir / "file.jpg"))

    def test_failing_root_reported_and_skipped(self, temp_dir):
        good = temp_dir / "Good"
        _touch(good / "a.jpg")
        errors = []
        candidates = list(scan_roots([str(temp_dir / "missing"), str(good)], on_root_error=errors.append))
        assert [c.relative_path for c in candidates] == ["Good/a.jpg"]
        assert len(errors) == 1

    def test_failing_root_without_callback_propagates(self, temp_dir):
        with pytest.raises(RootFolderError):
            list(scan_roots([str(temp_dir / "missing")]))
