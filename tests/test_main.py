"""Tests for the command line entry point."""

import json

from loguru import logger
import pytest

from photomap.main import main


@pytest.fixture
def settings_file(temp_dir):
    path = temp_dir / "settings.json"
    path.write_text(
        json.dumps(
            {
                "cache": {"path": str(temp_dir / "cache" / "photomap.cache")},
                "logging": {"dir": str(temp_dir / "logs")},
                "processing": {"workers": 2},
            }
        ),
        encoding="utf-8",
    )
    yield path
    logger.remove()


class TestMain:
    def test_process_then_load_from_cache(self, settings_file, photo_root, temp_dir, capsys):
        assert main([str(photo_root), "--settings", str(settings_file)]) == 0
        out = capsys.readouterr().out
        assert "Found 4 files" in out
        assert "2 on map" in out
        assert (temp_dir / "cache" / "photomap.cache").exists()

        assert main([str(photo_root), "--settings", str(settings_file)]) == 0
        assert "Loaded 2 photos from cache" in capsys.readouterr().out

    def test_reprocess_ignores_cache(self, settings_file, photo_root, capsys):
        main([str(photo_root), "--settings", str(settings_file)])
        capsys.readouterr()
        assert main([str(photo_root), "--settings", str(settings_file), "--reprocess"]) == 0
        assert "Found 4 files" in capsys.readouterr().out

    def test_roots_from_settings(self, settings_file, photo_root, capsys):
        data = json.loads(settings_file.read_text(encoding="utf-8"))
        data["roots"] = [str(photo_root)]
        settings_file.write_text(json.dumps(data), encoding="utf-8")
        assert main(["--settings", str(settings_file)]) == 0
        assert "2 photos on the map" in capsys.readouterr().out

    def test_no_roots(self, settings_file, capsys):
        assert main(["--settings", str(settings_file)]) == 2
        assert "No root folders" in capsys.readouterr().err

    def test_inaccessible_roots_fail(self, settings_file, temp_dir, capsys):
        assert main([str(temp_dir / "missing"), "--settings", str(settings_file)]) == 1
        assert "Error:" in capsys.readouterr().err
