"""Pytest configuration and fixtures for photomap tests."""

from __future__ import annotations

from pathlib import Path
import tempfile

from builders import corrupt_heif_bytes, exif_tiff, jpeg_bytes
import pytest

from photomap.core.models import PhotoRecord
from photomap.infrastructure.processing_service import ProcessingOptions


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def photo_root(temp_dir):
    """Root folder with 3 JPEGs (2 with GPS) and 1 corrupt HEIC."""
    root = temp_dir / "Photos"
    (root / "trip").mkdir(parents=True)
    (root / "trip" / "paris.jpg").write_bytes(
        jpeg_bytes(exif_tiff(48.8566, 2.3522, datetime="2023:05:01 12:34:56"))
    )
    (root / "trip" / "sydney.JPG").write_bytes(
        jpeg_bytes(exif_tiff(-33.8688, 151.2093, datetime="2022:12:24 08:00:00", orientation=6))
    )
    (root / "no_gps.jpeg").write_bytes(jpeg_bytes(exif_tiff(datetime="2021:01:01 00:00:00")))
    (root / "broken.heic").write_bytes(corrupt_heif_bytes())
    return root


@pytest.fixture
def fast_options():
    """Small batches and unthrottled progress so every path is exercised."""
    return ProcessingOptions(workers=2, batch_size=1, progress_every=1, progress_interval=0.0)


def make_record(name: str, lat: float = 10.0, lon: float = 20.0, **kwargs) -> PhotoRecord:
    return PhotoRecord(
        relative_path=f"Photos/{name}",
        absolute_path=f"/data/Photos/{name}",
        latitude=lat,
        longitude=lon,
        **kwargs,
    )


@pytest.fixture
def record_factory():
    return make_record
