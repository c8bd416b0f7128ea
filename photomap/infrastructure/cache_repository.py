"""Binary cache of the record store.

File layout (little-endian):

    magic           8s   b"PMCACHE\\0"
    format_version  u32
    root_count      u32, then root_count strings
    record_count    u32, then record_count records
    crc32           u32  over every preceding byte

    string  := u32 byte length + UTF-8 bytes
    record  := relative_path, absolute_path, u8 flags, [f64 lat, f64 lon],
               [datetime string], u8 orientation

A cache is only handed out when its version matches `FORMAT_VERSION` and its
roots match the configured roots as a set. Anything else (foreign file,
truncation, checksum failure, old version, other roots) removes the file.
"""

from __future__ import annotations

from collections.abc import Iterable
import contextlib
import os
from pathlib import Path
import struct
import tempfile
import zlib

from loguru import logger

from photomap.core.models import CachedStore, PhotoRecord
from photomap.infrastructure.utils import get_app_data_dir, normalize_roots, same_root_set

MAGIC = b"PMCACHE\x00"
FORMAT_VERSION = 1
CACHE_FILE_NAME = "photomap.cache"

_HEADER = struct.Struct("<8sI")
_U32 = struct.Struct("<I")
_COORDS = struct.Struct("<dd")

_FLAG_GPS = 0x01
_FLAG_DATETIME = 0x02
_FLAG_HEIF = 0x04


class CacheFormatError(ValueError):
    """The file is not a readable cache."""


class CacheIncompatibleError(CacheFormatError):
    """The cache was written by a build with another format version."""


def default_cache_path() -> Path:
    return get_app_data_dir() / CACHE_FILE_NAME


class _Writer:
    def __init__(self) -> None:
        self._parts: list[bytes] = []

    def u8(self, value: int) -> None:
        self._parts.append(bytes((value,)))

    def u32(self, value: int) -> None:
        self._parts.append(_U32.pack(value))

    def string(self, value: str) -> None:
        raw = value.encode("utf-8")
        self.u32(len(raw))
        self._parts.append(raw)

    def raw(self, value: bytes) -> None:
        self._parts.append(value)

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class _Reader:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._pos = offset

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise CacheFormatError("cache payload truncated")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u32(self) -> int:
        return _U32.unpack(self._take(4))[0]

    def string(self) -> str:
        raw = self._take(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise CacheFormatError(f"invalid string in cache: {ex}") from ex

    def coords(self) -> tuple[float, float]:
        return _COORDS.unpack(self._take(_COORDS.size))

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos


def encode_cache(records: Iterable[PhotoRecord], source_roots: Iterable[str], format_version: int) -> bytes:
    """Serialize `records` and their roots, checksum included."""
    writer = _Writer()
    writer.raw(_HEADER.pack(MAGIC, format_version))
    roots = list(source_roots)
    writer.u32(len(roots))
    for root in roots:
        writer.string(root)
    items = list(records)
    writer.u32(len(items))
    for record in items:
        writer.string(record.relative_path)
        writer.string(record.absolute_path)
        flags = 0
        if record.has_gps:
            flags |= _FLAG_GPS
        if record.datetime is not None:
            flags |= _FLAG_DATETIME
        if record.is_heif:
            flags |= _FLAG_HEIF
        writer.u8(flags)
        if flags & _FLAG_GPS:
            writer.raw(_COORDS.pack(record.latitude, record.longitude))
        if flags & _FLAG_DATETIME:
            writer.string(record.datetime)
        writer.u8(record.orientation)
    body = writer.getvalue()
    return body + _U32.pack(zlib.crc32(body))


def decode_cache(blob: bytes, format_version: int = FORMAT_VERSION) -> CachedStore:
    """Parse a cache blob.

    Raises:
        CacheIncompatibleError: the version differs from `format_version`.
        CacheFormatError: wrong magic, checksum mismatch or truncated payload.
    """
    if len(blob) < _HEADER.size + _U32.size:
        raise CacheFormatError("cache file too short")
    magic, version = _HEADER.unpack_from(blob, 0)
    if magic != MAGIC:
        raise CacheFormatError("not a photomap cache file")
    if version != format_version:
        raise CacheIncompatibleError(f"cache format version {version}, expected {format_version}")
    body, (checksum,) = blob[:-4], _U32.unpack(blob[-4:])
    if zlib.crc32(body) != checksum:
        raise CacheFormatError("cache checksum mismatch")

    reader = _Reader(body, _HEADER.size)
    roots = tuple(reader.string() for _ in range(reader.u32()))
    records: list[PhotoRecord] = []
    for _ in range(reader.u32()):
        relative_path = reader.string()
        absolute_path = reader.string()
        flags = reader.u8()
        latitude = longitude = None
        if flags & _FLAG_GPS:
            latitude, longitude = reader.coords()
        datetime = reader.string() if flags & _FLAG_DATETIME else None
        orientation = reader.u8()
        records.append(
            PhotoRecord(
                relative_path=relative_path,
                absolute_path=absolute_path,
                latitude=latitude,
                longitude=longitude,
                datetime=datetime,
                orientation=orientation,
                is_heif=bool(flags & _FLAG_HEIF),
            )
        )
    if reader.remaining:
        raise CacheFormatError(f"{reader.remaining} unexpected trailing bytes")
    return CachedStore(format_version=version, source_roots=roots, records=tuple(records))


class BinaryCacheRepository:
    """Persists record-store snapshots to a single versioned binary file."""

    def __init__(self, path: str | Path | None = None, format_version: int = FORMAT_VERSION) -> None:
        self._path = Path(path) if path is not None else default_cache_path()
        self._format_version = format_version

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(self, records: Iterable[PhotoRecord], source_roots: Iterable[str]) -> None:
        """Atomically replace the cache file.

        Raises:
            OSError: the file could not be written; an existing cache is left untouched.
        """
        items = list(records)
        blob = encode_cache(items, normalize_roots(list(source_roots)), self._format_version)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".photomap-", suffix=".tmp", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        logger.info("Saved {} records to cache {}", len(items), self._path)

    def load(self, expected_roots: Iterable[str]) -> CachedStore | None:
        """Return the cached store if it is valid for `expected_roots`, else None.

        Invalid caches are deleted. This method never raises.
        """
        if not self._path.exists():
            return None
        try:
            blob = self._path.read_bytes()
        except OSError as ex:
            logger.warning("Could not read cache {}: {}", self._path, ex)
            return None
        try:
            store = decode_cache(blob, self._format_version)
        except CacheFormatError as ex:
            logger.warning("Discarding cache {}: {}", self._path, ex)
            self.delete()
            return None
        if not same_root_set(store.source_roots, list(expected_roots)):
            logger.info("Discarding cache {}: root folders changed", self._path)
            self.delete()
            return None
        logger.info("Loaded {} records from cache {}", len(store.records), self._path)
        return store

    def delete(self) -> bool:
        """Remove the cache file; True if a file was removed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        except OSError as ex:
            logger.warning("Could not delete cache {}: {}", self._path, ex)
            return False
        return True
