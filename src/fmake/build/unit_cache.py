"""Per-unit incremental cache.

This module persists what the scanner and resolver learned about each
source unit between invocations, so unchanged units are neither re-read
nor re-resolved.

One CacheEntry is kept per source path. An entry is valid only while the
unit's fingerprint matches the one stored with it. Two stores are provided:

- MemoryUnitCacheStore: plain dict, used by tests and one-shot runs
- JsonUnitCacheStore: one JSON file per unit in a cache directory, named by
  the SHA256 of the unit path and written atomically (temp file + rename)

A corrupt or unreadable entry is a cache miss, never an error.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class Fingerprint:
    """Change-detection value for a source file.

    Attributes:
        size: File size in bytes
        mtime_ns: Last modification time in nanoseconds
        sha256: SHA256 of the file contents
    """

    size: int
    mtime_ns: int
    sha256: str

    def same_content(self, other: Optional["Fingerprint"]) -> bool:
        return other is not None and other.sha256 == self.sha256

    def to_dict(self) -> dict[str, Any]:
        return {"size": self.size, "mtime_ns": self.mtime_ns, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Fingerprint":
        return cls(size=int(data["size"]), mtime_ns=int(data["mtime_ns"]), sha256=str(data["sha256"]))


def hash_file(file_path: Path) -> str:
    """Calculate SHA256 hash of file contents.

    Raises:
        OSError: If the file cannot be read
    """
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def compute_fingerprint(file_path: Path, previous: Optional[Fingerprint] = None) -> Fingerprint:
    """Fingerprint a file, skipping the hash when size and mtime are unchanged.

    Args:
        file_path: Source file to fingerprint
        previous: Fingerprint stored in the cache, if any

    Returns:
        The current fingerprint. When only the mtime moved but the content
        hash is the same, the returned fingerprint compares equal in content
        to ``previous``.
    """
    stat = file_path.stat()
    if previous is not None and previous.size == stat.st_size and previous.mtime_ns == stat.st_mtime_ns:
        return previous
    return Fingerprint(size=stat.st_size, mtime_ns=stat.st_mtime_ns, sha256=hash_file(file_path))


@dataclass
class CacheEntry:
    """What is remembered about one source unit.

    Attributes:
        path: Absolute path of the source unit (the cache key)
        fingerprint: Fingerprint at the time the entry was written
        imports: Raw imported module names, in source order
        closure: Transitive module closure (modules only; None until resolved)
    """

    path: str
    fingerprint: Fingerprint
    imports: list[str] = field(default_factory=list)
    closure: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "version": CACHE_FORMAT_VERSION,
            "path": self.path,
            "fingerprint": self.fingerprint.to_dict(),
            "imports": list(self.imports),
            "closure": list(self.closure) if self.closure is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """Deserialize from dictionary.

        Raises:
            KeyError, TypeError, ValueError: If the data is malformed
        """
        if not isinstance(data, dict):
            raise TypeError(f"Cache entry must be an object, got {type(data).__name__}")
        if data.get("version") != CACHE_FORMAT_VERSION:
            raise ValueError(f"Unsupported cache entry version: {data.get('version')!r}")
        closure = data.get("closure")
        imports = data["imports"]
        if not isinstance(imports, list) or (closure is not None and not isinstance(closure, list)):
            raise TypeError("imports/closure must be lists")
        return cls(
            path=str(data["path"]),
            fingerprint=Fingerprint.from_dict(data["fingerprint"]),
            imports=[str(name) for name in imports],
            closure=[str(name) for name in closure] if closure is not None else None,
        )


class UnitCacheStore(ABC):
    """Key-value store mapping unit path -> CacheEntry.

    Implementations must be safe for concurrent use; writes are scoped to a
    single key.
    """

    @abstractmethod
    def get(self, path: str) -> Optional[CacheEntry]:
        """Return the entry for a path, or None on a miss (including corruption)."""

    @abstractmethod
    def put(self, entry: CacheEntry) -> None:
        """Store (replace) the entry for entry.path."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the entry for a path if present."""

    @abstractmethod
    def keys(self) -> list[str]:
        """All stored unit paths."""

    def prune(self, live_paths: Iterable[str]) -> int:
        """Delete orphaned entries whose source no longer exists.

        Returns:
            Number of entries removed
        """
        live = set(live_paths)
        removed = 0
        for key in self.keys():
            if key not in live:
                self.delete(key)
                removed += 1
        if removed:
            logger.info(f"Pruned {removed} orphaned cache entries")
        return removed


class MemoryUnitCacheStore(UnitCacheStore):
    """In-memory store, for tests and throwaway runs."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.write_count = 0

    def get(self, path: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(path)

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.path] = entry
            self.write_count += 1

    def delete(self, path: str) -> None:
        with self._lock:
            self._entries.pop(path, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)


class JsonUnitCacheStore(UnitCacheStore):
    """On-disk store: one JSON document per unit.

    Layout:
        <cache_dir>/<sha256(unit path)>.json
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self._lock = threading.Lock()

    def _entry_file(self, path: str) -> Path:
        digest = hashlib.sha256(path.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def _read(self, entry_file: Path) -> Optional[CacheEntry]:
        try:
            with open(entry_file, "r", encoding="utf-8") as f:
                return CacheEntry.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache entry {entry_file}: {e}")
            return None

    def get(self, path: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._read(self._entry_file(path))
        if entry is not None and entry.path != path:
            logger.warning(f"Cache entry key mismatch for {path}, treating as miss")
            return None
        return entry

    def put(self, entry: CacheEntry) -> None:
        entry_file = self._entry_file(entry.path)
        with self._lock:
            try:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                temp_file = entry_file.with_suffix(".tmp")
                with open(temp_file, "w", encoding="utf-8") as f:
                    json.dump(entry.to_dict(), f, indent=2)
                temp_file.replace(entry_file)
                logger.debug(f"Saved cache entry for {entry.path}")
            except OSError as e:
                logger.error(f"Failed to save cache entry for {entry.path}: {e}")

    def delete(self, path: str) -> None:
        with self._lock:
            try:
                self._entry_file(path).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to delete cache entry for {path}: {e}")

    def keys(self) -> list[str]:
        if not self.cache_dir.is_dir():
            return []
        keys = []
        with self._lock:
            for entry_file in sorted(self.cache_dir.glob("*.json")):
                entry = self._read(entry_file)
                if entry is None:
                    # Corrupt files have no recoverable key; drop them here.
                    try:
                        entry_file.unlink()
                    except OSError:
                        pass
                    continue
                keys.append(entry.path)
        return keys

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            for entry_file in self.cache_dir.glob("*.json"):
                try:
                    entry_file.unlink()
                except OSError as e:
                    logger.warning(f"Failed to delete {entry_file}: {e}")
        logger.info("Cache cleared")
