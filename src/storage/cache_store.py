"""Content-addressed, TTL-keyed on-disk cache.

Layout under the store root::

    <source>/<name>/entry.json          metadata, replaced atomically
    <source>/<name>/<sha256>/<payload>  file or directory tree

A payload is fully written into a temporary directory next to its final
location, checksummed and renamed into place before ``entry.json`` is
swapped in. The metadata rename is the commit point, so a reader sees
either the previous entry or the new one, never a partial payload.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from constants import Constants
from common.errors import CacheCorruption
from common.logging_utils import extra_context, is_debug_enabled

logger = logging.getLogger(__name__)

_DEFAULT_TTL: Any = object()
_CHUNK = 1024 * 1024
# A reader that keeps losing to concurrent writers gives up and reports a miss
_READ_ATTEMPTS = 3


@dataclass(frozen=True)
class CacheKey:
    source: str
    name: str

    def __str__(self) -> str:
        return f"{self.source}/{self.name}"


@dataclass(frozen=True)
class CacheEntry:
    """Metadata for one cached payload. ``ttl`` of None never expires."""

    key: CacheKey
    path: Path
    content_checksum: str
    fetched_at: float
    ttl: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.fetched_at >= self.ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.key.source,
            "name": self.key.name,
            "path": str(self.path),
            "content_checksum": self.content_checksum,
            "fetched_at": self.fetched_at,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=CacheKey(data["source"], data["name"]),
            path=Path(data["path"]),
            content_checksum=data["content_checksum"],
            fetched_at=float(data["fetched_at"]),
            ttl=None if data.get("ttl") is None else float(data["ttl"]),
        )


def checksum_path(path: Path) -> str:
    """SHA-256 over a file, or over every file of a tree in sorted order.

    Tree digests include each relative path and symlink target so renames
    and retargeted links change the checksum too.
    """
    digest = hashlib.sha256()
    if path.is_file() and not path.is_symlink():
        _update_file(digest, path)
        return digest.hexdigest()
    if not path.is_dir():
        raise FileNotFoundError(str(path))
    for root, dirs, files in os.walk(path):
        dirs.sort()
        for name in sorted(files + [d for d in dirs if os.path.islink(os.path.join(root, d))]):
            full = Path(root) / name
            rel = full.relative_to(path).as_posix()
            digest.update(rel.encode("utf-8") + b"\0")
            if full.is_symlink():
                digest.update(b"link:" + os.readlink(full).encode("utf-8") + b"\0")
            else:
                _update_file(digest, full)
    return digest.hexdigest()


def _update_file(digest: Any, path: Path) -> None:
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)


class CacheStore:
    """Persistent cache for recipes, built artifacts and index files.

    Readers take the key lock only to evict. Writers for the same key are
    serialised; different keys are written concurrently.
    """

    def __init__(
        self,
        root: os.PathLike,
        *,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self._default_ttl = default_ttl
        self._clock = clock
        self._locks: Dict[CacheKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: CacheKey) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _key_dir(self, key: CacheKey) -> Path:
        for part in (key.source, key.name):
            if not part or part in (".", "..") or "/" in part or os.sep in part:
                raise ValueError(f"invalid cache key component: {part!r}")
        return self.root / key.source / key.name

    def _entry_file(self, key: CacheKey) -> Path:
        return self._key_dir(key) / Constants.CACHE_ENTRY_FILE

    def _read_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        entry_file = self._entry_file(key)
        try:
            with open(entry_file, "r", encoding="utf-8") as f:
                return CacheEntry.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheCorruption(key) from exc

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return a usable entry, or None when missing, expired or corrupt.

        Expired and corrupt entries are evicted so the caller refetches. An
        entry replaced by a concurrent writer while it was being checked is
        left alone and the newer entry is read instead.
        """
        for _ in range(_READ_ATTEMPTS):
            seen: Optional[CacheEntry] = None
            try:
                seen = self._read_entry(key)
                if seen is None:
                    return None
                if seen.is_expired(self._clock()):
                    if self._evict_if_current(key, seen):
                        logger.debug("Cache entry expired: %s", key)
                        return None
                    continue
                self._verify(seen)
            except CacheCorruption as exc:
                if self._evict_if_current(key, seen):
                    logger.warning(
                        "Discarding corrupt cache entry %s",
                        key,
                        extra=extra_context(
                            event="cache_corruption",
                            component="cache_store",
                            target=str(key),
                            expected=exc.expected or None,
                            actual=exc.actual or None,
                        ),
                    )
                    return None
                continue
            if is_debug_enabled(logger):
                logger.debug(
                    "Cache hit",
                    extra=extra_context(event="cache_hit", component="cache_store", target=str(key)),
                )
            return seen
        return None

    def _evict_if_current(self, key: CacheKey, seen: Optional[CacheEntry]) -> bool:
        """Evict ``key`` unless a writer committed a different entry after ``seen`` was read.

        ``seen`` is None when the metadata itself could not be parsed. Returns
        False when a newer entry is in place.
        """
        with self._lock_for(key):
            try:
                current = self._read_entry(key)
            except CacheCorruption:
                if seen is not None:
                    return False
                self._remove(key)
                return True
            if current is None:
                return True
            if current != seen:
                return False
            self._remove(key)
            return True

    def _verify(self, entry: CacheEntry) -> None:
        try:
            actual = checksum_path(entry.path)
        except FileNotFoundError as exc:
            raise CacheCorruption(entry.key, entry.content_checksum, "missing") from exc
        if actual != entry.content_checksum:
            raise CacheCorruption(entry.key, entry.content_checksum, actual)

    def put(self, key: CacheKey, data: bytes, filename: Optional[str] = None,
            ttl: Any = _DEFAULT_TTL) -> CacheEntry:
        """Store ``data`` as a single file and return its committed entry."""
        name = filename or "payload"
        if os.path.basename(name) != name or name in (".", ".."):
            raise ValueError(f"invalid payload file name: {name!r}")

        def write(staging: Path) -> Path:
            target = staging / name
            with open(target, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            return target

        return self._commit(key, write, name, ttl)

    def put_file(self, key: CacheKey, path: os.PathLike, ttl: Any = _DEFAULT_TTL) -> CacheEntry:
        """Store a copy of the file at ``path`` under its own name."""
        source = Path(path)
        if not source.is_file():
            raise FileNotFoundError(str(source))

        def write(staging: Path) -> Path:
            return Path(shutil.copy2(source, staging / source.name))

        return self._commit(key, write, source.name, ttl)

    def put_tree(self, key: CacheKey, directory: os.PathLike, ttl: Any = _DEFAULT_TTL) -> CacheEntry:
        """Store a copy of ``directory`` and return its committed entry."""
        source = Path(directory)
        if not source.is_dir():
            raise NotADirectoryError(str(source))
        name = source.name or "tree"

        def write(staging: Path) -> Path:
            target = staging / name
            shutil.copytree(source, target, symlinks=True)
            return target

        return self._commit(key, write, name, ttl)

    def _commit(self, key: CacheKey, write: Callable[[Path], Path], name: str, ttl: Any) -> CacheEntry:
        key_dir = self._key_dir(key)
        effective_ttl = self._default_ttl if ttl is _DEFAULT_TTL else ttl
        with self._lock_for(key):
            key_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".tmp-", dir=key_dir))
            try:
                checksum = checksum_path(write(staging))
                final_dir = key_dir / checksum
                if final_dir.exists():
                    shutil.rmtree(staging)
                else:
                    os.replace(staging, final_dir)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

            entry = CacheEntry(key, final_dir / name, checksum, self._clock(), effective_ttl)
            self._write_entry(key_dir, entry)
            self._prune(key_dir, keep=checksum)

        if is_debug_enabled(logger):
            logger.debug(
                "Cache write",
                extra=extra_context(
                    event="cache_write",
                    component="cache_store",
                    target=str(key),
                    checksum=checksum,
                ),
            )
        return entry

    def _write_entry(self, key_dir: Path, entry: CacheEntry) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=".entry-", suffix=".json", dir=key_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, key_dir / Constants.CACHE_ENTRY_FILE)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _prune(key_dir: Path, keep: str) -> None:
        """Remove payload directories superseded by the committed entry."""
        for child in key_dir.iterdir():
            if child.is_dir() and child.name != keep and not child.name.startswith("."):
                shutil.rmtree(child, ignore_errors=True)

    def evict(self, key: Optional[CacheKey] = None) -> None:
        """Remove one entry, or every entry when ``key`` is None."""
        if key is None:
            if self.root.exists():
                for child in self.root.iterdir():
                    if child.is_dir():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
            logger.info("Cleared cache at %s", self.root)
            return
        with self._lock_for(key):
            self._remove(key)
        logger.debug("Evicted cache entry %s", key)

    def _remove(self, key: CacheKey) -> None:
        """Delete the key directory; the caller holds the key lock."""
        key_dir = self._key_dir(key)
        if key_dir.exists():
            shutil.rmtree(key_dir)

    def entries(self) -> Iterator[CacheEntry]:
        """Committed entries, without validation."""
        if not self.root.is_dir():
            return
        for source_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for key_dir in sorted(p for p in source_dir.iterdir() if p.is_dir()):
                try:
                    entry = self._read_entry(CacheKey(source_dir.name, key_dir.name))
                except CacheCorruption as exc:
                    logger.warning("Skipping unreadable cache entry %s", exc)
                    continue
                if entry is not None:
                    yield entry

    def keys(self) -> List[CacheKey]:
        return [entry.key for entry in self.entries()]
