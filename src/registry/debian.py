"""Debian archive index and package downloads.

The ``Packages.gz`` index is cached for a day; ``.deb`` downloads are
checked against the index's MD5 sum before they are handed to debtap.
"""
from __future__ import annotations

import gzip
import hashlib
import logging
import os
import platform
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from constants import Constants
from common.errors import SourceError
from common.http_client import RetryingClient
from common.logging_utils import extra_context, Timer
from registry.models import PackageMetadata, PackageRef, SearchResult, Source
from storage.cache_store import CacheKey, CacheStore

logger = logging.getLogger(__name__)


def debian_arch(machine: Optional[str] = None) -> str:
    machine = machine or platform.machine()
    return Constants.DEBIAN_ARCH_MAP.get(machine, machine)


def parse_packages(text: str) -> Dict[str, PackageMetadata]:
    """Parse a ``Packages`` index into metadata keyed by package name.

    Stanzas are separated by blank lines; continuation lines start with
    whitespace and only the first description line is kept.
    """
    packages: Dict[str, PackageMetadata] = {}
    for stanza in text.split("\n\n"):
        fields: Dict[str, str] = {}
        last_key = None
        for line in stanza.splitlines():
            if line[:1] in (" ", "\t"):
                continue
            key, sep, value = line.partition(":")
            if sep:
                last_key = key.strip()
                fields[last_key] = value.strip()
        if last_key is None or "Package" not in fields:
            continue
        name = fields["Package"]
        packages[name] = PackageMetadata(
            ref=PackageRef(name, Source.DEBIAN),
            version=fields.get("Version", ""),
            description=fields.get("Description", ""),
            depends=[d.strip() for d in fields.get("Depends", "").split(",") if d.strip()],
            extra={
                "filename": fields.get("Filename"),
                "md5sum": fields.get("MD5sum"),
                "maintainer": fields.get("Maintainer"),
                "size": fields.get("Size"),
            },
        )
    return packages


class DebianIndex:
    """Search and fetch packages from one Debian release/component."""

    def __init__(
        self,
        http: RetryingClient,
        cache: CacheStore,
        *,
        mirror: str = Constants.DEBIAN_MIRROR,
        release: str = Constants.DEBIAN_RELEASE,
        component: str = Constants.DEBIAN_COMPONENT,
        arch: Optional[str] = None,
    ) -> None:
        self._http = http
        self._cache = cache
        self._mirror = mirror.rstrip("/")
        self._release = release
        self._component = component
        self._arch = arch or debian_arch()
        self._packages: Optional[Dict[str, PackageMetadata]] = None
        self._lock = threading.Lock()

    @property
    def index_url(self) -> str:
        return (
            f"{self._mirror}/dists/{self._release}/{self._component}"
            f"/binary-{self._arch}/Packages.gz"
        )

    @property
    def cache_key(self) -> CacheKey:
        return CacheKey("index", f"{self._release}-{self._component}-{self._arch}")

    def _index(self) -> Dict[str, PackageMetadata]:
        with self._lock:
            if self._packages is None:
                self._packages = parse_packages(self._load_index_text())
            return self._packages

    def _load_index_text(self) -> str:
        entry = self._cache.get(self.cache_key)
        if entry is None:
            logger.info("Downloading Debian package index for %s/%s", self._release, self._arch)
            with Timer() as t:
                data = self._http.download(self.index_url)
                entry = self._cache.put(
                    self.cache_key, data, "Packages.gz", ttl=Constants.DEBIAN_INDEX_TTL_SEC
                )
            logger.debug(
                "Debian index cached",
                extra=extra_context(
                    event="cache_write",
                    component="debian",
                    target=self.index_url,
                    duration_ms=t.duration_ms(),
                ),
            )
        try:
            with gzip.open(entry.path, "rt", encoding="utf-8", errors="replace") as f:
                return f.read()
        except (OSError, EOFError) as exc:
            self._cache.evict(self.cache_key)
            raise SourceError(f"unreadable Debian index: {exc}") from exc

    def search(self, query: str) -> List[SearchResult]:
        needle = query.strip().lower()
        hits = [
            meta for meta in self._index().values()
            if needle in meta.name.lower() or needle in meta.description.lower()
        ]
        hits.sort(key=lambda m: (m.name != needle, m.name))
        return [
            SearchResult(
                ref=meta.ref,
                display_name=meta.name,
                version=meta.version,
                description=meta.description,
                source=Source.DEBIAN,
            )
            for meta in hits
        ]

    def info(self, name: str) -> Optional[PackageMetadata]:
        return self._index().get(name)

    def download(self, metadata: PackageMetadata, dest_dir: os.PathLike) -> Path:
        """Download a ``.deb`` into ``dest_dir`` and verify its MD5 sum.

        Raises:
            SourceError: if the index lacks a file name or the checksum differs.
        """
        filename = metadata.extra.get("filename")
        if not filename:
            raise SourceError(f"{metadata.ref}: no file recorded in the Debian index")
        data = self._http.download(f"{self._mirror}/{filename}")
        expected = metadata.extra.get("md5sum")
        if expected:
            actual = hashlib.md5(data).hexdigest()  # noqa: S324
            if actual != expected:
                raise SourceError(f"{metadata.ref}: MD5 mismatch (expected {expected}, got {actual})")
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / os.path.basename(filename)
        fd, tmp_path = tempfile.mkstemp(prefix=".deb-", dir=dest)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, target)
        return target
