"""Recipe retrieval for source-build packages, backed by the clone cache."""
from __future__ import annotations

import io
import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

from common.cancel import CancelToken
from common.errors import BuildFailure
from common.http_client import RetryingClient
from common.logging_utils import extra_context, Timer
from common.subprocess_runner import CommandRunner
from registry.aur import AurClient
from registry.models import Source
from resolution.models import DependencyNode
from storage.cache_store import CacheKey, CacheStore

logger = logging.getLogger(__name__)

GIT = "git"
_PERMISSION_MARKERS = ("permission denied", "access denied", "could not read username")


def safe_extract(archive: tarfile.TarFile, dest: Path) -> None:
    """Extract ``archive`` into ``dest``, refusing members that escape it."""
    root = dest.resolve()
    members = []
    for member in archive.getmembers():
        target = (root / member.name).resolve()
        if target != root and root not in target.parents:
            raise BuildFailure(member.name, "archive member escapes the extraction directory")
        if member.issym() or member.islnk():
            link = (target.parent / member.linkname).resolve()
            if link != root and root not in link.parents:
                raise BuildFailure(member.name, "archive link points outside the extraction directory")
        if member.isdev():
            continue
        members.append(member)
    archive.extractall(root, members=members)  # noqa: S202


class RecipeFetcher:
    """Fetch build recipes through the cache.

    A cache hit is reused as-is. A miss clones the package repository (or
    downloads the snapshot tarball) and commits it to the cache. Builds run
    on a private copy so the cached tree keeps its checksum.
    """

    def __init__(
        self,
        http: RetryingClient,
        runner: CommandRunner,
        cache: CacheStore,
        build_root: os.PathLike,
        *,
        use_clone: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self._http = http
        self._runner = runner
        self._cache = cache
        self._build_root = Path(build_root)
        self._use_clone = use_clone
        self._cancel = cancel or CancelToken()

    @staticmethod
    def cache_key(package_base: str) -> CacheKey:
        return CacheKey(Source.SOURCE_BUILD.prefix, package_base)

    def fetch(self, node: DependencyNode) -> Path:
        """Path of the cached recipe directory for ``node``.

        Raises:
            BuildFailure: when neither transport produced a recipe.
            NetworkExhausted: when the tarball download kept failing.
        """
        base = node.package_base
        key = self.cache_key(base)
        entry = self._cache.get(key)
        if entry is not None:
            logger.debug("Using cached recipe for %s", base)
            return entry.path

        self._cancel.raise_if_cancelled()
        staging_root = self._cache.root / ".staging"
        staging_root.mkdir(parents=True, exist_ok=True)
        with Timer() as t, tempfile.TemporaryDirectory(dir=staging_root) as tmp:
            recipe_dir = self._download(base, Path(tmp))
            entry = self._cache.put_tree(key, recipe_dir, ttl=None)
        logger.info(
            "Fetched recipe for %s",
            base,
            extra=extra_context(
                event="recipe_fetch",
                component="fetch",
                target=base,
                transport="git" if self._use_clone else "tarball",
                duration_ms=t.duration_ms(),
            ),
        )
        return entry.path

    def _download(self, base: str, tmp: Path) -> Path:
        if self._use_clone:
            cloned = self._clone(base, tmp)
            if cloned is not None:
                return cloned
        return self._download_snapshot(base, tmp)

    def _clone(self, base: str, tmp: Path) -> Optional[Path]:
        """Shallow-clone the recipe; None when the tarball should be tried instead."""
        dest = tmp / base
        result = self._runner.run(
            [GIT, "clone", "--depth", "1", AurClient.clone_url(base), str(dest)]
        )
        if result.ok:
            shutil.rmtree(dest / ".git", ignore_errors=True)
            if not (dest / "PKGBUILD").is_file():
                raise BuildFailure(base, "repository has no PKGBUILD")
            return dest
        stderr = result.stderr.lower()
        if any(marker in stderr for marker in _PERMISSION_MARKERS):
            raise BuildFailure(base, f"git clone refused: {result.stderr.strip()}")
        logger.warning("git clone of %s failed, falling back to the snapshot tarball", base)
        shutil.rmtree(dest, ignore_errors=True)
        return None

    def _download_snapshot(self, base: str, tmp: Path) -> Path:
        data = self._http.download(AurClient.snapshot_url(base))
        extract_dir = tmp / "snapshot"
        extract_dir.mkdir()
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
                safe_extract(archive, extract_dir)
        except tarfile.TarError as exc:
            raise BuildFailure(base, f"unreadable snapshot: {exc}") from exc
        recipe_dir = extract_dir / base
        if not (recipe_dir / "PKGBUILD").is_file():
            raise BuildFailure(base, "snapshot has no PKGBUILD")
        return recipe_dir

    def prepare(self, node: DependencyNode) -> Path:
        """Copy the cached recipe into a fresh build directory and return it."""
        recipe = self.fetch(node)
        workdir = self._build_root / node.package_base
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(recipe, workdir, symlinks=True)
        return workdir

    def sync(self, package_base: str) -> None:
        """Drop the cached recipe so the next fetch downloads it again."""
        self._cache.evict(self.cache_key(package_base))
