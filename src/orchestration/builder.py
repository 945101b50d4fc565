"""makepkg builds and installation of the resulting packages."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from constants import Constants
from common.errors import BuildFailure, CommandError, KeyImportFailed
from common.logging_utils import extra_context, Timer
from common.subprocess_runner import CommandResult, CommandRunner
from registry.models import Source
from registry.pacman import PacmanClient
from resolution.models import DependencyNode
from storage.cache_store import CacheKey, CacheStore

from .pgp import KeyImporter, has_pgp_error, valid_pgp_keys

logger = logging.getLogger(__name__)

MAKEPKG = "makepkg"
PKGBUILD = "PKGBUILD"


def select_artifacts(node: DependencyNode, artifacts: List[Path]) -> List[Path]:
    """Packages of a split build that belong to ``node``; all of them otherwise."""
    prefix = f"{node.name}-{node.version}-" if node.version else f"{node.name}-"
    own = [a for a in artifacts if a.name.startswith(prefix)]
    return own or artifacts


class PackageBuilder:
    """Runs makepkg in a prepared recipe directory and installs its output.

    Built packages are copied into the artifact cache before installation.
    """

    def __init__(
        self,
        runner: CommandRunner,
        pacman: PacmanClient,
        artifacts: CacheStore,
        *,
        noconfirm: bool = False,
        keys: Optional[KeyImporter] = None,
    ) -> None:
        self._runner = runner
        self._pacman = pacman
        self._artifacts = artifacts
        self._noconfirm = noconfirm
        self._keys = keys or KeyImporter()

    def _makepkg(self, workdir: Path) -> CommandResult:
        argv = [MAKEPKG, "--syncdeps", "--force"]
        if self._noconfirm:
            argv.append("--noconfirm")
        return self._runner.run(argv, cwd=str(workdir), capture=False)

    def build(self, node: DependencyNode, workdir: Path) -> List[Path]:
        """Build ``node`` and return the cached package files.

        A build that fails on source signatures is retried once after the
        recipe's ``validpgpkeys`` were imported.

        Raises:
            BuildFailure: when makepkg fails or produces no package.
        """
        logger.info("Building %s %s", node.name, node.version)
        with Timer() as t:
            result = self._makepkg(workdir)
            if self._recover_keys(node, workdir, result):
                result = self._makepkg(workdir)
        if result.returncode == Constants.MAKEPKG_EXIT_DEPS_FAILED:
            raise BuildFailure(node.ref, "could not install build dependencies")
        if not result.ok:
            raise BuildFailure(node.ref, f"makepkg exited with status {result.returncode}")

        listing = self._runner.run([MAKEPKG, "--packagelist"], cwd=str(workdir))
        if not listing.ok:
            raise BuildFailure(node.ref, "makepkg --packagelist failed")
        built = [Path(line.strip()) for line in listing.stdout.splitlines() if line.strip()]
        built = [p if p.is_absolute() else workdir / p for p in built]
        built = [p for p in built if p.is_file()]
        if not built:
            raise BuildFailure(node.ref, "build produced no package")

        cached = []
        for path in select_artifacts(node, built):
            entry = self._artifacts.put_file(CacheKey(Source.SOURCE_BUILD.prefix, path.name), path)
            cached.append(entry.path)
        logger.debug(
            "Build finished",
            extra=extra_context(
                event="build",
                component="builder",
                target=node.name,
                outcome="success",
                artifacts=[p.name for p in cached],
                duration_ms=t.duration_ms(),
            ),
        )
        return cached

    def _recover_keys(self, node: DependencyNode, workdir: Path, result: CommandResult) -> bool:
        """Import signing keys after a failed build if verification failed on them.

        The interactive build does not capture output, so the sources are
        verified again with output captured to find the cause.
        """
        if result.ok or result.returncode == Constants.MAKEPKG_EXIT_DEPS_FAILED:
            return False
        keys = valid_pgp_keys(workdir / PKGBUILD)
        if not keys:
            return False
        verify = self._runner.run([MAKEPKG, "--verifysource"], cwd=str(workdir))
        if verify.ok or not has_pgp_error(verify.stdout + verify.stderr):
            return False
        logger.warning(
            "PGP verification failed for %s; importing %d key(s)",
            node.name,
            len(keys),
            extra=extra_context(event="pgp_recovery", component="builder", target=node.name, keys=keys),
        )
        try:
            self._keys.import_keys(keys)
        except KeyImportFailed as exc:
            raise BuildFailure(node.ref, exc) from exc
        return True

    def install(self, node: DependencyNode, artifacts: List[Path]) -> None:
        """Install built packages; dependencies pulled in for others are marked as such.

        Raises:
            BuildFailure: when pacman rejects the packages.
        """
        result = self._pacman.install_files(
            artifacts, asdeps=not node.explicit, noconfirm=self._noconfirm
        )
        if not result.ok:
            raise BuildFailure(node.ref, f"pacman -U exited with status {result.returncode}")

    def remove_make_dependencies(self, names: Iterable[str]) -> List[str]:
        """Uninstall build-only dependencies that nothing installed still needs.

        Only packages installed as dependencies and required by no other
        package are candidates, so explicitly installed tools stay.

        Raises:
            CommandError: when pacman fails to remove them.
        """
        orphans = set(self._pacman.orphans())
        removable = sorted(set(names) & orphans)
        if not removable:
            return []
        logger.info("Removing make dependencies: %s", ", ".join(removable))
        result = self._pacman.remove(removable, recursive=True)
        if not result.ok:
            raise CommandError(result.argv, result.returncode, result.stderr)
        return removable
