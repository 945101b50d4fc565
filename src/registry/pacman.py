"""System package database access through the ``pacman`` binary."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from common.subprocess_runner import CommandResult, CommandRunner
from registry.models import PackageMetadata, PackageRef, SearchResult, Source
from versioning.parser import strip_constraint

logger = logging.getLogger(__name__)

PACMAN = "pacman"
SUDO = "sudo"


@dataclass
class InstalledPackage:
    """A package recorded in the local database."""

    name: str
    version: str
    depends: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    foreign: bool = False
    explicit: bool = True


def parse_info_blocks(text: str) -> List[Dict[str, str]]:
    """Parse ``pacman -Si/-Qi`` output into one dict per package.

    Continuation lines are folded into the previous field.
    """
    blocks: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    last_key: Optional[str] = None
    for line in text.splitlines():
        if not line.strip():
            if current:
                blocks.append(current)
            current, last_key = {}, None
            continue
        if line[:1].isspace() and last_key is not None:
            current[last_key] = f"{current[last_key]}\n{line.strip()}"
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        last_key = key.strip()
        current[last_key] = value.strip()
    if current:
        blocks.append(current)
    return blocks


def _split_list(value: Optional[str]) -> List[str]:
    if not value or value.strip() == "None":
        return []
    return value.split()


def parse_search_output(text: str) -> List[SearchResult]:
    """Parse ``pacman -Ss``: a ``repo/name version`` line, then an indented description."""
    results: List[SearchResult] = []
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip() or line[:1].isspace():
            continue
        parts = line.split()
        if len(parts) < 2 or "/" not in parts[0]:
            continue
        repo, name = parts[0].split("/", 1)
        description = ""
        if i < len(lines) and lines[i][:1].isspace():
            description = lines[i].strip()
            i += 1
        results.append(
            SearchResult(
                ref=PackageRef(name, Source.SYSTEM),
                display_name=f"{repo}/{name}",
                version=parts[1],
                description=description,
                source=Source.SYSTEM,
                installed="[installed" in line,
            )
        )
    return results


def _parse_name_versions(text: str) -> Dict[str, str]:
    packages: Dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            packages[parts[0]] = parts[1]
    return packages


class PacmanClient:
    """Queries and transactions against the system package manager.

    Queries capture output; transactions run with ``sudo`` and share the
    terminal so pacman can prompt and report progress itself.
    """

    def __init__(self, runner: CommandRunner):
        self._runner = runner

    def available(self) -> bool:
        return self._runner.available(PACMAN)

    def _query(self, *args: str) -> CommandResult:
        return self._runner.run([PACMAN, *args])

    def search(self, query: str) -> List[SearchResult]:
        result = self._query("-Ss", query)
        # Exit status 1 with no output means no matches
        if not result.ok and not result.stdout.strip():
            return []
        result.check()
        return parse_search_output(result.stdout)

    def info(self, name: str) -> Optional[PackageMetadata]:
        """Sync database metadata, or None when no repository has ``name``."""
        result = self._query("-Si", name)
        if not result.ok:
            return None
        blocks = parse_info_blocks(result.stdout)
        if not blocks:
            return None
        block = blocks[0]
        return PackageMetadata(
            ref=PackageRef(block.get("Name", name), Source.SYSTEM),
            version=block.get("Version", ""),
            description=block.get("Description", ""),
            depends=_split_list(block.get("Depends On")),
            provides=_split_list(block.get("Provides")),
            conflicts=_split_list(block.get("Conflicts With")),
            extra={"repository": block.get("Repository", "")},
        )

    def find_provider(self, dependency: str) -> Optional[str]:
        """Name of the sync package pacman would pick for ``dependency``.

        Resolves virtual names (``sh``, ``java-runtime``) through Provides.
        """
        result = self._query("-Sddp", "--print-format", "%n", dependency)
        if not result.ok:
            return None
        lines = result.stdout.split()
        return lines[0] if lines else None

    def deptest(self, dependency: str) -> bool:
        """Whether an installed package satisfies ``dependency``, constraint included."""
        return self._query("-T", dependency).ok

    def installed_version(self, name: str) -> Optional[str]:
        result = self._query("-Q", name)
        if not result.ok:
            return None
        parts = result.stdout.split()
        return parts[1] if len(parts) >= 2 else None

    def is_installed(self, name: str) -> bool:
        return self.installed_version(name) is not None

    def foreign_packages(self) -> Dict[str, str]:
        """Installed packages not found in any sync repository (AUR builds)."""
        result = self._query("-Qm")
        if not result.ok and not result.stdout.strip():
            return {}
        return _parse_name_versions(result.check().stdout)

    def orphans(self) -> List[str]:
        """Packages installed as dependencies that no installed package requires."""
        result = self._query("-Qdtq")
        if not result.ok and not result.stdout.strip():
            return []
        return result.check().stdout.split()

    def upgradable(self) -> List[Tuple[str, str, str]]:
        """``(name, installed, available)`` for every outdated repository package."""
        result = self._query("-Qu")
        if not result.ok and not result.stdout.strip():
            return []
        updates = []
        for line in result.check().stdout.splitlines():
            parts = line.split()
            # name old -> new [ignored]
            if len(parts) >= 4 and parts[2] == "->":
                updates.append((parts[0], parts[1], parts[3]))
        return updates

    def installed_database(self) -> Dict[str, InstalledPackage]:
        """Every installed package with its recorded dependencies and provides."""
        foreign = set(self.foreign_packages())
        packages: Dict[str, InstalledPackage] = {}
        for block in parse_info_blocks(self._query("-Qi").check().stdout):
            name = block.get("Name")
            if not name:
                continue
            packages[name] = InstalledPackage(
                name=name,
                version=block.get("Version", ""),
                depends=[strip_constraint(d) for d in _split_list(block.get("Depends On"))],
                provides=[strip_constraint(p) for p in _split_list(block.get("Provides"))],
                foreign=name in foreign,
                explicit=not block.get("Install Reason", "").startswith("Installed as a dependency"),
            )
        return packages

    def install(self, names: Sequence[str], *, asdeps: bool = False, noconfirm: bool = False) -> CommandResult:
        argv = [SUDO, PACMAN, "-S", "--needed"]
        if asdeps:
            argv.append("--asdeps")
        if noconfirm:
            argv.append("--noconfirm")
        return self._runner.run([*argv, *names], capture=False)

    def system_upgrade(self, *, noconfirm: bool = False) -> CommandResult:
        """Refresh the sync databases and upgrade every repository package."""
        argv = [SUDO, PACMAN, "-Syu"]
        if noconfirm:
            argv.append("--noconfirm")
        return self._runner.run(argv, capture=False)

    def install_files(self, paths: Iterable[str], *, asdeps: bool = False, noconfirm: bool = False) -> CommandResult:
        argv = [SUDO, PACMAN, "-U"]
        if asdeps:
            argv.append("--asdeps")
        if noconfirm:
            argv.append("--noconfirm")
        return self._runner.run([*argv, *[str(p) for p in paths]], capture=False)

    def remove(self, names: Sequence[str], *, force: bool = False, recursive: bool = False) -> CommandResult:
        """Remove exactly ``names``; the caller decides the set beforehand.

        ``force`` skips dependency checks (``-Rdd``); ``recursive`` also removes
        dependencies nothing else needs and skips backup files (``-Rns``).
        Output is captured so dependency conflicts can be recognised.
        """
        if force:
            operation = "-Rdd"
        elif recursive:
            operation = "-Rns"
        else:
            operation = "-R"
        argv = [SUDO, PACMAN, operation, "--noconfirm", *names]
        return self._runner.run(argv)
