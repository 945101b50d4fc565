"""Source-independent package types shared by every registry client."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class Source(Enum):
    """The fixed set of package sources, in presentation order."""

    SYSTEM = "repo"
    SOURCE_BUILD = "aur"
    FLATPAK = "flatpak"
    SNAP = "snap"
    DEBIAN = "debian"

    @property
    def prefix(self) -> str:
        return self.value

    @classmethod
    def from_prefix(cls, prefix: str) -> "Source":
        """Map a target prefix (``aur``, ``extra``, ``flatpak``...) to a source.

        Unrecognised prefixes are taken to be system repository names.
        """
        prefix = prefix.strip().lower()
        for source in cls:
            if source.value == prefix:
                return source
        return cls.SYSTEM

    @property
    def rank(self) -> int:
        return list(Source).index(self)


@dataclass(frozen=True)
class PackageRef:
    """Identity of a package: the same name may exist under several sources."""

    name: str
    source: Source

    def __str__(self) -> str:
        return f"{self.source.prefix}/{self.name}"

    def sort_key(self):
        return (self.name, self.source.rank)


@dataclass
class PackageMetadata:  # pylint: disable=too-many-instance-attributes
    """Metadata of one package as reported by its source."""

    ref: PackageRef
    version: str
    description: str = ""
    depends: List[str] = field(default_factory=list)
    make_depends: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def source(self) -> Source:
        return self.ref.source


@dataclass(frozen=True)
class SearchResult:
    """One search hit; hits from different sources are never merged."""

    ref: PackageRef
    display_name: str
    version: str
    description: str
    source: Source
    installed: bool = False

    @property
    def name(self) -> str:
        return self.ref.name


def group_by_name(results: Iterable[SearchResult]) -> Dict[str, List[SearchResult]]:
    """Group hits by package name for presentation, keeping first-seen order.

    Each source's hit keeps its own version inside the group.
    """
    groups: Dict[str, List[SearchResult]] = {}
    for result in results:
        groups.setdefault(result.name, []).append(result)
    return groups


def parse_target(token: str) -> Tuple[str, Optional[Source]]:
    """Split ``prefix/name`` into a name and an explicit source.

    ``.deb`` file paths and plain names carry no prefix.
    """
    token = token.strip()
    if token.endswith(".deb") or "/" not in token:
        return token, None
    prefix, name = token.split("/", 1)
    if not prefix or not name or "/" in name:
        return token, None
    return name, Source.from_prefix(prefix)
