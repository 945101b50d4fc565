"""In-memory graph types for one resolution/build run."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Set

from registry.models import PackageMetadata, PackageRef, Source


class NodeState(Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    READY = "ready"
    BUILDING = "building"
    INSTALLED = "installed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(eq=False)
class DependencyNode:
    """One source-build package in the graph.

    ``depends`` and ``build_depends`` hold both pre-built (System) and
    source-build references; only the latter constrain build order.
    """

    ref: PackageRef
    metadata: Optional[PackageMetadata] = None
    version_constraint: Optional[str] = None
    depends: Set[PackageRef] = field(default_factory=set)
    build_depends: Set[PackageRef] = field(default_factory=set)
    state: NodeState = NodeState.PENDING
    explicit: bool = False

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def all_depends(self) -> Set[PackageRef]:
        return self.depends | self.build_depends

    @property
    def source_depends(self) -> Set[PackageRef]:
        return {r for r in self.all_depends if r.source is Source.SOURCE_BUILD}

    @property
    def package_base(self) -> str:
        if self.metadata is not None:
            return self.metadata.extra.get("package_base") or self.name
        return self.name

    @property
    def version(self) -> str:
        return self.metadata.version if self.metadata is not None else ""


@dataclass
class BuildOrder:
    """Source-build nodes, dependencies strictly before dependents."""

    nodes: List[DependencyNode] = field(default_factory=list)
    prebuilt: Set[PackageRef] = field(default_factory=set)

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, index: int) -> DependencyNode:
        return self.nodes[index]

    def names(self) -> List[str]:
        return [node.name for node in self.nodes]
