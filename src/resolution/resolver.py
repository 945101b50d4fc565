"""Build-order resolution for source-build packages.

Expansion is an iterative depth-first walk over an arena of nodes with an
explicit stack, so graph depth is capped and cycles are detected with the
full path at hand. Pre-built (System) dependencies are terminal: the system
package manager resolves them itself during the build.
"""
from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Set, Tuple

from constants import Constants
from common.errors import DependencyCycle, ResolveError, VersionUnsatisfiable
from common.logging_utils import extra_context, Timer
from registry.models import PackageMetadata, PackageRef, Source
from versioning.parser import DependencySpec, parse_dependency

from .models import BuildOrder, DependencyNode, NodeState

logger = logging.getLogger(__name__)

_RUNTIME = "depends"
_BUILD = "build"


class DependencyLookup(Protocol):
    """Metadata queries the resolver needs; SourceAggregator provides them."""

    def info(self, ref: PackageRef) -> PackageMetadata: ...

    def classify(self, name: str, required_by: Optional[str] = None) -> PackageMetadata: ...

    def is_satisfied(self, spec: DependencySpec) -> bool: ...


@dataclass
class _Frame:
    node: DependencyNode
    pending: Iterator[Tuple[str, str]]


def _pending_dependencies(metadata: PackageMetadata) -> Iterator[Tuple[str, str]]:
    for dep in sorted(metadata.depends):
        yield _RUNTIME, dep
    for dep in sorted(metadata.make_depends):
        yield _BUILD, dep


def _provided_version(metadata: PackageMetadata, name: str) -> Optional[str]:
    """Version under which ``metadata`` satisfies ``name``, if it does."""
    if metadata.name == name:
        return metadata.version
    for provide in metadata.provides:
        spec = parse_dependency(provide)
        if spec.name == name:
            return spec.version
    return None


class DependencyResolver:
    """Turn requested source-build packages into a build order."""

    def __init__(self, lookup: DependencyLookup, *, max_depth: int = Constants.MAX_RESOLVE_DEPTH):
        self._lookup = lookup
        self._max_depth = max_depth

    def resolve(self, roots: Iterable[PackageRef]) -> BuildOrder:
        """Resolve ``roots`` and everything they need built.

        Returns:
            A BuildOrder whose source-build dependencies always precede
            their dependents; independent nodes are ordered by name.

        Raises:
            DependencyCycle: naming the full cycle path.
            PackageNotFound: when a dependency exists in no source.
            VersionUnsatisfiable: when the available version fails a constraint.
            ResolveError: when the dependency chain exceeds the depth cap.
        """
        with Timer() as t:
            arena: Dict[PackageRef, DependencyNode] = {}
            prebuilt: Set[PackageRef] = set()
            classified: Dict[str, PackageMetadata] = {}

            for root in sorted(set(roots), key=PackageRef.sort_key):
                if root.source is not Source.SOURCE_BUILD:
                    raise ValueError(f"only source-build packages can be resolved: {root}")
                arena[root] = DependencyNode(ref=root, metadata=self._lookup.info(root), explicit=True)
            for root in sorted(arena, key=PackageRef.sort_key):
                if arena[root].state is NodeState.PENDING:
                    self._expand(arena[root], arena, prebuilt, classified)

            order = self._topological_order(arena)

        logger.info(
            "Resolved %d package(s) to build",
            len(order),
            extra=extra_context(
                event="resolve",
                component="resolver",
                outcome="success",
                build_order=[n.name for n in order],
                prebuilt_count=len(prebuilt),
                duration_ms=t.duration_ms(),
            ),
        )
        return BuildOrder(nodes=order, prebuilt=prebuilt)

    def _push(self, stack: List[_Frame], node: DependencyNode) -> None:
        if len(stack) >= self._max_depth:
            path = " -> ".join([f.node.name for f in stack] + [node.name])
            raise ResolveError(f"dependency chain deeper than {self._max_depth}: {path}")
        node.state = NodeState.RESOLVING
        stack.append(_Frame(node, _pending_dependencies(node.metadata)))

    def _expand(
        self,
        root: DependencyNode,
        arena: Dict[PackageRef, DependencyNode],
        prebuilt: Set[PackageRef],
        classified: Dict[str, PackageMetadata],
    ) -> None:
        stack: List[_Frame] = []
        self._push(stack, root)

        while stack:
            frame = stack[-1]
            parent = frame.node
            try:
                kind, dep = next(frame.pending)
            except StopIteration:
                parent.state = NodeState.READY
                stack.pop()
                continue

            spec = parse_dependency(dep)
            edges = parent.build_depends if kind == _BUILD else parent.depends

            # Packages already in this run's graph win over installed copies
            existing = arena.get(PackageRef(spec.name, Source.SOURCE_BUILD))
            if existing is None:
                if self._lookup.is_satisfied(spec):
                    continue
                metadata = classified.get(spec.name)
                if metadata is None:
                    metadata = self._lookup.classify(spec.name, required_by=parent.name)
                    classified[spec.name] = metadata
                if metadata.ref.source is Source.SYSTEM:
                    prebuilt.add(metadata.ref)
                    edges.add(metadata.ref)
                    continue
                existing = arena.get(metadata.ref)
            else:
                metadata = existing.metadata

            ref = metadata.ref
            available = _provided_version(metadata, spec.name)
            if not spec.satisfied_by(available):
                raise VersionUnsatisfiable(ref, str(spec), available)
            edges.add(ref)

            if existing is None:
                existing = DependencyNode(ref=ref, metadata=metadata, version_constraint=spec.constraint)
                arena[ref] = existing
            if existing.state is NodeState.RESOLVING:
                names = [f.node.name for f in stack]
                raise DependencyCycle(names[names.index(ref.name):] + [ref.name])
            if existing.state is NodeState.PENDING:
                self._push(stack, existing)

    @staticmethod
    def _topological_order(arena: Dict[PackageRef, DependencyNode]) -> List[DependencyNode]:
        """Kahn's algorithm with a min-heap on name for a stable order."""
        indegree: Dict[PackageRef, int] = {}
        dependents: Dict[PackageRef, List[PackageRef]] = {ref: [] for ref in arena}
        for ref, node in arena.items():
            deps = [d for d in node.source_depends if d in arena]
            indegree[ref] = len(deps)
            for dep in deps:
                dependents[dep].append(ref)

        heap = [ref.sort_key() + (ref,) for ref, degree in indegree.items() if degree == 0]
        heapq.heapify(heap)
        order: List[DependencyNode] = []
        while heap:
            ref = heapq.heappop(heap)[-1]
            order.append(arena[ref])
            for dependent in dependents[ref]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(heap, dependent.sort_key() + (dependent,))

        if len(order) != len(arena):
            remaining = sorted(r.name for r, d in indegree.items() if d > 0)
            raise DependencyCycle(remaining)
        return order
