"""Dependency resolution for source-build packages.

Builds the per-run dependency graph and emits a deterministic build order
for the orchestrator.
"""

from .models import BuildOrder, DependencyNode, NodeState
from .resolver import DependencyLookup, DependencyResolver

__all__ = [
    "BuildOrder",
    "DependencyNode",
    "NodeState",
    "DependencyLookup",
    "DependencyResolver",
]
