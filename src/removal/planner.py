"""Reverse-dependency impact of uninstall requests."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Protocol, Set, Union

from common.errors import PackageNotFound
from common.logging_utils import extra_context
from registry.models import PackageRef, Source
from registry.pacman import InstalledPackage

logger = logging.getLogger(__name__)


class InstalledDatabase(Protocol):
    def installed_database(self) -> Dict[str, InstalledPackage]: ...


@dataclass
class RemovalPlan:
    """What removing ``target`` would take with it; never executed by the planner."""

    target: PackageRef
    direct_dependents: Set[PackageRef] = field(default_factory=set)
    cascade: bool = False
    removal_set: List[PackageRef] = field(default_factory=list)

    @property
    def is_blocking(self) -> bool:
        return bool(self.direct_dependents) and not self.cascade

    @property
    def dependents(self) -> List[PackageRef]:
        """Every package removed besides the target."""
        return [ref for ref in self.removal_set if ref != self.target]


class RemovalPlanner:
    """Plans removals from the local package database."""

    def __init__(self, database: InstalledDatabase):
        self._database = database

    def plan(self, target: Union[PackageRef, str], cascade: bool = False) -> RemovalPlan:
        """Compute dependents of ``target``.

        Without ``cascade`` any dependent makes the plan blocking; with it the
        removal set is the transitive closure of dependents.

        Raises:
            PackageNotFound: if a system target is not installed.
        """
        if isinstance(target, str):
            target = PackageRef(target, Source.SYSTEM)
        if target.source not in (Source.SYSTEM, Source.SOURCE_BUILD):
            # Application sandboxes track no reverse dependencies
            return RemovalPlan(target, set(), cascade, [target])

        installed = self._database.installed_database()
        if target.name not in installed:
            raise PackageNotFound(target)

        direct = self._dependents_of(target.name, installed, {target.name})
        removing = {target.name}
        if cascade:
            queue = deque(sorted(direct))
            removing.update(direct)
            while queue:
                name = queue.popleft()
                for dependent in sorted(self._dependents_of(name, installed, removing)):
                    if dependent not in removing:
                        removing.add(dependent)
                        queue.append(dependent)

        plan = RemovalPlan(
            target=target,
            direct_dependents={self._ref(n, installed) for n in direct},
            cascade=cascade,
            removal_set=[target] + [self._ref(n, installed) for n in sorted(removing - {target.name})],
        )
        logger.info(
            "Removal of %s affects %d package(s)",
            target.name,
            len(plan.removal_set) - 1,
            extra=extra_context(
                event="removal_plan",
                component="removal",
                target=target.name,
                cascade=cascade,
                blocking=plan.is_blocking,
                dependents=sorted(direct),
            ),
        )
        return plan

    def orphans(self) -> List[PackageRef]:
        """Packages installed only as dependencies that nothing installed needs.

        Dependencies left unneeded once those are gone are included too, so
        removing the returned set in one transaction leaves no new orphans.
        """
        installed = self._database.installed_database()
        removing: Set[str] = set()
        changed = True
        while changed:
            changed = False
            for name in sorted(installed):
                if name in removing or installed[name].explicit:
                    continue
                if not self._dependents_of(name, installed, removing | {name}):
                    removing.add(name)
                    changed = True
        orphans = [self._ref(n, installed) for n in sorted(removing)]
        logger.info(
            "Found %d orphaned package(s)",
            len(orphans),
            extra=extra_context(event="orphans", component="removal", orphans=sorted(removing)),
        )
        return orphans

    @staticmethod
    def _ref(name: str, installed: Dict[str, InstalledPackage]) -> PackageRef:
        source = Source.SOURCE_BUILD if installed[name].foreign else Source.SYSTEM
        return PackageRef(name, source)

    @staticmethod
    def _dependents_of(name: str, installed: Dict[str, InstalledPackage], removing: Set[str]) -> Set[str]:
        """Installed packages left without a provider for something ``name`` supplies."""
        package = installed[name]
        supplied = {name, *package.provides}
        dependents = set()
        for other in installed.values():
            if other.name in removing:
                continue
            for dep in other.depends:
                if dep in supplied and not _provided_elsewhere(dep, installed, removing):
                    dependents.add(other.name)
                    break
        return dependents


def _provided_elsewhere(dep: str, installed: Dict[str, InstalledPackage], removing: Set[str]) -> bool:
    return any(
        pkg.name not in removing and (pkg.name == dep or dep in pkg.provides)
        for pkg in installed.values()
    )
