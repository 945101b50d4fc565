"""Sequential build/install of a resolved build order.

Recipe fetches run ahead on a bounded pool; builds and installs run one at
a time under the transaction lock, strictly in build order. A failure only
affects the nodes that depend on the failed one.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from constants import Constants
from common.cancel import CancelToken
from common.errors import BuildFailure, CommandError, OperationCancelled, UnipacError
from common.logging_utils import extra_context, Timer
from registry.models import PackageRef
from resolution.models import BuildOrder, DependencyNode, NodeState

from .builder import PackageBuilder
from .fetch import RecipeFetcher
from .review import ReviewDecision, Reviewer

logger = logging.getLogger(__name__)


class OutcomeStatus(Enum):
    INSTALLED = "installed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class NodeOutcome:
    """Final result for one package of a run."""

    ref: PackageRef
    status: OutcomeStatus
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    explicit: bool = False
    blocked_by: Optional[str] = None

    @classmethod
    def installed(cls, ref: PackageRef, explicit: bool = False) -> "NodeOutcome":
        return cls(ref, OutcomeStatus.INSTALLED, explicit=explicit)

    @classmethod
    def skipped(cls, ref: PackageRef, reason: str, explicit: bool = False,
                blocked_by: Optional[str] = None) -> "NodeOutcome":
        return cls(ref, OutcomeStatus.SKIPPED, reason=reason, explicit=explicit, blocked_by=blocked_by)

    @classmethod
    def failed(cls, ref: PackageRef, error: BaseException, explicit: bool = False) -> "NodeOutcome":
        cause = error.cause if isinstance(error, BuildFailure) else error
        return cls(ref, OutcomeStatus.FAILED, reason=str(cause), error=error, explicit=explicit)


@dataclass(frozen=True)
class BuildPolicy:
    review: bool = False
    unattended: bool = False
    remove_make_deps: bool = False


class BuildOrchestrator:
    """Fetch, review, build and install every node of a BuildOrder."""

    def __init__(
        self,
        fetcher: RecipeFetcher,
        builder: PackageBuilder,
        *,
        reviewer: Optional[Reviewer] = None,
        concurrent_downloads: int = Constants.CONCURRENT_DOWNLOADS,
        policy: Optional[BuildPolicy] = None,
        cancel: Optional[CancelToken] = None,
        transaction_lock: Optional[threading.Lock] = None,
    ) -> None:
        self._fetcher = fetcher
        self._builder = builder
        self._reviewer = reviewer
        self._workers = max(1, concurrent_downloads)
        self._policy = policy or BuildPolicy()
        self._cancel = cancel or CancelToken()
        self._transaction_lock = transaction_lock or threading.Lock()

    def run(self, order: BuildOrder, policy: Optional[BuildPolicy] = None) -> List[NodeOutcome]:
        """Process ``order`` and return one outcome per node, in order."""
        policy = policy or self._policy
        outcomes: List[NodeOutcome] = []
        # Nodes that did not install, mapped to the name of the node that started the blockage
        blocked: Dict[PackageRef, str] = {}

        pool = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="prefetch")
        try:
            prefetch = {node.ref: pool.submit(self._fetcher.fetch, node) for node in order}
            for node in order:
                if self._cancel.cancelled:
                    outcome = self._skip(node, "cancelled")
                else:
                    blocker = self._blocker(node, blocked)
                    if blocker is not None:
                        outcome = self._skip(node, f"blocked by {blocker}", blocker)
                        blocked[node.ref] = blocker
                    else:
                        outcome = self._process(node, prefetch[node.ref], policy)
                        if outcome.status is not OutcomeStatus.INSTALLED:
                            blocked[node.ref] = node.name
                outcomes.append(outcome)
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
        if policy.remove_make_deps:
            self._remove_make_deps(order, outcomes)
        return outcomes

    def _remove_make_deps(self, order: BuildOrder, outcomes: List[NodeOutcome]) -> None:
        """Drop build-only dependencies of the installed nodes once the whole run is done."""
        installed = {o.ref for o in outcomes if o.status is OutcomeStatus.INSTALLED}
        names = {dep.name for node in order if node.ref in installed for dep in node.build_depends}
        if not names:
            return
        with self._transaction_lock:
            try:
                removed = self._builder.remove_make_dependencies(names)
            except CommandError as exc:
                logger.warning("Could not remove make dependencies: %s", exc)
                return
        if removed:
            logger.info(
                "Removed make dependencies of this run: %s",
                ", ".join(removed),
                extra=extra_context(event="make_deps_cleanup", component="orchestrator", removed=removed),
            )

    @staticmethod
    def _blocker(node: DependencyNode, blocked: Dict[PackageRef, str]) -> Optional[str]:
        for dep in sorted(node.source_depends, key=PackageRef.sort_key):
            if dep in blocked:
                return blocked[dep]
        return None

    def _skip(self, node: DependencyNode, reason: str, blocker: Optional[str] = None) -> NodeOutcome:
        node.state = NodeState.SKIPPED
        logger.warning(
            "Skipping %s: %s",
            node.name,
            reason,
            extra=extra_context(event="build", component="orchestrator", target=node.name, outcome="skipped"),
        )
        return NodeOutcome.skipped(node.ref, reason, node.explicit, blocker)

    def _process(self, node: DependencyNode, fetched: Future, policy: BuildPolicy) -> NodeOutcome:
        with Timer() as t:
            try:
                fetched.result()
                workdir = self._fetcher.prepare(node)
                if not self._review(node, workdir, policy):
                    return self._skip(node, "declined after review")
                with self._transaction_lock:
                    self._cancel.raise_if_cancelled()
                    node.state = NodeState.BUILDING
                    artifacts = self._builder.build(node, workdir)
                    self._builder.install(node, artifacts)
            except OperationCancelled:
                return self._skip(node, "cancelled")
            except (UnipacError, OSError) as exc:
                node.state = NodeState.FAILED
                error = exc if isinstance(exc, BuildFailure) else BuildFailure(node.ref, exc)
                logger.error(
                    "Failed to build %s: %s",
                    node.name,
                    error.cause,
                    extra=extra_context(
                        event="build",
                        component="orchestrator",
                        target=node.name,
                        outcome="failure",
                        duration_ms=t.duration_ms(),
                    ),
                )
                return NodeOutcome.failed(node.ref, error, node.explicit)

        node.state = NodeState.INSTALLED
        logger.info(
            "Installed %s %s",
            node.name,
            node.version,
            extra=extra_context(
                event="build",
                component="orchestrator",
                target=node.name,
                outcome="success",
                duration_ms=t.duration_ms(),
            ),
        )
        return NodeOutcome.installed(node.ref, node.explicit)

    def _review(self, node: DependencyNode, workdir, policy: BuildPolicy) -> bool:
        """Run the review step; False when the user declined the build."""
        if not policy.review or policy.unattended or self._reviewer is None:
            return True
        decision = self._reviewer.decide(node, workdir)
        if decision is ReviewDecision.SKIP:
            return True
        if decision is ReviewDecision.VIEW:
            self._reviewer.show(node, workdir)
        elif decision is ReviewDecision.EDIT:
            self._reviewer.edit(node, workdir)
        return self._reviewer.confirm(node)
