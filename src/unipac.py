"""unipac operations: search, info, install, upgrade, remove and cache cleanup.

Every operation takes an explicit :class:`Context` holding the resolved
configuration and the components built from it. Argument parsing and
terminal rendering live outside this module.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import requests

from constants import Constants
from action_history import ActionHistory
from common.cancel import CancelToken
from common.config import CoreConfig
from common.errors import (
    BuildFailure,
    CommandError,
    InstallConflict,
    NetworkError,
    PackageNotFound,
    ResolveError,
    SourceError,
    UnipacError,
)
from common.http_client import RetryingClient
from common.logging_utils import extra_context
from common.rate_limit import RateLimiter
from common.subprocess_runner import CommandResult, CommandRunner
from orchestration import (
    BuildOrchestrator,
    BuildPolicy,
    ConsoleReviewer,
    NodeOutcome,
    OutcomeStatus,
    PackageBuilder,
    RecipeFetcher,
    Reviewer,
)
from registry.aggregator import SourceAggregator
from registry.aur import AurClient
from registry.debian import DebianIndex
from registry.debtap import DebtapConverter
from registry.flatpak import FlatpakClient
from registry.models import PackageMetadata, PackageRef, SearchResult, Source, parse_target
from registry.pacman import PacmanClient
from registry.snap import SnapClient
from removal.planner import RemovalPlan, RemovalPlanner
from resolution import DependencyResolver
from storage.cache_store import CacheStore
from versioning.vercmp import vercmp

logger = logging.getLogger(__name__)

Chooser = Callable[[str, List[PackageMetadata]], PackageMetadata]


@dataclass
class Context:  # pylint: disable=too-many-instance-attributes
    """Everything one invocation needs, built once from a CoreConfig."""

    config: CoreConfig
    cancel: CancelToken
    runner: CommandRunner
    recipes: CacheStore
    artifacts: CacheStore
    indexes: CacheStore
    pacman: PacmanClient
    aur: AurClient
    flatpak: FlatpakClient
    snap: SnapClient
    debian: DebianIndex
    debtap: DebtapConverter
    aggregator: SourceAggregator
    resolver: DependencyResolver
    fetcher: RecipeFetcher
    orchestrator: BuildOrchestrator
    planner: RemovalPlanner
    history: ActionHistory

    @classmethod
    def create(
        cls,
        config: Optional[CoreConfig] = None,
        *,
        reviewer: Optional[Reviewer] = None,
        cancel: Optional[CancelToken] = None,
        runner: Optional[CommandRunner] = None,
        session: Optional[requests.Session] = None,
    ) -> "Context":
        config = config or CoreConfig()
        cancel = cancel or CancelToken()
        # Parsers expect untranslated tool output
        runner = runner or CommandRunner(env=dict(os.environ, LC_ALL="C"))
        policy = config.retry_policy

        limiter = RateLimiter(
            config.max_concurrent_requests,
            config.request_delay_ms,
            cancel=cancel,
            name="aur",
        )
        aur_http = RetryingClient(policy, session=session, cancel=cancel, rate_limiter=limiter)
        http = RetryingClient(policy, session=session, cancel=cancel)

        recipes = CacheStore(config.clone_dir)
        artifacts = CacheStore(config.pkg_dir)
        indexes = CacheStore(config.debian_dir, default_ttl=Constants.DEBIAN_INDEX_TTL_SEC)

        pacman = PacmanClient(runner)
        aur = AurClient(aur_http)
        flatpak = FlatpakClient(runner, config.flatpak_remote)
        snap = SnapClient(runner)
        debian = DebianIndex(http, indexes, mirror=config.debian_mirror, release=config.debian_release)
        aggregator = SourceAggregator(
            pacman=pacman,
            aur=aur,
            flatpak=flatpak,
            snap=snap,
            debian=debian,
            max_concurrent_requests=config.max_concurrent_requests,
            cancel=cancel,
        )
        fetcher = RecipeFetcher(
            aur_http,
            runner,
            recipes,
            config.build_dir,
            use_clone=config.use_clone_transport,
            cancel=cancel,
        )
        builder = PackageBuilder(runner, pacman, artifacts, noconfirm=config.unattended)
        orchestrator = BuildOrchestrator(
            fetcher,
            builder,
            reviewer=reviewer or ConsoleReviewer(runner, config.editor),
            concurrent_downloads=config.concurrent_downloads,
            policy=BuildPolicy(
                review=config.review_before_build,
                unattended=config.unattended,
                remove_make_deps=config.remove_make_deps,
            ),
            cancel=cancel,
            transaction_lock=threading.Lock(),
        )
        return cls(
            config=config,
            cancel=cancel,
            runner=runner,
            recipes=recipes,
            artifacts=artifacts,
            indexes=indexes,
            pacman=pacman,
            aur=aur,
            flatpak=flatpak,
            snap=snap,
            debian=debian,
            debtap=DebtapConverter(runner, noconfirm=config.unattended),
            aggregator=aggregator,
            resolver=DependencyResolver(aggregator, max_depth=config.max_resolve_depth),
            fetcher=fetcher,
            orchestrator=orchestrator,
            planner=RemovalPlanner(pacman),
            history=ActionHistory(config.history_path),
        )


@dataclass
class RemovalResult:
    plan: RemovalPlan
    executed: bool = False
    success: bool = False
    error: Optional[UnipacError] = None


@dataclass
class OrphanRemoval:
    orphans: List[PackageRef]
    executed: bool = False
    success: bool = False
    error: Optional[UnipacError] = None


def search(ctx: Context, query: str, sources: Optional[Iterable[Source]] = None) -> List[SearchResult]:
    """Search all sources; a ``prefix/`` on the query restricts it to one."""
    name, source = parse_target(query)
    return ctx.aggregator.search(name, [source] if source else sources)


def info(ctx: Context, token: str) -> List[PackageMetadata]:
    """Metadata for ``token`` from its prefixed source, or from every source that has it.

    Raises:
        PackageNotFound: when no source knows the package.
    """
    name, source = parse_target(token)
    if source is not None:
        return [ctx.aggregator.info(PackageRef(name, source))]
    found = ctx.aggregator.find_candidates(name)
    if not found:
        raise PackageNotFound(name)
    return found


def _is_installed(ctx: Context, ref: PackageRef) -> bool:
    if ref.source is Source.FLATPAK:
        return ctx.flatpak.is_installed(ref.name)
    if ref.source is Source.SNAP:
        return ctx.snap.is_installed(ref.name)
    return ctx.pacman.is_installed(ref.name)


def _command_outcome(ref: PackageRef, result: CommandResult) -> NodeOutcome:
    if result.ok:
        return NodeOutcome.installed(ref, explicit=True)
    return NodeOutcome.failed(ref, CommandError(result.argv, result.returncode, result.stderr), explicit=True)


def _run_install(ref: PackageRef, step: Callable[[], CommandResult]) -> NodeOutcome:
    """Run one install command; a tool that cannot be started fails only ``ref``."""
    try:
        return _command_outcome(ref, step())
    except CommandError as exc:
        logger.error("Could not install %s: %s", ref, exc)
        return NodeOutcome.failed(ref, exc, explicit=True)


def build_source_packages(ctx: Context, roots: List[PackageRef]) -> List[NodeOutcome]:
    """Resolve and build source packages; a resolution error builds nothing."""
    if not roots:
        return []
    try:
        order = ctx.resolver.resolve(roots)
    except (ResolveError, NetworkError, SourceError, CommandError) as exc:
        logger.error(
            "Dependency resolution failed: %s",
            exc,
            extra=extra_context(event="resolve", component="unipac", outcome="failure"),
        )
        return [NodeOutcome.failed(ref, exc, explicit=True) for ref in roots]
    return ctx.orchestrator.run(order)


def _deb_package_name(path: str) -> str:
    # Debian file names are name_version_arch.deb
    return Path(path).name.split("_", 1)[0].removesuffix(".deb")


def _install_deb(ctx: Context, deb_path: Path, ref: PackageRef) -> NodeOutcome:
    if not ctx.debtap.available():
        return NodeOutcome.failed(ref, BuildFailure(ref, "debtap is not installed"), explicit=True)
    try:
        packages = ctx.debtap.convert(deb_path)
    except (BuildFailure, CommandError) as exc:
        return NodeOutcome.failed(ref, exc, explicit=True)
    return _run_install(ref, lambda: ctx.pacman.install_files(packages, noconfirm=ctx.config.unattended))


def _install_debian(ctx: Context, metadata: PackageMetadata) -> NodeOutcome:
    try:
        deb_path = ctx.debian.download(metadata, ctx.config.build_dir / Source.DEBIAN.prefix)
    except (NetworkError, SourceError) as exc:
        return NodeOutcome.failed(metadata.ref, exc, explicit=True)
    return _install_deb(ctx, deb_path, metadata.ref)


def install(
    ctx: Context,
    targets: Iterable[str],
    source_filter: Optional[Iterable[Source]] = None,
    chooser: Optional[Chooser] = None,
) -> List[NodeOutcome]:
    """Install ``targets`` from whichever source provides them.

    Targets may carry a source prefix (``aur/foo``) or be ``.deb`` files.
    When a name exists in several sources ``chooser`` picks one; without it
    the first source in presentation order wins. Pre-built packages are
    installed first, then source builds, then application packages.
    """
    outcomes: List[NodeOutcome] = []
    chosen: Dict[Source, List[PackageMetadata]] = {source: [] for source in Source}
    filters = list(source_filter) if source_filter is not None else None

    for token in targets:
        if token.endswith(".deb"):
            ref = PackageRef(_deb_package_name(token), Source.DEBIAN)
            outcomes.append(_install_deb(ctx, Path(token), ref))
            continue
        name, source = parse_target(token)
        ref = PackageRef(name, source or Source.SYSTEM)
        try:
            candidates = ctx.aggregator.find_candidates(name, [source] if source else filters)
            if not candidates:
                outcomes.append(NodeOutcome.failed(ref, PackageNotFound(ref), explicit=True))
                continue
            pick = chooser(name, candidates) if chooser and len(candidates) > 1 else candidates[0]
            if _is_installed(ctx, pick.ref):
                outcomes.append(NodeOutcome.skipped(pick.ref, "already installed", explicit=True))
                continue
        except CommandError as exc:
            logger.error("Could not look up %s: %s", ref, exc)
            outcomes.append(NodeOutcome.failed(ref, exc, explicit=True))
            continue
        chosen[pick.source].append(pick)

    system = chosen[Source.SYSTEM]
    if system:
        try:
            result = ctx.pacman.install([m.name for m in system], noconfirm=ctx.config.unattended)
            outcomes.extend(_command_outcome(m.ref, result) for m in system)
        except CommandError as exc:
            logger.error("Could not install repository packages: %s", exc)
            outcomes.extend(NodeOutcome.failed(m.ref, exc, explicit=True) for m in system)
    outcomes.extend(build_source_packages(ctx, [m.ref for m in chosen[Source.SOURCE_BUILD]]))
    for metadata in chosen[Source.FLATPAK]:
        outcomes.append(_run_install(metadata.ref, lambda name=metadata.name: ctx.flatpak.install(name)))
    for metadata in chosen[Source.SNAP]:
        outcomes.append(_run_install(metadata.ref, lambda name=metadata.name: ctx.snap.install(name)))
    for metadata in chosen[Source.DEBIAN]:
        outcomes.append(_install_debian(ctx, metadata))

    _record(ctx, "install", outcomes)
    return outcomes


def outdated_source_packages(ctx: Context) -> List[PackageMetadata]:
    """Installed source builds whose AUR version is newer, from one batched query."""
    foreign = ctx.pacman.foreign_packages()
    if not foreign:
        return []
    remote = ctx.aggregator.source_build_info_batch(foreign)
    return [
        remote[name]
        for name, local_version in sorted(foreign.items())
        if name in remote and vercmp(remote[name].version, local_version) > 0
    ]


def upgrade(ctx: Context) -> List[NodeOutcome]:
    """Upgrade repository packages, outdated source builds and application packages."""
    outcomes: List[NodeOutcome] = []

    if ctx.pacman.available():
        updates = ctx.pacman.upgradable()
        if updates:
            logger.info("Upgrading %d repository package(s)", len(updates))
            result = ctx.pacman.system_upgrade(noconfirm=ctx.config.unattended)
            outcomes.extend(
                _command_outcome(PackageRef(name, Source.SYSTEM), result) for name, _, _ in updates
            )

        try:
            outdated = outdated_source_packages(ctx)
        except (NetworkError, SourceError) as exc:
            logger.error("Could not check AUR packages for updates: %s", exc)
            outdated = []
        for metadata in outdated:
            ctx.fetcher.sync(metadata.extra.get("package_base") or metadata.name)
        if outdated:
            logger.info("Rebuilding %d outdated AUR package(s)", len(outdated))
        outcomes.extend(build_source_packages(ctx, [m.ref for m in outdated]))

    if ctx.flatpak.available():
        result = ctx.flatpak.update()
        if not result.ok:
            logger.warning("flatpak update exited with status %d", result.returncode)
    if ctx.snap.available():
        result = ctx.snap.refresh()
        if not result.ok:
            logger.warning("snap refresh exited with status %d", result.returncode)

    _record(ctx, "upgrade", outcomes)
    return outcomes


def _locate_installed(ctx: Context, name: str) -> PackageRef:
    if ctx.pacman.is_installed(name):
        source = Source.SOURCE_BUILD if name in ctx.pacman.foreign_packages() else Source.SYSTEM
        return PackageRef(name, source)
    if ctx.flatpak.available() and ctx.flatpak.is_installed(name):
        return PackageRef(name, Source.FLATPAK)
    if ctx.snap.available() and ctx.snap.is_installed(name):
        return PackageRef(name, Source.SNAP)
    raise PackageNotFound(name)


def remove(
    ctx: Context,
    target: str,
    *,
    cascade: bool = False,
    force: bool = False,
    confirm: Optional[Callable[[RemovalPlan], bool]] = None,
) -> RemovalResult:
    """Plan and, once confirmed, execute a removal.

    A plan with dependents is returned unexecuted unless ``cascade`` or
    ``force`` is set. Nothing is removed unless ``confirm(plan)`` agrees.

    Raises:
        PackageNotFound: when the target is not installed.
    """
    name, source = parse_target(target)
    ref = PackageRef(name, source) if source is not None else _locate_installed(ctx, name)
    plan = ctx.planner.plan(ref, cascade=cascade)

    if plan.is_blocking and not force:
        conflict = InstallConflict(ref, plan.direct_dependents)
        logger.error("Cannot remove %s", conflict)
        return RemovalResult(plan, error=conflict)
    if confirm is None or not confirm(plan):
        logger.info("Removal of %s not confirmed", ref)
        return RemovalResult(plan)

    if ref.source is Source.FLATPAK:
        result = ctx.flatpak.uninstall(ref.name)
    elif ref.source is Source.SNAP:
        result = ctx.snap.remove(ref.name)
    else:
        result = ctx.pacman.remove([r.name for r in plan.removal_set], force=force and not cascade)

    error: Optional[UnipacError] = None
    if not result.ok:
        if any(marker in result.stderr for marker in Constants.PACMAN_DEP_CONFLICT_MARKERS):
            error = InstallConflict(ref, plan.direct_dependents)
        else:
            error = CommandError(result.argv, result.returncode, result.stderr)
        logger.error("Removal of %s failed: %s", ref, error)
    ctx.history.record("remove", [str(r) for r in plan.removal_set], result.ok)
    return RemovalResult(plan, executed=True, success=result.ok, error=error)


def remove_orphans(ctx: Context, *, confirm: Optional[Callable[[List[PackageRef]], bool]] = None) -> OrphanRemoval:
    """Remove packages installed only as dependencies that nothing needs any more.

    Unused Flatpak runtimes are removed in the same pass when Flatpak is present.
    Nothing is removed unless ``confirm(orphans)`` agrees.
    """
    orphans = ctx.planner.orphans()
    if confirm is None or not confirm(orphans):
        logger.info("Orphan removal not confirmed")
        return OrphanRemoval(orphans)

    results = []
    if orphans:
        results.append(ctx.pacman.remove([ref.name for ref in orphans]))
    if ctx.flatpak.available():
        results.append(ctx.flatpak.remove_unused())

    error: Optional[UnipacError] = None
    failed = next((r for r in results if not r.ok), None)
    if failed is not None:
        error = CommandError(failed.argv, failed.returncode, failed.stderr)
        logger.error("Orphan removal failed: %s", error)
    if orphans:
        ctx.history.record("remove-orphans", [str(r) for r in orphans], failed is None)
    return OrphanRemoval(orphans, executed=True, success=failed is None, error=error)


def clean_cache(ctx: Context, *, recipes: bool = True, artifacts: bool = False, indexes: bool = False) -> None:
    """Explicitly evict cache subtrees."""
    if recipes:
        ctx.recipes.evict()
    if artifacts:
        ctx.artifacts.evict()
    if indexes:
        ctx.indexes.evict()


def _record(ctx: Context, action: str, outcomes: List[NodeOutcome]) -> None:
    attempted = [o for o in outcomes if o.status is not OutcomeStatus.SKIPPED or o.blocked_by]
    if attempted:
        success = all(o.status is OutcomeStatus.INSTALLED for o in attempted)
        ctx.history.record(action, [str(o.ref) for o in attempted], success)
