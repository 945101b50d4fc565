"""Fan-out search and lookup across every package source."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from constants import Constants
from common.cancel import CancelToken
from common.errors import OperationCancelled, PackageNotFound, UnipacError
from common.logging_utils import extra_context, is_debug_enabled, Timer
from registry.aur import AurClient
from registry.debian import DebianIndex
from registry.flatpak import FlatpakClient
from registry.models import PackageMetadata, PackageRef, SearchResult, Source
from registry.pacman import PacmanClient
from registry.snap import SnapClient
from versioning.parser import DependencySpec

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SourceAggregator:
    """Query all enabled sources concurrently and collect per-source results.

    A source is enabled when its client was configured and its tool is
    installed; the Debian index needs only the network. A failing source
    is logged and contributes nothing.
    """

    def __init__(
        self,
        *,
        pacman: PacmanClient,
        aur: AurClient,
        flatpak: Optional[FlatpakClient] = None,
        snap: Optional[SnapClient] = None,
        debian: Optional[DebianIndex] = None,
        max_concurrent_requests: int = Constants.MAX_CONCURRENT_REQUESTS,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.pacman = pacman
        self.aur = aur
        self.flatpak = flatpak
        self.snap = snap
        self.debian = debian
        self._max_workers = max(1, max_concurrent_requests)
        self._cancel = cancel or CancelToken()

    def _enabled(self, source: Source) -> bool:
        if source is Source.SYSTEM:
            return self.pacman.available()
        if source is Source.SOURCE_BUILD:
            return True
        if source is Source.FLATPAK:
            return self.flatpak is not None and self.flatpak.available()
        if source is Source.SNAP:
            return self.snap is not None and self.snap.available()
        if source is Source.DEBIAN:
            return self.debian is not None
        raise ValueError(f"unknown source: {source}")

    def enabled_sources(self, source_filter: Optional[Iterable[Source]] = None) -> List[Source]:
        """Sources to dispatch to, in presentation order."""
        wanted = set(source_filter) if source_filter is not None else set(Source)
        return [s for s in Source if s in wanted and self._enabled(s)]

    def _search_one(self, source: Source, query: str) -> List[SearchResult]:
        if source is Source.SYSTEM:
            return self.pacman.search(query)
        if source is Source.SOURCE_BUILD:
            return self.aur.search(query)
        if source is Source.FLATPAK:
            return self.flatpak.search(query)
        if source is Source.SNAP:
            return self.snap.search(query)
        if source is Source.DEBIAN:
            return self.debian.search(query)
        raise ValueError(f"unknown source: {source}")

    def _info_one(self, source: Source, name: str) -> Optional[PackageMetadata]:
        if source is Source.SYSTEM:
            return self.pacman.info(name)
        if source is Source.SOURCE_BUILD:
            return self.aur.info(name)
        if source is Source.FLATPAK:
            return self.flatpak.info(name)
        if source is Source.SNAP:
            return self.snap.info(name)
        if source is Source.DEBIAN:
            return self.debian.info(name)
        raise ValueError(f"unknown source: {source}")

    def _fan_out(self, sources: List[Source], action: str, call: Callable[[Source], T]) -> Dict[Source, T]:
        """Run ``call`` per source on the bounded pool; failures are dropped."""
        self._cancel.raise_if_cancelled()
        if not sources:
            return {}
        results: Dict[Source, T] = {}
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(sources))) as pool:
            futures = {source: pool.submit(call, source) for source in sources}
            for source in sources:
                try:
                    results[source] = futures[source].result()
                except OperationCancelled:
                    for future in futures.values():
                        future.cancel()
                    raise
                except (UnipacError, OSError, ValueError) as exc:
                    logger.warning(
                        "%s %s failed: %s",
                        source.prefix,
                        action,
                        exc,
                        extra=extra_context(
                            event="source_failure",
                            component="aggregator",
                            action=action,
                            target=source.prefix,
                            outcome="skipped",
                        ),
                    )
        return results

    def search(self, query: str, source_filter: Optional[Iterable[Source]] = None) -> List[SearchResult]:
        """Search every enabled source, or only those in ``source_filter``.

        Returns:
            Hits ordered by source, each source's own ordering preserved.
        """
        sources = self.enabled_sources(source_filter)
        with Timer() as t:
            per_source = self._fan_out(sources, "search", lambda s: self._search_one(s, query))
        results: List[SearchResult] = []
        for source in sources:
            results.extend(per_source.get(source, []))
        if is_debug_enabled(logger):
            logger.debug(
                "Search complete",
                extra=extra_context(
                    event="search",
                    component="aggregator",
                    target=query,
                    sources=[s.prefix for s in sources],
                    result_count=len(results),
                    duration_ms=t.duration_ms(),
                ),
            )
        return results

    def info(self, ref: PackageRef) -> PackageMetadata:
        """Metadata for one package from its own source.

        Raises:
            PackageNotFound: if the source does not know the package.
        """
        self._cancel.raise_if_cancelled()
        metadata = self._info_one(ref.source, ref.name)
        if metadata is None:
            raise PackageNotFound(ref)
        return metadata

    def find_candidates(self, name: str, source_filter: Optional[Iterable[Source]] = None) -> List[PackageMetadata]:
        """Exact-name matches per source, in presentation order."""
        sources = self.enabled_sources(source_filter)
        per_source = self._fan_out(sources, "info", lambda s: self._info_one(s, name))
        return [per_source[s] for s in sources if per_source.get(s) is not None]

    def classify(self, name: str, required_by: Optional[str] = None) -> PackageMetadata:
        """Metadata for a dependency name, preferring pre-built packages.

        The sync repositories are consulted first (including virtual names
        via Provides), then the AUR by name and by Provides.

        Raises:
            PackageNotFound: if no source can satisfy ``name``.
        """
        self._cancel.raise_if_cancelled()
        metadata = self.pacman.info(name)
        if metadata is None:
            provider = self.pacman.find_provider(name)
            if provider is not None:
                metadata = self.pacman.info(provider)
        if metadata is not None:
            return metadata

        metadata = self.aur.info(name)
        if metadata is None:
            providers = self.aur.providers(name)
            if providers:
                metadata = self.aur.info(providers[0])
        if metadata is None:
            raise PackageNotFound(PackageRef(name, Source.SOURCE_BUILD), required_by)
        return metadata

    def is_satisfied(self, spec: DependencySpec) -> bool:
        """Whether an installed package already satisfies ``spec``."""
        return self.pacman.deptest(str(spec))

    def installed_version(self, name: str) -> Optional[str]:
        return self.pacman.installed_version(name)

    def source_build_info_batch(self, names: Iterable[str]) -> Dict[str, PackageMetadata]:
        """One batched AUR lookup, used to find outdated source builds."""
        return self.aur.info_batch(names)
