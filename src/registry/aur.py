"""AUR RPC v5 client: search, info and recipe locations."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from constants import Constants
from common.errors import SourceError
from common.http_client import RetryingClient
from common.logging_utils import extra_context, is_debug_enabled
from registry.models import PackageMetadata, PackageRef, SearchResult, Source

logger = logging.getLogger(__name__)


def _to_metadata(result: Dict[str, Any]) -> PackageMetadata:
    """Map an RPC result object (PascalCase fields) to PackageMetadata."""
    name = result["Name"]
    return PackageMetadata(
        ref=PackageRef(name, Source.SOURCE_BUILD),
        version=result.get("Version") or "",
        description=result.get("Description") or "",
        depends=list(result.get("Depends") or []),
        make_depends=list(result.get("MakeDepends") or []) + list(result.get("CheckDepends") or []),
        provides=list(result.get("Provides") or []),
        conflicts=list(result.get("Conflicts") or []),
        extra={
            "package_base": result.get("PackageBase") or name,
            "opt_depends": list(result.get("OptDepends") or []),
            "maintainer": result.get("Maintainer"),
            "votes": result.get("NumVotes"),
            "popularity": result.get("Popularity"),
            "out_of_date": result.get("OutOfDate"),
            "url": result.get("URL"),
        },
    )


class AurClient:
    """Networked source-build repository.

    Every request goes through the shared RetryingClient, which carries the
    rate limiter for this upstream.
    """

    def __init__(self, http: RetryingClient, base_url: str = Constants.AUR_RPC_URL):
        self._http = http
        self._base_url = base_url.rstrip("/")

    def _rpc(self, url: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        payload = self._http.get_json(url, params=params)
        if not isinstance(payload, dict):
            raise SourceError("unexpected AUR response")
        if payload.get("type") == "error":
            raise SourceError(f"AUR: {payload.get('error') or 'unknown error'}")
        raw = payload.get("results") or []
        if not isinstance(raw, list):
            raise SourceError("unexpected AUR response: results is not a list")
        results = [r for r in raw if isinstance(r, dict) and isinstance(r.get("Name"), str) and r["Name"]]
        if len(results) != len(raw):
            logger.warning(
                "Ignoring %d malformed AUR result(s)",
                len(raw) - len(results),
                extra=extra_context(event="aur_response", component="aur", outcome="malformed"),
            )
        if is_debug_enabled(logger):
            logger.debug(
                "AUR response",
                extra=extra_context(
                    event="aur_response",
                    component="aur",
                    result_count=payload.get("resultcount", len(results)),
                ),
            )
        return results

    def search(self, query: str) -> List[SearchResult]:
        """Search names and descriptions.

        Raises:
            SourceError: if the query is shorter than the RPC accepts or the
                RPC reports an error (e.g. too many results).
        """
        query = query.strip()
        if len(query) < Constants.AUR_MIN_QUERY_LENGTH:
            raise SourceError(
                f"AUR search needs at least {Constants.AUR_MIN_QUERY_LENGTH} characters"
            )
        results = self._rpc(f"{self._base_url}/search/{quote(query, safe='')}")
        # The RPC returns results unordered; most popular first
        results = sorted(results, key=lambda r: (-(r.get("Popularity") or 0.0), r.get("Name", "")))
        hits = []
        for result in results:
            metadata = _to_metadata(result)
            hits.append(
                SearchResult(
                    ref=metadata.ref,
                    display_name=f"aur/{metadata.name}",
                    version=metadata.version,
                    description=metadata.description,
                    source=Source.SOURCE_BUILD,
                )
            )
        return hits

    def providers(self, name: str) -> List[str]:
        """Packages that provide ``name``, most popular first."""
        results = self._rpc(f"{self._base_url}/search/{quote(name, safe='')}", params={"by": "provides"})
        results = sorted(results, key=lambda r: (r.get("Name") != name, -(r.get("Popularity") or 0.0)))
        return [r["Name"] for r in results]

    def info(self, name: str) -> Optional[PackageMetadata]:
        return self.info_batch([name]).get(name)

    def info_batch(self, names: Iterable[str]) -> Dict[str, PackageMetadata]:
        """Metadata for many packages with as few requests as possible."""
        unique = sorted(set(names))
        found: Dict[str, PackageMetadata] = {}
        size = Constants.AUR_INFO_BATCH_SIZE
        for start in range(0, len(unique), size):
            chunk = unique[start:start + size]
            for result in self._rpc(f"{self._base_url}/info", params={"arg[]": chunk}):
                metadata = _to_metadata(result)
                found[metadata.name] = metadata
        return found

    @staticmethod
    def snapshot_url(package_base: str) -> str:
        return Constants.AUR_SNAPSHOT_URL.format(name=package_base)

    @staticmethod
    def clone_url(package_base: str) -> str:
        return Constants.AUR_CLONE_URL.format(name=package_base)

