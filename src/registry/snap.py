"""Snap application source."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import yaml

from common.errors import SourceError
from common.subprocess_runner import CommandResult, CommandRunner
from registry.models import PackageMetadata, PackageRef, SearchResult, Source

logger = logging.getLogger(__name__)

SNAP = "snap"
SUDO = "sudo"


def parse_find_output(text: str) -> List[SearchResult]:
    """Parse ``snap find``: a header row, then name/version/publisher/notes/summary."""
    results = []
    for line in text.splitlines()[1:]:
        fields = line.split(None, 4)
        if len(fields) < 2:
            continue
        name, version = fields[0], fields[1]
        summary = fields[4] if len(fields) > 4 else ""
        results.append(
            SearchResult(
                ref=PackageRef(name, Source.SNAP),
                display_name=name,
                version=version,
                description=summary,
                source=Source.SNAP,
            )
        )
    return results


def _channel_version(channels: Any) -> str:
    if not isinstance(channels, dict):
        return ""
    for channel in ("latest/stable", "stable"):
        value = channels.get(channel)
        if value and str(value).strip() not in ("--", "^"):
            return str(value).split()[0]
    return ""


class SnapClient:
    def __init__(self, runner: CommandRunner):
        self._runner = runner

    def available(self) -> bool:
        return self._runner.available(SNAP)

    def search(self, query: str) -> List[SearchResult]:
        result = self._runner.run([SNAP, "find", query])
        if not result.ok:
            # "No matching snaps" is reported as an error
            if "No matching snaps" in result.stderr:
                return []
            result.check()
        return parse_find_output(result.stdout)

    def info(self, name: str) -> Optional[PackageMetadata]:
        result = self._runner.run([SNAP, "info", name])
        if not result.ok:
            return None
        try:
            data = yaml.safe_load(result.stdout) or {}
        except yaml.YAMLError as exc:
            raise SourceError(f"snap info {name}: unreadable output") from exc
        if not isinstance(data, dict):
            return None
        installed = str(data.get("installed") or "").split()
        return PackageMetadata(
            ref=PackageRef(str(data.get("name", name)), Source.SNAP),
            version=_channel_version(data.get("channels")) or (installed[0] if installed else ""),
            description=str(data.get("summary") or ""),
            extra={"publisher": data.get("publisher"), "license": data.get("license")},
        )

    def installed(self) -> Dict[str, str]:
        result = self._runner.run([SNAP, "list"])
        if not result.ok:
            # A system without any snaps reports an error instead of an empty table
            return {}
        snaps: Dict[str, str] = {}
        for line in result.stdout.splitlines()[1:]:
            fields = line.split()
            if len(fields) >= 2:
                snaps[fields[0]] = fields[1]
        return snaps

    def is_installed(self, name: str) -> bool:
        return name in self.installed()

    def install(self, name: str) -> CommandResult:
        return self._runner.run([SUDO, SNAP, "install", name], capture=False)

    def refresh(self) -> CommandResult:
        return self._runner.run([SUDO, SNAP, "refresh"], capture=False)

    def remove(self, name: str) -> CommandResult:
        return self._runner.run([SUDO, SNAP, "remove", name], capture=False)
