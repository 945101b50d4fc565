"""Flatpak application source."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from constants import Constants
from common.subprocess_runner import CommandResult, CommandRunner
from registry.models import PackageMetadata, PackageRef, SearchResult, Source

logger = logging.getLogger(__name__)

FLATPAK = "flatpak"
_SEARCH_COLUMNS = "name,description,application,version,branch"


def parse_search_output(text: str) -> List[SearchResult]:
    """Parse tab-separated ``flatpak search --columns=...`` output."""
    results = []
    for line in text.splitlines():
        fields = line.split("\t")
        if len(fields) < 3 or fields[0] == "Name":
            continue
        name, description, app_id = fields[0], fields[1], fields[2]
        version = fields[3] if len(fields) > 3 else ""
        branch = fields[4] if len(fields) > 4 else ""
        results.append(
            SearchResult(
                ref=PackageRef(app_id, Source.FLATPAK),
                display_name=name,
                version=version or branch,
                description=description,
                source=Source.FLATPAK,
            )
        )
    return results


def parse_remote_info(text: str) -> Dict[str, str]:
    """Parse ``flatpak remote-info``: a title line, then ``Key: value`` lines."""
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() and " " not in key.strip():
            fields[key.strip()] = value.strip()
        elif line.strip() and "Title" not in fields:
            fields["Title"] = line.strip()
    return fields


class FlatpakClient:
    def __init__(self, runner: CommandRunner, remote: str = Constants.FLATPAK_REMOTE):
        self._runner = runner
        self._remote = remote

    def available(self) -> bool:
        return self._runner.available(FLATPAK)

    def search(self, query: str) -> List[SearchResult]:
        result = self._runner.run([FLATPAK, "search", f"--columns={_SEARCH_COLUMNS}", query]).check()
        return parse_search_output(result.stdout)

    def info(self, app_id: str) -> Optional[PackageMetadata]:
        result = self._runner.run([FLATPAK, "remote-info", self._remote, app_id])
        if not result.ok:
            return None
        fields = parse_remote_info(result.stdout)
        title, _, summary = fields.get("Title", app_id).partition(" - ")
        return PackageMetadata(
            ref=PackageRef(fields.get("ID", app_id), Source.FLATPAK),
            version=fields.get("Version", "") or fields.get("Branch", ""),
            description=summary or title,
            extra={"ref": fields.get("Ref"), "remote": self._remote, "title": title},
        )

    def installed(self) -> Dict[str, str]:
        """Installed applications mapped to their versions."""
        result = self._runner.run([FLATPAK, "list", "--app", "--columns=application,version"]).check()
        apps: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            fields = line.split("\t")
            if fields[0] and fields[0] != "Application ID":
                apps[fields[0]] = fields[1] if len(fields) > 1 else ""
        return apps

    def is_installed(self, app_id: str) -> bool:
        return app_id in self.installed()

    def install(self, app_id: str) -> CommandResult:
        return self._runner.run([FLATPAK, "install", "-y", self._remote, app_id], capture=False)

    def update(self) -> CommandResult:
        return self._runner.run([FLATPAK, "update", "-y"], capture=False)

    def uninstall(self, app_id: str) -> CommandResult:
        return self._runner.run([FLATPAK, "uninstall", "-y", app_id], capture=False)

    def remove_unused(self) -> CommandResult:
        """Uninstall runtimes and extensions no installed application uses."""
        return self._runner.run([FLATPAK, "uninstall", "--unused", "-y"], capture=False)
