"""Human review of build recipes before they are executed.

The orchestrator asks a :class:`Reviewer` for a decision and resumes once
it has one, so tests substitute :class:`ScriptedReviewer` for the console.
"""
from __future__ import annotations

import logging
import shlex
import sys
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, TextIO

from common.subprocess_runner import CommandRunner
from resolution.models import DependencyNode

logger = logging.getLogger(__name__)


class ReviewDecision(Enum):
    VIEW = "view"
    EDIT = "edit"
    SKIP = "skip"


class Reviewer(Protocol):
    def decide(self, node: DependencyNode, workdir: Path) -> ReviewDecision: ...

    def show(self, node: DependencyNode, workdir: Path) -> None: ...

    def edit(self, node: DependencyNode, workdir: Path) -> None: ...

    def confirm(self, node: DependencyNode) -> bool: ...


def recipe_files(workdir: Path) -> List[Path]:
    """PKGBUILD first, then install scriptlets and other text files."""
    files = [workdir / "PKGBUILD"] if (workdir / "PKGBUILD").is_file() else []
    files += sorted(
        p for p in workdir.iterdir()
        if p.is_file() and p.name != "PKGBUILD" and p.suffix in (".install", ".sh", ".patch", ".service")
    )
    return files


class ScriptedReviewer:
    """Pre-recorded decisions keyed by package name.

    Args:
        decisions: Decision per package; missing names use ``default``.
        confirmations: Answer to the post-review confirmation per package.
    """

    def __init__(
        self,
        decisions: Optional[Dict[str, ReviewDecision]] = None,
        confirmations: Optional[Dict[str, bool]] = None,
        default: ReviewDecision = ReviewDecision.SKIP,
    ) -> None:
        self._decisions = decisions or {}
        self._confirmations = confirmations or {}
        self._default = default
        self.shown: List[str] = []
        self.edited: List[str] = []

    def decide(self, node: DependencyNode, workdir: Path) -> ReviewDecision:
        return self._decisions.get(node.name, self._default)

    def show(self, node: DependencyNode, workdir: Path) -> None:
        self.shown.append(node.name)

    def edit(self, node: DependencyNode, workdir: Path) -> None:
        self.edited.append(node.name)

    def confirm(self, node: DependencyNode) -> bool:
        return self._confirmations.get(node.name, True)


class ConsoleReviewer:
    """Interactive review on the controlling terminal."""

    _CHOICES = {"v": ReviewDecision.VIEW, "e": ReviewDecision.EDIT, "s": ReviewDecision.SKIP}

    def __init__(
        self,
        runner: CommandRunner,
        editor: str,
        *,
        prompt: Callable[[str], str] = input,
        out: TextIO = sys.stdout,
    ) -> None:
        self._runner = runner
        self._editor = editor
        self._prompt = prompt
        self._out = out

    def decide(self, node: DependencyNode, workdir: Path) -> ReviewDecision:
        while True:
            answer = self._prompt(f":: Review {node.name}? [V]iew / [E]dit / [S]kip: ").strip().lower()
            decision = self._CHOICES.get(answer[:1] or "v")
            if decision is not None:
                return decision

    def show(self, node: DependencyNode, workdir: Path) -> None:
        for path in recipe_files(workdir):
            self._out.write(f"==> {path.name}\n")
            self._out.write(path.read_text(encoding="utf-8", errors="replace"))
            self._out.write("\n")
        self._out.flush()

    def edit(self, node: DependencyNode, workdir: Path) -> None:
        argv = shlex.split(self._editor) + [str(p) for p in recipe_files(workdir)]
        result = self._runner.run(argv, cwd=str(workdir), capture=False)
        if not result.ok:
            logger.warning("Editor exited with status %d", result.returncode)

    def confirm(self, node: DependencyNode) -> bool:
        answer = self._prompt(f":: Continue building {node.name}? [Y/n]: ").strip().lower()
        return answer in ("", "y", "yes")
