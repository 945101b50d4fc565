"""The single seam between unipac and external binaries.

Every collaborator (pacman, makepkg, git, flatpak, snap, debtap) is driven
by argv and observed through its exit status and captured output.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from common.errors import CommandError
from common.logging_utils import extra_context, is_debug_enabled, Timer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    argv: tuple
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        """Return self, or raise CommandError when the command failed."""
        if self.returncode != 0:
            raise CommandError(self.argv, self.returncode, self.stderr)
        return self


class CommandRunner:
    """Run external commands with captured output."""

    def __init__(self, *, env: Optional[Dict[str, str]] = None) -> None:
        self._env = env
        self._available: Dict[str, bool] = {}

    def available(self, binary: str) -> bool:
        """Whether ``binary`` is on PATH (cached per runner)."""
        if binary not in self._available:
            self._available[binary] = shutil.which(binary) is not None
        return self._available[binary]

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Optional[str] = None,
        capture: bool = True,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``argv`` and return its result without raising on failure.

        Args:
            argv: Program and arguments; never passed through a shell.
            cwd: Working directory.
            capture: Capture stdout/stderr; when False the child shares the
                terminal (builds and prompts) and the result carries no output.
            timeout: Seconds before the child is killed.

        Raises:
            CommandError: when the program cannot be started or times out.
        """
        argv = [str(a) for a in argv]
        if is_debug_enabled(logger):
            logger.debug(
                "Running command",
                extra=extra_context(
                    event="command_start",
                    component="subprocess_runner",
                    action=argv[0],
                    target=" ".join(argv[1:]),
                    cwd=cwd,
                ),
            )
        with Timer() as t:
            try:
                proc = subprocess.run(  # noqa: S603
                    argv,
                    cwd=cwd,
                    env=self._env,
                    capture_output=capture,
                    text=True,
                    timeout=timeout,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise CommandError(argv, 127, f"{argv[0]}: command not found") from exc
            except subprocess.TimeoutExpired as exc:
                raise CommandError(argv, -1, f"timed out after {timeout} seconds") from exc
        result = CommandResult(
            tuple(argv),
            proc.returncode,
            (proc.stdout or "") if capture else "",
            (proc.stderr or "") if capture else "",
        )
        if is_debug_enabled(logger):
            logger.debug(
                "Command finished",
                extra=extra_context(
                    event="command_end",
                    component="subprocess_runner",
                    action=argv[0],
                    outcome="success" if result.ok else "failure",
                    returncode=result.returncode,
                    duration_ms=t.duration_ms(),
                ),
            )
        return result
