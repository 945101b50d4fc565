"""Conversion of foreign ``.deb`` files into installable packages with debtap."""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import List

from constants import Constants
from common.errors import BuildFailure
from common.subprocess_runner import CommandRunner

logger = logging.getLogger(__name__)

DEBTAP = "debtap"


class DebtapConverter:
    def __init__(self, runner: CommandRunner, *, noconfirm: bool = False):
        self._runner = runner
        self._noconfirm = noconfirm

    def available(self) -> bool:
        return self._runner.available(DEBTAP)

    def convert(self, deb_path: os.PathLike) -> List[Path]:
        """Convert ``deb_path`` and return the packages debtap produced.

        debtap writes its output next to the input file; anything matching a
        package suffix that appeared after the conversion started is the result.

        Raises:
            BuildFailure: when debtap fails or produces nothing.
        """
        deb = Path(deb_path).resolve()
        if not deb.is_file():
            raise BuildFailure(deb.name, "file not found")
        started = time.time()
        argv = [DEBTAP]
        if self._noconfirm:
            argv.append("-Q")
        argv.append(str(deb))
        logger.info("Converting %s with debtap", deb.name)
        result = self._runner.run(argv, cwd=str(deb.parent), capture=False)
        if not result.ok:
            raise BuildFailure(deb.name, f"debtap exited with status {result.returncode}")
        produced = sorted(
            p for p in deb.parent.iterdir()
            if p.name.endswith(Constants.PACKAGE_SUFFIXES) and p.stat().st_mtime >= started - 1
        )
        if not produced:
            raise BuildFailure(deb.name, "debtap produced no package")
        return produced
