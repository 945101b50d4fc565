"""Per-package outcome lines and the process exit code."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional

from common.errors import BuildFailure, NetworkError, ResolveError
from constants import ExitCodes
from orchestration.orchestrator import NodeOutcome, OutcomeStatus

logger = logging.getLogger(__name__)


def format_outcome(outcome: NodeOutcome) -> str:
    """One line per package: Installed, Skipped with reason, Failed with source and cause."""
    if outcome.status is OutcomeStatus.INSTALLED:
        return f"installed  {outcome.ref}"
    if outcome.status is OutcomeStatus.SKIPPED:
        return f"skipped    {outcome.ref} ({outcome.reason})"
    return f"failed     {outcome.ref} [{outcome.ref.source.prefix}]: {outcome.reason}"


def render(outcomes: Iterable[NodeOutcome]) -> List[str]:
    return [format_outcome(o) for o in outcomes]


def summarize(outcomes: Iterable[NodeOutcome]) -> Dict[str, int]:
    counts = Counter(o.status.value for o in outcomes)
    return {status.value: counts.get(status.value, 0) for status in OutcomeStatus}


def root_failed(outcome: NodeOutcome) -> bool:
    """A requested package failed, or was skipped because something under it failed."""
    if not outcome.explicit:
        return False
    return outcome.status is OutcomeStatus.FAILED or outcome.blocked_by is not None


def _cause(outcome: NodeOutcome) -> Optional[BaseException]:
    error = outcome.error
    return error.cause if isinstance(error, BuildFailure) else error


def exit_code(outcomes: Iterable[NodeOutcome]) -> int:
    """Process exit status for a finished operation.

    Cancellation wins over everything else. When every failed request failed
    for the same kind of reason, that reason picks the status; mixed or
    blocked failures exit with the generic failure status.
    """
    outcomes = list(outcomes)
    if any(o.status is OutcomeStatus.SKIPPED and o.reason == "cancelled" for o in outcomes):
        return ExitCodes.CANCELLED.value
    failed = [o for o in outcomes if root_failed(o)]
    if not failed:
        return ExitCodes.SUCCESS.value
    causes = [_cause(o) for o in failed]
    if all(isinstance(c, ResolveError) for c in causes):
        return ExitCodes.RESOLVE_ERROR.value
    if all(isinstance(c, NetworkError) for c in causes):
        return ExitCodes.CONNECTION_ERROR.value
    return ExitCodes.FAILURE.value


def log_outcomes(outcomes: List[NodeOutcome]) -> None:
    for outcome in outcomes:
        level = logging.ERROR if outcome.status is OutcomeStatus.FAILED else logging.INFO
        logger.log(level, format_outcome(outcome))
    totals = summarize(outcomes)
    logger.info(
        "%d installed, %d skipped, %d failed",
        totals["installed"],
        totals["skipped"],
        totals["failed"],
    )
