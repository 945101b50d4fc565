"""Exception hierarchy for unipac.

Errors are raised where they are detected and caught only at the seams
that recover from them: the aggregator per source, the orchestrator per
build node and the operations layer per source group.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence


class UnipacError(Exception):
    """Base class for all unipac errors."""


class NetworkError(UnipacError):
    """A request could not be completed."""


class TransientNetworkError(NetworkError):
    """A retryable failure: retryable status or transport error.

    Only observed inside the retry loop and on retry events.
    """

    def __init__(self, status_or_error: Any):
        self.status_or_error = status_or_error
        super().__init__(f"transient failure: {status_or_error}")


class NetworkExhausted(NetworkError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, url: str, attempts: int, last: Any):
        self.url = url
        self.attempts = attempts
        self.last = last
        super().__init__(f"{url}: gave up after {attempts} attempts (last: {last})")


class OperationCancelled(UnipacError):
    """The run was cancelled while waiting."""


class SourceError(UnipacError):
    """An upstream answered, but with an error payload."""


class CommandError(UnipacError):
    """An external command exited unsuccessfully."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"{' '.join(self.argv)} exited with status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ResolveError(UnipacError):
    """The dependency graph could not be built."""


class DependencyCycle(ResolveError):
    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__("dependency cycle: " + " -> ".join(self.path))


class PackageNotFound(ResolveError):
    def __init__(self, ref: Any, required_by: Optional[str] = None):
        self.ref = ref
        self.required_by = required_by
        message = f"package not found: {ref}"
        if required_by:
            message = f"{message} (required by {required_by})"
        super().__init__(message)


class VersionUnsatisfiable(ResolveError):
    def __init__(self, ref: Any, constraint: str, available: Optional[str]):
        self.ref = ref
        self.constraint = constraint
        self.available = available
        super().__init__(
            f"{ref}: no version satisfies {constraint} (available: {available or 'none'})"
        )


class BuildFailure(UnipacError):
    """Building or installing one node failed."""

    def __init__(self, ref: Any, cause: Any):
        self.ref = ref
        self.cause = cause
        super().__init__(f"{ref}: {cause}")


class InstallConflict(UnipacError):
    """Removing a package would break installed dependents."""

    def __init__(self, target: Any, dependents: Iterable[Any]):
        self.target = target
        self.dependents: List[Any] = sorted(dependents, key=str)
        names = ", ".join(str(d) for d in self.dependents)
        super().__init__(f"{target} is required by: {names}")


class CacheCorruption(UnipacError):
    """A cache entry's content no longer matches its recorded checksum."""

    def __init__(self, key: Any, expected: str = "", actual: str = ""):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"checksum mismatch for cache entry {key}")


class KeyImportFailed(UnipacError):
    """A recipe's signing key could not be fetched from any keyserver."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"PGP key {key}: {reason}")
