"""Dependency string parsing for package metadata."""

import re
from dataclasses import dataclass
from typing import Optional

from .vercmp import vercmp

_DEP_RE = re.compile(r"^\s*(?P<name>[^<>=\s:]+)\s*(?:(?P<op><=|>=|<|>|=)\s*(?P<version>[^\s:]+))?")

_OPERATORS = {
    "=": lambda rc: rc == 0,
    ">=": lambda rc: rc >= 0,
    "<=": lambda rc: rc <= 0,
    ">": lambda rc: rc > 0,
    "<": lambda rc: rc < 0,
}


@dataclass(frozen=True)
class DependencySpec:
    """A dependency name with an optional version constraint (``foo>=1.2``)."""

    name: str
    operator: Optional[str] = None
    version: Optional[str] = None

    @property
    def constraint(self) -> Optional[str]:
        if self.operator is None:
            return None
        return f"{self.operator}{self.version}"

    def __str__(self) -> str:
        return f"{self.name}{self.constraint or ''}"

    def satisfied_by(self, version: Optional[str]) -> bool:
        """Whether ``version`` meets the constraint; unconstrained always does."""
        if self.operator is None:
            return True
        if not version:
            return False
        return _OPERATORS[self.operator](vercmp(version, self.version))


def parse_dependency(text: str) -> DependencySpec:
    """Parse ``name[op version][: description]``.

    Optional-dependency descriptions after a colon are dropped.

    Raises:
        ValueError: if no package name can be found.
    """
    match = _DEP_RE.match(text or "")
    if not match:
        raise ValueError(f"invalid dependency: {text!r}")
    op = match.group("op")
    return DependencySpec(match.group("name"), op, match.group("version") if op else None)


def strip_constraint(text: str) -> str:
    """Return only the package name of a dependency string."""
    return parse_dependency(text).name
