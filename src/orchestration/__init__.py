"""Build orchestration: recipe fetch, review, makepkg build and install."""

from .builder import PackageBuilder
from .fetch import RecipeFetcher
from .orchestrator import BuildOrchestrator, BuildPolicy, NodeOutcome, OutcomeStatus
from .review import ConsoleReviewer, ReviewDecision, Reviewer, ScriptedReviewer

__all__ = [
    "PackageBuilder",
    "RecipeFetcher",
    "BuildOrchestrator",
    "BuildPolicy",
    "NodeOutcome",
    "OutcomeStatus",
    "ConsoleReviewer",
    "ReviewDecision",
    "Reviewer",
    "ScriptedReviewer",
]
