"""Tests for logging helpers, rate limiting, action history and outcome reporting."""

import json
import logging

import pytest

from common.cancel import CancelToken
from common.errors import BuildFailure, DependencyCycle, NetworkExhausted, OperationCancelled, PackageNotFound
from common.logging_utils import configure_logging, extra_context, redact, safe_url
from common.rate_limit import RateLimiter
from action_history import ActionHistory
from orchestration import NodeOutcome
from outcome_report import exit_code, format_outcome, log_outcomes, render, summarize
from registry.models import PackageRef, Source


class TestLoggingUtils:
    """Helpers used on every log call."""

    def test_extra_context_drops_none(self):
        assert extra_context(event="build", target=None, duration_ms=0) == {"event": "build", "duration_ms": 0}

    def test_safe_url_masks_credentials(self):
        url = safe_url("https://user:pw@mirror.example/dists?token=abc123&arch=amd64")
        assert "pw" not in url
        assert "abc123" not in url
        assert "arch=amd64" in url

    def test_safe_url_plain(self):
        assert safe_url("https://aur.archlinux.org/rpc/v5/info") == "https://aur.archlinux.org/rpc/v5/info"

    def test_redact(self):
        assert redact("secretvalue") == "se***"
        assert redact("abc") == "***"
        assert redact(None) == ""

    def test_configure_logging_from_env(self, monkeypatch):
        root = logging.getLogger()
        previous = root.level
        monkeypatch.setenv("UNIPAC_LOG_LEVEL", "debug")
        try:
            configure_logging()
            assert root.level == logging.DEBUG
        finally:
            root.setLevel(previous)


class RecordingToken(CancelToken):
    def __init__(self):
        super().__init__()
        self.sleeps = []

    def sleep(self, seconds):
        self.raise_if_cancelled()
        self.sleeps.append(round(seconds, 3))


class CancellingToken(CancelToken):
    def sleep(self, seconds):
        self.cancel()
        self.raise_if_cancelled()


class TestRateLimiter:
    """Minimum spacing between request starts."""

    def test_spaces_request_starts(self):
        token = RecordingToken()
        limiter = RateLimiter(4, 100, cancel=token, clock=lambda: 50.0)

        for _ in range(3):
            with limiter.slot():
                pass

        assert token.sleeps == [0.1, 0.2]

    def test_no_wait_once_gap_elapsed(self):
        token = RecordingToken()
        times = iter([0.0, 0.5])
        limiter = RateLimiter(1, 100, cancel=token, clock=lambda: next(times))

        with limiter.slot():
            pass
        with limiter.slot():
            pass

        assert token.sleeps == []

    def test_cancelled_token_refuses_slot(self):
        token = CancelToken()
        token.cancel()
        limiter = RateLimiter(1, 0, cancel=token)

        with pytest.raises(OperationCancelled):
            limiter.acquire()

    def test_cancel_during_wait_releases_slot(self):
        token = CancellingToken()
        limiter = RateLimiter(1, 1000, cancel=token, clock=lambda: 0.0)
        limiter.acquire()
        limiter.release()

        with pytest.raises(OperationCancelled):
            limiter.acquire()
        assert limiter._semaphore.acquire(blocking=False)  # pylint: disable=protected-access


class TestActionHistory:
    """JSON-lines action history."""

    def test_record_and_read(self, tmp_path):
        history = ActionHistory(tmp_path / "data" / "history.jsonl")

        history.record("install", ["aur/yay"], True)
        history.record("remove", ["repo/libfoo", "aur/app-bar"], False)

        entries = history.entries()
        assert [e["action"] for e in entries] == ["install", "remove"]
        assert entries[1]["packages"] == ["repo/libfoo", "aur/app-bar"]
        assert entries[1]["success"] is False
        assert history.entries(limit=1) == entries[1:]

    def test_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "history.jsonl"
        path.write_text(json.dumps({"action": "upgrade"}) + "\n{broken\n")

        assert ActionHistory(path).entries() == [{"action": "upgrade"}]

    def test_missing_file(self, tmp_path):
        assert ActionHistory(tmp_path / "none.jsonl").entries() == []


def aur(name):
    return PackageRef(name, Source.SOURCE_BUILD)


class TestOutcomeReport:
    """Outcome lines, totals and exit status."""

    def test_format_lines(self):
        lines = render([
            NodeOutcome.installed(aur("b")),
            NodeOutcome.skipped(aur("c"), "blocked by a", blocked_by="a"),
            NodeOutcome.failed(aur("a"), BuildFailure(aur("a"), "makepkg exited with status 4")),
        ])

        assert lines == [
            "installed  aur/b",
            "skipped    aur/c (blocked by a)",
            "failed     aur/a [aur]: makepkg exited with status 4",
        ]

    def test_summary(self):
        outcomes = [NodeOutcome.installed(aur("a")), NodeOutcome.installed(aur("b"))]
        assert summarize(outcomes) == {"installed": 2, "skipped": 0, "failed": 0}

    def test_exit_code_for_failed_dependency_of_root(self):
        outcomes = [
            NodeOutcome.failed(aur("a"), BuildFailure(aur("a"), "x")),
            NodeOutcome.skipped(aur("b"), "blocked by a", explicit=True, blocked_by="a"),
        ]
        assert exit_code(outcomes) == 1

    def test_exit_code_when_only_dependency_of_nothing_fails(self):
        outcomes = [
            NodeOutcome.failed(aur("a"), BuildFailure(aur("a"), "x")),
            NodeOutcome.installed(aur("c"), explicit=True),
        ]
        assert exit_code(outcomes) == 0

    def test_declined_root_is_not_a_failure(self):
        assert exit_code([NodeOutcome.skipped(aur("a"), "declined after review", explicit=True)]) == 0

    def test_cancelled_run(self):
        outcomes = [
            NodeOutcome.installed(aur("a"), explicit=True),
            NodeOutcome.skipped(aur("b"), "cancelled", explicit=True),
            NodeOutcome.failed(aur("c"), BuildFailure(aur("c"), "x"), explicit=True),
        ]
        assert exit_code(outcomes) == 130

    def test_resolution_failure(self):
        outcomes = [
            NodeOutcome.failed(aur("a"), PackageNotFound("ghost", required_by="a"), explicit=True),
            NodeOutcome.failed(aur("b"), DependencyCycle(["b", "c", "b"]), explicit=True),
        ]
        assert exit_code(outcomes) == 3

    def test_connection_failure_inside_build(self):
        exhausted = NetworkExhausted("https://aur.archlinux.org/cgit/aur.git/snapshot/a.tar.gz", 4, 503)
        outcomes = [NodeOutcome.failed(aur("a"), BuildFailure(aur("a"), exhausted), explicit=True)]
        assert exit_code(outcomes) == 2

    def test_mixed_failures_are_generic(self):
        exhausted = NetworkExhausted("https://aur.archlinux.org/rpc/v5/info", 4, 503)
        outcomes = [
            NodeOutcome.failed(aur("a"), exhausted, explicit=True),
            NodeOutcome.failed(aur("b"), PackageNotFound("ghost"), explicit=True),
        ]
        assert exit_code(outcomes) == 1

    def test_log_outcomes(self, caplog):
        caplog.set_level(logging.INFO)
        log_outcomes([NodeOutcome.installed(aur("a")), NodeOutcome.failed(aur("b"), BuildFailure(aur("b"), "x"))])

        assert "1 installed, 0 skipped, 1 failed" in caplog.text
        assert any(r.levelno == logging.ERROR for r in caplog.records)
