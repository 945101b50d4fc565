"""Tests for the install, upgrade, remove and cache operations."""

from unittest.mock import MagicMock

import pytest

from common.config import CoreConfig
from common.errors import CommandError, DependencyCycle, InstallConflict, PackageNotFound
from orchestration import NodeOutcome, OutcomeStatus, ScriptedReviewer
from registry.models import PackageRef, Source
from storage.cache_store import CacheKey
import unipac

from fakes import aur_meta, system_meta

INSTALLED_QI = """\
Name            : libfoo
Version         : 1.2-1
Provides        : libfoo.so=1-64
Depends On      : glibc

Name            : app-bar
Version         : 0.3-1
Provides        : None
Depends On      : libfoo>=1.0

Name            : glibc
Version         : 2.40-1
Provides        : None
Depends On      : None

"""


def aur(name):
    return PackageRef(name, Source.SOURCE_BUILD)


@pytest.fixture
def ctx(tmp_path, runner):
    config = CoreConfig(cache_dir=tmp_path / "cache", data_dir=tmp_path / "data", unattended=True)
    return unipac.Context.create(config, reviewer=ScriptedReviewer(), runner=runner, session=MagicMock())


@pytest.fixture
def mocked_build(ctx):
    ctx.aggregator = MagicMock()
    ctx.resolver = MagicMock()
    ctx.orchestrator = MagicMock()
    ctx.fetcher = MagicMock()
    return ctx


class TestQueries:
    """search and info."""

    def test_prefixed_search_targets_one_source(self, mocked_build):
        unipac.search(mocked_build, "aur/yay")
        mocked_build.aggregator.search.assert_called_once_with("yay", [Source.SOURCE_BUILD])

    def test_plain_search_uses_filter(self, mocked_build):
        unipac.search(mocked_build, "yay", [Source.SNAP])
        mocked_build.aggregator.search.assert_called_once_with("yay", [Source.SNAP])

    def test_info_not_found(self, mocked_build):
        mocked_build.aggregator.find_candidates.return_value = []
        with pytest.raises(PackageNotFound):
            unipac.info(mocked_build, "ghost")


class TestInstall:
    """install dispatch per source."""

    def test_system_target(self, mocked_build, runner):
        mocked_build.aggregator.find_candidates.return_value = [system_meta("firefox")]
        runner.on(["sudo", "pacman", "-S"])

        outcomes = unipac.install(mocked_build, ["firefox"])

        assert [o.status for o in outcomes] == [OutcomeStatus.INSTALLED]
        assert ["sudo", "pacman", "-S", "--needed", "--noconfirm", "firefox"] in runner.calls
        mocked_build.resolver.resolve.assert_not_called()

    def test_already_installed_is_skipped(self, mocked_build, runner):
        mocked_build.aggregator.find_candidates.return_value = [system_meta("firefox")]
        runner.on(["pacman", "-Q", "firefox"], stdout="firefox 131.0-1\n")

        outcomes = unipac.install(mocked_build, ["firefox"])

        assert outcomes[0].status is OutcomeStatus.SKIPPED
        assert outcomes[0].reason == "already installed"
        assert not runner.called("sudo")

    def test_chooser_picks_source_build(self, mocked_build):
        mocked_build.aggregator.find_candidates.return_value = [system_meta("yay"), aur_meta("yay")]
        mocked_build.orchestrator.run.return_value = [NodeOutcome.installed(aur("yay"), explicit=True)]

        outcomes = unipac.install(mocked_build, ["yay"], chooser=lambda name, candidates: candidates[-1])

        mocked_build.resolver.resolve.assert_called_once_with([aur("yay")])
        assert outcomes[0].ref == aur("yay")

    def test_resolution_error_builds_nothing(self, mocked_build):
        mocked_build.aggregator.find_candidates.side_effect = lambda name, sources: [aur_meta(name)]
        mocked_build.resolver.resolve.side_effect = DependencyCycle(["a", "b", "a"])

        outcomes = unipac.install(mocked_build, ["aur/a", "aur/c"])

        assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.FAILED]
        assert all(isinstance(o.error, DependencyCycle) for o in outcomes)
        mocked_build.orchestrator.run.assert_not_called()
        assert mocked_build.history.entries()[-1]["success"] is False

    def test_unknown_target(self, mocked_build):
        mocked_build.aggregator.find_candidates.return_value = []

        outcomes = unipac.install(mocked_build, ["ghost"])

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert isinstance(outcomes[0].error, PackageNotFound)

    def test_flatpak_target(self, mocked_build, runner):
        app = PackageRef("org.gimp.GIMP", Source.FLATPAK)
        meta = system_meta("org.gimp.GIMP")
        meta.ref = app
        mocked_build.aggregator.find_candidates.return_value = [meta]
        runner.on(["flatpak", "list"], stdout="org.mozilla.firefox\t131.0\n")
        runner.on(["flatpak", "install"])

        outcomes = unipac.install(mocked_build, ["flatpak/org.gimp.GIMP"])

        assert outcomes[0].status is OutcomeStatus.INSTALLED
        assert ["flatpak", "install", "-y", "flathub", "org.gimp.GIMP"] in runner.calls

    def test_deb_file(self, mocked_build, runner, tmp_path):
        deb = tmp_path / "hello_2.10-3_amd64.deb"
        deb.write_bytes(b"!<arch>\n")

        def produce(argv, cwd):
            (tmp_path / "hello-2.10.3-1-x86_64.pkg.tar.zst").write_bytes(b"pkg")

        runner.on(["debtap"], effect=produce)
        runner.on(["sudo", "pacman", "-U"])

        outcomes = unipac.install(mocked_build, [str(deb)])

        assert outcomes[0].ref == PackageRef("hello", Source.DEBIAN)
        assert outcomes[0].status is OutcomeStatus.INSTALLED
        assert runner.called("sudo", "pacman", "-U", "--noconfirm")

    def test_deb_without_debtap_fails_only_that_target(self, mocked_build, runner, tmp_path):
        mocked_build.debtap = MagicMock()
        mocked_build.debtap.available.return_value = False
        mocked_build.aggregator.find_candidates.return_value = [system_meta("firefox")]
        runner.on(["sudo", "pacman", "-S"])

        outcomes = unipac.install(mocked_build, [str(tmp_path / "foo_1.0_amd64.deb"), "firefox"])

        assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.INSTALLED]
        assert outcomes[0].reason == "debtap is not installed"
        mocked_build.debtap.convert.assert_not_called()

    def test_tool_that_cannot_start_fails_only_its_target(self, mocked_build, runner, tmp_path):
        mocked_build.debtap = MagicMock()
        mocked_build.debtap.available.return_value = True
        mocked_build.debtap.convert.side_effect = CommandError(["debtap", "foo.deb"], 127, "debtap: command not found")
        mocked_build.aggregator.find_candidates.return_value = [system_meta("firefox")]
        runner.on(["sudo", "pacman", "-S"])

        outcomes = unipac.install(mocked_build, [str(tmp_path / "foo_1.0_amd64.deb"), "firefox"])

        assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.INSTALLED]
        assert isinstance(outcomes[0].error, CommandError)
        assert "command not found" in outcomes[0].reason

    def test_lookup_failure_keeps_other_outcomes(self, mocked_build, runner):
        def candidates(name, sources):
            if name == "broken":
                raise CommandError(["pacman", "-Q", "broken"], 127, "pacman: command not found")
            return [system_meta(name)]

        mocked_build.aggregator.find_candidates.side_effect = candidates
        runner.on(["sudo", "pacman", "-S"])

        outcomes = unipac.install(mocked_build, ["broken", "firefox"])

        assert [(o.ref.name, o.status) for o in outcomes] == [
            ("broken", OutcomeStatus.FAILED),
            ("firefox", OutcomeStatus.INSTALLED),
        ]

    def test_missing_tool_during_resolution_fails_roots(self, mocked_build):
        mocked_build.aggregator.find_candidates.side_effect = lambda name, sources: [aur_meta(name)]
        mocked_build.resolver.resolve.side_effect = CommandError(["pacman", "-T", "glibc"], 127)

        outcomes = unipac.install(mocked_build, ["aur/a"])

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert isinstance(outcomes[0].error, CommandError)
        mocked_build.orchestrator.run.assert_not_called()

    def test_missing_transaction_tool_fails_system_targets(self, mocked_build, runner, monkeypatch):
        mocked_build.aggregator.find_candidates.return_value = [system_meta("firefox")]
        monkeypatch.setattr(
            mocked_build.pacman,
            "install",
            MagicMock(side_effect=CommandError(["sudo", "pacman", "-S"], 127, "sudo: command not found")),
        )

        outcomes = unipac.install(mocked_build, ["firefox"])

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert mocked_build.history.entries()[-1]["success"] is False


class TestUpgrade:
    """upgrade across repository, source-build and application packages."""

    def test_upgrade_all_sources(self, mocked_build, runner):
        runner.on(["pacman", "-Qu"], stdout="bash 5.2.036-1 -> 5.2.037-1\n")
        runner.on(["sudo", "pacman", "-Syu"])
        runner.on(["pacman", "-Qm"], stdout="yay 12.0.0-1\nlegacy-tool 3.0-1\n")
        runner.on(["flatpak", "update"])
        runner.on(["sudo", "snap", "refresh"])
        mocked_build.aggregator.source_build_info_batch.return_value = {
            "yay": aur_meta("yay", version="12.4.2-1"),
            "legacy-tool": aur_meta("legacy-tool", version="3.0-1"),
        }
        mocked_build.orchestrator.run.return_value = [NodeOutcome.installed(aur("yay"), explicit=True)]

        outcomes = unipac.upgrade(mocked_build)

        assert [str(o.ref) for o in outcomes] == ["repo/bash", "aur/yay"]
        mocked_build.fetcher.sync.assert_called_once_with("yay")
        mocked_build.resolver.resolve.assert_called_once_with([aur("yay")])
        assert runner.called("flatpak", "update")
        assert runner.called("sudo", "snap", "refresh")
        assert mocked_build.history.entries()[-1]["action"] == "upgrade"

    def test_nothing_to_upgrade(self, mocked_build, runner):
        outcomes = unipac.upgrade(mocked_build)

        assert outcomes == []
        assert not runner.called("sudo", "pacman")
        mocked_build.resolver.resolve.assert_not_called()


@pytest.fixture
def installed(runner):
    runner.on(["pacman", "-Qi"], stdout=INSTALLED_QI)
    runner.on(["pacman", "-Qm"], stdout="app-bar 0.3-1\n")
    runner.on(["pacman", "-Q", "libfoo"], stdout="libfoo 1.2-1\n")
    return runner


class TestRemove:
    """remove planning, confirmation and execution."""

    def test_blocking_plan_is_not_executed(self, ctx, installed):
        result = unipac.remove(ctx, "libfoo", confirm=lambda plan: True)

        assert not result.executed
        assert isinstance(result.error, InstallConflict)
        assert result.error.dependents == [aur("app-bar")]
        assert not installed.called("sudo")

    def test_cascade_after_confirmation(self, ctx, installed):
        installed.on(["sudo", "pacman", "-R"])
        seen = []

        result = unipac.remove(ctx, "libfoo", cascade=True, confirm=lambda plan: seen.append(plan) or True)

        assert result.executed and result.success
        assert seen[0].removal_set == [PackageRef("libfoo", Source.SYSTEM), aur("app-bar")]
        assert installed.calls[-1] == ["sudo", "pacman", "-R", "--noconfirm", "libfoo", "app-bar"]
        assert ctx.history.entries()[-1]["packages"] == ["repo/libfoo", "aur/app-bar"]

    def test_declined_confirmation(self, ctx, installed):
        result = unipac.remove(ctx, "libfoo", cascade=True, confirm=lambda plan: False)

        assert not result.executed
        assert not installed.called("sudo")
        assert ctx.history.entries() == []

    def test_force_removes_only_target(self, ctx, installed):
        installed.on(["sudo", "pacman", "-Rdd"])

        result = unipac.remove(ctx, "libfoo", force=True, confirm=lambda plan: True)

        assert result.success
        assert installed.calls[-1] == ["sudo", "pacman", "-Rdd", "--noconfirm", "libfoo"]

    def test_dependency_conflict_reported(self, ctx, installed):
        installed.on(["sudo", "pacman", "-R"], returncode=1,
                     stderr="error: failed to prepare transaction (could not satisfy dependencies)\n")

        result = unipac.remove(ctx, "libfoo", cascade=True, confirm=lambda plan: True)

        assert result.executed and not result.success
        assert isinstance(result.error, InstallConflict)

    def test_not_installed(self, ctx, installed):
        installed.on(["flatpak", "list"], stdout="")
        installed.on(["snap", "list"], stdout="Name  Version  Rev  Tracking  Publisher  Notes\n")

        with pytest.raises(PackageNotFound):
            unipac.remove(ctx, "ghost", confirm=lambda plan: True)


ORPHAN_QI = """\
Name            : app
Version         : 1.0-1
Depends On      : libfoo
Install Reason  : Explicitly installed

Name            : libfoo
Version         : 1.2-1
Depends On      : None
Install Reason  : Installed as a dependency for another package

Name            : go
Version         : 2:1.23.2-1
Depends On      : None
Install Reason  : Installed as a dependency for another package
"""


@pytest.fixture
def orphaned(runner):
    runner.on(["pacman", "-Qi"], stdout=ORPHAN_QI)
    runner.on(["pacman", "-Qm"], returncode=1)
    return runner


class TestRemoveOrphans:
    """Orphan listing, confirmation and removal."""

    def test_removes_orphans_and_unused_runtimes(self, ctx, orphaned):
        orphaned.on(["sudo", "pacman", "-R"])
        orphaned.on(["flatpak", "uninstall", "--unused"])
        seen = []

        result = unipac.remove_orphans(ctx, confirm=lambda orphans: seen.append(orphans) or True)

        assert result.executed and result.success
        assert seen == [[PackageRef("go", Source.SYSTEM)]]
        assert orphaned.called("sudo", "pacman", "-R", "--noconfirm", "go")
        assert orphaned.called("flatpak", "uninstall", "--unused", "-y")
        assert ctx.history.entries()[-1]["action"] == "remove-orphans"

    def test_declined(self, ctx, orphaned):
        result = unipac.remove_orphans(ctx, confirm=lambda orphans: False)

        assert result.orphans == [PackageRef("go", Source.SYSTEM)]
        assert not result.executed
        assert not orphaned.called("sudo")

    def test_failed_removal_is_reported(self, ctx, orphaned):
        orphaned.on(["sudo", "pacman", "-R"], returncode=1, stderr="error: failed to commit transaction\n")
        orphaned.on(["flatpak", "uninstall", "--unused"])

        result = unipac.remove_orphans(ctx, confirm=lambda orphans: True)

        assert result.executed and not result.success
        assert isinstance(result.error, CommandError)
        assert ctx.history.entries()[-1]["success"] is False


class TestCleanCache:
    """Explicit cache eviction."""

    def test_clean_selected_caches(self, ctx):
        ctx.recipes.put(CacheKey("aur", "yay"), b"PKGBUILD")
        ctx.artifacts.put(CacheKey("aur", "yay-1-1-x86_64.pkg.tar.zst"), b"pkg")

        unipac.clean_cache(ctx)

        assert ctx.recipes.keys() == []
        assert ctx.artifacts.keys() == [CacheKey("aur", "yay-1-1-x86_64.pkg.tar.zst")]

        unipac.clean_cache(ctx, recipes=False, artifacts=True, indexes=True)

        assert ctx.artifacts.keys() == []
