"""Tests for RemovalPlanner reverse-dependency analysis."""

import pytest

from common.errors import PackageNotFound
from registry.models import PackageRef, Source
from registry.pacman import InstalledPackage
from removal.planner import RemovalPlanner


class FakeDatabase:
    def __init__(self, *packages):
        self.packages = {p.name: p for p in packages}

    def installed_database(self):
        return self.packages


def pkg(name, depends=(), provides=(), foreign=False, explicit=True):
    return InstalledPackage(name, "1.0-1", list(depends), list(provides), foreign, explicit)


def repo(name):
    return PackageRef(name, Source.SYSTEM)


@pytest.fixture
def database():
    return FakeDatabase(
        pkg("libfoo", provides=["libfoo.so"]),
        pkg("app-bar", depends=["libfoo"], foreign=True),
        pkg("app-baz", depends=["app-bar"]),
        pkg("tool", depends=["libfoo.so"]),
        pkg("standalone"),
    )


class TestRemovalPlanner:
    """Plans without cascade report blockers; cascade removes the closure."""

    def test_direct_dependents_block(self, database):
        plan = RemovalPlanner(database).plan("libfoo")

        assert plan.is_blocking
        assert plan.direct_dependents == {PackageRef("app-bar", Source.SOURCE_BUILD), repo("tool")}
        assert plan.removal_set == [repo("libfoo")]

    def test_no_dependents(self, database):
        plan = RemovalPlanner(database).plan("standalone")

        assert not plan.is_blocking
        assert plan.dependents == []

    def test_cascade_removes_transitive_dependents(self, database):
        plan = RemovalPlanner(database).plan("libfoo", cascade=True)

        assert not plan.is_blocking
        assert plan.removal_set == [
            repo("libfoo"),
            PackageRef("app-bar", Source.SOURCE_BUILD),
            repo("app-baz"),
            repo("tool"),
        ]

    def test_dependency_provided_elsewhere_is_not_broken(self):
        database = FakeDatabase(
            pkg("jdk17", provides=["java-runtime"]),
            pkg("jdk21", provides=["java-runtime"]),
            pkg("ide", depends=["java-runtime"]),
        )

        plan = RemovalPlanner(database).plan("jdk17")

        assert not plan.is_blocking

    def test_last_provider_blocks(self):
        database = FakeDatabase(pkg("jdk17", provides=["java-runtime"]), pkg("ide", depends=["java-runtime"]))

        plan = RemovalPlanner(database).plan("jdk17")

        assert plan.direct_dependents == {repo("ide")}

    def test_not_installed(self, database):
        with pytest.raises(PackageNotFound):
            RemovalPlanner(database).plan("ghost")

    def test_sandboxed_app_has_no_dependents(self, database):
        target = PackageRef("org.gimp.GIMP", Source.FLATPAK)

        plan = RemovalPlanner(database).plan(target)

        assert plan.removal_set == [target]
        assert not plan.is_blocking


class TestOrphans:
    """Dependencies nothing needs, including ones freed by other orphans."""

    def test_orphan_closure(self):
        database = FakeDatabase(
            pkg("app", depends=["libfoo"]),
            pkg("libfoo", explicit=False),
            pkg("old-tool", depends=["old-lib"], foreign=True, explicit=False),
            pkg("old-lib", explicit=False),
            pkg("gtk-doc", provides=["docs"], explicit=False),
            pkg("standalone"),
        )

        orphans = RemovalPlanner(database).orphans()

        assert orphans == [repo("gtk-doc"), repo("old-lib"), PackageRef("old-tool", Source.SOURCE_BUILD)]

    def test_dependency_of_explicit_package_is_kept(self):
        database = FakeDatabase(
            pkg("tool", depends=["libfoo.so"]),
            pkg("libfoo", provides=["libfoo.so"], explicit=False),
        )

        assert RemovalPlanner(database).orphans() == []

    def test_nothing_installed_as_dependency(self, database):
        assert RemovalPlanner(database).orphans() == []
