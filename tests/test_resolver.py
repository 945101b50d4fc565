"""Tests for DependencyResolver build ordering."""

import pytest

from common.errors import DependencyCycle, PackageNotFound, ResolveError, VersionUnsatisfiable
from registry.models import PackageRef, Source
from resolution import DependencyResolver, NodeState
from fakes import FakeLookup, aur_meta, system_meta


def aur(name):
    return PackageRef(name, Source.SOURCE_BUILD)


class TestResolveOrder:
    """Ordering of resolved graphs."""

    def test_chain_builds_dependencies_first(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["b"]), aur_meta("b", depends=["c"]), aur_meta("c")])

        order = DependencyResolver(lookup).resolve([aur("a")])

        assert order.names() == ["c", "b", "a"]
        assert [n.explicit for n in order] == [False, False, True]
        assert all(n.state is NodeState.READY for n in order)

    def test_diamond_breaks_ties_by_name(self):
        lookup = FakeLookup(aur=[
            aur_meta("a", depends=["c", "b"]),
            aur_meta("b", depends=["d"]),
            aur_meta("c", depends=["d"]),
            aur_meta("d"),
        ])

        order = DependencyResolver(lookup).resolve([aur("a")])

        assert order.names() == ["d", "b", "c", "a"]

    def test_order_is_deterministic(self):
        metas = [
            aur_meta("zeta", depends=["alpha", "mid"]),
            aur_meta("mid"),
            aur_meta("alpha"),
            aur_meta("omega", depends=["mid"]),
        ]
        first = DependencyResolver(FakeLookup(aur=metas)).resolve([aur("zeta"), aur("omega")])
        second = DependencyResolver(FakeLookup(aur=list(reversed(metas)))).resolve([aur("omega"), aur("zeta")])

        assert first.names() == second.names() == ["alpha", "mid", "omega", "zeta"]

    def test_make_depends_become_build_edges(self):
        lookup = FakeLookup(aur=[aur_meta("app", make_depends=["tool"]), aur_meta("tool")])

        order = DependencyResolver(lookup).resolve([aur("app")])

        assert order.names() == ["tool", "app"]
        assert order[1].build_depends == {aur("tool")}
        assert order[1].depends == set()

    def test_roots_depending_on_each_other(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["b"]), aur_meta("b")])

        order = DependencyResolver(lookup).resolve([aur("a"), aur("b")])

        assert order.names() == ["b", "a"]
        assert all(n.explicit for n in order)

    def test_virtual_dependency_resolved_through_provides(self):
        lookup = FakeLookup(aur=[
            aur_meta("app", depends=["libfoo>=1.0"]),
            aur_meta("libfoo-git", version="r12.abc-1", provides=["libfoo=2.0"]),
        ])

        order = DependencyResolver(lookup).resolve([aur("app")])

        assert order.names() == ["libfoo-git", "app"]


class TestPrebuiltAndInstalled:
    """System packages and installed dependencies are terminal."""

    def test_system_dependency_is_prebuilt(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["glibc"])], system=[system_meta("glibc")])

        order = DependencyResolver(lookup).resolve([aur("a")])

        assert order.names() == ["a"]
        assert order.prebuilt == {PackageRef("glibc", Source.SYSTEM)}
        assert PackageRef("glibc", Source.SYSTEM) in order[0].depends

    def test_classification_is_memoised(self):
        lookup = FakeLookup(
            aur=[aur_meta("a", depends=["b", "glibc"]), aur_meta("b", depends=["glibc"])],
            system=[system_meta("glibc")],
        )

        DependencyResolver(lookup).resolve([aur("a")])

        assert lookup.classified.count("glibc") == 1

    def test_installed_dependency_is_skipped(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["b>=1.0"]), aur_meta("b")], installed={"b": "1.2-1"})

        order = DependencyResolver(lookup).resolve([aur("a")])

        assert order.names() == ["a"]
        assert "b" not in lookup.classified

    def test_outdated_installed_dependency_is_rebuilt(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["b>=1.0"]), aur_meta("b")], installed={"b": "0.9-1"})

        order = DependencyResolver(lookup).resolve([aur("a")])

        assert order.names() == ["b", "a"]


class TestResolveErrors:
    """Failures abort resolution with a typed error."""

    def test_cycle_reports_full_path(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["b"]), aur_meta("b", depends=["c"]), aur_meta("c", depends=["a"])])

        with pytest.raises(DependencyCycle) as excinfo:
            DependencyResolver(lookup).resolve([aur("a")])

        assert excinfo.value.path == ["a", "b", "c", "a"]

    def test_self_cycle(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["a"])])

        with pytest.raises(DependencyCycle) as excinfo:
            DependencyResolver(lookup).resolve([aur("a")])

        assert excinfo.value.path == ["a", "a"]

    def test_version_unsatisfiable(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["b>=2.0"]), aur_meta("b", version="1.0-1")])

        with pytest.raises(VersionUnsatisfiable) as excinfo:
            DependencyResolver(lookup).resolve([aur("a")])

        assert excinfo.value.constraint == "b>=2.0"
        assert excinfo.value.available == "1.0-1"

    def test_missing_dependency_names_requirer(self):
        lookup = FakeLookup(aur=[aur_meta("a", depends=["ghost"])])

        with pytest.raises(PackageNotFound) as excinfo:
            DependencyResolver(lookup).resolve([aur("a")])

        assert excinfo.value.required_by == "a"

    def test_depth_cap(self):
        lookup = FakeLookup(aur=[
            aur_meta("p0", depends=["p1"]),
            aur_meta("p1", depends=["p2"]),
            aur_meta("p2", depends=["p3"]),
            aur_meta("p3"),
        ])

        with pytest.raises(ResolveError) as excinfo:
            DependencyResolver(lookup, max_depth=3).resolve([aur("p0")])

        assert not isinstance(excinfo.value, DependencyCycle)
        assert "p0 -> p1 -> p2 -> p3" in str(excinfo.value)

    def test_rejects_non_source_build_roots(self):
        with pytest.raises(ValueError):
            DependencyResolver(FakeLookup()).resolve([PackageRef("glibc", Source.SYSTEM)])
