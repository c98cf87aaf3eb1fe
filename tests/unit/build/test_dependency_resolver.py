"""Tests for module closure resolution, cycle detection and cache invalidation."""

import random

import pytest

from fmake.build.dependency_resolver import DependencyResolver
from fmake.build.errors import ConfigurationMismatchError, CyclicDependencyError, UnresolvedImportError
from fmake.build.import_scanner import ImportScanner
from fmake.build.source_catalog import SourceCatalog
from fmake.build.unit_cache import JsonUnitCacheStore, MemoryUnitCacheStore


def resolve(project, cache):
    catalog = SourceCatalog.discover(project.src)
    scanner = ImportScanner(cache)
    report = DependencyResolver(catalog, cache).resolve(scanner.scan_all(catalog.units))
    return report, scanner


def reference_closure(graph, name):
    seen = set()
    stack = list(graph[name])
    while stack:
        dep = stack.pop()
        if dep not in seen:
            seen.add(dep)
            stack.extend(graph[dep])
    return seen


class TestClosures:
    """Test closure computation."""

    def test_chain(self, project):
        project.module("top", ["mid"])
        project.module("mid", ["leaf"])
        project.module("leaf")

        report, _ = resolve(project, MemoryUnitCacheStore())

        assert report.errors == {}
        assert report.closure_of("top") == {"mid", "leaf"}
        assert report.closure_of("mid") == {"leaf"}
        assert report.closure_of("leaf") == frozenset()

    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    def test_random_dag_matches_reference(self, project, seed):
        rng = random.Random(seed)
        names = [f"m{i:02d}" for i in range(12)]
        graph = {
            name: [other for other in names[i + 1 :] if rng.random() < 0.3] for i, name in enumerate(names)
        }
        for name, uses in graph.items():
            project.module(name, uses)

        report, _ = resolve(project, MemoryUnitCacheStore())

        assert report.errors == {}
        for name in names:
            assert report.closure_of(name) == reference_closure(graph, name)

    def test_intrinsic_imports_are_not_graph_edges(self, project):
        project.write(
            "src/mod/kinds.f90",
            "module kinds\n  use, intrinsic :: iso_fortran_env\n  use iso_c_binding\nend module kinds\n",
        )

        report, _ = resolve(project, MemoryUnitCacheStore())

        assert report.closure_of("kinds") == frozenset()

    def test_submodule_imports_do_not_change_module_closures(self, project):
        project.module("solver")
        project.module("blas")
        project.submodule("solver", "impl", uses=["blas"])

        report, _ = resolve(project, MemoryUnitCacheStore())

        assert report.closure_of("solver") == frozenset()
        assert report.imports[str(project.mod / "solver" / "impl.f90")] == ("blas",)

    def test_unknown_module_raises_key_error(self, project):
        project.module("a")
        report, _ = resolve(project, MemoryUnitCacheStore())
        with pytest.raises(KeyError):
            report.closure_of("nope")


class TestResolutionErrors:
    """Test per-module error recording."""

    @pytest.mark.parametrize("length", [1, 2, 3, 5])
    def test_cycle_names_every_member(self, project, length):
        names = [f"c{i}" for i in range(length)]
        for i, name in enumerate(names):
            project.module(name, [names[(i + 1) % length]])
        project.module("user", ["c0"])
        project.module("standalone")

        report, _ = resolve(project, MemoryUnitCacheStore())

        for name in names + ["user"]:
            error = report.errors[name]
            assert isinstance(error, CyclicDependencyError)
            assert error.members == set(names)
            with pytest.raises(CyclicDependencyError):
                report.closure_of(name)
        assert error.cycle[0] == error.cycle[-1]
        assert report.closure_of("standalone") == frozenset()

    def test_cycle_closures_are_not_cached(self, project):
        project.module("a", ["b"])
        project.module("b", ["a"])
        cache = MemoryUnitCacheStore()

        resolve(project, cache)

        assert all(cache.get(key).closure is None for key in cache.keys())

    def test_unresolved_import(self, project):
        project.module("a", ["ghost"])
        project.module("b", ["a"])
        project.module("c")

        report, _ = resolve(project, MemoryUnitCacheStore())

        error = report.errors["a"]
        assert isinstance(error, UnresolvedImportError)
        assert error.importer == "a"
        assert error.module_name == "ghost"
        assert report.errors["b"] is error
        assert "c" not in report.errors

    def test_broken_module_reports_configuration_mismatch(self, project):
        project.write("src/mod/kinds.f90", "module precision\nend module precision\n")
        project.module("solver", ["kinds"])

        report, _ = resolve(project, MemoryUnitCacheStore())

        error = report.errors["solver"]
        assert isinstance(error, ConfigurationMismatchError)
        assert "module name does not match file name" in str(error)


class TestIncrementalResolution:
    """Test cache reuse and the invalidation fixed point."""

    def _chain(self, project):
        project.module("top", ["mid"])
        project.module("mid", ["leaf"])
        leaf = project.module("leaf")
        project.module("other")
        project.module("sibling", ["other"])
        return leaf

    def test_second_run_does_not_rescan(self, project, tmp_path):
        self._chain(project)
        resolve(project, JsonUnitCacheStore(tmp_path / "cache"))

        report, scanner = resolve(project, JsonUnitCacheStore(tmp_path / "cache"))

        assert scanner.scan_count == 0
        assert report.invalidated == set()
        assert report.reused == {"top", "mid", "leaf", "other", "sibling"}
        assert report.closure_of("top") == {"mid", "leaf"}

    def test_changed_leaf_invalidates_exactly_its_ancestors(self, project, tmp_path):
        leaf = self._chain(project)
        resolve(project, JsonUnitCacheStore(tmp_path / "cache"))
        leaf.write_text("module leaf\n  implicit none\n  integer :: changed\nend module leaf\n")
        project.touch(leaf)

        report, scanner = resolve(project, JsonUnitCacheStore(tmp_path / "cache"))

        assert scanner.scan_count == 1
        assert report.invalidated == {"leaf", "mid", "top"}
        assert report.reused == {"other", "sibling"}
        assert report.passes >= 2

    def test_touched_leaf_invalidates_nothing(self, project, tmp_path):
        leaf = self._chain(project)
        resolve(project, JsonUnitCacheStore(tmp_path / "cache"))
        project.touch(leaf)

        report, scanner = resolve(project, JsonUnitCacheStore(tmp_path / "cache"))

        assert scanner.scan_count == 0
        assert report.invalidated == set()

    def test_new_import_is_picked_up(self, project):
        leaf = self._chain(project)
        cache = MemoryUnitCacheStore()
        resolve(project, cache)
        leaf.write_text("module leaf\n  use other\nend module leaf\n")
        project.touch(leaf)

        report, _ = resolve(project, cache)

        assert report.closure_of("top") == {"mid", "leaf", "other"}
        assert "sibling" in report.reused

    def test_deleted_module_fails_its_importers_and_is_pruned(self, project):
        leaf = self._chain(project)
        cache = MemoryUnitCacheStore()
        resolve(project, cache)
        leaf.unlink()

        report, _ = resolve(project, cache)

        assert isinstance(report.errors["mid"], UnresolvedImportError)
        assert report.errors["top"] is report.errors["mid"]
        assert str(leaf) not in cache.keys()
        assert "sibling" in report.reused

    def test_corrupt_cache_entry_is_rescanned(self, project, tmp_path):
        self._chain(project)
        resolve(project, JsonUnitCacheStore(tmp_path / "cache"))
        for entry_file in (tmp_path / "cache").glob("*.json"):
            entry_file.write_text("{")

        report, scanner = resolve(project, JsonUnitCacheStore(tmp_path / "cache"))

        assert scanner.scan_count == 5
        assert report.closure_of("top") == {"mid", "leaf"}
