"""Dependency Resolver - module import graph and transitive closures.

Builds the module graph from the USE statements of every module and
submodule, then computes, for each module, the set of modules it needs
transitively. Program imports are not graph nodes; the planner consumes
them directly.

Resolution runs in two phases:

1. Invalidation, iterated to a fixed point. A module's cached closure is
   stale when its own source was rescanned, when it has no cached closure,
   or when any module inside the cached closure is stale or gone. Each pass
   can only add to the stale set, and nothing is computed until a pass adds
   nothing. This is the barrier after which closures are safe to plan on.
2. Closure computation by depth-first search over stale modules, reusing
   cached closures for everything else.

Errors are kept per module. A cycle fails every module on it (and every
module that reaches it); an unknown import fails the importing module. No
closure is written to the cache for a failed module.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping

from .errors import CyclicDependencyError, FmakeError, UnresolvedImportError
from .import_scanner import ScanResult
from .source_catalog import SourceCatalog, SourceUnit
from .unit_cache import CacheEntry, UnitCacheStore

logger = logging.getLogger(__name__)


@dataclass
class ResolutionReport:
    """Final, settled result of dependency resolution.

    Attributes:
        closures: Module name -> transitive closure (sorted module names)
        errors: Module name -> error that prevented its closure
        imports: Unit path -> raw imports (all unit kinds)
        invalidated: Module names whose cached closure was discarded this run
        reused: Module names whose cached closure was reused
        passes: Invalidation passes needed to reach the fixed point
    """

    closures: dict[str, frozenset[str]] = field(default_factory=dict)
    errors: dict[str, FmakeError] = field(default_factory=dict)
    imports: dict[str, tuple[str, ...]] = field(default_factory=dict)
    invalidated: set[str] = field(default_factory=set)
    reused: set[str] = field(default_factory=set)
    passes: int = 0

    def closure_of(self, module_name: str) -> frozenset[str]:
        """Closure of one module.

        Raises:
            FmakeError: The error recorded for the module, if resolution failed
            KeyError: If the module is unknown
        """
        if module_name in self.errors:
            raise self.errors[module_name]
        return self.closures[module_name]


class DependencyResolver:
    """Resolves module closures with cache reuse and cycle detection.

    Args:
        catalog: Classified source units
        cache: Cache store shared with the ImportScanner
    """

    def __init__(self, catalog: SourceCatalog, cache: UnitCacheStore) -> None:
        self.catalog = catalog
        self.cache = cache
        self._index: dict[str, SourceUnit] = catalog.module_index()
        self._graph: dict[str, tuple[str, ...]] = {}
        self._closures: dict[str, frozenset[str]] = {}
        self._errors: dict[str, FmakeError] = {}

    def resolve(self, scans: Mapping[str, ScanResult]) -> ResolutionReport:
        """Resolve every module closure.

        Args:
            scans: Unit path -> ScanResult for every catalogued unit

        Returns:
            The settled ResolutionReport
        """
        report = ResolutionReport()
        report.imports = {path: result.imports for path, result in scans.items()}
        self._graph = {
            unit.name: scans[str(unit.path)].imports for unit in self._index.values() if str(unit.path) in scans
        }
        self._closures = {}
        self._errors = {}

        cached = self._load_cached_closures(scans)
        stale = self._invalidate_to_fixed_point(scans, cached, report)
        report.invalidated = stale
        report.reused = set(cached) - stale

        for name in sorted(report.reused):
            self._closures[name] = cached[name]
        for name in sorted(self._graph):
            if name in self._closures or name in self._errors:
                continue
            try:
                self._closure(name, [])
            except FmakeError as e:
                logger.warning(f"Cannot resolve module '{name}': {e}")

        for name in sorted(stale):
            if name in self._closures:
                self._store_closure(name, scans)

        for path in self.catalog.errors:
            self.cache.delete(str(path))
        self.cache.prune(scans.keys())

        report.closures = dict(self._closures)
        report.errors = dict(self._errors)
        logger.info(
            f"Resolved {len(report.closures)} module closures "
            f"({len(report.reused)} reused, {len(report.invalidated)} recomputed, "
            f"{len(report.errors)} failed) in {report.passes} invalidation passes"
        )
        return report

    def _load_cached_closures(self, scans: Mapping[str, ScanResult]) -> dict[str, frozenset[str]]:
        cached: dict[str, frozenset[str]] = {}
        for name, unit in self._index.items():
            result = scans.get(str(unit.path))
            if result is None or result.rescanned:
                continue
            entry = self.cache.get(str(unit.path))
            if entry is not None and entry.closure is not None and entry.fingerprint == result.fingerprint:
                cached[name] = frozenset(entry.closure)
        return cached

    def _invalidate_to_fixed_point(
        self,
        scans: Mapping[str, ScanResult],
        cached: Mapping[str, frozenset[str]],
        report: ResolutionReport,
    ) -> set[str]:
        stale = {name for name in self._graph if name not in cached}
        for name, unit in self._index.items():
            result = scans.get(str(unit.path))
            if result is not None and result.rescanned:
                stale.add(name)

        while True:
            report.passes += 1
            newly_stale = {
                name
                for name, closure in cached.items()
                if name not in stale and any(dep in stale or dep not in self._graph for dep in closure)
            }
            if not newly_stale:
                break
            logger.debug(f"Invalidation pass {report.passes}: {sorted(newly_stale)}")
            stale |= newly_stale
        return stale

    def _closure(self, name: str, path: list[str]) -> frozenset[str]:
        """Depth-first closure of one module, memoised.

        Args:
            name: Module to resolve
            path: Modules on the current DFS path (for cycle detection)

        Raises:
            CyclicDependencyError: If name is already on the path
            UnresolvedImportError: If an import names no known module
        """
        if name in self._closures:
            return self._closures[name]
        if name in self._errors:
            raise self._errors[name]
        if name in path:
            cycle = path[path.index(name) :] + [name]
            error = CyclicDependencyError(cycle)
            for member in cycle:
                self._errors.setdefault(member, error)
            raise error

        path.append(name)
        try:
            closure: set[str] = set()
            for dep in self._graph.get(name, ()):
                if dep not in self._graph:
                    raise missing_module_error(self.catalog, self._index[name], dep)
                closure.add(dep)
                closure |= self._closure(dep, path)
        except FmakeError as e:
            self._errors.setdefault(name, e)
            raise
        finally:
            path.pop()

        result = frozenset(closure)
        self._closures[name] = result
        return result

    def _store_closure(self, name: str, scans: Mapping[str, ScanResult]) -> None:
        unit = self._index[name]
        result = scans[str(unit.path)]
        self.cache.put(
            CacheEntry(str(unit.path), result.fingerprint, list(result.imports), sorted(self._closures[name]))
        )


def missing_module_error(catalog: SourceCatalog, importer: SourceUnit, module_name: str) -> FmakeError:
    """Error for an import that names no usable module.

    If the module's own file exists but failed classification, its
    ConfigurationMismatchError is more useful than "not found".
    """
    broken = catalog.broken_names.get(module_name)
    if broken is not None:
        return broken
    return UnresolvedImportError(importer.qualified_name, module_name, importer.path)
