"""Build Planner - target resolution and the build action DAG.

Target requests:

    prog            exact basename (program, module or submodule)
    src/test/prog   relative path, with or without extension
    src/test/       every program directly in the directory
    src/test//      every program in the directory tree (recursive)
    .               every program directly in the source root
    all exes tests  phony selections (exes = programs in the source root,
    mods deps       tests = programs in the test dir, mods = every module
                    object, deps = resolution only)

``resolve_target`` is a pure function of the unit list and the request
string; it never touches the file system. Files the catalog could not
classify still match: naming one fails with its error, and a bulk target
that covers one fails while its other programs build.

Plans:
    COMPILE(unit) depends on COMPILE of every module the unit imports and,
    for a submodule, on COMPILE of its parent. LINK(program) depends on the
    program's own COMPILE and on COMPILE of every module in its closure plus
    those modules' submodules.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .dependency_resolver import ResolutionReport, missing_module_error
from .errors import AmbiguousTargetError, FmakeError, UnknownTargetError
from .source_catalog import SourceCatalog, SourceUnit, UnitKind

logger = logging.getLogger(__name__)

PHONY_TARGETS = ("all", "exes", "tests", "mods", "deps")
SOURCE_ROOT_MARKER = "."


class ActionKind(Enum):
    """Kind of build action."""

    COMPILE = "compile"
    LINK = "link"


@dataclass
class BuildAction:
    """One compile or link step.

    Attributes:
        action_id: Unique id, "compile:<path>" or "link:<path>"
        kind: COMPILE or LINK
        unit: The compiled unit, or the linked program
        inputs: Files read by the action (source, or objects in link order)
        outputs: Files written by the action, primary artifact first
        prerequisites: Ids of actions that must complete first
    """

    action_id: str
    kind: ActionKind
    unit: SourceUnit
    inputs: list[Path]
    outputs: list[Path]
    prerequisites: set[str] = field(default_factory=set)

    @property
    def label(self) -> str:
        if self.kind == ActionKind.COMPILE:
            return self.unit.path.name
        return self.unit.name

    @property
    def artifact(self) -> Path:
        return self.outputs[0]


@dataclass(frozen=True)
class TargetSelection:
    """Units selected by one target request.

    Attributes:
        request: The request string as given
        units: Selected units (programs are linked, modules compiled)
        resolve_only: True for the "deps" target
        errors: Errors of unclassifiable files the selection covers
    """

    request: str
    units: tuple[SourceUnit, ...]
    resolve_only: bool = False
    errors: tuple[FmakeError, ...] = ()


@dataclass
class BuildPlan:
    """DAG of actions plus a topological execution order.

    Attributes:
        actions: Action id -> action
        order: Topological order of action ids
        targets: Request string -> ids of the actions that deliver it
        errors: Request string -> errors that kept (part of) the target from being planned
    """

    actions: dict[str, BuildAction] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    targets: dict[str, list[str]] = field(default_factory=dict)
    errors: dict[str, list[FmakeError]] = field(default_factory=dict)

    def ordered_actions(self) -> list[BuildAction]:
        return [self.actions[action_id] for action_id in self.order]

    def dependents_of(self, action_id: str) -> set[str]:
        """Every action that (transitively) requires the given action."""
        reverse: dict[str, set[str]] = {}
        for action in self.actions.values():
            for prereq in action.prerequisites:
                reverse.setdefault(prereq, set()).add(action.action_id)
        found: set[str] = set()
        stack = [action_id]
        while stack:
            for dependent in reverse.get(stack.pop(), ()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found


def _relative(path: PurePath, root: PurePath) -> Optional[str]:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return None


def _in_source_root(path: PurePath, source_root: PurePath) -> bool:
    return _relative(path.parent, source_root) == "."


def resolve_target(
    request: str,
    units: Sequence[SourceUnit],
    source_root: PurePath,
    project_root: PurePath,
    test_dir: str = "test",
    broken: Optional[Mapping[Path, FmakeError]] = None,
    module_root: Optional[PurePath] = None,
) -> TargetSelection:
    """Map one target request string to the units it selects.

    Files that failed classification still take part in the match: a name
    or path that points at one raises its error, and a bulk selection that
    covers some carries their errors in ``TargetSelection.errors``.

    Args:
        request: Target request (see module docstring)
        units: Every catalogued unit
        source_root: Root of the source tree
        project_root: Project root (paths may be given relative to it)
        test_dir: Test directory, relative to source_root
        broken: Source path -> classification error, for files that are not units
        module_root: Root of the module tree (default: <source_root>/mod)

    Returns:
        The selection

    Raises:
        AmbiguousTargetError: Several files match a bare name
        ConfigurationMismatchError: The request names a file that failed classification
        UnknownTargetError: Nothing matches
    """
    broken = broken or {}
    module_root = module_root if module_root is not None else source_root / "mod"
    programs = [u for u in units if u.kind == UnitKind.PROGRAM]
    broken_programs = sorted(p for p in broken if _relative(p, module_root) is None)
    broken_modules = sorted(p for p in broken if _relative(p, module_root) is not None)
    normalized = request.replace("\\", "/")

    def select(selected: list[SourceUnit], broken_paths: Iterable[Path], reason: str) -> TargetSelection:
        errors = tuple(broken[p] for p in broken_paths)
        if not selected and not errors:
            raise UnknownTargetError(request, reason)
        return TargetSelection(request, tuple(selected), errors=errors)

    if normalized in PHONY_TARGETS:
        if normalized == "deps":
            return TargetSelection(request, (), resolve_only=True)
        if normalized == "mods":
            return select([u for u in units if u.is_module_like], broken_modules, "no modules in the project")
        selected = []
        failed: list[Path] = []
        if normalized in ("all", "exes"):
            selected += [u for u in programs if _in_source_root(u.path, source_root)]
            failed += [p for p in broken_programs if _in_source_root(p, source_root)]
        if normalized in ("all", "tests"):
            selected += [u for u in programs if _relative(u.path.parent, source_root) == test_dir]
            failed += [p for p in broken_programs if _relative(p.parent, source_root) == test_dir]
        return select(selected, sorted(failed), "no programs to build")

    if normalized == SOURCE_ROOT_MARKER:
        return select(
            [u for u in programs if _in_source_root(u.path, source_root)],
            [p for p in broken_programs if _in_source_root(p, source_root)],
            "no programs in the source root",
        )

    if normalized.endswith("/"):
        recursive = normalized.endswith("//")
        directory = posixpath.normpath(normalized.rstrip("/") or ".")
        selected = [u for u in programs if _in_directory(u.path, directory, recursive, source_root, project_root)]
        where = "in the tree under" if recursive else "directly in"
        return select(
            sorted(selected, key=lambda u: str(u.path)),
            [p for p in broken_programs if _in_directory(p, directory, recursive, source_root, project_root)],
            f"no programs {where} '{directory}'",
        )

    if "/" in normalized:
        path = posixpath.normpath(normalized)
        for unit in units:
            if _matches_path(unit.path, path, source_root, project_root):
                return TargetSelection(request, (unit,))
        for broken_path in sorted(broken):
            if _matches_path(broken_path, path, source_root, project_root):
                raise broken[broken_path]
        raise UnknownTargetError(request, f"no source unit at '{path}'")

    name = normalized.lower()
    stem, ext = posixpath.splitext(name)
    if ext:
        name = stem
    matches = [u.path for u in units if u.basename == name]
    matches += [p for p in sorted(broken) if p.stem.lower() == name]
    if not matches:
        raise UnknownTargetError(request)
    if len(matches) > 1:
        candidates = [_relative(p, project_root) or str(p) for p in matches]
        raise AmbiguousTargetError(request, candidates)
    if matches[0] in broken:
        raise broken[matches[0]]
    return TargetSelection(request, tuple(u for u in units if u.path == matches[0]))


def _in_directory(
    path: PurePath, directory: str, recursive: bool, source_root: PurePath, project_root: PurePath
) -> bool:
    for root in (project_root, source_root):
        parent = _relative(path.parent, root)
        if parent is None:
            continue
        if parent == directory:
            return True
        if recursive and (directory == "." or parent.startswith(directory + "/")):
            return True
    return False


def _matches_path(source: PurePath, path: str, source_root: PurePath, project_root: PurePath) -> bool:
    for root in (project_root, source_root):
        relative = _relative(source, root)
        if relative is None:
            continue
        if relative == path or posixpath.splitext(relative)[0] == path:
            return True
    return False


@dataclass
class SubmodulePolicy:
    """Which submodule objects are linked along with a module.

    By default every catalogued submodule of a linked module is included;
    ``extra_submodules`` adds more (qualified "module:submodule" names) for
    a given module.
    """

    include_catalogued: bool = True
    extra_submodules: dict[str, list[str]] = field(default_factory=dict)

    def submodules_for(self, module_name: str, catalog: SourceCatalog) -> list[SourceUnit]:
        selected = catalog.submodules_of(module_name) if self.include_catalogued else []
        by_name = catalog.by_qualified_name()
        for qualified in self.extra_submodules.get(module_name, []):
            unit = by_name.get(qualified)
            if unit is None or unit.kind != UnitKind.SUBMODULE:
                raise UnknownTargetError(qualified, f"no submodule to link with '{module_name}'")
            if unit not in selected:
                selected.append(unit)
        return selected


class BuildPlanner:
    """Turns target requests into a BuildPlan.

    Args:
        catalog: Classified source units
        report: Settled resolution report
        object_path: Maps a source path to its object file
        executable_path: Maps a program source path to its executable
        interface_dir: Where .mod/.smod files are written
        project_root: Project root for relative target paths
        test_dir: Test directory relative to the source root
        submodule_policy: Submodule link policy
    """

    def __init__(
        self,
        catalog: SourceCatalog,
        report: ResolutionReport,
        object_path: Callable[[Path], Path],
        executable_path: Callable[[Path], Path],
        interface_dir: Path,
        project_root: Path,
        test_dir: str = "test",
        submodule_policy: Optional[SubmodulePolicy] = None,
    ) -> None:
        self.catalog = catalog
        self.report = report
        self.object_path = object_path
        self.executable_path = executable_path
        self.interface_dir = interface_dir
        self.project_root = project_root
        self.test_dir = test_dir
        self.submodule_policy = submodule_policy or SubmodulePolicy()
        self._index = catalog.module_index()
        self._by_qualified = catalog.by_qualified_name()

    def plan(self, requests: Iterable[str]) -> BuildPlan:
        """Build the plan for every request.

        A request that cannot be resolved gets an error and no actions. In
        a bulk request, each selected unit is planned on its own, so one
        broken program does not keep the others from building.
        """
        plan = BuildPlan()
        for request in requests:
            plan.targets.setdefault(request, [])
            try:
                selection = resolve_target(
                    request,
                    self.catalog.units,
                    self.catalog.source_root,
                    self.project_root,
                    test_dir=self.test_dir,
                    broken=self.catalog.errors,
                    module_root=self.catalog.module_root,
                )
            except FmakeError as e:
                logger.warning(f"Cannot resolve target '{request}': {e}")
                _add_error(plan, request, e)
                continue

            if selection.resolve_only:
                for error in self.resolution_errors():
                    _add_error(plan, request, error)
                continue

            for error in selection.errors:
                logger.warning(f"Target '{request}' covers an unusable source file: {error}")
                _add_error(plan, request, error)

            for unit in selection.units:
                actions = dict(plan.actions)
                try:
                    action = self._plan_unit(unit, actions)
                except FmakeError as e:
                    logger.warning(f"Cannot plan {unit.path.name} for target '{request}': {e}")
                    _add_error(plan, request, e)
                    continue
                plan.actions = actions
                if action.action_id not in plan.targets[request]:
                    plan.targets[request].append(action.action_id)

        plan.order = topological_order(plan.actions)
        logger.info(f"Planned {len(plan.actions)} actions for {len(plan.targets)} targets")
        return plan

    def resolution_errors(self) -> list[FmakeError]:
        """Every catalog and resolution error, in a stable order."""
        errors: list[FmakeError] = [self.catalog.errors[path] for path in sorted(self.catalog.errors)]
        seen: set[int] = set()
        for name in sorted(self.report.errors):
            error = self.report.errors[name]
            # Cycle members share one error instance.
            if id(error) not in seen:
                seen.add(id(error))
                errors.append(error)
        return errors

    def _plan_unit(self, unit: SourceUnit, actions: dict[str, BuildAction]) -> BuildAction:
        if unit.kind == UnitKind.PROGRAM:
            return self._plan_link(unit, actions)
        return self._plan_compile(unit, actions)

    def _module(self, importer: SourceUnit, name: str) -> SourceUnit:
        unit = self._index.get(name)
        if unit is None:
            raise missing_module_error(self.catalog, importer, name)
        return unit

    def _required_modules(self, unit: SourceUnit) -> dict[str, SourceUnit]:
        """Modules a program or submodule needs, transitively."""
        roots = list(self.report.imports.get(str(unit.path), ()))
        if unit.kind == UnitKind.SUBMODULE and unit.ancestor:
            roots.append(unit.ancestor)
        required: dict[str, SourceUnit] = {}
        for name in roots:
            required[name] = self._module(unit, name)
            for dep in self.report.closure_of(name):
                required[dep] = self._index[dep]
        return required

    def _link_units(self, program: SourceUnit) -> list[SourceUnit]:
        """Module and submodule objects a program links, in link order."""
        modules = self._required_modules(program)
        submodules: dict[str, SourceUnit] = {}
        pending = list(modules.values())
        while pending:
            module = pending.pop()
            for sub in self.submodule_policy.submodules_for(module.name, self.catalog):
                if sub.qualified_name in submodules:
                    continue
                submodules[sub.qualified_name] = sub
                for name, dep in self._required_modules(sub).items():
                    if name not in modules:
                        modules[name] = dep
                        pending.append(dep)

        ordered: list[SourceUnit] = []
        for module in _dependency_sorted(list(modules.values()), self.report):
            ordered.append(module)
            ordered.extend(
                sorted(
                    (s for s in submodules.values() if s.ancestor == module.name),
                    key=lambda s: (len(s.path.parts), str(s.path)),
                )
            )
        return ordered

    def _plan_compile(self, unit: SourceUnit, actions: dict[str, BuildAction]) -> BuildAction:
        action_id = f"compile:{self._key(unit)}"
        if action_id in actions:
            return actions[action_id]

        if unit.kind == UnitKind.MODULE:
            # Raises for modules on a cycle or with unresolved imports.
            self.report.closure_of(unit.name)

        prereqs: set[str] = set()
        for name in self.report.imports.get(str(unit.path), ()):
            prereqs.add(self._plan_compile(self._module(unit, name), actions).action_id)

        outputs = [self.object_path(unit.path)]
        if unit.kind == UnitKind.MODULE:
            outputs.append(self.interface_dir / f"{unit.name}.mod")
        elif unit.kind == UnitKind.SUBMODULE:
            parent = self._by_qualified.get(unit.parent or "")
            if parent is None:
                raise UnknownTargetError(unit.qualified_name, f"parent '{unit.parent}' not found")
            prereqs.add(self._plan_compile(parent, actions).action_id)
            outputs.append(self.interface_dir / f"{unit.ancestor}@{unit.name}.smod")

        action = BuildAction(
            action_id=action_id,
            kind=ActionKind.COMPILE,
            unit=unit,
            inputs=[unit.path],
            outputs=outputs,
            prerequisites=prereqs,
        )
        actions[action_id] = action
        return action

    def _plan_link(self, program: SourceUnit, actions: dict[str, BuildAction]) -> BuildAction:
        action_id = f"link:{self._key(program)}"
        if action_id in actions:
            return actions[action_id]

        compile_program = self._plan_compile(program, actions)
        prereqs = {compile_program.action_id}
        objects = [compile_program.artifact]
        for unit in self._link_units(program):
            compile_action = self._plan_compile(unit, actions)
            prereqs.add(compile_action.action_id)
            objects.append(compile_action.artifact)

        action = BuildAction(
            action_id=action_id,
            kind=ActionKind.LINK,
            unit=program,
            inputs=objects,
            outputs=[self.executable_path(program.path)],
            prerequisites=prereqs,
        )
        actions[action_id] = action
        return action

    def _key(self, unit: SourceUnit) -> str:
        return _relative(unit.path, self.project_root) or str(unit.path)


def _add_error(plan: BuildPlan, request: str, error: FmakeError) -> None:
    errors = plan.errors.setdefault(request, [])
    if not any(error is known for known in errors):
        errors.append(error)


def _dependency_sorted(modules: list[SourceUnit], report: ResolutionReport) -> list[SourceUnit]:
    """Order modules so that each follows every module in its closure.

    A module's closure strictly contains the closure of anything it
    imports, so sorting by closure size is a valid topological order.
    """
    return sorted(modules, key=lambda m: (len(report.closures.get(m.name, ())), m.name))


def topological_order(actions: Mapping[str, BuildAction]) -> list[str]:
    """Kahn's algorithm, ties broken by action id for a deterministic order.

    Raises:
        ValueError: If the actions do not form a DAG
    """
    remaining = {aid: set(a.prerequisites) & set(actions) for aid, a in actions.items()}
    order: list[str] = []
    ready = sorted(aid for aid, prereqs in remaining.items() if not prereqs)
    while ready:
        current = ready.pop(0)
        order.append(current)
        del remaining[current]
        released = []
        for aid, prereqs in remaining.items():
            if current in prereqs:
                prereqs.discard(current)
                if not prereqs:
                    released.append(aid)
        ready = sorted(ready + released)
    if remaining:
        raise ValueError(f"Build plan contains a cycle among: {', '.join(sorted(remaining))}")
    return order
