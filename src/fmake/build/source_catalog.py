"""Source Catalog - discovery and classification of Fortran source units.

Walks the source tree and turns every source file into a SourceUnit:

    src/                 PROGRAM    (any file outside the module tree)
    ├── mod/             MODULE     (files directly in the module dir)
    │   └── parent/      SUBMODULE  (nested dirs mirror the submodule tree)
    │       └── child/   SUBMODULE  (submodule (parent:child) leaf)
    └── test/            PROGRAM

The declared name is read from the unit's header statement and must match
the file name. Files that break this rule, or whose directory does not
mirror their declared submodule parent, are recorded as errors on the
catalog instead of aborting discovery, so only targets that reach them fail.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from .errors import ConfigurationMismatchError

logger = logging.getLogger(__name__)

_NAME = r"([a-z_][a-z0-9_]*)"
_MODULE_RE = re.compile(r"^\s*module\s+(?!procedure\b)" + _NAME + r"\s*(?:!.*)?$", re.IGNORECASE)
_SUBMODULE_RE = re.compile(
    r"^\s*submodule\s*\(\s*" + _NAME + r"\s*(?::\s*" + _NAME + r"\s*)?\)\s*" + _NAME,
    re.IGNORECASE,
)
_PROGRAM_RE = re.compile(r"^\s*program\s+" + _NAME, re.IGNORECASE)


class UnitKind(Enum):
    """Kind of compilation unit."""

    PROGRAM = "program"
    MODULE = "module"
    SUBMODULE = "submodule"


@dataclass(frozen=True)
class Declaration:
    """Header statement found in a source file.

    Attributes:
        kind: Declared unit kind
        name: Declared name (lower case)
        ancestor: Ancestor module (submodules only)
        parent: Direct parent submodule, if the qualifier names one
    """

    kind: UnitKind
    name: str
    ancestor: Optional[str] = None
    parent: Optional[str] = None


def parse_declaration(text: str) -> Optional[Declaration]:
    """Find the first program/module/submodule header in source text.

    Args:
        text: Fortran source text

    Returns:
        The declaration, or None if the text has no header statement
    """
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("!"):
            continue
        match = _SUBMODULE_RE.match(line)
        if match:
            ancestor, parent, name = (g.lower() if g else None for g in match.groups())
            return Declaration(UnitKind.SUBMODULE, name, ancestor=ancestor, parent=parent)  # type: ignore[arg-type]
        match = _MODULE_RE.match(line)
        if match:
            return Declaration(UnitKind.MODULE, match.group(1).lower())
        match = _PROGRAM_RE.match(line)
        if match:
            return Declaration(UnitKind.PROGRAM, match.group(1).lower())
    return None


@dataclass(frozen=True)
class SourceUnit:
    """One compilation unit (one source file).

    Attributes:
        path: Absolute source path (identity)
        name: Declared name, lower case
        kind: PROGRAM, MODULE or SUBMODULE
        ancestor: Root module of a submodule tree (submodules only)
        parent: Qualified name of the direct parent, "mod" or "mod:sub" (submodules only)
        mtime_ns: Modification time at discovery
    """

    path: Path
    name: str
    kind: UnitKind
    ancestor: Optional[str] = None
    parent: Optional[str] = None
    mtime_ns: int = 0

    @property
    def qualified_name(self) -> str:
        """Name unique within its namespace: "mod", "mod:sub" or the program name."""
        if self.kind == UnitKind.SUBMODULE:
            return f"{self.ancestor}:{self.name}"
        return self.name

    @property
    def basename(self) -> str:
        """File name without directories or extension."""
        return self.path.stem.lower()

    @property
    def is_module_like(self) -> bool:
        return self.kind in (UnitKind.MODULE, UnitKind.SUBMODULE)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.qualified_name} ({self.path})"


@dataclass
class SourceCatalog:
    """Every source unit of a project, plus the files that failed classification.

    Attributes:
        source_root: Root of the source tree
        module_root: Root of the module tree
        units: Successfully classified units, sorted by path
        errors: Per-file classification errors
        broken_names: Module/submodule names whose defining file is broken
    """

    source_root: Path
    module_root: Path
    units: list[SourceUnit] = field(default_factory=list)
    errors: dict[Path, ConfigurationMismatchError] = field(default_factory=dict)
    broken_names: dict[str, ConfigurationMismatchError] = field(default_factory=dict)

    @classmethod
    def discover(cls, source_root: Path, module_dir: str = "mod", extension: str = "f90") -> "SourceCatalog":
        """Walk the source tree and classify every source file.

        Args:
            source_root: Root of the source tree (e.g. <project>/src)
            module_dir: Module tree directory, relative to source_root
            extension: Source extension without the dot

        Returns:
            A populated SourceCatalog (missing source_root yields an empty one)
        """
        catalog = cls(source_root=source_root, module_root=source_root / module_dir)
        if not source_root.is_dir():
            logger.warning(f"Source directory not found: {source_root}")
            return catalog

        suffix = "." + extension.lower().lstrip(".")
        files = sorted(p for p in source_root.rglob("*") if p.is_file() and p.suffix.lower() == suffix)
        logger.debug(f"Found {len(files)} source files under {source_root}")

        for path in files:
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
                unit = catalog.classify(path, text, path.stat().st_mtime_ns)
            except ConfigurationMismatchError as e:
                catalog._record_error(path, e)
                continue
            except OSError as e:
                catalog._record_error(path, ConfigurationMismatchError(path, f"unreadable source file: {e}"))
                continue
            catalog.units.append(unit)

        catalog.link()
        logger.info(
            f"Catalogued {len(catalog.units)} units "
            f"({len(catalog.programs())} programs, {len(catalog.modules())} modules, "
            f"{len(catalog.submodules())} submodules, {len(catalog.errors)} errors)"
        )
        return catalog

    def classify(self, path: Path, text: str, mtime_ns: int = 0) -> SourceUnit:
        """Classify one file by location and declared name.

        Raises:
            ConfigurationMismatchError: If the declaration does not fit the file
        """
        declaration = parse_declaration(text)
        stem = path.stem.lower()

        try:
            module_parts = path.relative_to(self.module_root).parts
        except ValueError:
            module_parts = ()

        if len(module_parts) == 1:
            if declaration is None or declaration.kind != UnitKind.MODULE:
                raise ConfigurationMismatchError(path, "no module declaration found in module directory")
            _check_name(path, declaration.name, stem)
            return SourceUnit(path=path, name=declaration.name, kind=UnitKind.MODULE, mtime_ns=mtime_ns)

        if len(module_parts) > 1:
            if declaration is None or declaration.kind != UnitKind.SUBMODULE:
                raise ConfigurationMismatchError(path, "no submodule declaration found in submodule directory")
            _check_name(path, declaration.name, stem)
            dirs = [d.lower() for d in module_parts[:-1]]
            expected = [declaration.ancestor] + ([declaration.parent] if declaration.parent else [])
            if dirs[0] != declaration.ancestor or (declaration.parent and dirs[-1] != declaration.parent):
                raise ConfigurationMismatchError(
                    path,
                    f"submodule directory '{'/'.join(dirs)}' does not mirror declared parent "
                    f"'{':'.join(expected)}'",  # type: ignore[arg-type]
                )
            if not declaration.parent and len(dirs) != 1:
                raise ConfigurationMismatchError(
                    path, f"submodule of '{declaration.ancestor}' must live directly in '{declaration.ancestor}/'"
                )
            parent = f"{declaration.ancestor}:{declaration.parent}" if declaration.parent else declaration.ancestor
            return SourceUnit(
                path=path,
                name=declaration.name,
                kind=UnitKind.SUBMODULE,
                ancestor=declaration.ancestor,
                parent=parent,
                mtime_ns=mtime_ns,
            )

        if declaration is not None and declaration.kind != UnitKind.PROGRAM:
            raise ConfigurationMismatchError(
                path, f"{declaration.kind.value} '{declaration.name}' found outside the module directory"
            )
        if declaration is not None:
            _check_name(path, declaration.name, stem)
        return SourceUnit(path=path, name=stem, kind=UnitKind.PROGRAM, mtime_ns=mtime_ns)

    def link(self) -> None:
        """Validate names and parent links across the whole catalog.

        Duplicate module or submodule names and submodules whose parent is
        missing (or sits in a different directory) are moved from ``units``
        to ``errors``. Runs until no further unit is removed, since removing
        a parent orphans its children.
        """
        seen: dict[str, list[SourceUnit]] = {}
        for unit in self.units:
            if unit.is_module_like:
                seen.setdefault(unit.qualified_name, []).append(unit)
        for name, group in seen.items():
            if len(group) > 1:
                paths = ", ".join(str(u.path) for u in group)
                for unit in group:
                    self._record_error(unit.path, ConfigurationMismatchError(unit.path, f"duplicate name '{name}' ({paths})"))
        self.units = [u for u in self.units if u.path not in self.errors]

        changed = True
        while changed:
            changed = False
            by_name = {u.qualified_name: u for u in self.units if u.is_module_like}
            for unit in self.units:
                if unit.kind != UnitKind.SUBMODULE:
                    continue
                parent = by_name.get(unit.parent or "")
                if parent is None:
                    reason = self.broken_names.get(unit.parent or "")
                    detail = f" ({reason})" if reason else ""
                    message = f"parent '{unit.parent}' of submodule '{unit.qualified_name}' not found{detail}"
                elif parent.path.parent != (unit.path.parent.parent if parent.kind == UnitKind.SUBMODULE else self.module_root):
                    message = f"submodule directory does not mirror parent '{unit.parent}' at {parent.path}"
                else:
                    continue
                self._record_error(unit.path, ConfigurationMismatchError(unit.path, message))
                changed = True
            self.units = [u for u in self.units if u.path not in self.errors]

        self.units.sort(key=lambda u: str(u.path))

    def _record_error(self, path: Path, error: ConfigurationMismatchError) -> None:
        logger.warning(str(error))
        self.errors[path] = error
        try:
            parts = path.relative_to(self.module_root).parts
        except ValueError:
            return
        if len(parts) == 1:
            self.broken_names.setdefault(path.stem.lower(), error)
        elif len(parts) > 1:
            self.broken_names.setdefault(f"{parts[0].lower()}:{path.stem.lower()}", error)

    def programs(self) -> list[SourceUnit]:
        return [u for u in self.units if u.kind == UnitKind.PROGRAM]

    def modules(self) -> list[SourceUnit]:
        return [u for u in self.units if u.kind == UnitKind.MODULE]

    def submodules(self) -> list[SourceUnit]:
        return [u for u in self.units if u.kind == UnitKind.SUBMODULE]

    def module_index(self) -> dict[str, SourceUnit]:
        """Map module name -> defining unit (the names USE statements refer to)."""
        return {u.name: u for u in self.modules()}

    def by_qualified_name(self) -> dict[str, SourceUnit]:
        return {u.qualified_name: u for u in self.units if u.is_module_like}

    def submodules_of(self, module_name: str) -> list[SourceUnit]:
        """All submodules in a module's tree, parents before children."""
        return sorted(
            (u for u in self.submodules() if u.ancestor == module_name),
            key=lambda u: (len(u.path.parts), str(u.path)),
        )

    def get(self, path: Path) -> Optional[SourceUnit]:
        for unit in self.units:
            if unit.path == path:
                return unit
        return None


def _check_name(path: Path, declared: str, stem: str) -> None:
    if declared != stem:
        raise ConfigurationMismatchError(
            path, f"module name does not match file name (declared '{declared}', file '{stem}')"
        )


def units_from(paths_and_texts: Iterable[tuple[Path, str]], source_root: Path, module_dir: str = "mod") -> SourceCatalog:
    """Build a catalog from in-memory (path, text) pairs without touching the file system."""
    catalog = SourceCatalog(source_root=source_root, module_root=source_root / module_dir)
    for path, text in paths_and_texts:
        try:
            catalog.units.append(catalog.classify(path, text))
        except ConfigurationMismatchError as e:
            catalog._record_error(path, e)
    catalog.link()
    return catalog
