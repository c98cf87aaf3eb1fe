"""Error kinds raised by the fmake build pipeline.

Every error carries a short ``kind`` string used in result reporting, plus
enough context (the unit path, the full cycle, the list of candidates) for
the user to act on it without re-running in verbose mode.

Resolution errors (configuration, unresolved import, cycle, ambiguous or
unknown target) abort planning only for the targets they affect.
ToolchainError aborts only the dependent subtree of the build plan.
"""

from pathlib import Path
from typing import Optional, Sequence


class FmakeError(Exception):
    """Base class for all fmake build errors."""

    kind = "error"


class ConfigurationMismatchError(FmakeError):
    """Raised when a unit's declaration does not fit its file location or name."""

    kind = "configuration_mismatch"

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class UnresolvedImportError(FmakeError):
    """Raised when an imported module name has no defining unit."""

    kind = "unresolved_import"

    def __init__(self, importer: str, module_name: str, importer_path: Optional[Path] = None):
        self.importer = importer
        self.module_name = module_name
        self.importer_path = importer_path
        where = f" ({importer_path})" if importer_path else ""
        super().__init__(f"'{importer}'{where} uses module '{module_name}', which was not found")


class CyclicDependencyError(FmakeError):
    """Raised when the module import graph contains a cycle."""

    kind = "cyclic_dependency"

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")

    @property
    def members(self) -> set[str]:
        """Distinct module names on the cycle."""
        return set(self.cycle)


class AmbiguousTargetError(FmakeError):
    """Raised when a target name matches several units."""

    kind = "ambiguous_target"

    def __init__(self, target: str, candidates: Sequence[str]):
        self.target = target
        self.candidates = sorted(candidates)
        listing = ", ".join(self.candidates)
        super().__init__(f"Target '{target}' is ambiguous, use one of: {listing}")


class UnknownTargetError(FmakeError):
    """Raised when a target name matches nothing."""

    kind = "unknown_target"

    def __init__(self, target: str, reason: str = "no matching source unit"):
        self.target = target
        super().__init__(f"Unknown target '{target}': {reason}")


class ToolchainError(FmakeError):
    """Raised when a compile or link command reports failure."""

    kind = "toolchain_failure"

    def __init__(self, action_id: str, returncode: Optional[int], diagnostics: str):
        self.action_id = action_id
        self.returncode = returncode
        self.diagnostics = diagnostics
        status = f"exit code {returncode}" if returncode is not None else "could not be started"
        message = f"{action_id} failed ({status})"
        if diagnostics:
            message += f"\n{diagnostics}"
        super().__init__(message)
