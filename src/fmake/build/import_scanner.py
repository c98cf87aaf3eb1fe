"""Import Scanner - static extraction of USE statements.

Recognizes the two single-line forms of the Fortran USE statement:

    USE [::] <mod-name>[, only: ...]                  (short form)
    USE, NON_INTRINSIC :: <mod-name>[, only: ...]     (qualified form)

"USE, INTRINSIC" matches neither form and is never reported, and the
compiler-provided intrinsic modules are excluded from both forms.

Limitations of the text scan:
    - The statement must be on one line up to the module name.
    - A USE statement inside a multi-line string or behind a continuation
      line is not detected.

Scanning is skipped when the unit's fingerprint matches its cache entry;
the cached import list is reused instead.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from .source_catalog import SourceUnit
from .unit_cache import CacheEntry, Fingerprint, UnitCacheStore, compute_fingerprint

logger = logging.getLogger(__name__)

INTRINSIC_MODULES = frozenset(
    {
        "iso_c_binding",
        "iso_fortran_env",
        "ieee_exceptions",
        "ieee_arithmetic",
        "ieee_features",
    }
)

_SHORT_FORM = re.compile(r"^\s*USE[: \t]+[A-Z]", re.IGNORECASE)
_QUALIFIED_FORM = re.compile(r"^\s*USE\s*,\s*NON_INTRINSIC", re.IGNORECASE)
_SEPARATORS = re.compile(r"[,:]")


def scan_imports(text: str) -> list[str]:
    """Extract imported module names from Fortran source text.

    Args:
        text: Source text

    Returns:
        Lower-case module names in order of first appearance, without duplicates
    """
    names: list[str] = []
    for line in text.splitlines():
        if _SHORT_FORM.match(line):
            field_index = 1
        elif _QUALIFIED_FORM.match(line):
            field_index = 2
        else:
            continue
        fields = _SEPARATORS.sub(" ", line).split()
        if len(fields) <= field_index:
            continue
        name = fields[field_index].lower()
        if name in INTRINSIC_MODULES or name in names:
            continue
        names.append(name)
    return names


@dataclass(frozen=True)
class ScanResult:
    """Import list for one unit.

    Attributes:
        unit: The scanned unit
        imports: Raw imported module names
        fingerprint: Fingerprint the imports were computed for
        rescanned: True if the text was read (cache miss or stale entry)
    """

    unit: SourceUnit
    imports: tuple[str, ...]
    fingerprint: Fingerprint
    rescanned: bool


class ImportScanner:
    """Produces the raw import list for each source unit, backed by the cache.

    Attributes:
        scan_count: Number of text scans performed (cache misses)
        hit_count: Number of units served from the cache
    """

    def __init__(self, cache: UnitCacheStore) -> None:
        self.cache = cache
        self.scan_count = 0
        self.hit_count = 0
        self._lock = threading.Lock()

    def scan(self, unit: SourceUnit) -> ScanResult:
        """Return the imports of one unit, rescanning only if it changed.

        Raises:
            OSError: If the source file cannot be read
        """
        key = str(unit.path)
        entry = self.cache.get(key)
        previous: Optional[Fingerprint] = entry.fingerprint if entry is not None else None
        fingerprint = compute_fingerprint(unit.path, previous)

        if entry is not None and fingerprint.same_content(previous):
            with self._lock:
                self.hit_count += 1
            if fingerprint != previous:
                # Touched but not edited; keep the entry (and its closure), refresh the stamp.
                self.cache.put(CacheEntry(key, fingerprint, list(entry.imports), entry.closure))
            logger.debug(f"Import cache hit: {unit.path}")
            return ScanResult(unit, tuple(entry.imports), fingerprint, rescanned=False)

        text = unit.path.read_text(encoding="utf-8", errors="replace")
        imports = scan_imports(text)
        with self._lock:
            self.scan_count += 1
        self.cache.put(CacheEntry(key, fingerprint, imports, closure=None))
        logger.debug(f"Scanned {unit.path}: {imports}")
        return ScanResult(unit, tuple(imports), fingerprint, rescanned=True)

    def scan_all(self, units: Iterable[SourceUnit]) -> dict[str, ScanResult]:
        """Scan every unit.

        Returns:
            Mapping of unit path (str) -> ScanResult
        """
        results = {str(unit.path): self.scan(unit) for unit in units}
        rescanned = sum(1 for r in results.values() if r.rescanned)
        logger.info(f"Scanned imports of {len(results)} units ({rescanned} rescanned)")
        return results
