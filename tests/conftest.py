"""Pytest configuration and shared fixtures for fmake tests.

Fixtures:
    project: ProjectBuilder writing a Fortran source tree under tmp_path
    fake_toolchain: FakeToolchain that records calls and writes fake artifacts
    make_toolchain: The FakeToolchain class, for tests that need several or custom ones
"""

import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Iterable, Optional, Sequence

import pytest

from fmake.build.source_catalog import UnitKind, parse_declaration
from fmake.build.toolchain import ToolResult
from fmake.config import ProjectConfig


@pytest.fixture(autouse=True)
def _restore_stdio():  # noqa: PT004
    """Ensure stdout/stderr are restored after each test (CLI tests swap them)."""
    yield
    if sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if sys.stderr.closed:
        sys.stderr = sys.__stderr__


@pytest.fixture(autouse=True)
def _reset_fmake_logging():  # noqa: PT004
    """Undo fmake.cli.setup_logging so caplog sees records in later tests."""
    yield
    logger = logging.getLogger("fmake")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


class ProjectBuilder:
    """Writes Fortran sources in the default src/, src/mod/, src/test/ layout."""

    def __init__(self, root: Path):
        self.root = root
        self.src = root / "src"
        self.mod = self.src / "mod"
        self.src.mkdir(parents=True, exist_ok=True)

    def write(self, relative: str, text: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path

    def module(self, name: str, uses: Iterable[str] = ()) -> Path:
        body = "".join(f"  use {u}\n" for u in uses)
        return self.write(f"src/mod/{name}.f90", f"module {name}\n{body}  implicit none\nend module {name}\n")

    def submodule(self, ancestor: str, name: str, parent: Optional[str] = None, uses: Iterable[str] = ()) -> Path:
        qualifier = f"{ancestor}:{parent}" if parent else ancestor
        directory = f"src/mod/{ancestor}/{parent}" if parent else f"src/mod/{ancestor}"
        body = "".join(f"  use {u}\n" for u in uses)
        return self.write(
            f"{directory}/{name}.f90",
            f"submodule ({qualifier}) {name}\n{body}  implicit none\nend submodule {name}\n",
        )

    def program(self, relative: str, uses: Iterable[str] = ()) -> Path:
        """Write a program; ``relative`` is below src/ and has no extension (e.g. "test/check")."""
        name = Path(relative).name
        body = "".join(f"  use {u}\n" for u in uses)
        return self.write(f"src/{relative}.f90", f"program {name}\n{body}  implicit none\nend program {name}\n")

    def config(self, **overrides) -> ProjectConfig:
        return ProjectConfig.load(self.root, environ=overrides.pop("environ", {}), **overrides)

    def touch(self, path: Path, offset_ns: int = 10_000_000_000) -> None:
        """Move a file's mtime forward without changing its content."""
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + offset_ns))


class FakeToolchain:
    """Stand-in compiler: writes placeholder objects, interfaces and executables.

    Attributes:
        fail: Source file stems whose compile fails
        fail_link: Executable names whose link fails
        delay: Seconds each compile sleeps (to make overlap observable)
        error: Exception raised by every compile instead of running
        calls: ("compile" | "link", stem) tuples in call order
        max_active: Highest number of compiles seen running at once
    """

    def __init__(
        self,
        fail: Sequence[str] = (),
        fail_link: Sequence[str] = (),
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.fail = set(fail)
        self.fail_link = set(fail_link)
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def compile(self, source: Path, output: Path, module_dir: Path) -> ToolResult:
        with self._lock:
            self.calls.append(("compile", source.stem))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.error is not None:
                raise self.error
            if self.delay:
                time.sleep(self.delay)
            return self._compile(source, output, module_dir)
        finally:
            with self._lock:
                self.active -= 1

    def _compile(self, source: Path, output: Path, module_dir: Path) -> ToolResult:
        if source.stem in self.fail:
            return ToolResult(("fake", str(source)), 1, stderr=f"{source.name}:1:1: Error: broken on purpose")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(f"object {source.stem}\n")
        declaration = parse_declaration(source.read_text())
        module_dir.mkdir(parents=True, exist_ok=True)
        if declaration is not None and declaration.kind == UnitKind.MODULE:
            (module_dir / f"{declaration.name}.mod").write_text("interface\n")
        elif declaration is not None and declaration.kind == UnitKind.SUBMODULE:
            (module_dir / f"{declaration.ancestor}@{declaration.name}.smod").write_text("interface\n")
        return ToolResult(("fake", str(source)), 0)

    def link(self, objects: Sequence[Path], executable: Path) -> ToolResult:
        with self._lock:
            self.calls.append(("link", executable.name))
        missing = [str(obj) for obj in objects if not obj.exists()]
        if executable.name in self.fail_link or missing:
            return ToolResult(("fake", str(executable)), 1, stderr=f"link failed, missing: {missing}")
        executable.parent.mkdir(parents=True, exist_ok=True)
        executable.write_text("\n".join(obj.stem for obj in objects) + "\n")
        return ToolResult(("fake", str(executable)), 0)

    def compiled(self) -> list[str]:
        return [stem for kind, stem in self.calls if kind == "compile"]

    def linked(self) -> list[str]:
        return [name for kind, name in self.calls if kind == "link"]


@pytest.fixture
def project(tmp_path) -> ProjectBuilder:
    return ProjectBuilder(tmp_path.resolve() / "proj")


@pytest.fixture
def fake_toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def make_toolchain():
    """Factory for FakeToolchain instances with custom failure settings."""
    return FakeToolchain
