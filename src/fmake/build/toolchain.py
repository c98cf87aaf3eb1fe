"""Fortran compiler invocation.

Builds and runs the two command lines the executor needs:

    compile:  <fc> <fflags> -J<mod_dir> -I<mod_dir> -c <source> -o <object>
    link:     <fc> <fflags> -o <exe> <ldflags> <objects...> <ldlibs>

Every run returns a ToolResult; a compiler that cannot be started (missing
executable, permission denied) is reported as a failed result with return
code 127, never as an exception.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one toolchain subprocess.

    Attributes:
        command: The command line that was run
        returncode: Process exit status (127 if it could not be started)
        stdout: Captured standard output
        stderr: Captured standard error (compiler diagnostics)
    """

    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostics(self) -> str:
        """Compiler output, stderr first, verbatim."""
        return "\n".join(part for part in (self.stderr.rstrip(), self.stdout.rstrip()) if part)


def _creation_flags() -> int:
    # Keeps a console window from flashing up per compiler call on Windows.
    if sys.platform == "win32":
        return subprocess.CREATE_NO_WINDOW
    return 0


def run_tool(cmd: Sequence[str], cwd: Path | None = None, **kwargs: Any) -> ToolResult:
    """Run a toolchain command and capture its output.

    stdin is redirected to DEVNULL so compilers never wait on the terminal.

    Args:
        cmd: Command and arguments
        cwd: Working directory
        **kwargs: Extra arguments for subprocess.run

    Returns:
        ToolResult (never raises for a missing executable)
    """
    command = tuple(str(part) for part in cmd)
    flags = _creation_flags()
    if flags:
        kwargs["creationflags"] = kwargs.get("creationflags", 0) | flags
    kwargs.setdefault("stdin", subprocess.DEVNULL)
    try:
        completed = subprocess.run(
            list(command),
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            **kwargs,
        )
    except FileNotFoundError:
        return ToolResult(command, COMMAND_NOT_FOUND, stderr=f"{command[0]}: command not found")
    except PermissionError as e:
        return ToolResult(command, COMMAND_NOT_FOUND, stderr=f"{command[0]}: {e}")
    return ToolResult(command, completed.returncode, completed.stdout or "", completed.stderr or "")


@dataclass
class Toolchain:
    """A Fortran compiler plus the flags for one build.

    Attributes:
        compiler: Compiler executable (name on PATH or a path)
        compile_flags: Flags for every compile and link command
        link_flags: LDFLAGS, placed before the objects
        link_libs: LDLIBS, placed after the objects
        cwd: Working directory for the compiler processes
    """

    compiler: str = "gfortran"
    compile_flags: list[str] = field(default_factory=list)
    link_flags: list[str] = field(default_factory=list)
    link_libs: list[str] = field(default_factory=list)
    cwd: Path | None = None

    def compile_command(self, source: Path, output: Path, module_dir: Path) -> list[str]:
        return [
            self.compiler,
            *self.compile_flags,
            f"-J{module_dir}",
            f"-I{module_dir}",
            "-c",
            str(source),
            "-o",
            str(output),
        ]

    def link_command(self, objects: Sequence[Path], executable: Path) -> list[str]:
        return [
            self.compiler,
            *self.compile_flags,
            "-o",
            str(executable),
            *self.link_flags,
            *(str(obj) for obj in objects),
            *self.link_libs,
        ]

    def compile(self, source: Path, output: Path, module_dir: Path) -> ToolResult:
        """Compile one source file to an object, writing interfaces to module_dir."""
        output.parent.mkdir(parents=True, exist_ok=True)
        module_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.compile_command(source, output, module_dir)
        logger.debug(f"Compile: {' '.join(cmd)}")
        return run_tool(cmd, cwd=self.cwd)

    def link(self, objects: Sequence[Path], executable: Path) -> ToolResult:
        """Link objects (program object first) into an executable."""
        executable.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.link_command(objects, executable)
        logger.debug(f"Link: {' '.join(cmd)}")
        return run_tool(cmd, cwd=self.cwd)
