"""
Timestamped console output for fmake.

Every line is prefixed with the time elapsed since start-up, in MM:SS.cc
format, so slow phases of a build stand out:

    00:00.01 fmake v0.3.0 (profile: debug, compiler: gfortran)
    00:00.02 [1/4] Cataloguing sources...
    00:00.05       12 units (3 programs, 8 modules, 1 submodule)
    00:00.05 [2/4] Resolving dependencies...
    00:01.87 OK   heat -> build/debug/heat
    00:01.87 FAIL solver_test: toolchain_failure

Usage:
    from fmake.output import log, log_phase, log_detail

    log_phase(1, 4, "Cataloguing sources...")
    log_detail("12 units")
"""

import sys
import time
from pathlib import Path
from types import TracebackType
from typing import Optional, TextIO

_start_time: Optional[float] = None
_output_stream: TextIO = sys.stdout
_verbose: bool = False


def init_timer(output_stream: Optional[TextIO] = None) -> None:
    """
    Start the elapsed-time clock.

    Called automatically on first output if never called explicitly.

    Args:
        output_stream: Stream to write to (defaults to sys.stdout)
    """
    global _start_time, _output_stream
    _start_time = time.time()
    if output_stream is not None:
        _output_stream = output_stream


def set_verbose(verbose: bool) -> None:
    global _verbose
    _verbose = verbose


def is_verbose() -> bool:
    return _verbose


def get_elapsed() -> float:
    """Seconds since init_timer()."""
    if _start_time is None:
        init_timer()
    return time.time() - _start_time  # type: ignore


def format_timestamp() -> str:
    elapsed = get_elapsed()
    minutes = int(elapsed // 60)
    seconds = elapsed % 60
    return f"{minutes:02d}:{seconds:05.2f}"


def _print(message: str) -> None:
    _output_stream.write(f"{format_timestamp()} {message}\n")
    _output_stream.flush()


def log(message: str, verbose_only: bool = False) -> None:
    """
    Log a message with timestamp.

    Args:
        message: Message to log
        verbose_only: If True, only print in verbose mode
    """
    if verbose_only and not _verbose:
        return
    _print(message)


def log_phase(phase: int, total: int, message: str, verbose_only: bool = False) -> None:
    """Log a pipeline phase as "[N/M] message"."""
    if verbose_only and not _verbose:
        return
    _print(f"[{phase}/{total}] {message}")


def log_detail(message: str, indent: int = 6, verbose_only: bool = False) -> None:
    """Log an indented detail line under the current phase."""
    if verbose_only and not _verbose:
        return
    _print(f"{' ' * indent}{message}")


def log_header(title: str, version: str, banner: str) -> None:
    _print(f"{title} v{version} ({banner})")


def log_target(target: str, success: bool, detail: str) -> None:
    """
    Log the result line for one requested target.

    Args:
        target: Target request as typed by the user
        success: Whether the target was delivered
        detail: Artifact summary on success, error kind and message on failure
    """
    status = "OK  " if success else "FAIL"
    _print(f"{status} {target} -> {detail}" if success else f"{status} {target}: {detail}")


def log_artifact(path: Path, project_dir: Optional[Path] = None) -> None:
    """Log a produced artifact, relative to the project directory when possible."""
    shown = path
    if project_dir is not None:
        try:
            shown = path.relative_to(project_dir)
        except ValueError:
            pass
    log_detail(str(shown), indent=8)


def log_error(message: str) -> None:
    _print(f"ERROR: {message}")


def log_warning(message: str) -> None:
    _print(f"WARNING: {message}")


class TimedLogger:
    """
    Context manager that logs an operation and its duration.

    Usage:
        with TimedLogger("Resolving dependencies", phase=(2, 4)) as timed:
            ...
            timed.detail("3 closures recomputed")
    """

    def __init__(self, operation: str, phase: Optional[tuple[int, int]] = None, verbose_only: bool = False):
        self.operation = operation
        self.phase = phase
        self.verbose_only = verbose_only
        self.start_time = 0.0

    def __enter__(self) -> "TimedLogger":
        self.start_time = time.time()
        if self.phase:
            log_phase(self.phase[0], self.phase[1], f"{self.operation}...", self.verbose_only)
        else:
            log(f"{self.operation}...", self.verbose_only)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        del exc_val, exc_tb
        if exc_type is None:
            log_detail(f"Done ({time.time() - self.start_time:.2f}s)", verbose_only=True)
        return None

    def detail(self, message: str) -> None:
        log_detail(message, verbose_only=self.verbose_only)
