"""Rich-based progress lines for the build executor.

Prints one line per action as it starts and a line for every action that
does not end cleanly:

    [ 1/4] Compiling kinds.f90
    [ 2/4] Compiling solver.f90
    [ 3/4] Compiling heat.f90
    [ 4/4] Linking heat
    FAILED solver.f90 (exit 1)
           solver.f90:12:5: Error: Symbol 'x' has no IMPLICIT type

Colours: compile = bold blue, link = bold green, done = bold magenta,
failures = bold red. Up-to-date actions are counted but not printed
unless verbose.
"""

import threading
import time
from typing import Optional

from rich.console import Console
from rich.text import Text

from .build_planner import ActionKind, BuildAction
from .executor import ActionOutcome, ActionState

_KIND_STYLES = {
    ActionKind.COMPILE: ("Compiling", "bold blue"),
    ActionKind.LINK: ("Linking", "bold green"),
}


class ConsoleProgress:
    """ActionCallback that renders build progress with Rich.

    Args:
        total: Number of actions in the plan (for the [n/total] counter)
        console: Rich Console instance. If None, creates a new one.
        verbose: Also print up-to-date actions and full command lines
    """

    def __init__(self, total: int, console: Optional[Console] = None, verbose: bool = False) -> None:
        self._console = console if console is not None else Console(highlight=False)
        self._total = total
        self._verbose = verbose
        self._counter = 0
        self._start_time = time.monotonic()
        self._lock = threading.Lock()
        self._counts: dict[ActionState, int] = {}

    def _next_index(self) -> str:
        self._counter += 1
        width = len(str(self._total))
        return f"[{self._counter:>{width}}/{self._total}]"

    def on_action_start(self, action: BuildAction) -> None:
        verb, style = _KIND_STYLES[action.kind]
        with self._lock:
            index = self._next_index()
            line = Text(f"{index} ")
            line.append(verb, style=style)
            line.append(f" {action.label}")
            self._console.print(line)

    def on_action_finish(self, action: BuildAction, outcome: ActionOutcome) -> None:
        with self._lock:
            self._counts[outcome.state] = self._counts.get(outcome.state, 0) + 1
            if outcome.state == ActionState.UP_TO_DATE:
                index = self._next_index()
                if self._verbose:
                    self._console.print(Text(f"{index} {action.label} is up to date", style="dim"))
            elif outcome.state == ActionState.FAILED:
                returncode = outcome.result.returncode if outcome.result is not None else "?"
                self._console.print(Text(f"FAILED {action.label} (exit {returncode})", style="bold red"))
                diagnostics = outcome.error.diagnostics if outcome.error is not None else ""
                for diag_line in diagnostics.splitlines():
                    self._console.print(Text(f"       {diag_line}"))
            elif outcome.state == ActionState.SKIPPED:
                self._counter += 1
                if self._verbose:
                    self._console.print(Text(f"skipped {action.label} ({outcome.skipped_because})", style="red"))
            elif self._verbose and outcome.result is not None:
                self._console.print(Text(" ".join(outcome.result.command), style="dim"))

    def summary(self) -> Text:
        """Closing line: counts per state and elapsed time."""
        with self._lock:
            counts = dict(self._counts)
        elapsed = time.monotonic() - self._start_time
        failed = counts.get(ActionState.FAILED, 0)
        parts = [f"{counts.get(ActionState.DONE, 0)} built", f"{counts.get(ActionState.UP_TO_DATE, 0)} up to date"]
        if failed:
            parts.append(f"{failed} failed")
        if counts.get(ActionState.SKIPPED):
            parts.append(f"{counts[ActionState.SKIPPED]} skipped")
        style = "bold red" if failed else "bold magenta"
        return Text(f"Done: {', '.join(parts)} ({elapsed:.2f}s)", style=style)

    def print_summary(self) -> None:
        self._console.print(self.summary())

    def get_snapshot(self) -> dict[str, int]:
        """Counts per state name, for tests."""
        with self._lock:
            return {state.value: count for state, count in self._counts.items()}
