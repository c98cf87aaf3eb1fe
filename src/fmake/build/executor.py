"""Executor - runs a BuildPlan against a toolchain.

Actions become ready once every prerequisite has completed. Ready actions
are checked for freshness first (make semantics) and only run when stale.
Up to ``jobs`` actions run at once on a ThreadPoolExecutor; the scheduling
loop itself stays on the calling thread, so the callback and all state
transitions are single-threaded.

Failure handling:
    - A failed action marks every transitive dependent SKIPPED.
    - Independent branches keep building, unless ``fail_fast`` is set, in
      which case nothing new is started after the first failure. Actions
      already running are allowed to finish.
"""

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol, Sequence

from .build_planner import ActionKind, BuildAction, BuildPlan
from .callbacks import ActionCallback, NullCallback
from .errors import ToolchainError
from .toolchain import ToolResult

logger = logging.getLogger(__name__)


class ActionState(Enum):
    """Lifecycle state of one action during execution."""

    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def succeeded(self) -> bool:
        return self in (ActionState.DONE, ActionState.UP_TO_DATE)

    @property
    def terminal(self) -> bool:
        return self not in (ActionState.WAITING, ActionState.RUNNING)


class ActionRunner(Protocol):
    """What the executor needs from a toolchain."""

    def compile(self, source: Path, output: Path, module_dir: Path) -> ToolResult: ...

    def link(self, objects: Sequence[Path], executable: Path) -> ToolResult: ...


@dataclass
class ActionOutcome:
    """Final state of one action.

    Attributes:
        action_id: The action
        state: Terminal state
        result: Tool result for actions that ran
        error: ToolchainError for failed actions
        skipped_because: Id of the failed prerequisite for SKIPPED actions
        elapsed: Wall-clock seconds spent running
    """

    action_id: str
    state: ActionState
    result: Optional[ToolResult] = None
    error: Optional[ToolchainError] = None
    skipped_because: Optional[str] = None
    elapsed: float = 0.0


@dataclass
class ExecutionResult:
    """Outcome of executing a plan.

    Attributes:
        outcomes: Action id -> outcome, for every action in the plan
        elapsed: Total wall-clock seconds
    """

    outcomes: dict[str, ActionOutcome] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return all(o.state.succeeded for o in self.outcomes.values())

    def state_of(self, action_id: str) -> ActionState:
        return self.outcomes[action_id].state

    def count(self, state: ActionState) -> int:
        return sum(1 for o in self.outcomes.values() if o.state == state)

    @property
    def failed(self) -> list[ActionOutcome]:
        return [o for o in self.outcomes.values() if o.state == ActionState.FAILED]


def default_jobs() -> int:
    return os.cpu_count() or 1


class BuildExecutor:
    """Runs plan actions in dependency order, in parallel where possible.

    Args:
        toolchain: Compiler wrapper (see ActionRunner)
        module_dir: Interface (.mod/.smod) output directory passed to compiles
        jobs: Maximum concurrent actions (default: CPU count)
        fail_fast: Stop starting new actions after the first failure
        callback: Progress callback
    """

    def __init__(
        self,
        toolchain: ActionRunner,
        module_dir: Path,
        jobs: Optional[int] = None,
        fail_fast: bool = False,
        callback: Optional[ActionCallback] = None,
    ) -> None:
        self.toolchain = toolchain
        self.module_dir = module_dir
        self.jobs = max(1, jobs or default_jobs())
        self.fail_fast = fail_fast
        self.callback = callback if callback is not None else NullCallback()

    def execute(self, plan: BuildPlan) -> ExecutionResult:
        """Execute every action in the plan.

        Returns:
            ExecutionResult with a terminal outcome for every action
        """
        start_time = time.monotonic()
        states = {action_id: ActionState.WAITING for action_id in plan.order}
        outcomes: dict[str, ActionOutcome] = {}
        running: dict[Future[ToolResult], tuple[str, float]] = {}
        stopped = False

        def finish(outcome: ActionOutcome) -> None:
            states[outcome.action_id] = outcome.state
            outcomes[outcome.action_id] = outcome
            self.callback.on_action_finish(plan.actions[outcome.action_id], outcome)

        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="fmake") as pool:
            while True:
                progressed = True
                while progressed:
                    progressed = False
                    for action_id in plan.order:
                        if states[action_id] != ActionState.WAITING:
                            continue
                        action = plan.actions[action_id]
                        blocked_by = self._blocked_by(action, states)
                        if blocked_by is not None:
                            logger.debug(f"Skipping {action_id}: {blocked_by} did not build")
                            finish(ActionOutcome(action_id, ActionState.SKIPPED, skipped_because=blocked_by))
                            progressed = True
                            continue
                        if stopped or len(running) >= self.jobs:
                            continue
                        if not all(states[p].succeeded for p in action.prerequisites if p in states):
                            continue
                        if self.is_up_to_date(action, plan, states):
                            logger.debug(f"Up to date: {action_id}")
                            finish(ActionOutcome(action_id, ActionState.UP_TO_DATE))
                            progressed = True
                            continue
                        states[action_id] = ActionState.RUNNING
                        self.callback.on_action_start(action)
                        running[pool.submit(self._run_action, action)] = (action_id, time.monotonic())

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    action_id, started = running.pop(future)
                    result = future.result()
                    elapsed = time.monotonic() - started
                    if result.success:
                        finish(ActionOutcome(action_id, ActionState.DONE, result=result, elapsed=elapsed))
                        continue
                    error = ToolchainError(action_id, result.returncode, result.diagnostics)
                    logger.warning(f"{action_id} failed with exit code {result.returncode}")
                    finish(ActionOutcome(action_id, ActionState.FAILED, result=result, error=error, elapsed=elapsed))
                    if self.fail_fast and not stopped:
                        logger.info("Stopping after first failure (fail-fast)")
                        stopped = True

        for action_id in plan.order:
            if states[action_id] == ActionState.WAITING:
                finish(ActionOutcome(action_id, ActionState.SKIPPED, skipped_because="fail-fast"))

        result = ExecutionResult(outcomes=outcomes, elapsed=time.monotonic() - start_time)
        logger.info(
            f"Executed plan in {result.elapsed:.2f}s: {result.count(ActionState.DONE)} built, "
            f"{result.count(ActionState.UP_TO_DATE)} up to date, {result.count(ActionState.FAILED)} failed, "
            f"{result.count(ActionState.SKIPPED)} skipped"
        )
        return result

    @staticmethod
    def _blocked_by(action: BuildAction, states: dict[str, ActionState]) -> Optional[str]:
        for prereq in sorted(action.prerequisites):
            if states.get(prereq) in (ActionState.FAILED, ActionState.SKIPPED):
                return prereq
        return None

    @staticmethod
    def is_up_to_date(action: BuildAction, plan: BuildPlan, states: dict[str, ActionState]) -> bool:
        """Make-style freshness check.

        An action is up to date when no prerequisite was rebuilt in this run,
        every output exists, and the primary artifact is at least as new as
        the newest input (own inputs plus prerequisite outputs). Interface
        files are only required to exist, since compilers leave an unchanged
        .mod file untouched.
        """
        if any(states.get(p) == ActionState.DONE for p in action.prerequisites):
            return False
        if not all(path.exists() for path in action.outputs):
            return False
        inputs = list(action.inputs)
        for prereq in action.prerequisites:
            inputs.extend(plan.actions[prereq].outputs)
        try:
            artifact_mtime = action.artifact.stat().st_mtime_ns
            newest_input = max((path.stat().st_mtime_ns for path in inputs), default=0)
        except OSError:
            return False
        return artifact_mtime >= newest_input

    def _run_action(self, action: BuildAction) -> ToolResult:
        try:
            if action.kind == ActionKind.COMPILE:
                return self.toolchain.compile(action.unit.path, action.artifact, self.module_dir)
            return self.toolchain.link(action.inputs, action.artifact)
        except OSError as e:
            return ToolResult(command=(), returncode=1, stderr=f"{action.action_id}: {e}")
