"""
Build orchestration for fmake projects.

Runs the whole pipeline for one invocation:

    Catalog -> Scanner -> Resolver -> Planner -> Executor

and turns the outcome into one TargetResult per requested target. Errors
are collected per target; nothing raised by a single broken unit escapes
``BuildOrchestrator.build``.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from ..config import ProjectConfig
from ..output import TimedLogger
from .build_planner import BuildPlan, BuildPlanner, SubmodulePolicy
from .build_profiles import get_compile_flags, get_link_flags
from .callbacks import ActionCallback
from .dependency_resolver import DependencyResolver, ResolutionReport
from .errors import FmakeError, ToolchainError
from .executor import ActionRunner, ActionState, BuildExecutor, ExecutionResult
from .import_scanner import ImportScanner
from .source_catalog import SourceCatalog
from .toolchain import Toolchain
from .unit_cache import JsonUnitCacheStore, UnitCacheStore

logger = logging.getLogger(__name__)

PIPELINE_PHASES = 4


@dataclass
class TargetResult:
    """Result for one requested target.

    Attributes:
        target: Target request string
        success: True if every artifact of the target was delivered
        artifacts: Produced (or, in a dry run, planned) artifact paths
        errors: Errors that kept the target from being delivered
    """

    target: str
    success: bool
    artifacts: list[Path] = field(default_factory=list)
    errors: list[FmakeError] = field(default_factory=list)

    @property
    def error_kind(self) -> Optional[str]:
        return self.errors[0].kind if self.errors else None

    @property
    def message(self) -> str:
        return "\n".join(str(e) for e in self.errors)


@dataclass
class BuildResult:
    """Outcome of one fmake invocation.

    Attributes:
        targets: Per-target results, in request order
        catalog: The catalogued sources
        report: Dependency resolution report
        plan: The build plan
        execution: Executor result (None for dry runs)
        build_time: Wall-clock seconds
    """

    targets: list[TargetResult]
    catalog: SourceCatalog
    report: ResolutionReport
    plan: BuildPlan
    execution: Optional[ExecutionResult] = None
    build_time: float = 0.0

    @property
    def success(self) -> bool:
        return all(t.success for t in self.targets)

    def get(self, target: str) -> TargetResult:
        for result in self.targets:
            if result.target == target:
                return result
        raise KeyError(target)


def create_toolchain(config: ProjectConfig) -> Toolchain:
    """Toolchain for a project configuration and its selected profile."""
    profile_flags = config.profile_flags
    return Toolchain(
        compiler=config.compiler,
        compile_flags=get_compile_flags(profile_flags, config.fflags),
        link_flags=get_link_flags(profile_flags, config.ldflags),
        link_libs=list(config.ldlibs),
        cwd=config.project_dir,
    )


class BuildOrchestrator:
    """
    Wires the build pipeline together for one project.

    Args:
        config: Project configuration
        toolchain: Compiler wrapper (defaults to one built from config)
        cache: Unit cache (defaults to the JSON store under dep/cache)
        jobs: Parallel actions (default: CPU count)
        fail_fast: Stop starting actions after the first failure
        callback: Progress callback for the executor
    """

    def __init__(
        self,
        config: ProjectConfig,
        toolchain: Optional[ActionRunner] = None,
        cache: Optional[UnitCacheStore] = None,
        jobs: Optional[int] = None,
        fail_fast: bool = False,
        callback: Optional[ActionCallback] = None,
    ) -> None:
        self.config = config
        self.toolchain = toolchain if toolchain is not None else create_toolchain(config)
        self.cache = cache if cache is not None else JsonUnitCacheStore(config.cache_dir)
        self.jobs = jobs
        self.fail_fast = fail_fast
        self.callback = callback
        self.scanner = ImportScanner(self.cache)

    def discover(self) -> SourceCatalog:
        return SourceCatalog.discover(self.config.source_root, self.config.module_dir, self.config.extension)

    def resolve(self, catalog: SourceCatalog) -> ResolutionReport:
        """Scan imports (cache-backed) and settle module closures."""
        scans = self.scanner.scan_all(catalog.units)
        return DependencyResolver(catalog, self.cache).resolve(scans)

    def plan(self, targets: Sequence[str]) -> BuildResult:
        """Catalog, resolve and plan without executing anything."""
        start_time = time.time()
        with TimedLogger("Cataloguing sources", phase=(1, PIPELINE_PHASES), verbose_only=True) as timed:
            catalog = self.discover()
            timed.detail(
                f"{len(catalog.units)} units ({len(catalog.programs())} programs, "
                f"{len(catalog.modules())} modules, {len(catalog.submodules())} submodules)"
            )
        with TimedLogger("Resolving dependencies", phase=(2, PIPELINE_PHASES), verbose_only=True) as timed:
            report = self.resolve(catalog)
            timed.detail(f"{len(report.invalidated)} closures recomputed in {report.passes} passes")
        with TimedLogger("Planning", phase=(3, PIPELINE_PHASES), verbose_only=True) as timed:
            planner = BuildPlanner(
                catalog,
                report,
                object_path=self.config.object_path,
                executable_path=self.config.executable_path,
                interface_dir=self.config.module_output_dir,
                project_root=self.config.project_dir,
                test_dir=self.config.test_dir,
                submodule_policy=SubmodulePolicy(extra_submodules=dict(self.config.extra_submodules)),
            )
            plan = planner.plan(targets)
            timed.detail(f"{len(plan.actions)} actions")

        results = [self._planned_result(target, plan) for target in targets]
        return BuildResult(results, catalog, report, plan, build_time=time.time() - start_time)

    def build(self, targets: Sequence[str], dry_run: bool = False) -> BuildResult:
        """Build the requested targets.

        Args:
            targets: Target request strings
            dry_run: Plan only, do not run the toolchain

        Returns:
            BuildResult with one TargetResult per request
        """
        result = self.plan(targets)
        if dry_run:
            return result
        return self.execute(result)

    def execute(self, result: BuildResult) -> BuildResult:
        """Run a planned build and fill in the per-target results."""
        start_time = time.time() - result.build_time
        executor = BuildExecutor(
            self.toolchain,
            module_dir=self.config.module_output_dir,
            jobs=self.jobs,
            fail_fast=self.fail_fast,
            callback=self.callback,
        )
        with TimedLogger("Building", phase=(4, PIPELINE_PHASES), verbose_only=True):
            result.execution = executor.execute(result.plan)

        result.targets = [
            self._executed_result(t.target, result.plan, result.execution) for t in result.targets
        ]
        result.build_time = time.time() - start_time
        logger.info(
            f"Build finished in {result.build_time:.2f}s: "
            f"{sum(1 for t in result.targets if t.success)}/{len(result.targets)} targets succeeded"
        )
        return result

    @staticmethod
    def _planned_result(target: str, plan: BuildPlan) -> TargetResult:
        errors = list(plan.errors.get(target, []))
        artifacts = [plan.actions[action_id].artifact for action_id in plan.targets.get(target, [])]
        return TargetResult(target, success=not errors, artifacts=artifacts, errors=errors)

    @staticmethod
    def _executed_result(target: str, plan: BuildPlan, execution: ExecutionResult) -> TargetResult:
        errors: list[FmakeError] = list(plan.errors.get(target, []))
        artifacts: list[Path] = []
        for action_id in plan.targets.get(target, []):
            outcome = execution.outcomes[action_id]
            if outcome.state.succeeded:
                artifacts.append(plan.actions[action_id].artifact)
                continue
            # Walk the skip chain back to the action that actually failed.
            while outcome.state == ActionState.SKIPPED and outcome.skipped_because in execution.outcomes:
                outcome = execution.outcomes[outcome.skipped_because]
            if outcome.error is not None:
                error: FmakeError = outcome.error
            else:
                error = ToolchainError(outcome.action_id, None, "not started, build stopped after the first failure")
            if error not in errors:
                errors.append(error)
        return TargetResult(target, success=not errors, artifacts=artifacts, errors=errors)
