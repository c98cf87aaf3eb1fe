"""
Command-line interface for fmake.

Usage:
    fmake [TARGET ...] [-p PROFILE] [-j N] [--fail-fast] [-C DIR] [-n] [-v] [--list]

Targets default to "all". See fmake.build.build_planner for the request
forms (names, paths, dir/, dir//, ., and the phony all/exes/tests/mods/deps).

Exit status is 0 only if every requested target succeeded.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from . import __version__, output
from .build.build_planner import ActionKind, BuildPlan
from .build.build_profiles import format_profile_banner
from .build.orchestrator import BuildOrchestrator, BuildResult
from .build.progress_display import ConsoleProgress
from .build.source_catalog import SourceCatalog
from .build.toolchain import Toolchain
from .config import ConfigError, ProjectConfig

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def setup_logging(verbose: bool = False) -> None:
    """Send library logging to stderr; DEBUG when verbose, WARNING otherwise."""
    logger = logging.getLogger("fmake")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(handler)
    logger.propagate = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fmake",
        description="Incremental build tool for Fortran projects with modules and submodules",
    )
    parser.add_argument("targets", nargs="*", metavar="TARGET", help="Targets to build (default: all)")
    parser.add_argument("-p", "--profile", help="Build profile: debug or release (default: $BUILD or debug)")
    parser.add_argument("-j", "--jobs", type=int, default=None, help="Parallel actions (default: CPU count)")
    parser.add_argument("--fail-fast", action="store_true", help="Stop starting actions after the first failure")
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )
    parser.add_argument("-n", "--dry-run", action="store_true", help="Print the plan without running it")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--list", action="store_true", help="List the catalogued source units and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def print_catalog(catalog: SourceCatalog, project_dir: Path, console: Console) -> None:
    table = Table(show_edge=False, box=None, padding=(0, 2))
    table.add_column("Kind", style="bold")
    table.add_column("Name")
    table.add_column("Path", style="dim")
    for unit in catalog.units:
        table.add_row(unit.kind.value, unit.qualified_name, _shown(unit.path, project_dir))
    console.print(table)
    for path in sorted(catalog.errors):
        console.print(f"[bold red]error[/bold red] {catalog.errors[path]}", highlight=False, soft_wrap=True)


def print_plan(plan: BuildPlan, toolchain: object, module_dir: Path, console: Console) -> None:
    """Print each planned action, with its command line when the toolchain can render one."""
    for action in plan.ordered_actions():
        if isinstance(toolchain, Toolchain):
            if action.kind == ActionKind.COMPILE:
                command = toolchain.compile_command(action.unit.path, action.artifact, module_dir)
            else:
                command = toolchain.link_command(action.inputs, action.artifact)
            console.print(" ".join(command), highlight=False, soft_wrap=True)
        else:
            console.print(action.action_id, highlight=False)


def report_results(result: BuildResult, project_dir: Path) -> None:
    for target in result.targets:
        if target.success and len(target.artifacts) == 1:
            output.log_target(target.target, True, _shown(target.artifacts[0], project_dir))
        elif target.success:
            count = len(target.artifacts)
            output.log_target(target.target, True, f"{count} artifacts" if count else "nothing to do")
            for path in target.artifacts:
                output.log_artifact(path, project_dir)
        else:
            output.log_target(target.target, False, f"{target.error_kind}")
            for line in target.message.splitlines():
                output.log_detail(line)


def _shown(path: Path, project_dir: Path) -> str:
    try:
        return str(path.relative_to(project_dir))
    except ValueError:
        return str(path)


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments, build, and return the exit status."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    output.set_verbose(args.verbose)
    console = Console(highlight=False)

    if args.jobs is not None and args.jobs < 1:
        output.log_error("--jobs must be at least 1")
        return EXIT_USAGE

    try:
        config = ProjectConfig.load(args.project_dir, profile=args.profile)
    except ConfigError as e:
        output.log_error(str(e))
        return EXIT_USAGE

    orchestrator = BuildOrchestrator(config, jobs=args.jobs, fail_fast=args.fail_fast)

    if args.list:
        print_catalog(orchestrator.discover(), config.project_dir, console)
        return EXIT_OK

    targets = args.targets or ["all"]
    output.log_header("fmake", __version__, format_profile_banner(config.profile, config.compiler))

    result = orchestrator.plan(targets)
    if args.dry_run:
        print_plan(result.plan, orchestrator.toolchain, config.module_output_dir, console)
    elif result.plan.actions:
        progress = ConsoleProgress(total=len(result.plan.actions), console=console, verbose=args.verbose)
        orchestrator.callback = progress
        result = orchestrator.execute(result)
        progress.print_summary()

    report_results(result, config.project_dir)
    return EXIT_OK if result.success else EXIT_FAILURE


def main() -> None:
    """Console entry point."""
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        output.log_error("Interrupted")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        output.log_error(f"Unexpected error: {e}")
        if output.is_verbose():
            import traceback

            traceback.print_exc()
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
