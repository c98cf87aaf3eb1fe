"""End-to-end tests for the build pipeline with a fake compiler."""

from fmake.build.build_profiles import COMMON_FLAGS
from fmake.build.errors import ConfigurationMismatchError, ToolchainError, UnknownTargetError
from fmake.build.orchestrator import BuildOrchestrator, create_toolchain
from fmake.build.unit_cache import MemoryUnitCacheStore


def heat_project(project):
    project.module("kinds")
    project.module("grid", ["kinds"])
    project.module("io_utils")
    project.program("heat", ["grid"])
    project.program("dump", ["io_utils"])
    project.program("test/check_grid", ["grid"])
    return project


class TestBuild:
    """Test whole-pipeline builds."""

    def test_builds_all_programs(self, project, fake_toolchain):
        heat_project(project)
        config = project.config()

        result = BuildOrchestrator(config, toolchain=fake_toolchain, jobs=2).build(["all"])

        assert result.success
        target = result.get("all")
        assert sorted(p.name for p in target.artifacts) == ["check_grid", "dump", "heat"]
        assert (config.build_root / "heat").exists()
        assert (config.build_root / "test" / "check_grid").exists()
        assert fake_toolchain.compiled().count("grid") == 1

    def test_second_invocation_reuses_cache_and_artifacts(self, project, make_toolchain):
        heat_project(project)
        config = project.config()
        BuildOrchestrator(config, toolchain=make_toolchain()).build(["all"])
        assert config.cache_dir.is_dir()

        toolchain = make_toolchain()
        orchestrator = BuildOrchestrator(config, toolchain=toolchain)
        result = orchestrator.build(["all"])

        assert result.success
        assert orchestrator.scanner.scan_count == 0
        assert toolchain.calls == []
        assert result.report.invalidated == set()

    def test_per_target_results(self, project, fake_toolchain):
        heat_project(project)

        result = BuildOrchestrator(project.config(), toolchain=fake_toolchain, cache=MemoryUnitCacheStore()).build(
            ["heat", "nosuch"]
        )

        assert not result.success
        assert result.get("heat").success
        failed = result.get("nosuch")
        assert failed.error_kind == UnknownTargetError.kind
        assert "nosuch" in failed.message
        assert fake_toolchain.linked() == ["heat"]

    def test_compile_failure_names_failed_action(self, project, make_toolchain):
        heat_project(project)

        result = BuildOrchestrator(
            project.config(), toolchain=make_toolchain(fail=["kinds"]), cache=MemoryUnitCacheStore()
        ).build(["heat", "dump"])

        heat = result.get("heat")
        assert not heat.success
        assert isinstance(heat.errors[0], ToolchainError)
        assert heat.errors[0].action_id == "compile:src/mod/kinds.f90"
        assert heat.artifacts == []
        assert result.get("dump").success

    def test_fail_fast_reports_unstarted_targets(self, project, make_toolchain):
        heat_project(project)

        result = BuildOrchestrator(
            project.config(),
            toolchain=make_toolchain(fail=["io_utils"]),
            cache=MemoryUnitCacheStore(),
            jobs=1,
            fail_fast=True,
        ).build(["dump", "heat"])

        assert result.get("dump").errors[0].action_id == "compile:src/mod/io_utils.f90"
        heat_error = result.get("heat").errors[0]
        assert heat_error.returncode is None
        assert "not started" in str(heat_error)

    def test_dry_run_plans_without_running(self, project, fake_toolchain):
        heat_project(project)

        result = BuildOrchestrator(project.config(), toolchain=fake_toolchain, cache=MemoryUnitCacheStore()).build(
            ["heat"], dry_run=True
        )

        assert result.execution is None
        assert result.success
        assert [p.name for p in result.get("heat").artifacts] == ["heat"]
        assert fake_toolchain.calls == []

    def test_deps_target(self, project, fake_toolchain):
        heat_project(project)
        project.module("broken", ["missing"])

        result = BuildOrchestrator(project.config(), toolchain=fake_toolchain, cache=MemoryUnitCacheStore()).build(
            ["deps", "heat"]
        )

        assert result.get("deps").error_kind == "unresolved_import"
        assert result.get("heat").success

    def test_extra_submodules_from_config(self, project, fake_toolchain):
        project.module("solver")
        project.submodule("solver", "serial")
        project.submodule("solver", "openmp")
        project.program("run", ["solver"])
        project.write("fmake.ini", "[submodules]\nsolver = solver:openmp\n")

        config = project.config()
        result = BuildOrchestrator(config, toolchain=fake_toolchain, cache=MemoryUnitCacheStore()).build(["run"])

        assert result.success
        assert config.extra_submodules == {"solver": ["solver:openmp"]}
        linked = (config.build_root / "run").read_text().split()
        assert linked[:2] == ["run", "solver"]
        assert sorted(linked[2:]) == ["openmp", "serial"]

    def test_misnamed_program_fails_bulk_and_named_targets(self, project, fake_toolchain):
        project.program("good")
        project.write("src/bad.f90", "program other\nend program other\n")

        result = BuildOrchestrator(project.config(), toolchain=fake_toolchain, cache=MemoryUnitCacheStore()).build(
            ["all", "bad"]
        )

        assert not result.success
        everything = result.get("all")
        assert not everything.success
        assert everything.error_kind == ConfigurationMismatchError.kind
        assert [p.name for p in everything.artifacts] == ["good"]
        assert result.get("bad").error_kind == ConfigurationMismatchError.kind
        assert fake_toolchain.linked() == ["good"]


class TestCreateToolchain:
    def test_flag_layers(self, project):
        config = project.config(profile="release", environ={"FC": "ifx", "FFLAGS": "-O3", "LDLIBS": "-lblas"})

        toolchain = create_toolchain(config)

        assert toolchain.compiler == "ifx"
        assert toolchain.compile_flags == list(COMMON_FLAGS) + ["-O2", "-O3"]
        assert toolchain.link_libs == ["-lblas"]
        assert toolchain.cwd == config.project_dir
