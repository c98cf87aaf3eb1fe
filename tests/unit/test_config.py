"""Tests for fmake.ini parsing and environment overrides."""

from pathlib import Path

import pytest

from fmake.build.build_profiles import BuildProfile
from fmake.config import ConfigError, ProjectConfig


def test_defaults(tmp_path):
    """Test the classic layout without fmake.ini."""
    config = ProjectConfig.load(tmp_path, environ={})

    assert config.project_dir == tmp_path.resolve()
    assert config.source_root == config.project_dir / "src"
    assert config.module_root == config.project_dir / "src" / "mod"
    assert config.test_root == config.project_dir / "src" / "test"
    assert config.build_root == config.project_dir / "build" / "debug"
    assert config.module_output_dir == config.project_dir / "build" / "debug" / "mod"
    assert config.cache_dir == config.project_dir / "dep" / "cache"
    assert config.compiler == "gfortran"
    assert config.profile == BuildProfile.DEBUG


def test_output_paths_mirror_source_tree(tmp_path):
    config = ProjectConfig.load(tmp_path, profile="release", environ={})
    root = config.project_dir

    assert config.object_path(root / "src" / "mod" / "grid" / "impl.f90") == root / "build" / "release" / "mod" / "grid" / "impl.o"
    assert config.executable_path(root / "src" / "test" / "check.f90") == root / "build" / "release" / "test" / "check"


def test_ini_sections(tmp_path):
    (tmp_path / "fmake.ini").write_text(
        """
[project]
source_dir = source
module_dir = modules
extension = .F90
compiler = ifx
profile = release

[flags]
fflags = -fopenmp -I/opt/include
ldlibs = -llapack

[profile.release]
fflags = -O3 -march=native

[submodules]
solver = solver:openmp, solver:serial
"""
    )

    config = ProjectConfig.load(tmp_path, environ={})

    assert config.source_root == tmp_path.resolve() / "source"
    assert config.module_root == tmp_path.resolve() / "source" / "modules"
    assert config.extension == "F90"
    assert config.compiler == "ifx"
    assert config.profile == BuildProfile.RELEASE
    assert config.fflags == ["-fopenmp", "-I/opt/include"]
    assert config.ldlibs == ["-llapack"]
    assert config.profile_flags.compile_flags == ("-O3", "-march=native")
    assert config.extra_submodules == {"solver": ["solver:openmp", "solver:serial"]}


def test_environment_adds_to_ini(tmp_path):
    (tmp_path / "fmake.ini").write_text("[flags]\nfflags = -fopenmp\n")
    environ = {"FC": "flang", "FFLAGS": "-O3", "LDFLAGS": "-L/opt/lib", "LDLIBS": "-lblas", "BUILD": "release"}

    config = ProjectConfig.load(tmp_path, environ=environ)

    assert config.compiler == "flang"
    assert config.fflags == ["-fopenmp", "-O3"]
    assert config.ldflags == ["-L/opt/lib"]
    assert config.ldlibs == ["-lblas"]
    assert config.profile == BuildProfile.RELEASE


def test_command_line_profile_wins(tmp_path):
    (tmp_path / "fmake.ini").write_text("[project]\nprofile = release\n")

    config = ProjectConfig.load(tmp_path, profile="debug", environ={"BUILD": "release"})

    assert config.profile == BuildProfile.DEBUG


@pytest.mark.parametrize(
    "ini, environ, profile",
    [
        ("[project]\nprofile = turbo\n", {}, None),
        ("[profile.turbo]\nfflags = -O3\n", {}, None),
        ("", {"BUILD": "turbo"}, None),
        ("", {}, "turbo"),
        ("not an ini file\n", {}, None),
    ],
)
def test_invalid_configuration(tmp_path, ini, environ, profile):
    (tmp_path / "fmake.ini").write_text(ini)

    with pytest.raises(ConfigError):
        ProjectConfig.load(tmp_path, profile=profile, environ=environ)


def test_relative_project_dir_is_resolved(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = ProjectConfig.load(Path("."), environ={})
    assert config.project_dir == tmp_path.resolve()
