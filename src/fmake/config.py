"""Project configuration for fmake.

Configuration comes from three layers, later layers adding to earlier ones:

1. Built-in defaults (the classic ``src/``, ``src/mod/``, ``src/test/``
   layout with ``build/`` and ``dep/`` output trees)
2. An optional ``fmake.ini`` in the project root
3. Environment variables ``FC``, ``FFLAGS``, ``LDFLAGS``, ``LDLIBS`` and
   ``BUILD``

Example fmake.ini:

    [project]
    source_dir = src
    module_dir = mod
    test_dir = test
    extension = f90
    compiler = gfortran
    profile = debug

    [flags]
    fflags = -fopenmp
    ldlibs = -llapack

    [profile.release]
    fflags = -O3 -march=native

    [submodules]
    solver = solver:solver_openmp
"""

import configparser
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .build.build_profiles import BuildProfile, ProfileFlags, get_profile

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "fmake.ini"


class ConfigError(Exception):
    """Raised when fmake.ini cannot be parsed or holds invalid values."""

    pass


@dataclass
class ProjectConfig:
    """Resolved project configuration.

    Attributes:
        project_dir: Project root directory
        source_dir: Source tree, relative to project_dir
        module_dir: Module tree, relative to source_dir
        test_dir: Test program directory, relative to source_dir
        build_dir: Build output tree, relative to project_dir
        dep_dir: Dependency/cache tree, relative to project_dir
        extension: Source file extension without the dot
        compiler: Compiler/linker executable
        profile: Selected build profile
        fflags: Extra compiler flags
        ldflags: Extra linker flags
        ldlibs: Library flags appended after the objects on the link line
        profile_overrides: Per-profile replacement compile flags
        extra_submodules: Module name -> extra "module:submodule" objects to link
    """

    project_dir: Path
    source_dir: str = "src"
    module_dir: str = "mod"
    test_dir: str = "test"
    build_dir: str = "build"
    dep_dir: str = "dep"
    extension: str = "f90"
    compiler: str = "gfortran"
    profile: BuildProfile = BuildProfile.DEBUG
    fflags: list[str] = field(default_factory=list)
    ldflags: list[str] = field(default_factory=list)
    ldlibs: list[str] = field(default_factory=list)
    profile_overrides: dict[BuildProfile, list[str]] = field(default_factory=dict)
    extra_submodules: dict[str, list[str]] = field(default_factory=dict)

    @property
    def source_root(self) -> Path:
        return self.project_dir / self.source_dir

    @property
    def module_root(self) -> Path:
        return self.source_root / self.module_dir

    @property
    def test_root(self) -> Path:
        return self.source_root / self.test_dir

    @property
    def build_root(self) -> Path:
        """Per-profile build directory, e.g. build/debug."""
        return self.project_dir / self.build_dir / self.profile.value

    @property
    def module_output_dir(self) -> Path:
        """Where the compiler writes .mod/.smod interface files."""
        return self.build_root / self.module_dir

    @property
    def cache_dir(self) -> Path:
        return self.project_dir / self.dep_dir / "cache"

    @property
    def profile_flags(self) -> ProfileFlags:
        return get_profile(self.profile, self.profile_overrides.get(self.profile))

    def object_path(self, source: Path) -> Path:
        """Object file path for a source file, mirroring the source tree."""
        relative = source.relative_to(self.source_root)
        return self.build_root / relative.with_suffix(".o")

    def executable_path(self, source: Path) -> Path:
        """Executable path for a program source, mirroring the source tree."""
        relative = source.relative_to(self.source_root)
        return self.build_root / relative.with_suffix("")

    @classmethod
    def load(
        cls,
        project_dir: Path,
        profile: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ProjectConfig":
        """Load configuration for a project.

        Args:
            project_dir: Project root directory
            profile: Profile name from the command line (wins over BUILD and fmake.ini)
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Resolved ProjectConfig

        Raises:
            ConfigError: If fmake.ini is malformed or names an unknown profile
        """
        env = os.environ if environ is None else environ
        config = cls(project_dir=project_dir.resolve())

        ini_path = project_dir / CONFIG_FILE_NAME
        if ini_path.exists():
            config._apply_ini(ini_path)
        else:
            logger.debug(f"No {CONFIG_FILE_NAME} in {project_dir}, using defaults")

        if env.get("FC"):
            config.compiler = env["FC"]
        config.fflags += shlex.split(env.get("FFLAGS", ""))
        config.ldflags += shlex.split(env.get("LDFLAGS", ""))
        config.ldlibs += shlex.split(env.get("LDLIBS", ""))

        selected = profile or env.get("BUILD")
        if selected:
            try:
                config.profile = BuildProfile.parse(selected)
            except ValueError as e:
                raise ConfigError(str(e)) from e

        config.extension = config.extension.lstrip(".")
        return config

    def _apply_ini(self, ini_path: Path) -> None:
        parser = configparser.ConfigParser()
        try:
            with open(ini_path, "r", encoding="utf-8") as f:
                parser.read_file(f)
        except (configparser.Error, OSError) as e:
            raise ConfigError(f"Failed to read {ini_path}: {e}") from e

        if parser.has_section("project"):
            section = parser["project"]
            for key in ("source_dir", "module_dir", "test_dir", "build_dir", "dep_dir", "extension", "compiler"):
                if key in section:
                    setattr(self, key, section[key].strip())
            if "profile" in section:
                try:
                    self.profile = BuildProfile.parse(section["profile"])
                except ValueError as e:
                    raise ConfigError(f"{ini_path}: {e}") from e

        if parser.has_section("flags"):
            section = parser["flags"]
            self.fflags += shlex.split(section.get("fflags", ""))
            self.ldflags += shlex.split(section.get("ldflags", ""))
            self.ldlibs += shlex.split(section.get("ldlibs", ""))

        for name in parser.sections():
            if not name.startswith("profile."):
                continue
            try:
                profile = BuildProfile.parse(name.split(".", 1)[1])
            except ValueError as e:
                raise ConfigError(f"{ini_path}: [{name}]: {e}") from e
            self.profile_overrides[profile] = shlex.split(parser[name].get("fflags", ""))

        if parser.has_section("submodules"):
            for module, names in parser["submodules"].items():
                self.extra_submodules[module.lower()] = [n.lower() for n in names.replace(",", " ").split()]

        logger.info(f"Loaded configuration from {ini_path}")
