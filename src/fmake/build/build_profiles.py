"""Build Profile Configuration.

This module defines the two named build profiles and the compiler flags
each of them carries.

Design:
    Every compile line is made of three layers:
    1. COMMON_FLAGS (warnings, language standard, implicit none)
    2. The profile's compile_flags (optimization level, runtime checks)
    3. User flags from fmake.ini and the FFLAGS environment variable

    User flags come last so they can add to or override profile flags
    (gfortran honours the last -O it sees). A ``[profile.<name>]`` section
    in fmake.ini replaces layer 2 entirely.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Sequence


class BuildProfile(Enum):
    """Build profile enum for type-safe profile selection."""

    DEBUG = "debug"
    RELEASE = "release"

    def __str__(self) -> str:
        """Return the string value for directory names and display."""
        return self.value

    @classmethod
    def parse(cls, name: str) -> "BuildProfile":
        """Look up a profile by its (case-insensitive) name.

        Raises:
            ValueError: If no profile has that name.
        """
        try:
            return cls(name.strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown build profile '{name}' (choose from: {choices})") from None


@dataclass(frozen=True)
class ProfileFlags:
    """Flags for one build profile.

    Attributes:
        name: Profile identifier (matches BuildProfile enum value)
        description: Human-readable profile description
        compile_flags: Flags added to every compile and link line
        link_flags: Flags added to link lines only
    """

    name: str
    description: str
    compile_flags: tuple[str, ...]
    link_flags: tuple[str, ...]


COMMON_FLAGS: tuple[str, ...] = (
    "-Wall",
    "-Wextra",
    "-Wconversion-extra",
    "-pedantic",
    "-std=f2018",
    "-fimplicit-none",
)

PROFILES: dict[BuildProfile, ProfileFlags] = {
    BuildProfile.DEBUG: ProfileFlags(
        name="debug",
        description="Debug build with runtime checks and FP traps (default)",
        compile_flags=(
            "-g3",
            "-Og",
            "-fcheck=all",
            "-ffpe-trap=invalid,zero,overflow,underflow,denormal",
        ),
        link_flags=(),
    ),
    BuildProfile.RELEASE: ProfileFlags(
        name="release",
        description="Optimized release build",
        compile_flags=("-O2",),
        link_flags=(),
    ),
}


def get_profile(profile: BuildProfile, override: Sequence[str] | None = None) -> ProfileFlags:
    """Get profile configuration by enum.

    Args:
        profile: BuildProfile enum value
        override: Replacement compile flags for this profile, if configured

    Returns:
        ProfileFlags for the requested profile
    """
    flags = PROFILES[profile]
    if override is not None:
        flags = replace(flags, compile_flags=tuple(override))
    return flags


def get_compile_flags(profile_flags: ProfileFlags, user_flags: Sequence[str] = ()) -> List[str]:
    """Get the full compiler flag list (FFLAGS) for a profile."""
    return list(COMMON_FLAGS) + list(profile_flags.compile_flags) + list(user_flags)


def get_link_flags(profile_flags: ProfileFlags, user_flags: Sequence[str] = ()) -> List[str]:
    """Get linker flags (LDFLAGS) for a profile."""
    return list(profile_flags.link_flags) + list(user_flags)


def format_profile_banner(profile: BuildProfile, compiler: str | None = None) -> str:
    """Format a build profile banner for display.

    Args:
        profile: BuildProfile enum value
        compiler: Compiler executable name (optional)

    Returns:
        Formatted banner string
    """
    parts = [f"profile: {profile.value}"]
    if compiler:
        parts.append(f"compiler: {compiler}")
    return ", ".join(parts)
