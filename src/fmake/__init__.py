"""fmake - incremental builds for Fortran projects with modules and submodules."""

__version__ = "0.3.0"
