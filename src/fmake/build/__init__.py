"""Build pipeline: catalog, import scanning, dependency resolution, planning and execution."""
