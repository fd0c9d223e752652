"""
Defines the engine's version string.

It is shown by the CLI `--version` option and kept in step with the version
in pyproject.toml.
"""

__version__ = "1.0.0"
