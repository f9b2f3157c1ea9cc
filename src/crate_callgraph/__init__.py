"""Core package for the crate ecosystem call graph pipeline."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("crate-callgraph")
except PackageNotFoundError:  # pragma: no cover - package metadata absent in dev mode
    __version__ = "0.0.0"

__all__ = ["__version__"]
