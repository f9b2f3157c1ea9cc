"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations


class CrateGraphError(Exception):
    """Base class for all errors raised by the pipeline."""

    category = "error"
    retryable = False

    def __init__(self, message: str, *, package: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.package = package
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        if self.package:
            return f"{self.package}: {self.message}"
        return self.message


class ConfigError(CrateGraphError):
    """Fatal error detected before any job starts (bad options, cyclic manifests, unreachable store)."""

    category = "ConfigError"


class FetchError(CrateGraphError):
    """Transient failure talking to the registry or archive mirror."""

    category = "FetchError"
    retryable = True


class DownloadError(FetchError):
    pass


class ArchiveError(CrateGraphError):
    """The archive itself is unusable; terminal for the job."""

    category = "ArchiveError"


class CorruptArchive(ArchiveError):
    pass


class ChecksumMismatch(ArchiveError):
    pass


class PathTraversal(ArchiveError):
    pass


class SizeLimitExceeded(ArchiveError):
    pass


class IRError(CrateGraphError):
    """An IR artifact could not be read. Jobs hitting this end Skipped, not Failed."""

    category = "IRError"


class ParseError(IRError):
    category = "ParseError"


class UnsupportedIRVersion(IRError):
    category = "UnsupportedIRVersion"


class ResolutionError(CrateGraphError):
    """A package name or version requirement could not be resolved."""

    category = "ResolutionError"


class NotFound(ResolutionError):
    pass


class NoSatisfyingVersion(ResolutionError):
    pass


class IngestionError(CrateGraphError):
    """The graph store rejected or failed a transaction."""

    category = "IngestionError"
    retryable = True


__all__ = [
    "ArchiveError",
    "ChecksumMismatch",
    "ConfigError",
    "CorruptArchive",
    "CrateGraphError",
    "DownloadError",
    "FetchError",
    "IRError",
    "IngestionError",
    "NoSatisfyingVersion",
    "NotFound",
    "ParseError",
    "PathTraversal",
    "ResolutionError",
    "SizeLimitExceeded",
    "UnsupportedIRVersion",
]
