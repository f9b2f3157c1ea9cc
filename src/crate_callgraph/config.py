"""Configuration primitives for the project."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from crate_callgraph.errors import ConfigError

DEFAULT_INDEX_URL = "https://index.crates.io"
DEFAULT_ARCHIVE_URL = "https://static.crates.io/crates/{name}/{name}-{version}.crate"
DEFAULT_STORE_URL = "memory://"
DEFAULT_USER_AGENT = "crate-callgraph (+https://github.com/crate-callgraph/crate-callgraph)"


@dataclass(slots=True)
class ProjectPaths:
    """Working directories used by a run, all relative to ``root``."""

    root: Path = Path(".crate-callgraph")
    downloads: Path = field(init=False)
    extracted: Path = field(init=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser()
        self.downloads = self.root / "downloads"
        self.extracted = self.root / "extracted"

    def ensure(self) -> "ProjectPaths":
        self.downloads.mkdir(parents=True, exist_ok=True)
        self.extracted.mkdir(parents=True, exist_ok=True)
        return self


@dataclass(slots=True)
class RegistryConfig:
    """Where package metadata and archives come from."""

    index_url: str = DEFAULT_INDEX_URL
    index_dir: Path | None = None
    archive_url: str = DEFAULT_ARCHIVE_URL
    archive_dir: Path | None = None
    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT

    def validate(self) -> None:
        if self.index_dir is not None and not Path(self.index_dir).is_dir():
            raise ConfigError(f"Registry index mirror not found: {self.index_dir}")
        if self.archive_dir is not None and not Path(self.archive_dir).is_dir():
            raise ConfigError(f"Archive mirror not found: {self.archive_dir}")
        if self.index_dir is None and not self.index_url.startswith(("http://", "https://")):
            raise ConfigError(f"Unsupported registry URL: {self.index_url}")
        if self.timeout <= 0:
            raise ConfigError("Registry timeout must be positive.")


@dataclass(slots=True)
class StoreConfig:
    """Graph store connection settings."""

    url: str = DEFAULT_STORE_URL
    user: str | None = None
    password: str | None = None
    database: str | None = None
    # file stores only: commits between writes of the store file
    flush_every: int = 1

    def validate(self) -> None:
        if self.flush_every < 1:
            raise ConfigError("Store flush interval must be at least 1.")


@dataclass(slots=True)
class AnalysisConfig:
    """Settings guiding the scheduler and the analysis stages."""

    concurrency: int = 8
    fetch_limit: int | None = None
    retry_cap: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    dependency_wait_attempts: int = 20
    dependency_wait_interval: float = 0.5
    buffer_size: int = 16
    max_extracted_bytes: int = 512 * 1024 * 1024
    blocked_symbol_prefixes: Tuple[str, ...] = ("llvm.",)
    include_prerelease: bool = False
    force: bool = False
    paths: ProjectPaths = field(default_factory=ProjectPaths)

    @property
    def effective_fetch_limit(self) -> int:
        return self.fetch_limit if self.fetch_limit is not None else self.concurrency

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the ``attempt``-th retry (1-based)."""

        return min(self.backoff_max, self.backoff_base * (2 ** max(attempt - 1, 0)))

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ConfigError("Concurrency limit must be at least 1.")
        if self.fetch_limit is not None and self.fetch_limit < 1:
            raise ConfigError("Fetch limit must be at least 1.")
        if self.retry_cap < 1:
            raise ConfigError("Retry cap must be at least 1.")
        if self.buffer_size < 1:
            raise ConfigError("Ingestion buffer size must be at least 1.")
        if self.dependency_wait_attempts < 0:
            raise ConfigError("Dependency wait attempts cannot be negative.")
        if self.max_extracted_bytes <= 0:
            raise ConfigError("Maximum extracted size must be positive.")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("Backoff delays cannot be negative.")
