"""Client for the Cargo registry index (sparse HTTP layout or a local mirror)."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import requests
from semantic_version import Version

from crate_callgraph.analysis.model import DependencySpec, Manifest, PackageVersion
from crate_callgraph.config import RegistryConfig
from crate_callgraph.data.versions import VersionReq, parse_version
from crate_callgraph.errors import ConfigError, FetchError, NoSatisfyingVersion, NotFound

LOGGER = logging.getLogger(__name__)

_SKIP_INDEX_FILES = {"config.json"}


def index_path(name: str) -> str:
    """Relative path of a package's index file, following the Cargo prefix rules."""

    lower = name.lower()
    if not lower:
        raise ValueError("Package name cannot be empty.")
    if len(lower) == 1:
        return f"1/{lower}"
    if len(lower) == 2:
        return f"2/{lower}"
    if len(lower) == 3:
        return f"3/{lower[0]}/{lower}"
    return f"{lower[:2]}/{lower[2:4]}/{lower}"


@dataclass(frozen=True, slots=True)
class IndexEntry:
    name: str
    version: str
    checksum: str
    yanked: bool
    dependencies: Tuple[DependencySpec, ...]

    @property
    def package(self) -> PackageVersion:
        return PackageVersion(self.name, self.version)

    @property
    def semver(self) -> Version:
        return parse_version(self.version)


def _dependency_from_json(entry: dict) -> DependencySpec:
    alias: Optional[str] = None
    name = entry.get("name", "")
    real_name = entry.get("package")
    if real_name:
        alias, name = name, real_name
    return DependencySpec(
        name=name,
        requirement=entry.get("req") or "*",
        kind=entry.get("kind") or "normal",
        optional=bool(entry.get("optional", False)),
        target=entry.get("target"),
        alias=alias,
    )


def parse_index_file(text: str, source: str = "<index>") -> List[IndexEntry]:
    """Parse newline-delimited index records; malformed lines are skipped."""

    entries: List[IndexEntry] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.warning("Skipping malformed index record %s:%d", source, line_no)
            continue
        name = record.get("name")
        version = record.get("vers")
        if not name or not version:
            continue
        entries.append(
            IndexEntry(
                name=name,
                version=version,
                checksum=record.get("cksum", ""),
                yanked=bool(record.get("yanked", False)),
                dependencies=tuple(_dependency_from_json(dep) for dep in record.get("deps", [])),
            )
        )
    return entries


class RegistryIndex:
    """Resolve package names and version requirements against the registry index."""

    def __init__(self, config: RegistryConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self._session = session
        self._cache: Dict[str, List[IndexEntry]] = {}
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers["User-Agent"] = self.config.user_agent
        return self._session

    def _read_local(self, name: str) -> str:
        assert self.config.index_dir is not None
        path = Path(self.config.index_dir) / index_path(name)
        if not path.is_file():
            raise NotFound(f"Unknown package: {name}", package=name)
        return path.read_text(encoding="utf-8")

    def _read_remote(self, name: str) -> str:
        url = f"{self.config.index_url.rstrip('/')}/{index_path(name)}"
        try:
            response = self.session.get(url, timeout=self.config.timeout)
        except requests.RequestException as exc:
            raise FetchError(f"Index request failed for {name}: {exc}", package=name) from exc
        if response.status_code in (404, 410, 451):
            raise NotFound(f"Unknown package: {name}", package=name)
        if response.status_code != 200:
            raise FetchError(f"Index returned HTTP {response.status_code} for {name}", package=name)
        return response.text

    def entries(self, name: str) -> List[IndexEntry]:
        """All published entries of ``name`` in index order."""

        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached
        text = self._read_local(name) if self.config.index_dir is not None else self._read_remote(name)
        entries = [entry for entry in parse_index_file(text, source=name) if entry.name.lower() == name.lower()]
        if not entries:
            raise NotFound(f"Unknown package: {name}", package=name)
        with self._lock:
            self._cache[name] = entries
        return entries

    def versions(self, name: str, *, include_yanked: bool = False) -> List[IndexEntry]:
        return [entry for entry in self.entries(name) if include_yanked or not entry.yanked]

    def entry(self, package: PackageVersion) -> IndexEntry:
        for entry in self.entries(package.name):
            if entry.version == package.version:
                return entry
        raise NotFound(f"Unknown version: {package}", package=package.key)

    def resolve(self, name: str, constraint: str = "*", *, include_prerelease: bool = False) -> PackageVersion:
        """Highest non-yanked version of ``name`` satisfying ``constraint``."""

        try:
            requirement = VersionReq(constraint)
        except ValueError as exc:
            raise NoSatisfyingVersion(str(exc), package=name) from exc

        candidates: Dict[Version, IndexEntry] = {}
        for entry in self.versions(name):
            try:
                candidates[entry.semver] = entry
            except ValueError:
                LOGGER.debug("Ignoring unparsable version %s@%s", name, entry.version)
        best = requirement.select(candidates, include_prerelease=include_prerelease)
        if best is None:
            raise NoSatisfyingVersion(f"No version of {name} satisfies {constraint!r}", package=name)
        return candidates[best].package

    def manifest(self, package: PackageVersion) -> Manifest:
        entry = self.entry(package)
        targets = sorted({dep.target for dep in entry.dependencies if dep.target})
        return Manifest(dependencies=entry.dependencies, targets=tuple(targets))

    def checksum(self, package: PackageVersion) -> str:
        return self.entry(package).checksum

    def package_names(self) -> Iterator[str]:
        """Every package in a local index mirror."""

        if self.config.index_dir is None:
            raise ConfigError("Enumerating the ecosystem requires a local index mirror.")
        root = Path(self.config.index_dir)
        for path in sorted(root.rglob("*")):
            relative = path.relative_to(root)
            if not path.is_file() or path.name in _SKIP_INDEX_FILES:
                continue
            if any(part.startswith(".") for part in relative.parts):
                continue
            yield path.name

    def iter_package_versions(self, *, limit: Optional[int] = None) -> Iterator[PackageVersion]:
        count = 0
        for name in self.package_names():
            for entry in self.versions(name):
                if limit is not None and count >= limit:
                    return
                yield entry.package
                count += 1


__all__ = ["IndexEntry", "RegistryIndex", "index_path", "parse_index_file"]
