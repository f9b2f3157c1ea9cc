"""Download, checksum and safely unpack package archives."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO, List, Optional

import requests

from crate_callgraph.analysis.model import PackageVersion
from crate_callgraph.config import ProjectPaths, RegistryConfig
from crate_callgraph.errors import (
    ChecksumMismatch,
    CorruptArchive,
    DownloadError,
    PathTraversal,
    SizeLimitExceeded,
)
from crate_callgraph.io.ir_loader import IR_SUFFIXES

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
MAX_NESTING_DEPTH = 2
NESTED_ARCHIVE_SUFFIXES = (".crate", ".tar.gz", ".tgz", ".tar")


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Path, expected: str, *, package: str | None = None) -> None:
    actual = _sha256(path)
    if actual.lower() != expected.lower():
        raise ChecksumMismatch(f"Checksum mismatch for {path.name}: expected {expected}, got {actual}", package=package)


@dataclass(slots=True)
class _Budget:
    limit: int
    used: int = 0

    def charge(self, size: int, member: str) -> None:
        self.used += size
        if self.used > self.limit:
            raise SizeLimitExceeded(f"Extracted size exceeds {self.limit} bytes at {member}")


def _is_within(root: Path, candidate: Path) -> bool:
    try:
        candidate.relative_to(root)
    except ValueError:
        return False
    return True


def _member_target(root: Path, name: str) -> Path:
    pure = PurePosixPath(name)
    if pure.is_absolute() or name.startswith("\\") or (pure.parts and ":" in pure.parts[0]):
        raise PathTraversal(f"Absolute path in archive: {name}")
    target = (root / pure).resolve()
    if not _is_within(root, target):
        raise PathTraversal(f"Archive member escapes the extraction directory: {name}")
    return target


def _check_link(root: Path, member: tarfile.TarInfo) -> None:
    if member.issym():
        base = (root / PurePosixPath(member.name)).parent
    else:
        base = root
    link = PurePosixPath(member.linkname)
    if link.is_absolute() or not _is_within(root, (base / link).resolve()):
        raise PathTraversal(f"Archive link escapes the extraction directory: {member.name} -> {member.linkname}")


def _copy_member(source: IO[bytes], target: Path, budget: _Budget, name: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as handle:
        for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
            budget.charge(len(chunk), name)
            handle.write(chunk)


def _is_nested_archive(path: Path) -> bool:
    return path.name.endswith(NESTED_ARCHIVE_SUFFIXES)


def _extract_into(archive: Path, root: Path, budget: _Budget, depth: int) -> None:
    root.mkdir(parents=True, exist_ok=True)
    root = root.resolve()
    nested: List[Path] = []
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                target = _member_target(root, member.name)
                if member.issym() or member.islnk():
                    _check_link(root, member)
                    LOGGER.debug("Skipping link member %s", member.name)
                    continue
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    raise CorruptArchive(f"Unsupported archive member type: {member.name}")
                source = tar.extractfile(member)
                if source is None:
                    raise CorruptArchive(f"Unreadable archive member: {member.name}")
                with source:
                    _copy_member(source, target, budget, member.name)
                if _is_nested_archive(target):
                    nested.append(target)
    except (tarfile.TarError, EOFError, zlib.error) as exc:
        raise CorruptArchive(f"Cannot read {archive.name}: {exc}") from exc

    for inner in nested:
        if depth >= MAX_NESTING_DEPTH:
            LOGGER.debug("Leaving nested archive %s packed (depth %d)", inner, depth)
            continue
        _extract_into(inner, inner.with_name(inner.name + ".d"), budget, depth + 1)
        inner.unlink()


def extract_archive(archive: Path, destination: Path, *, max_bytes: int) -> Path:
    """
    Unpack ``archive`` into ``destination``, replacing whatever was there.

    Members that would land outside ``destination`` raise ``PathTraversal``; the total number of
    bytes written across nested archives is capped at ``max_bytes``. A failed extraction removes
    ``destination`` entirely.
    """

    if destination.exists():
        shutil.rmtree(destination)
    try:
        _extract_into(archive, destination, _Budget(limit=max_bytes), depth=0)
    except BaseException:
        shutil.rmtree(destination, ignore_errors=True)
        raise
    return destination


def find_artifacts(directory: Path) -> List[Path]:
    """IR artifacts below ``directory`` in a stable order."""

    found = [path for path in directory.rglob("*") if path.is_file() and path.suffix in IR_SUFFIXES]
    return sorted(found, key=lambda path: path.relative_to(directory).as_posix())


class ArchiveFetcher:
    """Fetch package archives from the registry or a local mirror into the downloads cache."""

    def __init__(
        self,
        registry: RegistryConfig,
        paths: ProjectPaths,
        *,
        max_extracted_bytes: int,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.registry = registry
        self.paths = paths
        self.max_extracted_bytes = max_extracted_bytes
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers["User-Agent"] = self.registry.user_agent
        return self._session

    def archive_path(self, package: PackageVersion) -> Path:
        return self.paths.downloads / package.name / f"{package.name}-{package.version}.crate"

    def extraction_dir(self, package: PackageVersion) -> Path:
        return self.paths.extracted / f"{package.name}-{package.version}"

    def _mirror_source(self, package: PackageVersion) -> Path:
        assert self.registry.archive_dir is not None
        root = Path(self.registry.archive_dir)
        filename = f"{package.name}-{package.version}.crate"
        for candidate in (root / filename, root / package.name / filename):
            if candidate.is_file():
                return candidate
        raise DownloadError(f"Archive not in mirror: {filename}", package=package.key, retryable=False)

    def _copy_from_mirror(self, package: PackageVersion, destination: Path) -> None:
        source = self._mirror_source(package)
        partial = destination.with_name(destination.name + ".part")
        try:
            shutil.copyfile(source, partial)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Failed to copy {source}: {exc}", package=package.key) from exc
        os.replace(partial, destination)

    def _download(self, package: PackageVersion, destination: Path) -> None:
        url = self.registry.archive_url.format(name=package.name, version=package.version)
        partial = destination.with_name(destination.name + ".part")
        try:
            with self.session.get(url, stream=True, timeout=self.registry.timeout) as response:
                if response.status_code == 404:
                    raise DownloadError(f"Archive not found: {url}", package=package.key, retryable=False)
                if response.status_code != 200:
                    raise DownloadError(f"HTTP {response.status_code} fetching {url}", package=package.key)
                with partial.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except requests.RequestException as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Failed to fetch {url}: {exc}", package=package.key) from exc
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, destination)

    def download(self, package: PackageVersion, checksum: str) -> Path:
        """Return a verified local copy of the archive, fetching it when needed."""

        destination = self.archive_path(package)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if destination.exists():
            if not checksum or _sha256(destination) == checksum.lower():
                LOGGER.debug("Using cached archive %s", destination)
                return destination
            LOGGER.info("Cached archive for %s is stale; fetching again", package)
            destination.unlink()

        if self.registry.archive_dir is not None:
            self._copy_from_mirror(package, destination)
        else:
            self._download(package, destination)

        if checksum:
            try:
                verify_checksum(destination, checksum, package=package.key)
            except ChecksumMismatch:
                destination.unlink(missing_ok=True)
                raise
        else:
            LOGGER.warning("No checksum published for %s; skipping verification", package)
        return destination

    def extract(self, package: PackageVersion, archive: Path) -> Path:
        return extract_archive(archive, self.extraction_dir(package), max_bytes=self.max_extracted_bytes)

    def fetch(self, package: PackageVersion, checksum: str) -> Path:
        """Download, verify and extract ``package``; returns the extraction directory."""

        return self.extract(package, self.download(package, checksum))

    def cleanup(self, package: PackageVersion) -> None:
        shutil.rmtree(self.extraction_dir(package), ignore_errors=True)


__all__ = [
    "ArchiveFetcher",
    "MAX_NESTING_DEPTH",
    "extract_archive",
    "find_artifacts",
    "verify_checksum",
]
