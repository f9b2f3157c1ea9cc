"""Shared fixtures: a local registry mirror, archive builders and scheduler wiring."""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple

import pytest

from crate_callgraph.analysis.model import PackageVersion
from crate_callgraph.config import AnalysisConfig, ProjectPaths, RegistryConfig
from crate_callgraph.data.archive import ArchiveFetcher
from crate_callgraph.data.registry_index import RegistryIndex, index_path
from crate_callgraph.io.graph_store import GraphStore, NetworkXGraphStore
from crate_callgraph.pipelines.scheduler import Scheduler


def write_archive(
    path: Path,
    files: Dict[str, bytes | str],
    *,
    links: Optional[Dict[str, str]] = None,
) -> Path:
    """Write a gzip tarball whose members are ``files`` (name -> content) plus symlinks."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return path


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class LocalRegistry:
    """Registry index mirror plus archive directory laid out like the real registry."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.index_dir = root / "index"
        self.archive_dir = root / "archives"
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        (self.index_dir / "config.json").write_text('{"dl": "unused"}', encoding="utf-8")

    def publish(
        self,
        name: str,
        version: str,
        *,
        modules: Optional[Dict[str, str]] = None,
        deps: Iterable[Tuple[str, str]] = (),
        dev_deps: Iterable[Tuple[str, str]] = (),
        yanked: bool = False,
        checksum: Optional[str] = None,
    ) -> PackageVersion:
        prefix = f"{name}-{version}"
        files: Dict[str, bytes | str] = {f"{prefix}/Cargo.toml": f'[package]\nname = "{name}"\nversion = "{version}"\n'}
        for filename, text in (modules or {}).items():
            files[f"{prefix}/target/ir/{filename}"] = text
        archive = write_archive(self.archive_dir / f"{prefix}.crate", files)

        record = {
            "name": name,
            "vers": version,
            "deps": [
                {"name": dep, "req": req, "features": [], "optional": False, "default_features": True,
                 "target": None, "kind": "normal"}
                for dep, req in deps
            ]
            + [
                {"name": dep, "req": req, "features": [], "optional": False, "default_features": True,
                 "target": None, "kind": "dev"}
                for dep, req in dev_deps
            ],
            "cksum": checksum if checksum is not None else _sha256(archive),
            "features": {},
            "yanked": yanked,
        }
        index_file = self.index_dir / index_path(name)
        index_file.parent.mkdir(parents=True, exist_ok=True)
        with index_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")
        return PackageVersion(name, version)

    def config(self) -> RegistryConfig:
        return RegistryConfig(index_dir=self.index_dir, archive_dir=self.archive_dir)


@pytest.fixture
def registry(tmp_path: Path) -> LocalRegistry:
    return LocalRegistry(tmp_path / "registry")


@pytest.fixture
def make_archive() -> Callable[..., Path]:
    return write_archive


@pytest.fixture
def analysis_config(tmp_path: Path) -> AnalysisConfig:
    return AnalysisConfig(
        concurrency=4,
        retry_cap=2,
        backoff_base=0.0,
        dependency_wait_attempts=50,
        dependency_wait_interval=0.01,
        paths=ProjectPaths(tmp_path / "work"),
    )


@pytest.fixture
def make_scheduler(registry: LocalRegistry, analysis_config: AnalysisConfig) -> Callable[..., Scheduler]:
    def _build(
        store: Optional[GraphStore] = None,
        *,
        fetcher: Optional[ArchiveFetcher] = None,
        config: Optional[AnalysisConfig] = None,
    ) -> Scheduler:
        config = config or analysis_config
        registry_config = registry.config()
        fetcher = fetcher or ArchiveFetcher(
            registry_config, config.paths, max_extracted_bytes=config.max_extracted_bytes
        )
        return Scheduler(RegistryIndex(registry_config), fetcher, store or NetworkXGraphStore(), config)

    return _build
