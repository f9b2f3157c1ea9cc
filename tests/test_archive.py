"""Tests for archive download, checksum verification and safe extraction."""

from __future__ import annotations

import gzip
import io
import tarfile
from pathlib import Path

import pytest

from crate_callgraph.analysis.model import PackageVersion
from crate_callgraph.config import ProjectPaths, RegistryConfig
from crate_callgraph.data.archive import ArchiveFetcher, extract_archive, find_artifacts
from crate_callgraph.data.registry_index import RegistryIndex
from crate_callgraph.errors import (
    ChecksumMismatch,
    CorruptArchive,
    DownloadError,
    PathTraversal,
    SizeLimitExceeded,
)


def test_extract_and_find_artifacts(tmp_path: Path, make_archive) -> None:
    archive = make_archive(
        tmp_path / "demo.crate",
        {
            "demo-1.0.0/Cargo.toml": "[package]",
            "demo-1.0.0/target/b.ll": "; ModuleID = 'b'",
            "demo-1.0.0/target/a.bc": b"BC\xc0\xde",
        },
    )
    destination = extract_archive(archive, tmp_path / "out", max_bytes=1024)

    artifacts = find_artifacts(destination)
    assert [path.name for path in artifacts] == ["a.bc", "b.ll"]


def test_path_traversal_is_rejected_and_cleaned_up(tmp_path: Path, make_archive) -> None:
    archive = make_archive(tmp_path / "evil.crate", {"ok.txt": "fine", "../escape.txt": "nope"})
    destination = tmp_path / "out"

    with pytest.raises(PathTraversal):
        extract_archive(archive, destination, max_bytes=1024)
    assert not destination.exists()
    assert not (tmp_path / "escape.txt").exists()


def test_symlink_escaping_is_rejected(tmp_path: Path, make_archive) -> None:
    archive = make_archive(tmp_path / "link.crate", {"pkg/a.ll": "x"}, links={"pkg/passwd": "../../etc/passwd"})
    with pytest.raises(PathTraversal):
        extract_archive(archive, tmp_path / "out", max_bytes=1024)


def test_size_limit_spans_members(tmp_path: Path, make_archive) -> None:
    archive = make_archive(tmp_path / "big.crate", {"a.ll": "x" * 600, "b.ll": "y" * 600})
    with pytest.raises(SizeLimitExceeded):
        extract_archive(archive, tmp_path / "out", max_bytes=1000)
    assert not (tmp_path / "out").exists()


def test_corrupt_archive(tmp_path: Path) -> None:
    archive = tmp_path / "broken.crate"
    archive.write_bytes(gzip.compress(b"definitely not a tarball" * 40)[:50])
    with pytest.raises(CorruptArchive):
        extract_archive(archive, tmp_path / "out", max_bytes=1024)


def test_nested_archive_is_unpacked(tmp_path: Path, make_archive) -> None:
    inner = make_archive(tmp_path / "inner.tar.gz", {"deep/lib.ll": "; ModuleID = 'lib'"})
    outer = make_archive(tmp_path / "outer.crate", {"pkg/bundle.tar.gz": inner.read_bytes()})

    destination = extract_archive(outer, tmp_path / "out", max_bytes=10_000)
    artifacts = find_artifacts(destination)
    assert [path.name for path in artifacts] == ["lib.ll"]
    assert not (destination / "pkg" / "bundle.tar.gz").exists()


def _fetcher(tmp_path: Path, archive_dir: Path) -> ArchiveFetcher:
    config = RegistryConfig(archive_dir=archive_dir)
    return ArchiveFetcher(config, ProjectPaths(tmp_path / "work").ensure(), max_extracted_bytes=1 << 20)


def test_download_verifies_checksum(tmp_path: Path, registry) -> None:
    good = registry.publish("demo", "1.0.0", modules={"lib.ll": "; ModuleID = 'lib'"})
    fetcher = _fetcher(tmp_path, registry.archive_dir)

    with pytest.raises(ChecksumMismatch):
        fetcher.download(good, "0" * 64)
    assert not fetcher.archive_path(good).exists()

    checksum = RegistryIndex(registry.config()).checksum(good)
    path = fetcher.download(good, checksum)
    assert path.exists()
    directory = fetcher.extract(good, path)
    assert [artifact.name for artifact in find_artifacts(directory)] == ["lib.ll"]

    fetcher.cleanup(good)
    assert not directory.exists()


def test_fetch_returns_the_extracted_tree(tmp_path: Path, registry) -> None:
    package = registry.publish("demo", "2.0.0", modules={"a.ll": "; ModuleID = 'a'", "b.ll": "; ModuleID = 'b'"})
    fetcher = _fetcher(tmp_path, registry.archive_dir)

    directory = fetcher.fetch(package, RegistryIndex(registry.config()).checksum(package))
    assert directory == fetcher.extraction_dir(package)
    assert [artifact.name for artifact in find_artifacts(directory)] == ["a.ll", "b.ll"]


def test_missing_mirror_archive_is_not_retryable(tmp_path: Path) -> None:
    mirror = tmp_path / "mirror"
    mirror.mkdir()
    fetcher = _fetcher(tmp_path, mirror)

    with pytest.raises(DownloadError) as excinfo:
        fetcher.download(PackageVersion("ghost", "0.1.0"), "")
    assert not excinfo.value.retryable


def test_http_download_streams_to_cache(tmp_path: Path, make_archive) -> None:
    payload = make_archive(tmp_path / "src.crate", {"p/lib.ll": "x"}).read_bytes()

    class _Response:
        status_code = 200

        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return False

        def iter_content(self, chunk_size: int):
            stream = io.BytesIO(payload)
            yield from iter(lambda: stream.read(7), b"")

    class _Session:
        def get(self, url: str, stream: bool, timeout: float):
            assert url == "https://dl.example/p/p-1.0.0.crate"
            return _Response()

    config = RegistryConfig(archive_url="https://dl.example/{name}/{name}-{version}.crate")
    fetcher = ArchiveFetcher(config, ProjectPaths(tmp_path / "work"), max_extracted_bytes=1 << 20, session=_Session())
    path = fetcher.download(PackageVersion("p", "1.0.0"), "")
    assert path.read_bytes() == payload
    assert tarfile.is_tarfile(path)


def test_mirror_copy_failure_is_a_retryable_download_error(tmp_path: Path, registry, monkeypatch) -> None:
    package = registry.publish("demo", "3.0.0", modules={"lib.ll": "; ModuleID = 'lib'"})
    fetcher = _fetcher(tmp_path, registry.archive_dir)

    def _interrupted(source, destination) -> None:
        Path(destination).write_bytes(b"half")
        raise OSError("input/output error")

    monkeypatch.setattr("crate_callgraph.data.archive.shutil.copyfile", _interrupted)
    with pytest.raises(DownloadError) as excinfo:
        fetcher.download(package, RegistryIndex(registry.config()).checksum(package))

    assert excinfo.value.retryable
    destination = fetcher.archive_path(package)
    assert not destination.exists()
    assert list(destination.parent.iterdir()) == []
