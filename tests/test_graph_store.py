"""Tests for the networkx graph store and store selection."""

from __future__ import annotations

from pathlib import Path

import networkx as nx
import pytest

from crate_callgraph.analysis.call_graph import build_module_graph, link_package
from crate_callgraph.analysis.merger import ExportIndex, merge
from crate_callgraph.analysis.model import AnalysisBatch, CallEdge, DependencyEdge, PackageVersion
from crate_callgraph.config import StoreConfig
from crate_callgraph.errors import ConfigError, IngestionError
from crate_callgraph.io.graph_store import NetworkXGraphStore, open_store, version_node_id
from crate_callgraph.io.ir_loader import parse_ir_text

APP = PackageVersion("app", "0.1.0")
LIB = PackageVersion("lib", "1.0.0")

LIB_IR = """\
define void @_ZN3lib5parse17haaaaaaaaaaaaaaaaE() {
  ret void
}
"""

APP_IR = """\
define void @_ZN3app4main17h1111111111111111E(ptr %f) {
  call void @_ZN3lib5parse17haaaaaaaaaaaaaaaaE()
  call void @_ZN3app6helper17h2222222222222222E()
  call void @printf()
  call void %f()
  ret void
}

define void @_ZN3app6helper17h2222222222222222E() {
  ret void
}
"""


def _batch(package: PackageVersion, text: str, deps=(), index: ExportIndex | None = None) -> AnalysisBatch:
    graph = link_package(package, [build_module_graph(package, parse_ir_text(text, source=f"{package.name}.ll"))])
    batch, _ = merge(graph, list(deps), index or ExportIndex())
    return batch


def _ingest_pair(store: NetworkXGraphStore) -> AnalysisBatch:
    index = ExportIndex()
    lib = _batch(LIB, LIB_IR)
    store.upsert(lib)
    index.publish(LIB, lib.exports)
    app = _batch(APP, APP_IR, [DependencyEdge(APP, LIB, "^1")], index)
    store.upsert(app)
    return app


def _snapshot(graph: nx.MultiDiGraph):
    nodes = sorted((node, tuple(sorted(data.items()))) for node, data in graph.nodes(data=True))
    edges = sorted((u, v, k, tuple(sorted(data.items(), key=str))) for u, v, k, data in graph.edges(keys=True, data=True))
    return nodes, edges


def test_upsert_writes_schema() -> None:
    store = NetworkXGraphStore()
    app = _ingest_pair(store)
    graph = store.graph

    assert store.is_ingested(APP) and store.is_ingested(LIB)
    labels = {data["label"] for _, data in graph.nodes(data=True)}
    assert labels == {"Package", "PackageVersion", "Function"}

    depends = [data for _, _, key, data in graph.edges(version_node_id(APP), keys=True, data=True) if key == "DEPENDS_ON"]
    assert depends == [{"label": "DEPENDS_ON", "constraint": "^1", "resolved_version": "1.0.0"}]

    kinds = sorted(data["kind"] for _, _, data in graph.edges(data=True) if data["label"] == "CALLS")
    assert kinds == ["Direct", "Direct", "External", "Indirect"]
    assert app.counts()["Direct"] == 2


def test_direct_edges_point_at_existing_functions() -> None:
    store = NetworkXGraphStore()
    _ingest_pair(store)
    graph = store.graph

    for _, target, data in graph.edges(data=True):
        if data.get("kind") == "Direct":
            assert graph.nodes[target]["label"] == "Function"
            assert not graph.nodes[target]["placeholder"]


def test_reingesting_is_idempotent() -> None:
    store = NetworkXGraphStore()
    app = _ingest_pair(store)
    before = _snapshot(store.graph)

    store.upsert(app)
    assert _snapshot(store.graph) == before


def test_reingest_drops_stale_functions() -> None:
    store = NetworkXGraphStore()
    _ingest_pair(store)
    smaller = _batch(APP, "define void @_ZN3app4main17h1111111111111111E() {\n  ret void\n}\n")

    store.upsert(smaller)
    owned = [node for node, data in store.graph.nodes(data=True) if data.get("owner") == APP.key]
    assert owned == [smaller.nodes[0].node_id]
    assert not [edge for edge in store.graph.out_edges(version_node_id(APP), keys=True) if edge[2] == "DEPENDS_ON"]


def test_failed_batch_leaves_store_untouched() -> None:
    store = NetworkXGraphStore()
    _ingest_pair(store)
    before = _snapshot(store.graph)

    broken = _batch(PackageVersion("bad", "0.0.1"), "define void @f() {\n  ret void\n}\n")
    broken.edges.append(CallEdge.direct(broken.nodes[0].node_id, "nowhere@0.0.0::x#0"))
    with pytest.raises(IngestionError):
        store.upsert(broken)

    assert _snapshot(store.graph) == before
    assert not store.is_ingested(PackageVersion("bad", "0.0.1"))


def test_load_exports_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    store = NetworkXGraphStore(path)
    _ingest_pair(store)

    reopened = NetworkXGraphStore(path)
    assert _snapshot(reopened.graph) == _snapshot(store.graph)
    exports = reopened.load_exports(LIB)
    assert exports is not None
    assert set(exports.by_identity) == {"lib::parse"}
    assert reopened.load_exports(PackageVersion("ghost", "1.0.0")) is None


def test_open_store_by_url(tmp_path: Path) -> None:
    assert isinstance(open_store(StoreConfig(url="memory://")), NetworkXGraphStore)

    by_file_url = open_store(StoreConfig(url=f"file://{tmp_path / 'a.json'}"))
    assert by_file_url.path == tmp_path / "a.json"

    by_path = open_store(StoreConfig(url=str(tmp_path / "b.json")))
    assert by_path.path == tmp_path / "b.json"

    with pytest.raises(ConfigError):
        open_store(StoreConfig(url="ftp://example.com/graph"))


def test_corrupt_store_file_is_a_config_error(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        NetworkXGraphStore(path)


def test_upsert_updates_the_live_graph_in_place(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    store = NetworkXGraphStore(path)
    _ingest_pair(store)
    graph = store.graph

    reopened = NetworkXGraphStore(path)
    smaller = _batch(APP, "define void @_ZN3app4main17h1111111111111111E() {\n  ret void\n}\n")
    reopened.upsert(smaller)
    store.upsert(smaller)

    assert store.graph is graph
    assert _snapshot(reopened.graph) == _snapshot(store.graph)
    owned = [node for node, data in graph.nodes(data=True) if data.get("owner") == APP.key]
    assert owned == [smaller.nodes[0].node_id]
    assert store.load_exports(LIB) is not None


def test_store_file_is_written_every_n_commits(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    store = NetworkXGraphStore(path, flush_every=2)

    store.upsert(_batch(LIB, LIB_IR))
    assert not path.exists()
    store.upsert(_batch(PackageVersion("other", "1.0.0"), LIB_IR))
    assert path.exists()

    store.upsert(_batch(APP, APP_IR))
    assert not NetworkXGraphStore(path).is_ingested(APP)
    store.close()
    assert NetworkXGraphStore(path).is_ingested(APP)


def test_failed_write_restores_the_written_state(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "graph.json"
    store = NetworkXGraphStore(path)
    store.upsert(_batch(LIB, LIB_IR))
    before = _snapshot(store.graph)

    def _refuse(*args) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("crate_callgraph.io.graph_store.os.replace", _refuse)
    with pytest.raises(IngestionError) as info:
        store.upsert(_batch(APP, APP_IR))
    assert info.value.retryable

    assert _snapshot(store.graph) == before
    assert not store.is_ingested(APP)
    assert not (tmp_path / "graph.json.tmp").exists()


def test_flush_interval_must_be_positive() -> None:
    with pytest.raises(ConfigError):
        StoreConfig(flush_every=0).validate()
