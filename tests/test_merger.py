"""Tests for cross-package resolution."""

from __future__ import annotations

import threading

from crate_callgraph.analysis.call_graph import build_module_graph, link_package
from crate_callgraph.analysis.merger import ExportIndex, merge, resolve
from crate_callgraph.analysis.model import CallEdge, CalleeKind, DependencyEdge, ExportTable, PackageVersion
from crate_callgraph.io.ir_loader import parse_ir_text

APP = PackageVersion("app", "0.1.0")
LIB = PackageVersion("lib", "1.2.0")
OTHER = PackageVersion("other", "2.0.0")

APP_IR = """\
define void @_ZN3app4main17h1111111111111111E() {
  call void @_ZN3lib5parse17haaaaaaaaaaaaaaaaE()
  call void @_ZN3lib6render17hbbbbbbbbbbbbbbbbE()
  call void @abort()
  ret void
}
"""

LIB_IR = """\
define void @_ZN3lib5parse17haaaaaaaaaaaaaaaaE() {
  ret void
}

define internal void @_ZN3lib6render17hccccccccccccccccE() {
  ret void
}
"""


def _graph(package: PackageVersion, text: str):
    return link_package(package, [build_module_graph(package, parse_ir_text(text, source=f"{package.name}.ll"))])


def test_merge_resolves_against_dependency_exports() -> None:
    index = ExportIndex()
    lib = _graph(LIB, LIB_IR)
    index.publish(LIB, lib.exports())

    batch, stats = merge(_graph(APP, APP_IR), [DependencyEdge(APP, LIB, "^1")], index)

    direct = [edge for edge in batch.edges if edge.kind is CalleeKind.DIRECT]
    external = [edge for edge in batch.edges if edge.kind is CalleeKind.EXTERNAL]
    assert {edge.target for edge in direct} <= set(lib.nodes)
    assert len(direct) == 1
    assert sorted(edge.target for edge in external) == ["abort", "lib::render"]
    assert stats.resolved == 1 and stats.unresolved == 2
    assert batch.counts()["Direct"] == 1


def test_only_declared_dependencies_are_consulted() -> None:
    index = ExportIndex()
    index.publish(LIB, _graph(LIB, LIB_IR).exports())

    batch, stats = merge(_graph(APP, APP_IR), [], index)
    assert all(edge.kind is not CalleeKind.DIRECT for edge in batch.edges)
    assert stats.resolved == 0


def test_missing_dependency_is_reported() -> None:
    batch, stats = merge(_graph(APP, APP_IR), [DependencyEdge(APP, LIB, "^1")], ExportIndex())
    assert stats.missing_dependencies == ("lib@1.2.0",)
    assert batch.dependencies == [DependencyEdge(APP, LIB, "^1")]


def test_exact_symbol_beats_identity_key() -> None:
    by_key = ExportTable.from_records([("lib@1.2.0::lib#1", "lib::parse", "_ZN3lib5parse17h0000000000000000E")])
    by_symbol = ExportTable.from_records([("other@2.0.0::lib#2", "lib::parse", "_ZN3lib5parse17haaaaaaaaaaaaaaaaE")])
    edge = CallEdge(caller="app", kind=CalleeKind.EXTERNAL, target="lib::parse", symbol="_ZN3lib5parse17haaaaaaaaaaaaaaaaE")

    resolved = resolve(edge, [(LIB, by_key), (OTHER, by_symbol)])
    assert resolved.target == "other@2.0.0::lib#2"

    fallback = resolve(CallEdge(caller="app", kind=CalleeKind.EXTERNAL, target="lib::parse"), [(LIB, by_key), (OTHER, by_symbol)])
    assert fallback.target == "lib@1.2.0::lib#1"


def test_merge_is_order_independent() -> None:
    first, second = ExportIndex(), ExportIndex()
    lib, other = _graph(LIB, LIB_IR), _graph(OTHER, "define void @_ZN3lib6render17hbbbbbbbbbbbbbbbbE() {\n  ret void\n}\n")
    first.publish(LIB, lib.exports())
    first.publish(OTHER, other.exports())
    second.publish(OTHER, other.exports())
    second.publish(LIB, lib.exports())
    deps = [DependencyEdge(APP, LIB, "^1"), DependencyEdge(APP, OTHER, "^2")]

    batch_a, _ = merge(_graph(APP, APP_IR), deps, first)
    batch_b, _ = merge(_graph(APP, APP_IR), list(reversed(deps)), second)
    assert batch_a.edges == batch_b.edges
    assert batch_a.dependencies == batch_b.dependencies


def test_export_index_publish_is_atomic_under_concurrency() -> None:
    index = ExportIndex()
    tables = [PackageVersion(f"p{i}", "1.0.0") for i in range(50)]

    def _publish(package: PackageVersion) -> None:
        index.publish(package, ExportTable.from_records([(f"{package.key}::x#0", f"{package.name}::x", "x")]))

    threads = [threading.Thread(target=_publish, args=(package,)) for package in tables]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(index) == 50
    assert all(package in index for package in tables)
    snapshot = index.snapshot()
    assert len(snapshot["p7@1.0.0"]) == 1
