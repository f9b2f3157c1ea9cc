"""Resolution of cross-package calls against the exports of resolved dependencies."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from crate_callgraph.analysis.model import (
    AnalysisBatch,
    CallEdge,
    CalleeKind,
    DependencyEdge,
    ExportTable,
    PackageGraph,
    PackageVersion,
)

LOGGER = logging.getLogger(__name__)


class ExportIndex:
    """
    Append-only map from package version to its export table.

    Tables are immutable once published. Publishing swaps in a new top-level mapping under a lock,
    so concurrent readers see either the previous or the next state, never a partial table.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tables: Mapping[str, ExportTable] = MappingProxyType({})

    def publish(self, package: PackageVersion, table: ExportTable) -> None:
        with self._lock:
            tables = dict(self._tables)
            replaced = package.key in tables
            tables[package.key] = table
            self._tables = MappingProxyType(tables)
        LOGGER.debug("%s %d exports for %s", "Replaced" if replaced else "Published", len(table), package)

    def get(self, package: PackageVersion) -> Optional[ExportTable]:
        return self._tables.get(package.key)

    def __contains__(self, package: object) -> bool:
        return isinstance(package, PackageVersion) and package.key in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    def snapshot(self) -> Mapping[str, ExportTable]:
        return self._tables


@dataclass(slots=True)
class MergeStats:
    resolved: int = 0
    unresolved: int = 0
    missing_dependencies: Tuple[str, ...] = ()


def dependency_tables(
    dependencies: Iterable[DependencyEdge], index: ExportIndex
) -> Tuple[List[Tuple[PackageVersion, ExportTable]], List[PackageVersion]]:
    """Export tables of the resolved dependencies, in a fixed order, plus the ones not yet published."""

    targets = sorted({edge.target for edge in dependencies}, key=lambda pv: pv.key)
    tables: List[Tuple[PackageVersion, ExportTable]] = []
    missing: List[PackageVersion] = []
    for target in targets:
        table = index.get(target)
        if table is None:
            missing.append(target)
        else:
            tables.append((target, table))
    return tables, missing


def resolve(edge: CallEdge, tables: Sequence[Tuple[PackageVersion, ExportTable]]) -> CallEdge:
    """
    Rewrite an ``External`` edge to ``Direct`` when a dependency exports its target.

    An exact linkage-name match in any dependency wins over an identity-key match; among
    identity-key matches the first dependency in key order wins. Edges of any other kind, and
    ``External`` edges with no match, are returned unchanged.
    """

    if edge.kind is not CalleeKind.EXTERNAL or edge.target is None:
        return edge
    if edge.symbol is not None:
        for _, table in tables:
            node_id = table.by_symbol.get(edge.symbol)
            if node_id is not None:
                return CallEdge.direct(edge.caller, node_id, symbol=edge.symbol)
    for _, table in tables:
        node_id = table.by_identity.get(edge.target)
        if node_id is not None:
            return CallEdge.direct(edge.caller, node_id, symbol=edge.symbol)
    return edge


def merge(
    graph: PackageGraph,
    dependencies: Sequence[DependencyEdge],
    index: ExportIndex,
) -> Tuple[AnalysisBatch, MergeStats]:
    """Resolve every edge of ``graph`` and assemble the ingestion batch."""

    tables, missing = dependency_tables(dependencies, index)
    stats = MergeStats(missing_dependencies=tuple(pv.key for pv in missing))

    edges: dict[Tuple[str, str, str], CallEdge] = {}
    for key in sorted(graph.edges):
        original = graph.edges[key]
        edge = resolve(original, tables)
        if original.kind is CalleeKind.EXTERNAL:
            if edge.kind is CalleeKind.DIRECT:
                stats.resolved += 1
            else:
                stats.unresolved += 1
        edges.setdefault(edge.key, edge)

    batch = AnalysisBatch(
        package=graph.package,
        nodes=[graph.nodes[node_id] for node_id in sorted(graph.nodes)],
        edges=[edges[key] for key in sorted(edges)],
        dependencies=sorted(dependencies, key=lambda dep: (dep.target.key, dep.constraint)),
        exports=graph.exports(),
    )
    LOGGER.debug(
        "Merged %s: %d external calls resolved, %d left external",
        graph.package,
        stats.resolved,
        stats.unresolved,
    )
    return batch, stats


__all__ = ["ExportIndex", "MergeStats", "dependency_tables", "merge", "resolve"]
