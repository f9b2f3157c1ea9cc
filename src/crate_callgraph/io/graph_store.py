"""Graph store abstraction and the networkx-backed implementation."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable
from urllib.parse import urlparse

import networkx as nx

from crate_callgraph.analysis.model import AnalysisBatch, CallEdge, CalleeKind, ExportTable, PackageVersion
from crate_callgraph.config import StoreConfig
from crate_callgraph.errors import ConfigError, IngestionError

LOGGER = logging.getLogger(__name__)

NEO4J_SCHEMES = ("bolt", "bolt+s", "bolt+ssc", "neo4j", "neo4j+s", "neo4j+ssc")
STORE_FORMAT = 1


def package_node_id(name: str) -> str:
    return f"package:{name}"


def version_node_id(package: PackageVersion) -> str:
    return f"version:{package.key}"


def external_node_id(package: PackageVersion, identity_key: str) -> str:
    return f"{package.key}::external::{identity_key}"


def indirect_node_id(package: PackageVersion) -> str:
    return f"{package.key}::indirect"


def callee_node_id(package: PackageVersion, edge: CallEdge) -> str:
    """Store node an edge points at; External and Indirect callees are placeholders of ``package``."""

    if edge.kind is CalleeKind.DIRECT:
        assert edge.target is not None
        return edge.target
    if edge.kind is CalleeKind.EXTERNAL:
        return external_node_id(package, edge.target or "")
    return indirect_node_id(package)


def call_edge_key(edge: CallEdge) -> str:
    if edge.kind is CalleeKind.INDIRECT:
        return f"CALLS:{edge.site}"
    return "CALLS"


def placeholder_records(batch: AnalysisBatch) -> List[dict]:
    """Placeholder Function records needed by the batch's External and Indirect edges."""

    package = batch.package
    records: Dict[str, dict] = {}
    for edge in batch.edges:
        if edge.kind is CalleeKind.DIRECT:
            continue
        node_id = callee_node_id(package, edge)
        records.setdefault(
            node_id,
            {
                "id": node_id,
                "package": package.name,
                "version": package.version,
                "owner": package.key,
                "placeholder": True,
                "kind": edge.kind.value,
                "demangled_name": edge.target,
                "exported": False,
            },
        )
    return [records[key] for key in sorted(records)]


def function_records(batch: AnalysisBatch) -> List[dict]:
    return [
        {**node.as_dict(), "owner": batch.package.key, "placeholder": False, "kind": "Defined"}
        for node in batch.nodes
    ]


@runtime_checkable
class GraphStore(Protocol):
    def upsert(self, batch: AnalysisBatch) -> None:
        """Persist ``batch`` in one atomic, idempotent transaction."""

    def is_ingested(self, package: PackageVersion) -> bool:
        ...

    def load_exports(self, package: PackageVersion) -> Optional[ExportTable]:
        ...

    def close(self) -> None:
        ...


def _owner_index(graph: nx.MultiDiGraph) -> Dict[str, Set[str]]:
    owned: Dict[str, Set[str]] = {}
    for node, owner in graph.nodes(data="owner"):
        if owner is not None:
            owned.setdefault(owner, set()).add(node)
    return owned


def _check_batch(graph: nx.MultiDiGraph, batch: AnalysisBatch, keep: Set[str], owned: Set[str]) -> None:
    """Reject a batch whose call edges would dangle once applied, before the graph is touched."""

    def present(node_id: str) -> bool:
        return node_id in keep or (node_id in graph and node_id not in owned)

    for edge in batch.edges:
        target = callee_node_id(batch.package, edge)
        if not present(edge.caller) or not present(target):
            raise IngestionError(
                f"Call edge {edge.caller} -> {target} references a missing function",
                package=batch.package.key,
                retryable=False,
            )


def _apply_batch(graph: nx.MultiDiGraph, batch: AnalysisBatch, owned: Set[str]) -> Set[str]:
    """Replace the nodes in ``owned`` with the batch's; returns the nodes the version owns afterwards."""

    package = batch.package
    version_id = version_node_id(package)
    functions = function_records(batch)
    placeholders = placeholder_records(batch)
    keep = {record["id"] for record in functions} | {record["id"] for record in placeholders}
    _check_batch(graph, batch, keep, owned)

    for node in sorted(owned):
        if node not in graph:
            continue
        for _, target, key in list(graph.out_edges(node, keys=True)):
            if str(key).startswith("CALLS"):
                graph.remove_edge(node, target, key)
        if node not in keep:
            graph.remove_node(node)
    if version_id in graph:
        for _, target, key in list(graph.out_edges(version_id, keys=True)):
            if key == "DEPENDS_ON":
                graph.remove_edge(version_id, target, key)

    _ensure_version(graph, package, ingested=True)

    for record in functions + placeholders:
        attributes = dict(record)
        node_id = attributes.pop("id")
        graph.add_node(node_id, label="Function", **attributes)
        if not record["placeholder"]:
            graph.add_edge(version_id, node_id, key="DEFINES", label="DEFINES")

    for dependency in batch.dependencies:
        target_id = _ensure_version(graph, dependency.target, ingested=False)
        graph.add_edge(
            version_id,
            target_id,
            key="DEPENDS_ON",
            label="DEPENDS_ON",
            constraint=dependency.constraint,
            resolved_version=dependency.resolved_version,
        )

    for edge in batch.edges:
        graph.add_edge(
            edge.caller,
            callee_node_id(package, edge),
            key=call_edge_key(edge),
            label="CALLS",
            kind=edge.kind.value,
            site=edge.site,
            symbol=edge.symbol,
        )
    return keep


def _ensure_version(graph: nx.MultiDiGraph, package: PackageVersion, *, ingested: bool) -> str:
    package_id = package_node_id(package.name)
    version_id = version_node_id(package)
    graph.add_node(package_id, label="Package", name=package.name)
    if version_id not in graph:
        graph.add_node(
            version_id,
            label="PackageVersion",
            key=package.key,
            name=package.name,
            version=package.version,
            ingested=ingested,
        )
    elif ingested:
        graph.nodes[version_id]["ingested"] = True
    graph.add_edge(package_id, version_id, key="HAS_VERSION", label="HAS_VERSION")
    return version_id


def graph_to_payload(graph: nx.MultiDiGraph) -> dict:
    return {
        "format": STORE_FORMAT,
        "node_count": graph.number_of_nodes(),
        "edge_count": graph.number_of_edges(),
        "nodes": [{"id": node, **data} for node, data in sorted(graph.nodes(data=True))],
        "edges": [
            {"source": source, "target": target, "key": key, **data}
            for source, target, key, data in sorted(graph.edges(keys=True, data=True), key=lambda item: item[:3])
        ],
    }


def graph_from_payload(payload: dict) -> nx.MultiDiGraph:
    graph = nx.MultiDiGraph()
    for node in payload.get("nodes", []):
        attributes = dict(node)
        graph.add_node(attributes.pop("id"), **attributes)
    for edge in payload.get("edges", []):
        attributes = dict(edge)
        source = attributes.pop("source")
        target = attributes.pop("target")
        key = attributes.pop("key")
        graph.add_edge(source, target, key=key, **attributes)
    return graph


def load_graph(path: Path) -> nx.MultiDiGraph:
    """Read a store file written by ``NetworkXGraphStore``."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read graph store file {path}: {exc}") from exc
    if payload.get("format") != STORE_FORMAT:
        raise ConfigError(f"Unsupported graph store format in {path}: {payload.get('format')!r}")
    return graph_from_payload(payload)


class NetworkXGraphStore:
    """
    In-process graph store backed by a ``networkx.MultiDiGraph``.

    A batch is checked against the live graph before any of it is applied, so a rejected batch
    leaves the store untouched. Nodes are indexed by owning package version, which keeps an upsert
    proportional to the batch rather than to the store. When ``path`` is set the graph is written
    out every ``flush_every`` commits and on ``close``; a failed write restores the last written state.
    """

    def __init__(self, path: Optional[Path] = None, *, flush_every: int = 1) -> None:
        self.path = Path(path) if path is not None else None
        self.flush_every = max(1, flush_every)
        self._lock = threading.Lock()
        self._unflushed = 0
        if self.path is not None and self.path.exists():
            self._graph = load_graph(self.path)
            LOGGER.info("Loaded graph store %s (%d nodes)", self.path, self._graph.number_of_nodes())
        else:
            self._graph = nx.MultiDiGraph()
        self._owned = _owner_index(self._graph)

    @property
    def graph(self) -> nx.MultiDiGraph:
        return self._graph

    def _write(self, graph: nx.MultiDiGraph) -> None:
        assert self.path is not None
        partial = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with partial.open("w", encoding="utf-8") as handle:
                json.dump(graph_to_payload(graph), handle, indent=2)
            os.replace(partial, self.path)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise IngestionError(f"Cannot write graph store {self.path}: {exc}") from exc

    def _flush(self) -> None:
        assert self.path is not None
        try:
            self._write(self._graph)
        except IngestionError:
            LOGGER.warning("Discarding %d unwritten commits to %s", self._unflushed, self.path)
            self._graph = load_graph(self.path) if self.path.exists() else nx.MultiDiGraph()
            self._owned = _owner_index(self._graph)
            self._unflushed = 0
            raise
        self._unflushed = 0

    def upsert(self, batch: AnalysisBatch) -> None:
        key = batch.package.key
        with self._lock:
            self._owned[key] = _apply_batch(self._graph, batch, self._owned.get(key, set()))
            self._unflushed += 1
            if self.path is not None and self._unflushed >= self.flush_every:
                self._flush()
        LOGGER.debug("Committed %s: %s", batch.package, batch.counts())

    def is_ingested(self, package: PackageVersion) -> bool:
        with self._lock:
            data = self._graph.nodes.get(version_node_id(package))
            return bool(data and data.get("ingested"))

    def load_exports(self, package: PackageVersion) -> Optional[ExportTable]:
        if not self.is_ingested(package):
            return None
        with self._lock:
            nodes = self._graph.nodes
            records: List[Tuple[str, str, str]] = [
                (node, nodes[node]["demangled_name"], nodes[node]["mangled_name"])
                for node in self._owned.get(package.key, ())
                if not nodes[node].get("placeholder") and nodes[node].get("exported")
            ]
        return ExportTable.from_records(records)

    def close(self) -> None:
        with self._lock:
            if self.path is not None and self._unflushed:
                self._flush()


def open_store(config: StoreConfig) -> GraphStore:
    """Open the store named by ``config.url``: a Neo4j URL, ``memory://``, ``file://PATH`` or a path."""

    url = config.url
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme in NEO4J_SCHEMES:
        from crate_callgraph.io.neo4j_store import Neo4jGraphStore

        return Neo4jGraphStore.connect(config)
    if scheme == "memory":
        return NetworkXGraphStore()
    if scheme == "file":
        return NetworkXGraphStore(Path(parsed.netloc + parsed.path), flush_every=config.flush_every)
    # single letters are Windows drive prefixes
    if scheme == "" or len(scheme) == 1:
        return NetworkXGraphStore(Path(url), flush_every=config.flush_every)
    raise ConfigError(f"Unsupported graph store URL: {url}")


__all__ = [
    "GraphStore",
    "NEO4J_SCHEMES",
    "NetworkXGraphStore",
    "call_edge_key",
    "callee_node_id",
    "function_records",
    "graph_from_payload",
    "graph_to_payload",
    "load_graph",
    "open_store",
    "placeholder_records",
    "version_node_id",
]
