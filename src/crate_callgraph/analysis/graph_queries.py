"""Helpers for querying the ecosystem call graph held by a networkx store."""

from __future__ import annotations

import fnmatch
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

import networkx as nx

NodeId = str

_GLOB_CHARS = set("*?[")


def _node_label(node: NodeId, data: dict[str, object]) -> str:
    """Best-effort user-facing label for a graph node."""

    label = data.get("demangled_name") or data.get("mangled_name") or data.get("key") or data.get("name")
    if isinstance(label, str) and label:
        return label
    return node


@dataclass
class FunctionSummary:
    node: NodeId
    label: str
    package_version: str
    placeholder: bool = False
    kind: Optional[str] = None


@dataclass
class UnresolvedSummary:
    external: int = 0
    indirect: int = 0
    external_targets: Counter = field(default_factory=Counter)


def _summary(graph: nx.MultiDiGraph, node: NodeId) -> FunctionSummary:
    data = graph.nodes[node]
    return FunctionSummary(
        node=node,
        label=_node_label(node, data),
        package_version=str(data.get("owner") or ""),
        placeholder=bool(data.get("placeholder")),
        kind=data.get("kind") if data.get("placeholder") else None,
    )


def calls_view(graph: nx.MultiDiGraph) -> nx.MultiDiGraph:
    """Read-only view restricted to Function nodes and CALLS edges."""

    def _is_function(node: NodeId) -> bool:
        return graph.nodes[node].get("label") == "Function"

    def _is_call(source: NodeId, target: NodeId, key: str) -> bool:
        return graph.edges[source, target, key].get("label") == "CALLS"

    return nx.subgraph_view(graph, filter_node=_is_function, filter_edge=_is_call)


def find_functions(graph: nx.MultiDiGraph, pattern: str, *, include_placeholders: bool = False) -> list[FunctionSummary]:
    """
    Functions whose node id, demangled or mangled name matches ``pattern``.

    ``pattern`` is matched exactly unless it contains glob characters, in which case it is matched
    against the demangled name with ``fnmatch`` semantics.
    """

    use_glob = bool(_GLOB_CHARS & set(pattern))
    matches: list[FunctionSummary] = []
    for node, data in graph.nodes(data=True):
        if data.get("label") != "Function":
            continue
        if data.get("placeholder") and not include_placeholders:
            continue
        demangled = str(data.get("demangled_name") or "")
        if use_glob:
            matched = fnmatch.fnmatchcase(demangled, pattern)
        else:
            matched = pattern in (node, demangled, data.get("mangled_name"))
        if matched:
            matches.append(_summary(graph, node))
    matches.sort(key=lambda item: item.node)
    return matches


def _resolve_targets(graph: nx.MultiDiGraph, target: str) -> list[NodeId]:
    if target in graph:
        return [target]
    return [summary.node for summary in find_functions(graph, target)]


def reachable_functions(graph: nx.MultiDiGraph, target: str) -> list[FunctionSummary]:
    """Transitive callees of ``target`` (a node id or a function name) over CALLS edges."""

    view = calls_view(graph)
    reached: set[NodeId] = set()
    for node in _resolve_targets(graph, target):
        if node in view:
            reached.update(nx.descendants(view, node))
    return [_summary(graph, node) for node in sorted(reached)]


def packages_calling_into(graph: nx.MultiDiGraph, target: str) -> list[str]:
    """Package versions whose functions transitively call ``target``."""

    view = calls_view(graph)
    owners: set[str] = set()
    for node in _resolve_targets(graph, target):
        if node not in view:
            continue
        for caller in nx.ancestors(view, node):
            owner = graph.nodes[caller].get("owner")
            if owner:
                owners.add(str(owner))
    return sorted(owners)


def unresolved_calls(graph: nx.MultiDiGraph, *, packages: Optional[Iterable[str]] = None) -> UnresolvedSummary:
    """Count External and Indirect call edges, optionally limited to some package versions."""

    wanted = set(packages) if packages else None
    summary = UnresolvedSummary()
    for source, target, data in graph.edges(data=True):
        if data.get("label") != "CALLS":
            continue
        if wanted is not None and graph.nodes[source].get("owner") not in wanted:
            continue
        kind = data.get("kind")
        if kind == "External":
            summary.external += 1
            summary.external_targets[_node_label(target, graph.nodes[target])] += 1
        elif kind == "Indirect":
            summary.indirect += 1
    return summary


__all__ = [
    "FunctionSummary",
    "UnresolvedSummary",
    "calls_view",
    "find_functions",
    "packages_calling_into",
    "reachable_functions",
    "unresolved_calls",
]
