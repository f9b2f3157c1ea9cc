"""Per-module and per-package call graph construction."""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Iterable, Sequence

from crate_callgraph.analysis.demangle import demangle
from crate_callgraph.analysis.model import (
    CallEdge,
    CalleeKind,
    FunctionNode,
    IdentityKey,
    ModuleGraph,
    NodeId,
    PackageGraph,
    PackageVersion,
)
from crate_callgraph.io.ir_loader import IRModule

LOGGER = logging.getLogger(__name__)

DEFAULT_BLOCKED_PREFIXES = ("llvm.",)


def _is_blocked(symbol: str, blocked_prefixes: Sequence[str]) -> bool:
    return bool(blocked_prefixes) and symbol.startswith(tuple(blocked_prefixes))


def build_module_graph(
    package: PackageVersion,
    module: IRModule,
    *,
    blocked_prefixes: Sequence[str] = DEFAULT_BLOCKED_PREFIXES,
) -> ModuleGraph:
    """
    Turn a parsed module into function nodes and call edges.

    Calls to functions defined in the module become ``Direct`` edges, calls to any other constant
    symbol become ``External`` edges keyed by the demangled identity, and calls through a
    non-constant value become one ``Indirect`` edge per call site.
    """

    graph = ModuleGraph(package=package, source=module.source)
    local: Dict[str, NodeId] = {}

    for function in module.functions:
        node = FunctionNode.create(
            package,
            function.name,
            demangle(function.name),
            function.signature,
            exported=not function.is_local,
        )
        graph.add_node(node)
        local.setdefault(function.name, node.node_id)

    for function in module.functions:
        caller = local[function.name]
        for site, call in enumerate(function.calls):
            if call.callee is None:
                graph.add_edge(CallEdge.indirect(caller, site))
                continue
            if _is_blocked(call.callee, blocked_prefixes):
                continue
            callee = local.get(call.callee)
            if callee is not None:
                graph.add_edge(CallEdge.direct(caller, callee, symbol=call.callee))
            else:
                graph.add_edge(CallEdge.external(caller, demangle(call.callee), symbol=call.callee))

    return graph


def _merge_node(existing: FunctionNode, incoming: FunctionNode) -> FunctionNode:
    if incoming.exported and not existing.exported:
        return dataclasses.replace(existing, exported=True)
    return existing


def link_package(package: PackageVersion, module_graphs: Iterable[ModuleGraph]) -> PackageGraph:
    """
    Union the module graphs of one package version.

    ``External`` edges whose identity is defined by another module of the same package version are
    re-tagged ``Direct``. An exact linkage-name match wins over an identity-key match, so distinct
    instantiations that share an identity stay distinct. The result does not depend on the order of
    ``module_graphs``.
    """

    ordered = sorted(module_graphs, key=lambda graph: graph.source)
    linked = PackageGraph(package=package, sources=[graph.source for graph in ordered])

    for graph in ordered:
        for node_id, node in graph.nodes.items():
            existing = linked.nodes.get(node_id)
            linked.nodes[node_id] = node if existing is None else _merge_node(existing, node)

    # exported definitions first, then the smallest node id
    by_identity: Dict[IdentityKey, NodeId] = {}
    by_symbol: Dict[str, NodeId] = {}
    for node_id in sorted(linked.nodes, key=lambda nid: (not linked.nodes[nid].exported, nid)):
        node = linked.nodes[node_id]
        by_identity.setdefault(node.identity.key, node_id)
        by_symbol.setdefault(node.mangled_name, node_id)

    for graph in ordered:
        for edge in graph.edges.values():
            if edge.kind is CalleeKind.EXTERNAL:
                callee = by_symbol.get(edge.symbol) if edge.symbol is not None else None
                if callee is None:
                    callee = by_identity.get(edge.target)
                if callee is not None:
                    edge = CallEdge.direct(edge.caller, callee, symbol=edge.symbol)
            linked.edges.setdefault(edge.link_key, edge)

    LOGGER.debug(
        "Linked %s: %d modules, %d functions, %d edges",
        package,
        len(ordered),
        len(linked.nodes),
        len(linked.edges),
    )
    return linked


__all__ = ["DEFAULT_BLOCKED_PREFIXES", "build_module_graph", "link_package"]
