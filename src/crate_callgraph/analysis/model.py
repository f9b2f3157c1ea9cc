"""Records shared by the analysis stages: packages, function nodes and call edges."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from crate_callgraph.analysis.demangle import Identity

NodeId = str
IdentityKey = str


@dataclass(frozen=True, slots=True, order=True)
class PackageVersion:
    """A concrete ``name@version`` from the registry."""

    name: str
    version: str

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def parse(cls, text: str) -> "PackageVersion":
        name, sep, version = text.partition("@")
        if not sep or not name or not version:
            raise ValueError(f"Expected NAME@VERSION, got {text!r}")
        return cls(name=name, version=version)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True, slots=True)
class DependencySpec:
    """One dependency declared by a package version's manifest."""

    name: str
    requirement: str
    kind: str = "normal"
    optional: bool = False
    target: Optional[str] = None
    alias: Optional[str] = None

    @property
    def links_into_library(self) -> bool:
        return self.kind != "dev"


@dataclass(frozen=True, slots=True)
class Manifest:
    dependencies: Tuple[DependencySpec, ...]
    targets: Tuple[str, ...] = ()

    @property
    def library_dependencies(self) -> Tuple[DependencySpec, ...]:
        return tuple(dep for dep in self.dependencies if dep.links_into_library)


@dataclass(frozen=True, slots=True)
class DependencyEdge:
    source: PackageVersion
    target: PackageVersion
    constraint: str

    @property
    def resolved_version(self) -> str:
        return self.target.version


def signature_hash(linkage_name: str, signature: str) -> str:
    digest = hashlib.sha256(f"{linkage_name}\x00{signature}".encode("utf-8"))
    return digest.hexdigest()[:16]


def function_node_id(package: PackageVersion, module_path: str, sig_hash: str) -> NodeId:
    return f"{package.key}::{module_path}#{sig_hash}"


@dataclass(frozen=True, slots=True)
class FunctionNode:
    node_id: NodeId
    package: PackageVersion
    module_path: str
    signature_hash: str
    mangled_name: str
    identity: Identity
    signature: str = ""
    exported: bool = False
    generic_instantiation: bool = False

    @classmethod
    def create(
        cls,
        package: PackageVersion,
        mangled_name: str,
        identity: Identity,
        signature: str,
        *,
        exported: bool,
    ) -> "FunctionNode":
        sig_hash = signature_hash(mangled_name, signature)
        return cls(
            node_id=function_node_id(package, identity.module_path, sig_hash),
            package=package,
            module_path=identity.module_path,
            signature_hash=sig_hash,
            mangled_name=mangled_name,
            identity=identity,
            signature=signature,
            exported=exported,
            generic_instantiation=identity.is_generic,
        )

    @property
    def demangled_name(self) -> str:
        return self.identity.key

    def as_dict(self) -> dict:
        return {
            "id": self.node_id,
            "package": self.package.name,
            "version": self.package.version,
            "module_path": self.module_path,
            "signature_hash": self.signature_hash,
            "mangled_name": self.mangled_name,
            "demangled_name": self.demangled_name,
            "signature": self.signature,
            "exported": self.exported,
            "generic_instantiation": self.generic_instantiation,
        }


class CalleeKind(str, enum.Enum):
    DIRECT = "Direct"
    EXTERNAL = "External"
    INDIRECT = "Indirect"


@dataclass(frozen=True, slots=True)
class CallEdge:
    """A call from ``caller`` to a tagged callee reference.

    ``target`` holds the callee node id for ``Direct`` edges and the demangled identity key for
    ``External`` edges; it is ``None`` for ``Indirect`` edges, which are told apart by ``site``.
    """

    caller: NodeId
    kind: CalleeKind
    target: Optional[str] = None
    symbol: Optional[str] = None
    site: int = 0

    @classmethod
    def direct(cls, caller: NodeId, callee: NodeId, *, symbol: str | None = None) -> "CallEdge":
        return cls(caller=caller, kind=CalleeKind.DIRECT, target=callee, symbol=symbol)

    @classmethod
    def external(cls, caller: NodeId, identity: Identity, *, symbol: str | None = None) -> "CallEdge":
        return cls(caller=caller, kind=CalleeKind.EXTERNAL, target=identity.key, symbol=symbol)

    @classmethod
    def indirect(cls, caller: NodeId, site: int) -> "CallEdge":
        return cls(caller=caller, kind=CalleeKind.INDIRECT, target=None, site=site)

    @property
    def key(self) -> Tuple[str, str, str]:
        if self.kind is CalleeKind.INDIRECT:
            return (self.caller, self.kind.value, f"site:{self.site}")
        return (self.caller, self.kind.value, self.target or "")

    @property
    def link_key(self) -> Tuple[str, str, str]:
        """Like ``key``, but ``External`` calls to different linkage names stay apart."""

        if self.kind is CalleeKind.EXTERNAL and self.symbol is not None:
            return (self.caller, self.kind.value, self.symbol)
        return self.key

    def as_dict(self) -> dict:
        return {
            "caller": self.caller,
            "kind": self.kind.value,
            "target": self.target,
            "symbol": self.symbol,
            "site": self.site,
        }


@dataclass(slots=True)
class ModuleGraph:
    """Nodes and edges of one IR module, before any package-level linking."""

    package: PackageVersion
    source: str
    nodes: Dict[NodeId, FunctionNode] = field(default_factory=dict)
    edges: Dict[Tuple[str, str, str], CallEdge] = field(default_factory=dict)

    def add_node(self, node: FunctionNode) -> None:
        self.nodes.setdefault(node.node_id, node)

    def add_edge(self, edge: CallEdge) -> None:
        self.edges.setdefault(edge.link_key, edge)


@dataclass(slots=True)
class PackageGraph:
    """Union of a package version's module graphs."""

    package: PackageVersion
    nodes: Dict[NodeId, FunctionNode] = field(default_factory=dict)
    edges: Dict[Tuple[str, str, str], CallEdge] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)

    def exports(self) -> "ExportTable":
        return ExportTable.from_nodes(self.nodes.values())


@dataclass(frozen=True, slots=True)
class ExportTable:
    """Exported functions of one package version, addressable by identity key or exact symbol."""

    by_identity: Mapping[IdentityKey, NodeId] = field(default_factory=dict)
    by_symbol: Mapping[str, NodeId] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: Iterable[Tuple[NodeId, IdentityKey, str]]) -> "ExportTable":
        """Build from ``(node_id, identity_key, mangled_name)`` triples of exported functions."""

        by_identity: Dict[IdentityKey, NodeId] = {}
        by_symbol: Dict[str, NodeId] = {}
        # smallest node id wins when two exports share an identity key
        for node_id, identity_key, symbol in sorted(records):
            by_identity.setdefault(identity_key, node_id)
            by_symbol.setdefault(symbol, node_id)
        return cls(by_identity=MappingProxyType(by_identity), by_symbol=MappingProxyType(by_symbol))

    @classmethod
    def from_nodes(cls, nodes: Iterable[FunctionNode]) -> "ExportTable":
        return cls.from_records(
            (node.node_id, node.identity.key, node.mangled_name) for node in nodes if node.exported
        )

    def lookup(self, identity_key: IdentityKey, symbol: str | None = None) -> Optional[NodeId]:
        if symbol is not None and symbol in self.by_symbol:
            return self.by_symbol[symbol]
        return self.by_identity.get(identity_key)

    def __len__(self) -> int:
        return len(self.by_identity)


@dataclass(slots=True)
class AnalysisBatch:
    """Everything ingestion needs to persist for one package version."""

    package: PackageVersion
    nodes: List[FunctionNode]
    edges: List[CallEdge]
    dependencies: List[DependencyEdge]
    exports: ExportTable

    def counts(self) -> Dict[str, int]:
        by_kind = {kind.value: 0 for kind in CalleeKind}
        for edge in self.edges:
            by_kind[edge.kind.value] += 1
        return {"functions": len(self.nodes), "dependencies": len(self.dependencies), **by_kind}


__all__ = [
    "AnalysisBatch",
    "CallEdge",
    "CalleeKind",
    "DependencyEdge",
    "DependencySpec",
    "ExportTable",
    "FunctionNode",
    "IdentityKey",
    "Manifest",
    "ModuleGraph",
    "NodeId",
    "PackageGraph",
    "PackageVersion",
    "function_node_id",
    "signature_hash",
]
