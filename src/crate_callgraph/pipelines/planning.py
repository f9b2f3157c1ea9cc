"""Dependency closure resolution and job ordering."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

import networkx as nx

from crate_callgraph.analysis.model import DependencyEdge, PackageVersion
from crate_callgraph.data.registry_index import RegistryIndex
from crate_callgraph.errors import ConfigError, CrateGraphError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class PlannedPackage:
    """One package version to analyze, with its resolved dependencies or the reason it cannot run."""

    package: PackageVersion
    checksum: str = ""
    dependencies: Tuple[DependencyEdge, ...] = ()
    error: Optional[CrateGraphError] = None


@dataclass(slots=True)
class RequestFailure:
    request: str
    error: CrateGraphError


@dataclass(slots=True)
class Plan:
    order: List[PlannedPackage] = field(default_factory=list)
    failures: List[RequestFailure] = field(default_factory=list)
    graph: nx.DiGraph = field(default_factory=nx.DiGraph)

    @property
    def packages(self) -> List[PackageVersion]:
        return [item.package for item in self.order]


def parse_request(text: str) -> Tuple[str, str]:
    """Split ``NAME[@REQ]`` into a name and a version requirement (``*`` when absent)."""

    name, _, requirement = text.strip().partition("@")
    if not name:
        raise ConfigError(f"Invalid package request: {text!r}")
    return name, requirement.strip() or "*"


class Planner:
    """
    Expand requested packages into their dependency closure in dependency-first order.

    Registry lookups that fail with a retryable error are attempted up to ``retry_cap`` times,
    sleeping ``backoff(attempt)`` seconds in between.
    """

    def __init__(
        self,
        index: RegistryIndex,
        *,
        include_prerelease: bool = False,
        retry_cap: int = 1,
        backoff: Optional[Callable[[int], float]] = None,
    ) -> None:
        self.index = index
        self.include_prerelease = include_prerelease
        self.retry_cap = max(1, retry_cap)
        self.backoff = backoff
        self._resolved: Dict[Tuple[str, str], PackageVersion] = {}

    def _lookup(self, what: str, call: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except CrateGraphError as exc:
                if not exc.retryable or attempt >= self.retry_cap:
                    raise
                delay = self.backoff(attempt) if self.backoff is not None else 0.0
                LOGGER.warning(
                    "Looking up %s failed (attempt %d/%d: %s); retrying in %.2fs",
                    what,
                    attempt,
                    self.retry_cap,
                    exc,
                    delay,
                )
                time.sleep(delay)

    def _resolve(self, name: str, requirement: str) -> PackageVersion:
        key = (name, requirement)
        cached = self._resolved.get(key)
        if cached is None:
            cached = self._lookup(
                name,
                lambda: self.index.resolve(name, requirement, include_prerelease=self.include_prerelease),
            )
            self._resolved[key] = cached
        return cached

    def _describe(self, package: PackageVersion) -> PlannedPackage:
        try:
            entry = self._lookup(str(package), lambda: self.index.entry(package))
            manifest = self._lookup(str(package), lambda: self.index.manifest(package))
            edges = []
            for dependency in manifest.library_dependencies:
                if dependency.optional:
                    continue
                target = self._resolve(dependency.name, dependency.requirement)
                edges.append(DependencyEdge(source=package, target=target, constraint=dependency.requirement))
        except CrateGraphError as exc:
            LOGGER.warning("Cannot plan %s: %s", package, exc)
            return PlannedPackage(package=package, error=exc)
        unique = {(edge.target.key, edge.constraint): edge for edge in edges}
        return PlannedPackage(
            package=package,
            checksum=entry.checksum,
            dependencies=tuple(unique[key] for key in sorted(unique)),
        )

    def plan(
        self,
        requests: Sequence[str] = (),
        packages: Iterable[PackageVersion] = (),
    ) -> Plan:
        """
        Resolve ``requests`` (``NAME[@REQ]``) and ``packages`` plus every library dependency.

        Raises ``ConfigError`` when the dependency graph contains a cycle; nothing has been fetched
        at that point. Requests that do not resolve are reported in ``Plan.failures``.
        """

        result = Plan()
        queue: Deque[PackageVersion] = deque()
        for request in requests:
            name, requirement = parse_request(request)
            try:
                queue.append(self._resolve(name, requirement))
            except CrateGraphError as exc:
                LOGGER.warning("Cannot resolve %s: %s", request, exc)
                result.failures.append(RequestFailure(request=request, error=exc))
        queue.extend(packages)

        planned: Dict[PackageVersion, PlannedPackage] = {}
        while queue:
            package = queue.popleft()
            if package in planned:
                continue
            item = self._describe(package)
            planned[package] = item
            result.graph.add_node(package)
            for edge in item.dependencies:
                result.graph.add_edge(package, edge.target, constraint=edge.constraint)
                if edge.target not in planned:
                    queue.append(edge.target)

        if not nx.is_directed_acyclic_graph(result.graph):
            cycle = nx.find_cycle(result.graph)
            path = " -> ".join([str(source) for source, _ in cycle] + [str(cycle[0][0])])
            raise ConfigError(f"Dependency cycle: {path}")

        ordered = nx.lexicographical_topological_sort(result.graph.reverse(copy=False), key=lambda pv: pv.key)
        result.order = [planned[package] for package in ordered]
        LOGGER.info(
            "Planned %d package versions (%d requests failed to resolve)",
            len(result.order),
            len(result.failures),
        )
        return result


__all__ = ["Plan", "PlannedPackage", "Planner", "RequestFailure", "parse_request"]
