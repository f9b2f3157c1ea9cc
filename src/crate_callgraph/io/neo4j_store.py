"""Neo4j graph store over Bolt."""

from __future__ import annotations

import logging
from typing import List, Optional

from neo4j import Driver, GraphDatabase, ManagedTransaction
from neo4j.exceptions import DriverError, Neo4jError, ServiceUnavailable, SessionExpired, TransientError

from crate_callgraph.analysis.model import AnalysisBatch, ExportTable, PackageVersion
from crate_callgraph.config import StoreConfig
from crate_callgraph.errors import ConfigError, IngestionError
from crate_callgraph.io.graph_store import callee_node_id, function_records, placeholder_records

LOGGER = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    "CREATE CONSTRAINT package_name IF NOT EXISTS FOR (p:Package) REQUIRE p.name IS UNIQUE",
    "CREATE CONSTRAINT package_version_key IF NOT EXISTS FOR (v:PackageVersion) REQUIRE v.key IS UNIQUE",
    "CREATE CONSTRAINT function_id IF NOT EXISTS FOR (f:Function) REQUIRE f.id IS UNIQUE",
    "CREATE INDEX function_owner IF NOT EXISTS FOR (f:Function) ON (f.owner)",
)

_MERGE_VERSION = """
MERGE (p:Package {name: $name})
MERGE (v:PackageVersion {key: $key})
SET v.name = $name, v.version = $version, v.ingested = true
MERGE (p)-[:HAS_VERSION]->(v)
"""

_DROP_OUTGOING = """
MATCH (v:PackageVersion {key: $key})-[d:DEPENDS_ON]->()
DELETE d
WITH count(*) AS ignored
MATCH (f:Function {owner: $key})-[c:CALLS]->()
DELETE c
"""

_DROP_STALE = """
MATCH (f:Function {owner: $key})
WHERE NOT f.id IN $ids
DETACH DELETE f
"""

_MERGE_FUNCTIONS = """
MATCH (v:PackageVersion {key: $key})
UNWIND $functions AS fn
MERGE (f:Function {id: fn.id})
SET f += fn
WITH v, f
WHERE f.placeholder = false
MERGE (v)-[:DEFINES]->(f)
"""

_MERGE_DEPENDENCIES = """
MATCH (v:PackageVersion {key: $key})
UNWIND $dependencies AS dep
MERGE (p:Package {name: dep.name})
MERGE (t:PackageVersion {key: dep.key})
ON CREATE SET t.name = dep.name, t.version = dep.version, t.ingested = false
MERGE (p)-[:HAS_VERSION]->(t)
CREATE (v)-[:DEPENDS_ON {constraint: dep.constraint, resolvedVersion: dep.version}]->(t)
"""

_CREATE_CALLS = """
UNWIND $calls AS call
MATCH (a:Function {id: call.caller})
MATCH (b:Function {id: call.callee})
CREATE (a)-[:CALLS {kind: call.kind, site: call.site, symbol: call.symbol}]->(b)
RETURN count(*) AS created
"""

_IS_INGESTED = "MATCH (v:PackageVersion {key: $key}) RETURN v.ingested AS ingested"

_EXPORTS = """
MATCH (:PackageVersion {key: $key})-[:DEFINES]->(f:Function)
WHERE f.exported = true
RETURN f.id AS id, f.demangled_name AS identity, f.mangled_name AS symbol
"""


def _write_batch(tx: ManagedTransaction, batch: AnalysisBatch) -> None:
    package = batch.package
    functions = function_records(batch) + placeholder_records(batch)
    calls = [
        {
            "caller": edge.caller,
            "callee": callee_node_id(package, edge),
            "kind": edge.kind.value,
            "site": edge.site,
            "symbol": edge.symbol,
        }
        for edge in batch.edges
    ]
    dependencies = [
        {
            "key": dep.target.key,
            "name": dep.target.name,
            "version": dep.resolved_version,
            "constraint": dep.constraint,
        }
        for dep in batch.dependencies
    ]

    tx.run(_MERGE_VERSION, key=package.key, name=package.name, version=package.version).consume()
    tx.run(_DROP_OUTGOING, key=package.key).consume()
    tx.run(_DROP_STALE, key=package.key, ids=[record["id"] for record in functions]).consume()
    tx.run(_MERGE_FUNCTIONS, key=package.key, functions=functions).consume()
    tx.run(_MERGE_DEPENDENCIES, key=package.key, dependencies=dependencies).consume()
    record = tx.run(_CREATE_CALLS, calls=calls).single()
    created = record["created"] if record is not None else 0
    if created != len(calls):
        # raising inside the transaction function rolls the whole batch back
        raise IngestionError(
            f"{len(calls) - created} call edges reference missing functions",
            package=package.key,
            retryable=False,
        )


class Neo4jGraphStore:
    """Graph store persisting batches to Neo4j, one write transaction per package version."""

    def __init__(self, driver: Driver, *, database: Optional[str] = None) -> None:
        self.driver = driver
        self.database = database

    @classmethod
    def connect(cls, config: StoreConfig) -> "Neo4jGraphStore":
        auth = (config.user, config.password or "") if config.user else None
        try:
            driver = GraphDatabase.driver(config.url, auth=auth)
        except (DriverError, ValueError) as exc:
            raise ConfigError(f"Invalid graph store URL {config.url}: {exc}") from exc
        try:
            driver.verify_connectivity()
            store = cls(driver, database=config.database)
            store.ensure_schema()
        except (DriverError, Neo4jError) as exc:
            driver.close()
            raise ConfigError(f"Cannot connect to graph store {config.url}: {exc}") from exc
        LOGGER.info("Connected to graph store %s", config.url)
        return store

    def ensure_schema(self) -> None:
        with self.driver.session(database=self.database) as session:
            for statement in SCHEMA_STATEMENTS:
                session.run(statement).consume()

    def upsert(self, batch: AnalysisBatch) -> None:
        try:
            with self.driver.session(database=self.database) as session:
                session.execute_write(_write_batch, batch)
        except (ServiceUnavailable, SessionExpired, TransientError) as exc:
            raise IngestionError(f"Graph store unavailable: {exc}", package=batch.package.key) from exc
        except (DriverError, Neo4jError) as exc:
            raise IngestionError(
                f"Graph store rejected the batch: {exc}", package=batch.package.key, retryable=False
            ) from exc
        LOGGER.debug("Committed %s: %s", batch.package, batch.counts())

    def _read(self, query: str, package: PackageVersion) -> list:
        try:
            records, _, _ = self.driver.execute_query(query, key=package.key, database_=self.database)
        except (ServiceUnavailable, SessionExpired) as exc:
            raise ConfigError(f"Graph store unreachable: {exc}") from exc
        except TransientError as exc:
            raise IngestionError(f"Graph store query failed: {exc}", package=package.key) from exc
        except (DriverError, Neo4jError) as exc:
            raise IngestionError(
                f"Graph store rejected the query: {exc}", package=package.key, retryable=False
            ) from exc
        return records

    def is_ingested(self, package: PackageVersion) -> bool:
        records = self._read(_IS_INGESTED, package)
        return bool(records and records[0]["ingested"])

    def load_exports(self, package: PackageVersion) -> Optional[ExportTable]:
        if not self.is_ingested(package):
            return None
        records = self._read(_EXPORTS, package)
        rows: List[tuple] = [(row["id"], row["identity"], row["symbol"]) for row in records]
        return ExportTable.from_records(rows)

    def close(self) -> None:
        self.driver.close()


__all__ = ["Neo4jGraphStore", "SCHEMA_STATEMENTS"]
