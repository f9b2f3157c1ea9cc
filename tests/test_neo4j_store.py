"""Neo4j store behaviour against an in-memory stand-in for the driver."""

from __future__ import annotations

import pytest
from neo4j.exceptions import ClientError, ServiceUnavailable, TransientError

from crate_callgraph.analysis.call_graph import build_module_graph, link_package
from crate_callgraph.analysis.merger import ExportIndex, merge
from crate_callgraph.analysis.model import PackageVersion
from crate_callgraph.errors import ConfigError, IngestionError
from crate_callgraph.io.ir_loader import parse_ir_text
from crate_callgraph.io.neo4j_store import Neo4jGraphStore, _write_batch

PACKAGE = PackageVersion("demo", "1.0.0")

IR = """\
define void @_ZN4demo3run17h1111111111111111E(ptr %cb) {
  call void @_ZN4demo5inner17h2222222222222222E()
  call void @abort()
  call void %cb()
  ret void
}

define internal void @_ZN4demo5inner17h2222222222222222E() {
  ret void
}
"""


def _batch():
    graph = link_package(PACKAGE, [build_module_graph(PACKAGE, parse_ir_text(IR))])
    batch, _ = merge(graph, [], ExportIndex())
    return batch


class _Result:
    def __init__(self, record=None) -> None:
        self._record = record

    def consume(self) -> None:
        return None

    def single(self):
        return self._record


class _Transaction:
    def __init__(self, created=None) -> None:
        self.created = created
        self.statements = []

    def run(self, query, **parameters):
        self.statements.append((query, parameters))
        if "CREATE (a)-[:CALLS" in query:
            count = len(parameters["calls"]) if self.created is None else self.created
            return _Result({"created": count})
        return _Result()


class _Session:
    def __init__(self, driver) -> None:
        self.driver = driver

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def execute_write(self, work, *args):
        if self.driver.write_error is not None:
            raise self.driver.write_error
        tx = _Transaction()
        self.driver.transactions.append(tx)
        return work(tx, *args)


class _Driver:
    def __init__(self, *, write_error=None, read_error=None, rows=None) -> None:
        self.write_error = write_error
        self.read_error = read_error
        self.rows = rows or {}
        self.transactions = []
        self.closed = False

    def session(self, database=None):
        return _Session(self)

    def execute_query(self, query, database_=None, **parameters):
        if self.read_error is not None:
            raise self.read_error
        for marker, rows in self.rows.items():
            if marker in query:
                return rows, None, None
        return [], None, None

    def close(self) -> None:
        self.closed = True


def test_write_batch_sends_every_part_in_one_transaction() -> None:
    tx = _Transaction()
    batch = _batch()

    _write_batch(tx, batch)

    params = [parameters for _, parameters in tx.statements]
    assert len(tx.statements) == 6
    functions = params[3]["functions"]
    assert sorted(fn["kind"] for fn in functions) == ["Defined", "Defined", "External", "Indirect"]
    calls = params[5]["calls"]
    assert {call["callee"] for call in calls if call["kind"] != "Direct"} == {
        "demo@1.0.0::external::abort",
        "demo@1.0.0::indirect",
    }


def test_missing_callee_aborts_the_transaction() -> None:
    tx = _Transaction(created=1)
    with pytest.raises(IngestionError) as info:
        _write_batch(tx, _batch())
    assert not info.value.retryable


def test_unavailable_server_is_retryable() -> None:
    store = Neo4jGraphStore(_Driver(write_error=ServiceUnavailable("gone")))
    with pytest.raises(IngestionError) as info:
        store.upsert(_batch())
    assert info.value.retryable


def test_rejected_batch_is_terminal() -> None:
    store = Neo4jGraphStore(_Driver(write_error=ClientError("constraint violated")))
    with pytest.raises(IngestionError) as info:
        store.upsert(_batch())
    assert not info.value.retryable


def test_exports_are_read_back() -> None:
    driver = _Driver(
        rows={
            "v.ingested": [{"ingested": True}],
            "f.exported": [{"id": "demo@1.0.0::demo#aa", "identity": "demo::run", "symbol": "_ZN4demo3run"}],
        }
    )
    store = Neo4jGraphStore(driver, database="graph")

    table = store.load_exports(PACKAGE)
    assert table is not None
    assert table.lookup("demo::run") == "demo@1.0.0::demo#aa"

    store.close()
    assert driver.closed


def test_unknown_version_has_no_exports() -> None:
    store = Neo4jGraphStore(_Driver())
    assert not store.is_ingested(PACKAGE)
    assert store.load_exports(PACKAGE) is None


def test_unreachable_server_on_read_is_fatal() -> None:
    store = Neo4jGraphStore(_Driver(read_error=ServiceUnavailable("gone")))
    with pytest.raises(ConfigError):
        store.is_ingested(PACKAGE)
    with pytest.raises(ConfigError):
        store.load_exports(PACKAGE)


def test_transient_read_failure_is_retryable() -> None:
    store = Neo4jGraphStore(_Driver(read_error=TransientError("deadlock")))
    with pytest.raises(IngestionError) as info:
        store.is_ingested(PACKAGE)
    assert info.value.retryable
    assert info.value.package == PACKAGE.key


def test_rejected_read_is_terminal() -> None:
    store = Neo4jGraphStore(_Driver(read_error=ClientError("bad query")))
    with pytest.raises(IngestionError) as info:
        store.load_exports(PACKAGE)
    assert not info.value.retryable
