"""Neo4j-backed graph gateway.

Every node carries the ``GraphNode`` base label next to its own labels so
that id lookups hit one uniqueness-constrained index regardless of kind.
Bulk statements become one ``UNWIND $rows`` query per label set or edge
type, so a chunk of a thousand rows costs a handful of round trips.

Neo4j properties cannot hold maps, so map values (and lists of maps) are
stored as JSON strings behind a marker prefix and decoded again on read.
Edges record a creation sequence on first merge; expansions are ordered by
it so they come back in insertion order.
"""

from __future__ import annotations

import json
import re
import time
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from neo4j import GraphDatabase
from neo4j.exceptions import (
    ClientError,
    ConstraintError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from docketgraph.graph.errors import (
    ConstraintViolationError,
    NotFoundError,
    TransientStoreError,
)
from docketgraph.graph.gateway import (
    BatchOp,
    EdgeRecord,
    FulltextIndexSpec,
    Statement,
    clamp_search_limit,
    require_token,
    sanitize_token,
)
from docketgraph.graph.generic import GenericNode
from docketgraph.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from neo4j import Driver, ManagedTransaction, Transaction

    from docketgraph.graph.gateway import Direction

log = get_logger(__name__)

BASE_LABEL = "GraphNode"

_LUCENE_SPECIAL = re.compile(r'([+\-!(){}\[\]^"~*?:\\/]|&&|\|\|)')

_NODE_RETURN = "n.id AS id, labels(n) AS labels, properties(n) AS props"

_JSON_MARKER = "\x1ejson:"

# Set once when an edge is first merged, never returned as a property
EDGE_SEQ_PROP = "_createdSeq"


def _escape_lucene(text: str) -> str:
    return _LUCENE_SPECIAL.sub(r"\\\1", text)


def _sanitize_props(props: dict[str, Any]) -> dict[str, Any]:
    """Encode map values as marked JSON strings; Neo4j properties cannot hold maps."""
    sanitized: dict[str, Any] = {}
    for k, v in props.items():
        if isinstance(v, dict) or (isinstance(v, list) and any(isinstance(i, dict) for i in v)):
            sanitized[k] = _JSON_MARKER + json.dumps(v, ensure_ascii=False)
        else:
            sanitized[k] = v
    return sanitized


def _decode_props(props: dict[str, Any] | None, *hidden: str) -> dict[str, Any]:
    """Invert :func:`_sanitize_props` and drop the *hidden* bookkeeping keys."""
    decoded: dict[str, Any] = {}
    for k, v in (props or {}).items():
        if k in hidden:
            continue
        if isinstance(v, str) and v.startswith(_JSON_MARKER):
            decoded[k] = json.loads(v[len(_JSON_MARKER) :])
        else:
            decoded[k] = v
    return decoded


class Neo4jGraphGateway:
    """Graph gateway talking to Neo4j through the official Python driver."""

    def __init__(
        self,
        uri: str,
        user: str,
        password: str,
        database: str | None = None,
        *,
        driver: Driver | None = None,
    ) -> None:
        """Connect to Neo4j.

        Args:
            uri: Bolt or neo4j URI.
            user: Username for basic auth.
            password: Password for basic auth.
            database: Target database; None uses the server default.
            driver: Pre-built driver (for testing). If provided, the
                connection arguments are ignored.
        """
        self._driver = driver or GraphDatabase.driver(uri, auth=(user, password))
        self._database = database
        self._tx: Transaction | None = None

    def close(self) -> None:
        """Close the driver."""
        self._driver.close()

    # -- Transactions ----------------------------------------------------------

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except ConstraintError as e:
            raise ConstraintViolationError(e.message or str(e)) from e
        except (ServiceUnavailable, SessionExpired, TransientError) as e:
            raise TransientStoreError(str(e)) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Open an explicit transaction; nested blocks join the outer one."""
        if self._tx is not None:
            yield
            return
        session = self._driver.session(database=self._database)
        try:
            with self._translate_errors():
                tx = session.begin_transaction()
            self._tx = tx
            try:
                yield
            except BaseException:
                tx.rollback()
                raise
            else:
                with self._translate_errors():
                    tx.commit()
            finally:
                self._tx = None
        finally:
            session.close()

    def _run(
        self, query: str, params: dict[str, Any] | None = None, *, write: bool = True
    ) -> list[dict[str, Any]]:
        """Run *query* in the open transaction, or in its own managed one."""
        params = params or {}
        with self._translate_errors():
            if self._tx is not None:
                return [record.data() for record in self._tx.run(query, params)]

            def work(tx: ManagedTransaction) -> list[dict[str, Any]]:
                return [record.data() for record in tx.run(query, params)]

            with self._driver.session(database=self._database) as session:
                if write:
                    return session.execute_write(work)
                return session.execute_read(work)

    def _run_schema(self, query: str) -> None:
        """Run a DDL statement in an auto-commit transaction."""
        with self._translate_errors(), self._driver.session(database=self._database) as session:
            session.run(query).consume()

    # -- Nodes -----------------------------------------------------------------

    @staticmethod
    def _to_node(record: dict[str, Any]) -> GenericNode:
        labels = [label for label in record["labels"] if label != BASE_LABEL]
        props = _decode_props(record.get("props"), "id")
        return GenericNode(id=record["id"], labels=labels or [BASE_LABEL], props=props)

    def upsert_node(self, node: GenericNode) -> GenericNode:
        node_id = node.id or str(uuid.uuid4())
        self.run_batch(
            [
                Statement(
                    BatchOp.MERGE_NODES,
                    [{"id": node_id, "labels": list(node.labels), "props": dict(node.props)}],
                )
            ]
        )
        stored = self.get_node(node_id)
        if stored is None:
            raise NotFoundError("node", node_id, "upsert did not persist")
        return stored

    def get_node(self, node_id: str) -> GenericNode | None:
        records = self._run(
            f"MATCH (n:{BASE_LABEL} {{id: $id}}) RETURN {_NODE_RETURN}",
            {"id": node_id},
            write=False,
        )
        return self._to_node(records[0]) if records else None

    def find_nodes(self, label: str, props: dict[str, Any] | None = None) -> list[GenericNode]:
        label = require_token(label)
        records = self._run(
            f"MATCH (n:{BASE_LABEL}:{label}) "
            "WHERE all(k IN keys($props) WHERE n[k] = $props[k]) "
            f"RETURN {_NODE_RETURN}",
            {"props": _sanitize_props(props or {})},
            write=False,
        )
        return [self._to_node(r) for r in records]

    def delete_node(self, node_id: str) -> None:
        self.run_batch([Statement(BatchOp.DETACH_DELETE_NODES, [{"id": node_id}])])

    # -- Edges -----------------------------------------------------------------

    def relate(
        self, from_id: str, rel_type: str, to_id: str, props: dict[str, Any] | None = None
    ) -> None:
        rel_type = sanitize_token(rel_type)
        self.run_batch(
            [
                Statement(
                    BatchOp.MERGE_EDGES,
                    [{"from": from_id, "to": to_id, "type": rel_type, "props": props or {}}],
                )
            ]
        )

    def delete_edge(self, from_id: str, rel_type: str, to_id: str) -> None:
        rel_type = sanitize_token(rel_type)
        self.run_batch(
            [Statement(BatchOp.DELETE_EDGES, [{"from": from_id, "to": to_id, "type": rel_type}])]
        )

    def read_edge_props(self, from_id: str, rel_type: str, to_id: str) -> dict[str, Any]:
        rel_type = sanitize_token(rel_type)
        records = self._run(
            f"MATCH (a:{BASE_LABEL} {{id: $from}})-[r:{rel_type}]->(b:{BASE_LABEL} {{id: $to}}) "
            "RETURN properties(r) AS props LIMIT 1",
            {"from": from_id, "to": to_id},
            write=False,
        )
        return _decode_props(records[0]["props"], EDGE_SEQ_PROP) if records else {}

    def expand(
        self,
        node_ids: Sequence[str],
        edge_type: str | None = None,
        direction: Direction = "out",
    ) -> list[tuple[str, EdgeRecord, GenericNode]]:
        if not node_ids:
            return []
        rel = f"[r:{sanitize_token(edge_type)}]" if edge_type else "[r]"
        pattern = f"-{rel}->" if direction == "out" else f"<-{rel}-"
        records = self._run(
            f"MATCH (s:{BASE_LABEL}){pattern}(n:{BASE_LABEL}) WHERE s.id IN $ids "
            f"RETURN s.id AS source, type(r) AS type, properties(r) AS rprops, {_NODE_RETURN} "
            f"ORDER BY r.{EDGE_SEQ_PROP}, elementId(r)",
            {"ids": list(node_ids)},
            write=False,
        )
        result: list[tuple[str, EdgeRecord, GenericNode]] = []
        for record in records:
            if direction == "out":
                from_id, to_id = record["source"], record["id"]
            else:
                from_id, to_id = record["id"], record["source"]
            edge = EdgeRecord(
                from_id=from_id,
                to_id=to_id,
                type=record["type"],
                props=_decode_props(record["rprops"], EDGE_SEQ_PROP),
            )
            result.append((record["source"], edge, self._to_node(record)))
        return result

    # -- Bulk ------------------------------------------------------------------

    def run_batch(self, statements: Sequence[Statement]) -> None:
        with self.transaction():
            for statement in statements:
                for query, rows in self._compile(statement):
                    self._run(query, {"rows": rows})
                    log.debug("batch_statement", op=str(statement.op), rows=len(rows))

    def _compile(self, statement: Statement) -> list[tuple[str, list[dict[str, Any]]]]:
        """Translate one Statement into UNWIND queries grouped by label set or type."""
        op = statement.op
        if not statement.rows:
            return []
        if op is BatchOp.MERGE_NODES:
            groups: dict[tuple[tuple[str, ...], tuple[str, ...]], list[dict[str, Any]]] = {}
            for row in statement.rows:
                labels = tuple(require_token(label) for label in row.get("labels") or ())
                stale = tuple(
                    require_token(label)
                    for label in row.get("remove_labels") or ()
                    if label not in labels
                )
                groups.setdefault((labels, stale), []).append(
                    {
                        "id": row["id"],
                        "props": _sanitize_props(row.get("props") or {}),
                        "on_create": _sanitize_props(row.get("on_create") or {}),
                    }
                )
            compiled = []
            for (labels, stale), rows in groups.items():
                set_labels = f" SET n:{':'.join(labels)}" if labels else ""
                remove_labels = f" REMOVE n:{':'.join(stale)}" if stale else ""
                compiled.append(
                    (
                        f"UNWIND $rows AS row MERGE (n:{BASE_LABEL} {{id: row.id}}) "
                        "ON CREATE SET n += row.on_create "
                        f"SET n += row.props{set_labels}{remove_labels}",
                        rows,
                    )
                )
            return compiled
        if op is BatchOp.UPDATE_NODES:
            rows = [
                {"id": row["id"], "props": _sanitize_props(row.get("props") or {})}
                for row in statement.rows
            ]
            return [
                (
                    f"UNWIND $rows AS row MATCH (n:{BASE_LABEL} {{id: row.id}}) SET n += row.props",
                    rows,
                )
            ]
        if op is BatchOp.DETACH_DELETE_NODES:
            rows = [{"id": row["id"]} for row in statement.rows]
            return [
                (
                    f"UNWIND $rows AS row MATCH (n:{BASE_LABEL} {{id: row.id}}) DETACH DELETE n",
                    rows,
                )
            ]
        if op in (BatchOp.MERGE_EDGES, BatchOp.DELETE_EDGES):
            seq = time.time_ns()
            by_type: dict[str, list[dict[str, Any]]] = {}
            for offset, row in enumerate(statement.rows):
                by_type.setdefault(sanitize_token(row["type"]), []).append(
                    {
                        "from": row["from"],
                        "to": row["to"],
                        "props": _sanitize_props(row.get("props") or {}),
                        "seq": seq + offset,
                    }
                )
            compiled = []
            for rel_type, rows in by_type.items():
                if op is BatchOp.MERGE_EDGES:
                    query = (
                        f"UNWIND $rows AS row "
                        f"MATCH (a:{BASE_LABEL} {{id: row.from}}) "
                        f"MATCH (b:{BASE_LABEL} {{id: row.to}}) "
                        f"MERGE (a)-[r:{rel_type}]->(b) "
                        f"ON CREATE SET r.{EDGE_SEQ_PROP} = row.seq "
                        "SET r += row.props"
                    )
                else:
                    query = (
                        f"UNWIND $rows AS row "
                        f"MATCH (a:{BASE_LABEL} {{id: row.from}})-[r:{rel_type}]->"
                        f"(b:{BASE_LABEL} {{id: row.to}}) DELETE r"
                    )
                compiled.append((query, rows))
            return compiled
        raise ValueError(f"Unknown batch operation: {op!r}")

    def run_pattern_query(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return self._run(query, params)

    # -- Schema ----------------------------------------------------------------

    def ensure_unique(self, label: str, prop: str) -> None:
        label = require_token(label)
        prop = require_token(prop, "property")
        self._run_schema(
            f"CREATE CONSTRAINT uq_{label}_{prop} IF NOT EXISTS "
            f"FOR (n:{label}) REQUIRE n.{prop} IS UNIQUE"
        )
        log.debug("unique_constraint_ready", label=label, prop=prop)

    # -- Full-text -------------------------------------------------------------

    def ensure_index(self, spec: FulltextIndexSpec) -> None:
        name = require_token(spec.name, "index name")
        labels = "|".join(require_token(label) for label in spec.labels)
        props = ", ".join(f"n.{require_token(p, 'property')}" for p in spec.properties)
        try:
            self._run_schema(
                f"CREATE FULLTEXT INDEX {name} IF NOT EXISTS FOR (n:{labels}) ON EACH [{props}]"
            )
        except ClientError as e:
            if "AlreadyExists" not in (e.code or ""):
                raise
            log.debug("fulltext_index_exists", index=name)
            return
        self._run_schema("CALL db.awaitIndexes()")
        log.info("fulltext_index_created", index=name, labels=spec.labels)

    def search(
        self, index: str, text: str, limit: int | None = None
    ) -> list[tuple[GenericNode, float]]:
        name = require_token(index, "index name")
        if not text.strip():
            return []
        records = self._run(
            "CALL db.index.fulltext.queryNodes($index, $text) YIELD node AS n, score "
            f"RETURN {_NODE_RETURN}, score ORDER BY score DESC LIMIT $limit",
            {"index": name, "text": _escape_lucene(text), "limit": clamp_search_limit(limit)},
            write=False,
        )
        return [(self._to_node(r), float(r["score"])) for r in records]
