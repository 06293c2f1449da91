"""SQLite-backed graph gateway.

SqliteGraphGateway implements the GraphGateway protocol on stdlib sqlite3.
Nodes keep their labels in a side table so label lookups are indexed;
edges are unique on ``(edge_type, from_id, to_id)`` which makes relate
idempotent. Property overlays replace values per top-level key and a
``None`` value removes the key, exactly like ``SET n += {k: null}`` does in
Cypher; nested maps are stored whole, never merged.

Transactions are savepoints: the outermost block starts the transaction,
nested blocks roll back independently.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

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
    from collections.abc import Iterable, Iterator, Sequence

    from docketgraph.graph.gateway import Direction

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS nodes (
    node_id TEXT PRIMARY KEY,
    props   JSON NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS node_labels (
    node_id TEXT NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
    label   TEXT NOT NULL,
    PRIMARY KEY (node_id, label)
);
CREATE INDEX IF NOT EXISTS idx_node_labels_label ON node_labels(label);

CREATE TABLE IF NOT EXISTS edges (
    edge_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    edge_type TEXT NOT NULL,
    from_id   TEXT NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
    to_id     TEXT NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
    props     JSON NOT NULL DEFAULT '{}',
    UNIQUE (edge_type, from_id, to_id)
);
CREATE INDEX IF NOT EXISTS idx_edges_from ON edges(from_id);
CREATE INDEX IF NOT EXISTS idx_edges_to   ON edges(to_id);

CREATE TABLE IF NOT EXISTS fulltext_indexes (
    name TEXT PRIMARY KEY,
    spec JSON NOT NULL
);
"""

_WRITE_NODE_SQL = (
    "INSERT INTO nodes (node_id, props) VALUES (:id, :props) "
    "ON CONFLICT(node_id) DO UPDATE SET props = excluded.props"
)
_ADD_LABEL_SQL = "INSERT OR IGNORE INTO node_labels (node_id, label) VALUES (?, ?)"
_REMOVE_LABEL_SQL = "DELETE FROM node_labels WHERE node_id = ? AND label = ?"
_UPDATE_NODE_SQL = "UPDATE nodes SET props = :props WHERE node_id = :id"
_DELETE_NODE_SQL = "DELETE FROM nodes WHERE node_id = :id"
_WRITE_EDGE_SQL = (
    "INSERT INTO edges (edge_type, from_id, to_id, props) "
    "SELECT :edge_type, :from_id, :to_id, :props "
    "WHERE EXISTS (SELECT 1 FROM nodes WHERE node_id = :from_id) "
    "AND EXISTS (SELECT 1 FROM nodes WHERE node_id = :to_id) "
    "ON CONFLICT(edge_type, from_id, to_id) DO UPDATE "
    "SET props = excluded.props"
)
_DELETE_EDGE_SQL = (
    "DELETE FROM edges WHERE edge_type = :edge_type AND from_id = :from_id AND to_id = :to_id"
)


def _overlay(current: dict[str, Any], patch: dict[str, Any] | None) -> dict[str, Any]:
    """Apply *patch* key by key; ``None`` removes, anything else replaces whole."""
    result = dict(current)
    for key, value in (patch or {}).items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = value
    return result


class SqliteGraphGateway:
    """Embedded graph gateway backed by a single SQLite database."""

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        _conn: sqlite3.Connection | None = None,
    ) -> None:
        """Open or create a SQLite graph database.

        Args:
            db_path: Path to ``.db`` file, or ``":memory:"`` for in-memory.
            _conn: Pre-existing connection (for testing). If provided,
                   *db_path* is ignored.
        """
        if _conn is not None:
            self._conn = _conn
            self._db_path: str = ":memory:"
        else:
            self._db_path = str(db_path) if isinstance(db_path, Path) else db_path
            self._conn = sqlite3.connect(
                self._db_path,
                isolation_level=None,  # autocommit, transactions are savepoints
            )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

        self._depth = 0
        self._fulltext: dict[str, FulltextIndexSpec] = self._load_fulltext_specs()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # -- Transactions ----------------------------------------------------------

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise ConstraintViolationError(str(e)) from e
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise TransientStoreError(str(e)) from e
            raise

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Open a savepoint; nested calls get their own savepoint."""
        name = f"tx_{self._depth}"
        with self._translate_errors():
            self._conn.execute(f"SAVEPOINT {name}")
        self._depth += 1
        try:
            with self._translate_errors():
                yield
        except BaseException:
            self._depth -= 1
            self._conn.execute(f"ROLLBACK TO {name}")
            self._conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self._depth -= 1
        with self._translate_errors():
            self._conn.execute(f"RELEASE SAVEPOINT {name}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # -- Nodes -----------------------------------------------------------------

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
        nodes = self._load_nodes([node_id])
        return nodes.get(node_id)

    def find_nodes(self, label: str, props: dict[str, Any] | None = None) -> list[GenericNode]:
        rows = self._conn.execute(
            "SELECT n.node_id FROM nodes n "
            "JOIN node_labels l ON l.node_id = n.node_id "
            "WHERE l.label = ? ORDER BY n.rowid",
            (label,),
        ).fetchall()
        loaded = self._load_nodes([row["node_id"] for row in rows])
        wanted = props or {}
        return [
            node
            for node in loaded.values()
            if all(node.props.get(k) == v for k, v in wanted.items())
        ]

    def delete_node(self, node_id: str) -> None:
        self.run_batch([Statement(BatchOp.DETACH_DELETE_NODES, [{"id": node_id}])])

    def node_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS cnt FROM nodes").fetchone()
        return row["cnt"]  # type: ignore[no-any-return]

    def _load_nodes(self, node_ids: Iterable[str]) -> dict[str, GenericNode]:
        """Fetch nodes (with ordered labels) keyed by id, preserving input order."""
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return {}
        id_param = json.dumps(ids)
        prop_rows = self._conn.execute(
            "SELECT node_id, props FROM nodes WHERE node_id IN (SELECT value FROM json_each(?))",
            (id_param,),
        ).fetchall()
        label_rows = self._conn.execute(
            "SELECT node_id, label FROM node_labels "
            "WHERE node_id IN (SELECT value FROM json_each(?)) ORDER BY rowid",
            (id_param,),
        ).fetchall()
        labels: dict[str, list[str]] = {}
        for row in label_rows:
            labels.setdefault(row["node_id"], []).append(row["label"])
        props = {row["node_id"]: json.loads(row["props"]) for row in prop_rows}

        result: dict[str, GenericNode] = {}
        for node_id in ids:
            if node_id not in props:
                continue
            result[node_id] = GenericNode(
                id=node_id, labels=labels.get(node_id) or ["Node"], props=props[node_id]
            )
        return result

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
        row = self._conn.execute(
            "SELECT props FROM edges WHERE edge_type = ? AND from_id = ? AND to_id = ?",
            (sanitize_token(rel_type), from_id, to_id),
        ).fetchone()
        if row is None:
            return {}
        return dict(json.loads(row["props"]))

    def expand(
        self,
        node_ids: Sequence[str],
        edge_type: str | None = None,
        direction: Direction = "out",
    ) -> list[tuple[str, EdgeRecord, GenericNode]]:
        if not node_ids:
            return []
        source_col, target_col = (
            ("from_id", "to_id") if direction == "out" else ("to_id", "from_id")
        )
        sql = (
            f"SELECT edge_type, from_id, to_id, props FROM edges "
            f"WHERE {source_col} IN (SELECT value FROM json_each(?))"
        )
        params: list[Any] = [json.dumps(list(node_ids))]
        if edge_type is not None:
            sql += " AND edge_type = ?"
            params.append(sanitize_token(edge_type))
        sql += " ORDER BY edge_id"
        rows = self._conn.execute(sql, params).fetchall()

        neighbours = self._load_nodes(row[target_col] for row in rows)
        result: list[tuple[str, EdgeRecord, GenericNode]] = []
        for row in rows:
            neighbour = neighbours.get(row[target_col])
            if neighbour is None:
                continue
            result.append((row[source_col], self._row_to_edge(row), neighbour))
        return result

    def edge_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS cnt FROM edges").fetchone()
        return row["cnt"]  # type: ignore[no-any-return]

    @staticmethod
    def _row_to_edge(row: sqlite3.Row) -> EdgeRecord:
        return EdgeRecord(
            from_id=row["from_id"],
            to_id=row["to_id"],
            type=row["edge_type"],
            props=json.loads(row["props"]) if row["props"] else {},
        )

    # -- Bulk ------------------------------------------------------------------

    def run_batch(self, statements: Sequence[Statement]) -> None:
        touched: list[str] = []
        with self.transaction():
            for statement in statements:
                touched.extend(self._execute(statement))
            if touched and self._fulltext:
                self._reindex(touched)

    def _execute(self, statement: Statement) -> list[str]:
        """Run one bulk statement and return the node ids whose text may have changed."""
        rows = statement.rows
        if not rows:
            return []
        op = statement.op
        if op is BatchOp.MERGE_NODES:
            self._merge_nodes(rows)
            return [row["id"] for row in rows]
        if op is BatchOp.UPDATE_NODES:
            current = self._current_node_props(row["id"] for row in rows)
            for row in rows:
                if row["id"] in current:
                    current[row["id"]] = _overlay(current[row["id"]], row.get("props"))
            self._conn.executemany(
                _UPDATE_NODE_SQL,
                [{"id": node_id, "props": json.dumps(props)} for node_id, props in current.items()],
            )
            return [row["id"] for row in rows]
        if op is BatchOp.DETACH_DELETE_NODES:
            self._conn.executemany(_DELETE_NODE_SQL, [{"id": row["id"]} for row in rows])
            return [row["id"] for row in rows]
        if op is BatchOp.MERGE_EDGES:
            self._merge_edges(rows)
            return []
        if op is BatchOp.DELETE_EDGES:
            self._conn.executemany(
                _DELETE_EDGE_SQL,
                [
                    {
                        "edge_type": sanitize_token(row["type"]),
                        "from_id": row["from"],
                        "to_id": row["to"],
                    }
                    for row in rows
                ],
            )
            return []
        raise ValueError(f"Unknown batch operation: {op!r}")

    def _current_node_props(self, node_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT node_id, props FROM nodes WHERE node_id IN (SELECT value FROM json_each(?))",
            (json.dumps(list(dict.fromkeys(node_ids))),),
        ).fetchall()
        return {row["node_id"]: json.loads(row["props"]) for row in rows}

    def _merge_nodes(self, rows: Sequence[dict[str, Any]]) -> None:
        merged = self._current_node_props(row["id"] for row in rows)
        for row in rows:
            base = merged.get(row["id"])
            if base is None:
                base = _overlay({}, row.get("on_create"))
            merged[row["id"]] = _overlay(base, row.get("props"))
        touched = dict.fromkeys(row["id"] for row in rows)
        self._conn.executemany(
            _WRITE_NODE_SQL,
            [{"id": node_id, "props": json.dumps(merged[node_id])} for node_id in touched],
        )
        self._conn.executemany(
            _ADD_LABEL_SQL,
            [
                (row["id"], require_token(label))
                for row in rows
                for label in row.get("labels") or ()
            ],
        )
        self._conn.executemany(
            _REMOVE_LABEL_SQL,
            [
                (row["id"], require_token(label))
                for row in rows
                for label in row.get("remove_labels") or ()
                if label not in (row.get("labels") or ())
            ],
        )

    def _merge_edges(self, rows: Sequence[dict[str, Any]]) -> None:
        from_ids = json.dumps(list(dict.fromkeys(row["from"] for row in rows)))
        existing = self._conn.execute(
            "SELECT edge_type, from_id, to_id, props FROM edges "
            "WHERE from_id IN (SELECT value FROM json_each(?))",
            (from_ids,),
        ).fetchall()
        merged: dict[tuple[str, str, str], dict[str, Any]] = {
            (row["edge_type"], row["from_id"], row["to_id"]): json.loads(row["props"])
            for row in existing
        }
        for row in rows:
            key = (sanitize_token(row["type"]), row["from"], row["to"])
            merged[key] = _overlay(merged.get(key, {}), row.get("props"))
        touched = dict.fromkeys(
            (sanitize_token(row["type"]), row["from"], row["to"]) for row in rows
        )
        self._conn.executemany(
            _WRITE_EDGE_SQL,
            [
                {
                    "edge_type": edge_type,
                    "from_id": from_id,
                    "to_id": to_id,
                    "props": json.dumps(merged[(edge_type, from_id, to_id)]),
                }
                for edge_type, from_id, to_id in touched
            ],
        )

    def run_pattern_query(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        with self._translate_errors():
            rows = self._conn.execute(query, params or {}).fetchall()
        return [dict(row) for row in rows]

    # -- Schema ----------------------------------------------------------------

    def ensure_unique(self, label: str, prop: str) -> None:
        """Create a unique expression index on ``props.<prop>``.

        SQLite indexes cannot filter by label, so the constraint covers
        every node carrying *prop*; label-specific property names keep
        this equivalent in practice.
        """
        label = require_token(label)
        prop = require_token(prop, "property")
        with self._translate_errors():
            self._conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{label}_{prop} "
                f"ON nodes(json_extract(props, '$.{prop}'))"
            )
        log.debug("unique_constraint_ready", label=label, prop=prop)

    # -- Full-text -------------------------------------------------------------

    def _load_fulltext_specs(self) -> dict[str, FulltextIndexSpec]:
        rows = self._conn.execute("SELECT name, spec FROM fulltext_indexes").fetchall()
        return {row["name"]: FulltextIndexSpec(**json.loads(row["spec"])) for row in rows}

    def ensure_index(self, spec: FulltextIndexSpec) -> None:
        name = require_token(spec.name, "index name")
        if name in self._fulltext:
            log.debug("fulltext_index_exists", index=name)
            return
        with self.transaction():
            self._conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS fts_{name} USING fts5(node_id UNINDEXED, body)"
            )
            self._conn.execute(
                "INSERT OR REPLACE INTO fulltext_indexes (name, spec) VALUES (?, ?)",
                (
                    name,
                    json.dumps(
                        {"name": name, "labels": spec.labels, "properties": spec.properties}
                    ),
                ),
            )
            self._fulltext[name] = spec
            all_ids = [row["node_id"] for row in self._conn.execute("SELECT node_id FROM nodes")]
            self._reindex(all_ids, only=name)
        log.info("fulltext_index_created", index=name, labels=spec.labels)

    def _reindex(self, node_ids: Sequence[str], only: str | None = None) -> None:
        """Refresh full-text rows for *node_ids* in every registered index."""
        nodes = self._load_nodes(node_ids)
        id_param = json.dumps(list(dict.fromkeys(node_ids)))
        for name, spec in self._fulltext.items():
            if only is not None and name != only:
                continue
            self._conn.execute(
                f"DELETE FROM fts_{name} WHERE node_id IN (SELECT value FROM json_each(?))",
                (id_param,),
            )
            rows = []
            for node_id, node in nodes.items():
                if not any(label in spec.labels for label in node.labels):
                    continue
                body = " ".join(
                    str(node.props[p]) for p in spec.properties if node.props.get(p) is not None
                )
                if body:
                    rows.append((node_id, body))
            self._conn.executemany(f"INSERT INTO fts_{name} (node_id, body) VALUES (?, ?)", rows)

    def search(
        self, index: str, text: str, limit: int | None = None
    ) -> list[tuple[GenericNode, float]]:
        name = require_token(index, "index name")
        if name not in self._fulltext:
            raise NotFoundError("fulltext index", name)
        terms = [t for t in text.split() if t]
        if not terms:
            return []
        # Quote every term so FTS5 syntax characters are matched literally
        match = " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)
        with self._translate_errors():
            rows = self._conn.execute(
                f"SELECT node_id, -bm25(fts_{name}) AS score FROM fts_{name} "
                f"WHERE fts_{name} MATCH ? ORDER BY score DESC LIMIT ?",
                (match, clamp_search_limit(limit)),
            ).fetchall()
        nodes = self._load_nodes(row["node_id"] for row in rows)
        return [
            (nodes[row["node_id"]], float(row["score"])) for row in rows if row["node_id"] in nodes
        ]
