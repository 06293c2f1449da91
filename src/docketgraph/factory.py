"""Build gateways and versioned stores from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from docketgraph.observability.logging import get_logger
from docketgraph.versioning import PatchVersionStore, SnapshotVersionStore

if TYPE_CHECKING:
    from docketgraph.config import GraphConfig
    from docketgraph.graph.gateway import GraphGateway
    from docketgraph.versioning import VersionedGraphStore

log = get_logger(__name__)


def open_gateway(config: GraphConfig) -> GraphGateway:
    """Open the gateway selected by ``config.backend``."""
    if config.backend == "neo4j":
        from docketgraph.graph.neo4j_store import BASE_LABEL, Neo4jGraphGateway

        gateway = Neo4jGraphGateway(
            config.neo4j.uri,
            config.neo4j.user,
            config.neo4j.password,
            config.neo4j.database,
        )
        gateway.ensure_unique(BASE_LABEL, "id")
        log.debug("gateway_opened", backend="neo4j", uri=config.neo4j.uri)
        return gateway

    from docketgraph.graph.sqlite_store import SqliteGraphGateway

    log.debug("gateway_opened", backend="sqlite", path=config.sqlite_path)
    return SqliteGraphGateway(config.sqlite_path)


def open_versioned_store(
    config: GraphConfig, gateway: GraphGateway, strategy: str | None = None
) -> VersionedGraphStore:
    """Create the versioned store for *strategy* (default: ``config.strategy``)."""
    chosen = strategy or config.strategy
    store_cls = PatchVersionStore if chosen == "patch" else SnapshotVersionStore
    store = store_cls(gateway, batch_size=config.batch_size)
    store.ensure_schema()
    return store
