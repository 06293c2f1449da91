"""Configuration loading.

Settings come from a YAML file (``docketgraph.yaml`` by default) and may be
overridden by environment variables, which are also read from a ``.env``
file by the CLI. Resolution order for every field:

1. Environment variable (e.g. DOCKETGRAPH_BACKEND)
2. Config file
3. Default
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML

from docketgraph.graph.delta import DEFAULT_BATCH_SIZE
from docketgraph.graph.gateway import FulltextIndexSpec

DEFAULT_CONFIG_FILE = Path("docketgraph.yaml")
DEFAULT_SQLITE_PATH = "docketgraph.db"

BACKENDS = ("sqlite", "neo4j")
STRATEGIES = ("snapshot", "patch")


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""

    def __init__(self, path: Path | None, reason: str) -> None:
        self.path = path
        self.reason = reason
        where = f" at {path}" if path is not None else ""
        super().__init__(f"Failed to load config{where}: {reason}")


@dataclass
class Neo4jConfig:
    """Connection settings for the Neo4j backend."""

    uri: str = "bolt://localhost:7687"
    user: str = "neo4j"
    password: str = ""
    database: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Neo4jConfig:
        default = cls()
        return cls(
            uri=str(data.get("uri", default.uri)),
            user=str(data.get("user", default.user)),
            password=str(data.get("password", default.password)),
            database=data.get("database"),
        )


@dataclass
class FulltextConfig:
    """Full-text index settings.

    Attributes:
        enabled: Create the index during ``docketgraph init``.
        name: Index name.
        labels: Node labels covered by the index.
        properties: Node properties whose text is indexed.
    """

    enabled: bool = True
    name: str = "ft_node_all"
    labels: list[str] = field(
        default_factory=lambda: ["Case", "Docket", "Person", "Judge", "Lawyer"]
    )
    properties: list[str] = field(default_factory=lambda: ["name", "number", "court", "firm"])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FulltextConfig:
        default = cls()
        return cls(
            enabled=bool(data.get("enabled", default.enabled)),
            name=str(data.get("name", default.name)),
            labels=[str(v) for v in data.get("labels", default.labels)],
            properties=[str(v) for v in data.get("properties", default.properties)],
        )

    def to_spec(self) -> FulltextIndexSpec:
        return FulltextIndexSpec(
            name=self.name, labels=list(self.labels), properties=list(self.properties)
        )


@dataclass
class GraphConfig:
    """Top-level configuration.

    Attributes:
        backend: ``sqlite`` (embedded) or ``neo4j``.
        sqlite_path: Database file for the SQLite backend.
        neo4j: Neo4j connection settings.
        batch_size: Rows per bulk statement chunk when applying deltas.
        strategy: Default versioning strategy, ``snapshot`` or ``patch``, for
            ``open_versioned_store`` callers. The CLI always versions dockets
            with snapshots and cases with patches.
        fulltext: Full-text index settings.
    """

    backend: str = "sqlite"
    sqlite_path: str = DEFAULT_SQLITE_PATH
    neo4j: Neo4jConfig = field(default_factory=Neo4jConfig)
    batch_size: int = DEFAULT_BATCH_SIZE
    strategy: str = "snapshot"
    fulltext: FulltextConfig = field(default_factory=FulltextConfig)

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}, got {self.strategy!r}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphConfig:
        """Create config from a parsed YAML mapping.

        Args:
            data: Mapping with optional keys ``backend``, ``sqlite`` (``path``),
                ``neo4j``, ``batch_size``, ``strategy`` and ``fulltext``.
        """
        sqlite = data.get("sqlite") or {}
        return cls(
            backend=str(data.get("backend", "sqlite")),
            sqlite_path=str(sqlite.get("path", DEFAULT_SQLITE_PATH)),
            neo4j=Neo4jConfig.from_dict(dict(data.get("neo4j") or {})),
            batch_size=int(data.get("batch_size", DEFAULT_BATCH_SIZE)),
            strategy=str(data.get("strategy", "snapshot")),
            fulltext=FulltextConfig.from_dict(dict(data.get("fulltext") or {})),
        )

    def with_env_overrides(self) -> GraphConfig:
        """Return a copy with DOCKETGRAPH_* / NEO4J_* environment overrides applied."""
        batch_size = os.getenv("DOCKETGRAPH_BATCH_SIZE")
        return replace(
            self,
            backend=os.getenv("DOCKETGRAPH_BACKEND") or self.backend,
            sqlite_path=os.getenv("DOCKETGRAPH_SQLITE_PATH") or self.sqlite_path,
            strategy=os.getenv("DOCKETGRAPH_STRATEGY") or self.strategy,
            batch_size=int(batch_size) if batch_size else self.batch_size,
            neo4j=Neo4jConfig(
                uri=os.getenv("NEO4J_URI") or self.neo4j.uri,
                user=os.getenv("NEO4J_USER") or self.neo4j.user,
                password=os.getenv("NEO4J_PASSWORD") or self.neo4j.password,
                database=os.getenv("NEO4J_DATABASE") or self.neo4j.database,
            ),
        )


def load_config(path: Path | None = None) -> GraphConfig:
    """Load configuration.

    Args:
        path: YAML file to read. When None, ``docketgraph.yaml`` in the
            working directory is used if it exists, otherwise defaults.

    Returns:
        GraphConfig with environment overrides applied.

    Raises:
        ConfigError: If the file is missing (when given explicitly),
            unreadable or holds invalid values.
    """
    config_path = path
    if config_path is None and DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE

    try:
        if config_path is None:
            return GraphConfig().with_env_overrides()
        if not config_path.exists():
            raise ConfigError(config_path, "File not found")

        yaml = YAML()
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(config_path, "Top level must be a mapping")
        return GraphConfig.from_dict(dict(data)).with_env_overrides()
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(config_path, str(e)) from e


def write_default_config(path: Path) -> None:
    """Write the default configuration to *path*."""
    config = GraphConfig()
    data = {
        "backend": config.backend,
        "sqlite": {"path": config.sqlite_path},
        "neo4j": {"uri": config.neo4j.uri, "user": config.neo4j.user},
        "batch_size": config.batch_size,
        "strategy": config.strategy,
        "fulltext": {
            "enabled": config.fulltext.enabled,
            "name": config.fulltext.name,
            "labels": config.fulltext.labels,
            "properties": config.fulltext.properties,
        },
    }
    yaml_writer = YAML()
    yaml_writer.default_flow_style = False
    with path.open("w", encoding="utf-8") as f:
        yaml_writer.dump(data, f)
