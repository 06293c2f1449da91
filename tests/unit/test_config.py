"""Tests for configuration loading."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from docketgraph.config import (
    DEFAULT_SQLITE_PATH,
    ConfigError,
    GraphConfig,
    load_config,
    write_default_config,
)
from docketgraph.graph.delta import DEFAULT_BATCH_SIZE

if TYPE_CHECKING:
    from pathlib import Path


class TestGraphConfig:
    """Tests for GraphConfig."""

    def test_defaults(self) -> None:
        config = GraphConfig()

        assert config.backend == "sqlite"
        assert config.sqlite_path == DEFAULT_SQLITE_PATH
        assert config.strategy == "snapshot"
        assert config.batch_size == DEFAULT_BATCH_SIZE
        assert config.fulltext.enabled is True

    def test_from_dict(self) -> None:
        """Parse nested sections."""
        config = GraphConfig.from_dict(
            {
                "backend": "neo4j",
                "neo4j": {"uri": "bolt://db:7687", "user": "admin", "database": "cases"},
                "batch_size": 250,
                "strategy": "patch",
                "fulltext": {"enabled": False, "properties": ["name"]},
            }
        )

        assert config.backend == "neo4j"
        assert config.neo4j.uri == "bolt://db:7687"
        assert config.neo4j.user == "admin"
        assert config.neo4j.database == "cases"
        assert config.batch_size == 250
        assert config.strategy == "patch"
        assert config.fulltext.enabled is False
        assert config.fulltext.properties == ["name"]
        assert config.fulltext.to_spec().properties == ["name"]

    def test_rejects_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="backend"):
            GraphConfig(backend="postgres")

    def test_rejects_unknown_strategy(self) -> None:
        with pytest.raises(ValueError, match="strategy"):
            GraphConfig(strategy="copy")

    def test_rejects_non_positive_batch_size(self) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            GraphConfig(batch_size=0)

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DOCKETGRAPH_BACKEND", "neo4j")
        monkeypatch.setenv("DOCKETGRAPH_BATCH_SIZE", "10")
        monkeypatch.setenv("NEO4J_PASSWORD", "secret")

        config = GraphConfig().with_env_overrides()

        assert config.backend == "neo4j"
        assert config.batch_size == 10
        assert config.neo4j.password == "secret"
        assert config.neo4j.user == "neo4j"


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """No docketgraph.yaml in the working directory means defaults."""
        monkeypatch.chdir(tmp_path)
        assert load_config() == GraphConfig()

    def test_reads_default_file_in_cwd(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        (tmp_path / "docketgraph.yaml").write_text("strategy: patch\n")

        assert load_config().strategy == "patch"

    def test_explicit_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="File not found"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_value_wrapped(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("backend: postgres\n")

        with pytest.raises(ConfigError, match="backend must be one of") as exc_info:
            load_config(path)
        assert exc_info.value.path == path

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- sqlite\n- neo4j\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_empty_file_is_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == GraphConfig()

    def test_env_beats_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "c.yaml"
        path.write_text("sqlite:\n  path: from-file.db\n")
        monkeypatch.setenv("DOCKETGRAPH_SQLITE_PATH", "from-env.db")

        assert load_config(path).sqlite_path == "from-env.db"


class TestWriteDefaultConfig:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "docketgraph.yaml"
        write_default_config(path)

        assert load_config(path) == GraphConfig()
        assert "backend: sqlite" in path.read_text()
