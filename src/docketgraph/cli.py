"""docketgraph CLI - typer application entry point."""

from __future__ import annotations

import atexit
import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from docketgraph.config import DEFAULT_CONFIG_FILE, ConfigError, load_config, write_default_config
from docketgraph.graph.errors import GraphStoreError
from docketgraph.observability import close_file_logging, configure_logging, get_logger
from docketgraph.retry import with_retries

if TYPE_CHECKING:
    from docketgraph.config import GraphConfig
    from docketgraph.graph.gateway import GraphGateway
    from docketgraph.models.versioning import GraphSyncResult, VersionInfo
    from docketgraph.versioning import VersionedGraphStore

# Load environment variables from .env file
load_dotenv()

log = get_logger(__name__)

app = typer.Typer(
    name="docketgraph",
    help="docketgraph: versioned graph reconciliation for dockets and cases.",
    no_args_is_help=True,
)
# Each command group is bound to one strategy; config.strategy only picks the
# default for library callers of open_versioned_store
docket_app = typer.Typer(
    help="Docket graphs, always versioned with the snapshot strategy "
    "(the strategy config key does not apply).",
    no_args_is_help=True,
)
case_app = typer.Typer(
    help="Case team graphs, always versioned with the patch strategy "
    "(the strategy config key does not apply).",
    no_args_is_help=True,
)
app.add_typer(docket_app, name="docket")
app.add_typer(case_app, name="case")

console = Console()

DEFAULT_LOGS_DIR = Path("logs")

# Global state set by the callback, used by commands
_config_path: Path | None = None


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_to_file: Annotated[
        bool,
        typer.Option("--log", help="Enable file logging to ./logs/debug.jsonl."),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Config file (default: ./docketgraph.yaml when present).",
            envvar="DOCKETGRAPH_CONFIG",
        ),
    ] = None,
) -> None:
    """docketgraph: versioned graph reconciliation for dockets and cases."""
    global _config_path
    _config_path = config

    if log_to_file:
        configure_logging(verbosity=verbose, log_to_file=True, logs_path=DEFAULT_LOGS_DIR)
        atexit.register(close_file_logging)
    else:
        configure_logging(verbosity=verbose)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def _load_config() -> GraphConfig:
    try:
        return load_config(_config_path)
    except ConfigError as e:
        raise _fail(str(e)) from e


@contextmanager
def _gateway() -> Iterator[tuple[GraphConfig, GraphGateway]]:
    """Open the configured gateway and turn store errors into exit code 1."""
    from docketgraph.factory import open_gateway

    config = _load_config()
    try:
        gateway = open_gateway(config)
    except GraphStoreError as e:
        raise _fail(str(e)) from e
    try:
        yield config, gateway
    except GraphStoreError as e:
        log.debug("command_failed", error_type=type(e).__name__, error=str(e))
        raise _fail(str(e)) from e
    finally:
        gateway.close()


@contextmanager
def _store(strategy: str) -> Iterator[VersionedGraphStore]:
    from docketgraph.factory import open_versioned_store

    with _gateway() as (config, gateway):
        yield open_versioned_store(config, gateway, strategy)


def _read_json(path: Path) -> Any:
    if not path.exists():
        raise _fail(f"File not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise _fail(f"{path} is not valid JSON: {e}") from e


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise _fail(f"Invalid timestamp {value!r}, expected ISO 8601") from e


def _print_version(info: VersionInfo) -> None:
    state = "[green]committed[/green]" if info.committed else "[yellow]proposed[/yellow]"
    console.print(
        f"[bold]{info.scope_id}[/bold] v{info.version_number} {state} "
        f"(as of {info.as_of.isoformat()})"
    )


def _print_sync(result: GraphSyncResult) -> None:
    table = Table(title=f"{result.scope_id} v{result.version_number}")
    table.add_column("Change", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Members added", str(result.nodes_added))
    table.add_row("Members removed", str(result.nodes_removed))
    table.add_row("Members updated", str(result.nodes_updated))
    table.add_row("Edges added", str(result.edges_added))
    table.add_row("Edges removed", str(result.edges_removed))
    console.print(table)
    console.print(f"[dim]{result.duration_ms} ms[/dim]")


# =============================================================================
# Top-level commands
# =============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from docketgraph import __version__

    console.print(f"docketgraph v{__version__}")


@app.command()
def init(
    write_config: Annotated[
        bool,
        typer.Option(
            "--write-config",
            help="Write a default docketgraph.yaml when none exists.",
        ),
    ] = False,
) -> None:
    """Prepare the store: uniqueness constraints and the full-text index."""
    from docketgraph.factory import open_versioned_store

    if write_config:
        target = _config_path or DEFAULT_CONFIG_FILE
        if target.exists():
            console.print(f"[yellow]Config already exists:[/yellow] {target}")
        else:
            write_default_config(target)
            console.print(f"[green]✓[/green] Wrote {target}")

    with _gateway() as (config, gateway):
        for strategy in ("snapshot", "patch"):
            open_versioned_store(config, gateway, strategy)
        if config.fulltext.enabled:
            gateway.ensure_index(config.fulltext.to_spec())
        console.print(f"[green]✓[/green] Store ready ({config.backend})")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Free-text query.")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum results.")] = 25,
) -> None:
    """Full-text search over indexed node properties."""
    with _gateway() as (config, gateway):
        hits = gateway.search(config.fulltext.name, query, limit)

    if not hits:
        console.print("[dim]No matches.[/dim]")
        return
    table = Table(title=f"Search: {query}")
    table.add_column("Id", style="cyan")
    table.add_column("Labels")
    table.add_column("Name")
    table.add_column("Score", justify="right", style="dim")
    for node, score in hits:
        name = node.props.get("name") or node.props.get("number") or ""
        table.add_row(node.id or "", ", ".join(node.labels), str(name), f"{score:.3f}")
    console.print(table)


# =============================================================================
# Shared versioning commands
# =============================================================================


def _create(
    strategy: str, scope_id: str, description: str | None, as_of: str | None, copy: bool
) -> None:
    ts = _parse_timestamp(as_of) if as_of else None
    with _store(strategy) as store:
        info = with_retries(
            lambda: store.create_version(
                scope_id, description=description, as_of=ts, copy_forward=copy
            )
        )
    console.print("[green]✓[/green] Created version")
    _print_version(info)


def _commit(strategy: str, scope_id: str, number: int) -> None:
    with _store(strategy) as store:
        info = with_retries(lambda: store.commit_version(scope_id, number))
    console.print("[green]✓[/green] Committed")
    _print_version(info)


def _show(strategy: str, scope_id: str, number: int) -> None:
    with _store(strategy) as store:
        stats = store.version_statistics(scope_id, number)
        graph = store.load_graph(scope_id, number)
    console.print(
        f"[bold]{scope_id}[/bold] v{stats['versionNumber']} {stats['state']}: "
        f"{stats['memberCount']} members, {stats['edgeCount']} edges"
    )
    console.print_json(data=graph.to_json())


# =============================================================================
# docket
# =============================================================================


@docket_app.command("create")
def docket_create(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    description: Annotated[str | None, typer.Option("--description", "-m")] = None,
    as_of: Annotated[
        str | None, typer.Option("--as-of", help="Effective timestamp (ISO 8601).")
    ] = None,
    copy: Annotated[
        bool,
        typer.Option("--copy/--no-copy", help="Copy the latest committed version forward."),
    ] = True,
) -> None:
    """Create the next proposed version of a docket."""
    _create("snapshot", docket_id, description, as_of, copy)


@docket_app.command("versions")
def docket_versions(docket_id: Annotated[str, typer.Argument(help="Docket id.")]) -> None:
    """List all versions of a docket."""
    with _store("snapshot") as store:
        versions = store.list_versions(docket_id)

    if not versions:
        console.print(f"[dim]No versions for {docket_id}.[/dim]")
        return
    table = Table(title=f"Versions: {docket_id}")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("State", style="bold")
    table.add_column("As of", style="dim")
    table.add_column("Description")
    for info in versions:
        table.add_row(
            str(info.version_number),
            str(info.state),
            info.as_of.strftime("%Y-%m-%d %H:%M"),
            info.description or "-",
        )
    console.print(table)


@docket_app.command("show")
def docket_show(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    number: Annotated[int, typer.Argument(help="Version number.")],
) -> None:
    """Show a docket version's member graph."""
    _show("snapshot", docket_id, number)


@docket_app.command("sync")
def docket_sync(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    number: Annotated[int, typer.Argument(help="Version number.")],
    graph_file: Annotated[Path, typer.Argument(help="Desired graph JSON file.")],
) -> None:
    """Reconcile a proposed docket version with a desired graph."""
    desired = _read_json(graph_file)
    with _store("snapshot") as store:
        result = with_retries(lambda: store.sync_graph(docket_id, number, desired))
    _print_sync(result)


@docket_app.command("replace")
def docket_replace(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    graph_file: Annotated[Path, typer.Argument(help="Desired graph JSON file.")],
    description: Annotated[str | None, typer.Option("--description", "-m")] = None,
    as_of: Annotated[
        str | None, typer.Option("--as-of", help="Effective timestamp (ISO 8601).")
    ] = None,
) -> None:
    """Create, fill and commit the next docket version in one step."""
    desired = _read_json(graph_file)
    ts = _parse_timestamp(as_of) if as_of else None
    with _store("snapshot") as store:
        result = with_retries(
            lambda: store.replace_graph(docket_id, desired, description=description, as_of=ts)
        )
    _print_sync(result)


@docket_app.command("commit")
def docket_commit(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    number: Annotated[int, typer.Argument(help="Version number.")],
) -> None:
    """Commit a docket version, making it immutable."""
    _commit("snapshot", docket_id, number)


@docket_app.command("as-of")
def docket_as_of(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    timestamp: Annotated[str, typer.Argument(help="Point in time (ISO 8601).")],
) -> None:
    """Show the committed docket version effective at a point in time."""
    ts = _parse_timestamp(timestamp)
    with _store("snapshot") as store:
        info = store.version_as_of(docket_id, ts)
    if info is None:
        raise _fail(f"No committed version of {docket_id} at {timestamp}")
    _print_version(info)


@docket_app.command("compare")
def docket_compare(
    docket_id: Annotated[str, typer.Argument(help="Docket id.")],
    first: Annotated[int, typer.Argument(help="Base version number.")],
    second: Annotated[int, typer.Argument(help="Compared version number.")],
) -> None:
    """Compare the members of two docket versions."""
    with _store("snapshot") as store:
        comparison = store.compare_versions(docket_id, first, second)

    table = Table(title=f"{docket_id}: v{first} → v{second}")
    table.add_column("Change", style="cyan")
    table.add_column("Members")
    table.add_row("[green]added[/green]", ", ".join(comparison.added) or "-")
    table.add_row("[red]removed[/red]", ", ".join(comparison.removed) or "-")
    table.add_row("[dim]unchanged[/dim]", ", ".join(comparison.unchanged) or "-")
    console.print(table)
    console.print(f"Edges: +{comparison.edges_added} / -{comparison.edges_removed}")


# =============================================================================
# case
# =============================================================================


@case_app.command("create")
def case_create(
    case_id: Annotated[str, typer.Argument(help="Case id.")],
    description: Annotated[str | None, typer.Option("--description", "-m")] = None,
    copy: Annotated[
        bool,
        typer.Option("--copy/--no-copy", help="Copy the latest committed version forward."),
    ] = True,
) -> None:
    """Create the next proposed version of a case's team graph."""
    _create("patch", case_id, description, None, copy)


@case_app.command("show")
def case_show(
    case_id: Annotated[str, typer.Argument(help="Case id.")],
    number: Annotated[int, typer.Argument(help="Version number.")],
) -> None:
    """Show a case version's team graph."""
    _show("patch", case_id, number)


@case_app.command("commit")
def case_commit(
    case_id: Annotated[str, typer.Argument(help="Case id.")],
    number: Annotated[int, typer.Argument(help="Version number.")],
) -> None:
    """Commit a case version, making it immutable."""
    _commit("patch", case_id, number)


@case_app.command("patch")
def case_patch(
    case_id: Annotated[str, typer.Argument(help="Case id.")],
    number: Annotated[int, typer.Argument(help="Version number.")],
    patch_file: Annotated[Path, typer.Argument(help="JSON Patch document.")],
) -> None:
    """Apply a JSON Patch to a proposed case version's team graph."""
    patch_doc = _read_json(patch_file)
    with _store("patch") as store:
        graph = with_retries(lambda: store.patch_graph(case_id, number, patch_doc))
    console.print("[green]✓[/green] Patched")
    console.print_json(data=graph.to_json())
