"""
ironsync CLI - sync, member, watch and status commands.

Runs the reconciliation engine from the command line, once or on an
interval, and renders the merged views with the source of every field.
"""

import asyncio
import json
import logging
import sys
import time
import traceback
from collections.abc import Sequence
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from ironsync.core.config import (
    IronsyncConfig,
    get_default_snapshot_path,
    load_config,
    load_layered_env,
)
from ironsync.core.events import GROUP_SYNCED, EventBus, RuntimeBroadcaster
from ironsync.core.reconcile.engine import ReconciliationEngine
from ironsync.core.reconcile.exceptions import ReconcileError, SnapshotError
from ironsync.core.reconcile.models import GroupSyncedEvent, MergedView, SourceKind
from ironsync.core.reconcile.scheduler import PeriodicSync
from ironsync.core.reconcile.snapshot import SnapshotStore
from ironsync.core.reconcile.sources import build_adapters

logger = logging.getLogger(__name__)

console = Console()

# Global debug flag
_debug_mode = False

_SOURCE_STYLES = {
    SourceKind.PRIMARY: "green",
    SourceKind.SECONDARY: "blue",
    SourceKind.REFERENCE: "magenta",
}

_STATUS_STYLES = {"ok": "green", "stale": "yellow", "error": "red"}


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for ironsync commands.

    Args:
        debug: If True, enable DEBUG level logging and full tracebacks
    """
    global _debug_mode
    _debug_mode = debug

    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def handle_error(error: Exception, command_name: str) -> None:
    """
    Handle and display errors with appropriate user-friendly messages.

    Args:
        error: The exception that was raised
        command_name: Name of the command that failed
    """
    error_text = Text()
    if isinstance(error, ReconcileError):
        error_text.append("Error: ", style="bold red")
        error_text.append(str(error))

        if error.context:
            error_text.append("\n\nContext:\n", style="dim")
            for key, value in error.context.items():
                error_text.append(f"  {key}: ", style="cyan")
                error_text.append(f"{value}\n", style="white")
        title = "[bold red]Error[/bold red]"
    else:
        error_text.append("Unexpected error in ", style="bold red")
        error_text.append(command_name, style="bold yellow")
        error_text.append(": ", style="bold red")
        error_text.append(str(error))
        title = "[bold red]Unexpected Error[/bold red]"

    console.print()
    console.print(Panel(error_text, title=title, border_style="red", expand=False))

    if _debug_mode:
        console.print("\n[dim]Full traceback:[/dim]")
        console.print(traceback.format_exc())
    else:
        console.print()
        console.print("[dim]Run with --debug for full traceback[/dim]")
    console.print()


def _load_config() -> IronsyncConfig:
    load_layered_env()
    return load_config()


def _snapshot_store(config: IronsyncConfig) -> SnapshotStore | None:
    if not config.snapshot.enabled:
        return None
    return SnapshotStore(config.snapshot.path or get_default_snapshot_path())


def _build_engine(config: IronsyncConfig) -> ReconciliationEngine:
    """Engine wired from configuration, with a private event bus."""
    adapters = build_adapters(config)
    return ReconciliationEngine(
        adapters.primary,
        adapters.secondary,
        adapters.reference,
        EventBus(broadcaster=RuntimeBroadcaster()),
        merged_ttl_seconds=config.cache.ttl_seconds,
    )


def _adapters(engine: ReconciliationEngine) -> list[Any]:
    return [engine.adapter(kind) for kind in SourceKind.in_priority_order()]


def _load_snapshot(snapshot: SnapshotStore | None, engine: ReconciliationEngine) -> None:
    """Seed adapter caches; an unreadable snapshot means starting cold."""
    if snapshot is None:
        return
    try:
        snapshot.load(_adapters(engine))
    except SnapshotError as e:
        logger.warning(f"Ignoring snapshot {snapshot.path}: {e}")


def _save_snapshot(snapshot: SnapshotStore | None, engine: ReconciliationEngine) -> None:
    if snapshot is None:
        return
    try:
        snapshot.save(_adapters(engine))
    except SnapshotError as e:
        logger.warning(f"Could not save snapshot {snapshot.path}: {e}")


async def _run_group(
    engine: ReconciliationEngine,
    names: Sequence[str],
    force: bool,
    snapshot: SnapshotStore | None,
) -> list[MergedView]:
    try:
        _load_snapshot(snapshot, engine)
        views = await engine.sync_group(names, force_refresh=force)
        _save_snapshot(snapshot, engine)
        return views
    finally:
        await engine.aclose()


async def _run_member(
    engine: ReconciliationEngine,
    name: str,
    force: bool,
    snapshot: SnapshotStore | None,
) -> MergedView:
    try:
        _load_snapshot(snapshot, engine)
        view = await engine.sync_entity(name, force_refresh=force)
        _save_snapshot(snapshot, engine)
        return view
    finally:
        await engine.aclose()


async def _run_watch(
    engine: ReconciliationEngine,
    names: Sequence[str],
    interval: float,
    count: int | None,
    force: bool,
    snapshot: SnapshotStore | None,
) -> int:
    """Sync on an interval until ``count`` group syncs have completed (forever if None)."""
    done = asyncio.Event()
    completed = 0

    def on_group_synced(event: GroupSyncedEvent) -> None:
        nonlocal completed
        completed += 1
        tally = {"ok": 0, "stale": 0, "error": 0}
        for entry in event.per_entity_status:
            tally[entry.status] += 1
        console.print(
            f"[dim]{event.timestamp:%H:%M:%S}[/dim] Synced {event.count} member(s): "
            f"[green]ok {tally['ok']}[/green], [yellow]stale {tally['stale']}[/yellow], "
            f"[red]error {tally['error']}[/red]"
        )
        _save_snapshot(snapshot, engine)
        if count is not None and completed >= count:
            done.set()

    scheduler = PeriodicSync(engine, lambda: names, interval, force_refresh=force)
    unsubscribe = engine.bus.subscribe(GROUP_SYNCED, on_group_synced)
    try:
        _load_snapshot(snapshot, engine)
        scheduler.start()
        await done.wait()
    finally:
        unsubscribe()
        await scheduler.stop()
        await engine.aclose()
    return completed


def _source_text(kind: SourceKind | None) -> Text:
    if kind is None:
        return Text("-", style="dim")
    return Text(kind.value, style=_SOURCE_STYLES[kind])


def _format_value(value: Any, width: int = 60) -> str:
    if isinstance(value, (dict, list)):
        text = json.dumps(value, default=str)
    else:
        text = str(value)
    if len(text) > width:
        text = text[: width - 3] + "..."
    return text


def _view_status(view: MergedView) -> str:
    if view.error and not view.fields:
        return "error"
    if view.stale:
        return "stale"
    return "ok"


def sync(
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Members to sync (defaults to the configured group)"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Ignore cached results and refetch"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full tracebacks and verbose logging",
        ),
    ] = False,
) -> None:
    """
    Reconcile every member of the group.

    Fetches each member from the plugin feed and Wise Old Man, merges the
    results by source priority and shows where each member's data came from.

    Examples:
        ironsync sync
        ironsync sync Zezima "Lynx Titan"
        ironsync sync --force --debug
    """
    setup_logging(debug)

    try:
        config = _load_config()
        members = list(names) if names else list(config.sync.group)
        if not members:
            console.print(
                "[yellow]No members given and no group configured "
                "(set IRONSYNC_GROUP or sync.group).[/yellow]"
            )
            raise typer.Exit(1)

        engine = _build_engine(config)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(f"Syncing {len(members)} member(s)...", total=None)
            start_time = time.time()
            views = asyncio.run(_run_group(engine, members, force, _snapshot_store(config)))
            elapsed = time.time() - start_time
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e, "sync")
        raise typer.Exit(1)

    table = Table(title=f"Group sync ({elapsed:.2f}s)")
    table.add_column("Member", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Total level", justify="right")
    table.add_column("Sources")
    table.add_column("Notes", style="dim")

    for view in views:
        status = _view_status(view)
        sources = Text(", ").join(_source_text(kind) for kind in view.sources_present)
        notes = view.error or "; ".join(
            f"{source}: {message}" for source, message in view.source_errors.items()
        )
        total_level = view.get("total_level")
        table.add_row(
            view.get("name") or view.identity,
            Text(status, style=_STATUS_STYLES[status]),
            "-" if total_level is None else str(total_level),
            sources if view.sources_present else Text("none", style="dim"),
            notes,
        )

    console.print(table)

    if views and all(_view_status(view) == "error" for view in views):
        raise typer.Exit(1)


def member(
    name: Annotated[str, typer.Argument(help="Member to show")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Ignore cached results and refetch"),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the merged view as JSON"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full tracebacks and verbose logging",
        ),
    ] = False,
) -> None:
    """
    Show one member's merged view and the source of every field.

    Examples:
        ironsync member Zezima
        ironsync member Zezima --json
    """
    setup_logging(debug)

    try:
        config = _load_config()
        engine = _build_engine(config)
        view = asyncio.run(_run_member(engine, name, force, _snapshot_store(config)))
    except Exception as e:
        handle_error(e, "member")
        raise typer.Exit(1)

    if as_json:
        typer.echo(view.model_dump_json(indent=2))
        return

    if view.is_empty:
        console.print(f"[yellow]No source knows '{name}'.[/yellow]")
        return

    table = Table(title=view.get("name") or view.identity)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_column("Source")
    for field in sorted(view.fields):
        table.add_row(field, _format_value(view.fields[field]), _source_text(view.source_of(field)))
    console.print(table)

    for source, message in view.source_errors.items():
        console.print(f"[yellow]! {source} unavailable:[/yellow] {message}")


def watch(
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Members to sync (defaults to the configured group)"),
    ] = None,
    interval: Annotated[
        float | None,
        typer.Option(
            "--interval",
            "-i",
            min=0.001,
            help="Seconds between syncs (defaults to sync.interval_seconds)",
        ),
    ] = None,
    count: Annotated[
        int | None,
        typer.Option("--count", "-n", min=1, help="Stop after this many syncs"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Ignore cached results on every sync"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full tracebacks and verbose logging",
        ),
    ] = False,
) -> None:
    """
    Keep the group in sync, re-running every interval until stopped.

    Prints one summary line per group sync. Press Ctrl+C to stop.

    Examples:
        ironsync watch
        ironsync watch Zezima --interval 60
        ironsync watch --count 3
    """
    setup_logging(debug)

    try:
        config = _load_config()
        members = list(names) if names else list(config.sync.group)
        if not members:
            console.print(
                "[yellow]No members given and no group configured "
                "(set IRONSYNC_GROUP or sync.group).[/yellow]"
            )
            raise typer.Exit(1)

        seconds = interval if interval is not None else config.sync.interval_seconds
        console.print(f"Watching {len(members)} member(s) every {seconds:g}s")
        engine = _build_engine(config)
        completed = asyncio.run(
            _run_watch(engine, members, seconds, count, force, _snapshot_store(config))
        )
    except typer.Exit:
        raise
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
        return
    except Exception as e:
        handle_error(e, "watch")
        raise typer.Exit(1)

    console.print(f"[dim]Stopped after {completed} sync(s)[/dim]")


def status(
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full tracebacks and verbose logging",
        ),
    ] = False,
) -> None:
    """
    Show the configured sources and their state.

    Examples:
        ironsync status
    """
    setup_logging(debug)

    try:
        config = _load_config()
        engine = _build_engine(config)
    except Exception as e:
        handle_error(e, "status")
        raise typer.Exit(1)

    table = Table(title="Sources")
    table.add_column("Priority", justify="right")
    table.add_column("Source", style="cyan")
    table.add_column("Endpoint")
    table.add_column("Enabled")
    table.add_column("Last error", style="dim")

    for kind, source_status in engine.source_statuses().items():
        adapter = engine.adapter(kind)
        table.add_row(
            str(kind.priority),
            f"{kind.value} ({adapter.name})",
            getattr(adapter, "base_url", "") or "-",
            Text("yes", style="green") if source_status.enabled else Text("no", style="red"),
            source_status.last_error or "",
        )
    console.print(table)

    group = ", ".join(config.sync.group) or "(none)"
    console.print(f"Group: {group}")
    console.print(
        f"Cache TTL: {config.cache.ttl_seconds:g}s  "
        f"Sync interval: {config.sync.interval_seconds:g}s"
    )
    if config.snapshot.enabled:
        path = config.snapshot.path or get_default_snapshot_path()
        console.print(f"Snapshot: {path}")
