"""
Command-line interface for collection sync.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from collection_sync.config import load_config
from collection_sync.db import StatusStore
from collection_sync.db import query_status
from collection_sync.db import status_path
from collection_sync.models import DEFAULT_CONFIG
from collection_sync.models import Action
from collection_sync.models import AppConfig
from collection_sync.models import PairResult
from collection_sync.models import StatusChange
from collection_sync.models import SyncError
from collection_sync.storage import storages_for_pair
from collection_sync.sync import PairSynchronizer
from collection_sync.sync import sync_pairs
from collection_sync.sync.conflicts import POLICIES
from collection_sync.sync.conflicts import get_policy

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Two-way sync of calendar and contact collections between two storages.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    status_dir: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    status_dir: Annotated[
        Path | None,
        typer.Option("--status-dir", help="Directory holding the status databases"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.status_dir = status_dir
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_app_config() -> AppConfig:
    try:
        config = load_config(state.config_path)
    except SyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    if state.status_dir is not None:
        config.status_dir = state.status_dir
    return config


def _require_pairs(config: AppConfig) -> None:
    if not config.pairs:
        console.print(
            f"[bold red]Error:[/] No pairs configured in [cyan]{state.config_path}[/]. "
            "Add a [cyan]\\[pair NAME][/] section with [cyan]a[/] and [cyan]b[/] paths."
        )
        raise typer.Exit(1)


def _format_ts(ts: int | None) -> str:
    from datetime import datetime

    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "—"


def _results_panel(result: PairResult) -> Panel:
    if result.error is not None:
        return Panel(
            Text(str(result.error), style="bold red"),
            title=f"[bold]{result.name}[/bold] [red](aborted)[/red]",
            expand=False,
        )

    summary = result.summary
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_column(justify="right")
    results.add_row("", "A", "B")
    results.add_row("Created", str(summary.created_a), str(summary.created_b))
    results.add_row("Updated", str(summary.updated_a), str(summary.updated_b))
    results.add_row("Deleted", str(summary.deleted_a), str(summary.deleted_b))
    results.add_row("Conflicts resolved", str(summary.conflicts_resolved), "")

    deferred_val = Text(str(summary.conflicts_deferred))
    if summary.conflicts_deferred:
        deferred_val.stylize("yellow")
    results.add_row("Conflicts deferred", deferred_val, "")

    failed_val = Text(str(summary.failed))
    if summary.failed == 0:
        failed_val.append(" ✓", style="green")
    else:
        failed_val.stylize("bold red")
    results.add_row("Failed", failed_val, "")

    body = Table.grid()
    body.add_row(results)
    for association_id in summary.deferred_ids:
        body.add_row(Text(f"deferred: {association_id}", style="yellow"))
    for association_id in summary.failed_ids:
        reason = summary.failures[association_id].value
        body.add_row(Text(f"failed ({reason}): {association_id}", style="red"))
    if summary.cancelled:
        body.add_row(Text("cancelled: partial results committed", style="yellow"))

    return Panel(body, title=f"[bold]{result.name}[/bold]", expand=False)


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_POLICY = Annotated[
    str | None,
    typer.Option(
        "--policy",
        help=f"Conflict policy for this run, overriding the config ({', '.join(POLICIES)})",
    ),
]
_WORKERS = Annotated[
    int | None,
    typer.Option("--workers", "-j", min=1, help="Concurrent item operations per pair"),
]


@app.command()
def sync(
    pair_names: Annotated[
        list[str] | None, typer.Argument(metavar="[PAIR]...", help="Pairs to sync (default: all)")
    ] = None,
    dry_run: _DRY_RUN = False,
    policy: _POLICY = None,
    workers: _WORKERS = None,
) -> None:
    """Synchronise the selected collection pairs."""
    config = _load_app_config()
    _require_pairs(config)
    if workers is not None:
        config.max_workers = workers
    if policy is not None and policy not in POLICIES:
        raise typer.BadParameter(
            f"unknown policy {policy!r} (expected one of: {', '.join(POLICIES)})",
            param_hint="--policy",
        )

    info = Text()
    info.append("  Pairs:     ", style="bold")
    info.append(", ".join(pair_names or sorted(config.pairs)))
    info.append("\n  Status:    ", style="bold")
    info.append(str(config.status_dir))
    if policy:
        info.append("\n  Policy:    ", style="bold")
        info.append(policy, style="cyan")
    if dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")
    console.print(Panel(info, title="[bold]Collection Sync[/bold]"))

    cancel_event = threading.Event()
    interrupted = False
    try:
        with ThreadPoolExecutor(max_workers=1) as runner:
            future = runner.submit(
                sync_pairs,
                config,
                pair_names,
                dry_run=dry_run,
                policy_override=policy,
                cancel_event=cancel_event,
            )
            try:
                results = future.result()
            except KeyboardInterrupt:
                interrupted = True
                cancel_event.set()
                console.print("[yellow]Interrupted by user, finishing in-flight operations...[/]")
                results = future.result()
    except SyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    for result in results.values():
        console.print(_results_panel(result))

    if interrupted:
        raise typer.Exit(130)
    if not all(result.ok for result in results.values()):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: plan
# ---------------------------------------------------------------------------

_ACTION_STYLE = {
    Action.CREATE_ON_A: "green",
    Action.CREATE_ON_B: "green",
    Action.UPDATE_A_FROM_B: "cyan",
    Action.UPDATE_B_FROM_A: "cyan",
    Action.DELETE_ON_A: "red",
    Action.DELETE_ON_B: "red",
    Action.CONFLICT: "bold yellow",
    Action.NO_OP: "dim",
}


@app.command()
def plan(
    pair_name: Annotated[str, typer.Argument(metavar="PAIR", help="Pair to plan")],
    policy: _POLICY = None,
    show_all: Annotated[
        bool, typer.Option("--all", "-a", help="Also list associations needing no action")
    ] = False,
) -> None:
    """Show what a sync of one pair would do, without applying anything."""
    config = _load_app_config()
    pair = config.pairs.get(pair_name)
    if pair is None:
        console.print(f"[bold red]Error:[/] Unknown pair [cyan]{pair_name}[/]")
        raise typer.Exit(1)

    try:
        storage_a, storage_b = storages_for_pair(pair)
        with StatusStore(status_path(config.status_dir, pair_name)) as store:
            synchronizer = PairSynchronizer(
                pair_name,
                storage_a,
                storage_b,
                store,
                policy=get_policy(policy or pair.conflict_policy),
                max_workers=config.max_workers,
            )
            entries = synchronizer.plan()
    except SyncError as e:
        console.print(f"[bold red]Planning failed:[/] {e}")
        raise typer.Exit(1) from None

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Association", style="dim")
    table.add_column("Action")
    table.add_column("A")
    table.add_column("B")
    table.add_column("Item A")
    table.add_column("Item B")

    shown = 0
    for entry in entries:
        if entry.action is Action.NO_OP and entry.status_change is StatusChange.NONE:
            if not show_all:
                continue
        action_label = Text(entry.action.value, style=_ACTION_STYLE[entry.action])
        if entry.resolution is not None:
            action_label.append(f" ({entry.resolution.value})", style="yellow")
        elif entry.status_change is not StatusChange.NONE:
            action_label.append(f" ({entry.status_change.value})", style="dim")
        table.add_row(
            entry.association_id[:12],
            action_label,
            entry.change_a.value,
            entry.change_b.value,
            entry.identity_a or "—",
            entry.identity_b or "—",
        )
        shown += 1

    if not shown:
        console.print(f"[green]{pair_name}: nothing to do.[/]")
        return
    console.print(Panel(table, title=f"[bold]Plan: {pair_name}[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and status database summary per pair."""
    config = _load_app_config()
    config_exists = state.config_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  Status:   ", style="bold")
    cfg_info.append(str(config.status_dir))
    console.print(Panel(cfg_info, title="[bold]Collection Sync: Status[/bold]"))

    if not config.pairs:
        console.print("[yellow]No pairs configured.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Pair")
    table.add_column("Tracked", justify="right")
    table.add_column("Paired", justify="right")
    table.add_column("Last sync")
    table.add_column("Last result")

    failed = False
    for name in sorted(config.pairs):
        db_path = status_path(config.status_dir, name)
        try:
            rows = [row for row in query_status(db_path) if row["pair_id"] == name]
            with StatusStore(db_path) as store:
                last = store.last_run(name)
        except SyncError as e:
            failed = True
            table.add_row(name, "—", "—", "—", Text(str(e), style="bold red"))
            continue

        if not rows and last is None:
            table.add_row(name, "0", "0", "—", Text("never synced", style="yellow"))
            continue
        # Every record may have been forgotten while run history remains.
        row = rows[0] if rows else {"count": 0, "paired": 0, "last_sync_at": None}
        if last is None:
            result = Text("—")
        elif last["failed"]:
            result = Text(f"{last['failed']} failed", style="red")
        elif last["conflicts_deferred"]:
            result = Text(f"{last['conflicts_deferred']} deferred", style="yellow")
        else:
            result = Text("ok", style="green")
        last_ts = last["finished_at"] if last else row["last_sync_at"]
        table.add_row(name, str(row["count"]), str(row["paired"]), _format_ts(last_ts), result)

    console.print(table)
    if failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: pairs
# ---------------------------------------------------------------------------


@app.command()
def pairs() -> None:
    """List the configured collection pairs."""
    config = _load_app_config()
    _require_pairs(config)

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Pair", style="bold")
    table.add_column("A")
    table.add_column("B")
    table.add_column("Ext")
    table.add_column("Policy")
    table.add_column("Read-only")
    for name in sorted(config.pairs):
        pair = config.pairs[name]
        table.add_row(
            name,
            str(pair.path_a),
            str(pair.path_b),
            pair.extension,
            pair.conflict_policy,
            pair.read_only or "—",
        )
    console.print(table)


def main() -> None:
    app()
