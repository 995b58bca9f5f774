"""kvsync CLI - mirror KiotViet catalogue data into Supabase."""

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kvsync.core.config import ConfigurationError, Settings, get_settings
from kvsync.schemas.sync_run import RunStatus, SyncRun
from kvsync.services.kiotviet_service import KiotVietServiceError
from kvsync.services.supabase_service import SupabaseServiceError, get_supabase_service
from kvsync.services.token_provider import TokenProvider
from kvsync.services.token_store import TokenStore
from kvsync.sync.entities import ENTITIES, get_entity
from kvsync.sync.orchestrator import create_orchestrator
from kvsync.sync.reporter import render_summary
from kvsync.sync.windows import parse_cli_date, window_for_dates

app = typer.Typer(
    name="kvsync",
    help="KiotViet -> Supabase catalogue synchronizer",
    no_args_is_help=True,
)
console = Console()

# Entities swept by sync-all; windowed entities go through `sync` with dates
SYNC_ALL_ENTITIES = ("products", "customers", "inventories")

_STATUS_STYLE = {
    RunStatus.OK: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "red",
}


def _configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(levelname)s:     %(message)s"))
    root = logging.getLogger("kvsync")
    root.setLevel(getattr(logging, level, logging.INFO))
    if not root.handlers:
        root.addHandler(handler)


def _load_settings(store_only: bool = False) -> Settings:
    """Exit 1 on missing configuration. store_only checks just the Supabase keys."""
    try:
        settings = get_settings()
        if store_only:
            settings.validate_for_store()
        else:
            settings.validate_for_sync()
    except (ConfigurationError, ValueError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    _configure_logging(settings.log_level)
    return settings


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """First Ctrl-C sets the cancel event; the current batch finishes before the run stops."""
    event = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield event
        return

    def handler(signum, frame):
        console.print("\n[yellow]Cancelling after the current batch...[/yellow]")
        event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield event
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_run(run: SyncRun) -> None:
    status = run.terminal_status or RunStatus.FAILED
    lines = render_summary(run)
    console.print(
        Panel(
            "\n".join(lines[1:]),
            title=f"[bold]{run.entity}[/bold] ({run.mode}): [{_STATUS_STYLE[status]}]{status.value}[/]",
            expand=False,
        )
    )


def _print_runs_table(runs: List[SyncRun]) -> None:
    table = Table(title="Sync runs")
    table.add_column("Entity", style="cyan")
    table.add_column("Status")
    table.add_column("Attempted", justify="right")
    table.add_column("Upserted", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Elapsed", justify="right")
    for run in runs:
        status = run.terminal_status or RunStatus.FAILED
        table.add_row(
            run.entity,
            f"[{_STATUS_STYLE[status]}]{status.value}[/]",
            str(run.records_attempted),
            str(run.records_upserted),
            str(run.records_failed),
            f"{run.elapsed_seconds:.1f}s",
        )
    console.print(table)


def _worst_exit_code(runs: List[SyncRun]) -> int:
    codes = [run.exit_code for run in runs]
    if 1 in codes:
        return 1
    return max(codes, default=0)


# ============================================================================
# Sync Commands
# ============================================================================


@app.command("sync")
def sync(
    entity: str = typer.Argument(..., help=f"One of: {', '.join(ENTITIES)}"),
    from_date: Optional[str] = typer.Option(None, "--from", help="Start date DD/MM/YYYY (inclusive)"),
    to_date: Optional[str] = typer.Option(None, "--to", help="End date DD/MM/YYYY (inclusive)"),
    historical: bool = typer.Option(False, "--historical", help="Sweep backward from now in fixed windows"),
    window_months: Optional[int] = typer.Option(None, "--window-months", min=1, help="Historical window size"),
    earliest: Optional[str] = typer.Option(None, "--earliest", help="Oldest date for --historical (DD/MM/YYYY)"),
    record: bool = typer.Option(False, "--record", help="Append the run to the sync run table"),
):
    """Sync one entity: full sweep, a date range, or a historical sweep."""
    try:
        spec = get_entity(entity)
        if (from_date or to_date) and historical:
            raise ValueError("--from/--to and --historical are mutually exclusive")
        if (from_date or to_date or historical or earliest) and not spec.windowed:
            raise ValueError(f"{spec.name} does not support date windows")
        if bool(from_date) != bool(to_date):
            raise ValueError("--from and --to must be given together")
        window = window_for_dates(parse_cli_date(from_date), parse_cli_date(to_date)) if from_date else None
        earliest_date = parse_cli_date(earliest) if earliest else None
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    settings = _load_settings()
    with _cancel_on_interrupt() as cancel_event:
        orchestrator = create_orchestrator(settings, cancel_event=cancel_event, record_runs=record)
        if window is not None:
            run = orchestrator.run_window(spec, window)
        elif historical:
            run = orchestrator.run_historical(spec, window_months=window_months, earliest=earliest_date)
        else:
            run = orchestrator.run_full(spec)

    _print_run(run)
    raise typer.Exit(run.exit_code)


@app.command("sync-all")
def sync_all(
    parallel: int = typer.Option(1, "--parallel", "-p", min=1, help="Entities synced at the same time"),
    record: bool = typer.Option(False, "--record", help="Append each run to the sync run table"),
):
    """Full sweeps of products, customers and inventories."""
    settings = _load_settings()
    with _cancel_on_interrupt() as cancel_event:
        orchestrator = create_orchestrator(settings, cancel_event=cancel_event, record_runs=record)
        if parallel > 1:
            runs = orchestrator.run_many(SYNC_ALL_ENTITIES, max_workers=parallel)
        else:
            # Inventories resolve product ids, so products go first
            runs = [orchestrator.run_full(name) for name in SYNC_ALL_ENTITIES]

    for run in runs:
        _print_run(run)
    _print_runs_table(runs)
    raise typer.Exit(_worst_exit_code(runs))


@app.command("invoice")
def invoice(
    code: str = typer.Argument(..., help="Invoice code, e.g. HD057370"),
    record: bool = typer.Option(False, "--record", help="Append the run to the sync run table"),
):
    """Re-sync a single invoice (and its lines) by code."""
    settings = _load_settings()
    orchestrator = create_orchestrator(settings, record_runs=record)
    run = orchestrator.sync_invoice_by_code(code.strip())
    _print_run(run)
    raise typer.Exit(run.exit_code)


# ============================================================================
# Token Commands
# ============================================================================


def _token_provider(settings: Settings) -> tuple[TokenStore, TokenProvider]:
    store = TokenStore(get_supabase_service(settings), title=settings.token_title)
    return store, TokenProvider(store, settings=settings)


@app.command("token")
def token(
    refresh: bool = typer.Option(False, "--refresh", help="Exchange client credentials for a new token first"),
):
    """Show the stored KiotViet credential: shape, excerpt, expiry and validity."""
    settings = _load_settings(store_only=not refresh)
    missing = [key for key in settings.missing_for_sync() if key not in settings.missing_for_store()]
    if missing:
        console.print(f"[yellow]Not set (needed to sync or refresh): {', '.join(missing)}[/yellow]")
    store, provider = _token_provider(settings)
    try:
        if refresh:
            provider.refresh()
            console.print("[green]Token refreshed[/green]")
        credential = store.load()
    except (KiotVietServiceError, SupabaseServiceError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(Panel("[bold]KiotViet credential[/bold]", expand=False))
    if credential is None:
        console.print(f"  No usable token stored under system title [cyan]{store.title}[/cyan]")
        raise typer.Exit(1)

    now = datetime.now(timezone.utc)
    valid = credential.is_valid_at(now, settings.token_skew_seconds)
    console.print(f"  Shape: {credential.shape}")
    console.print(f"  Token: {credential.token[:12]}...")
    if credential.expires_at is not None:
        remaining = credential.expires_at - now
        console.print(f"  Expires: {credential.expires_at.isoformat()} ({int(remaining.total_seconds())}s left)")
    else:
        console.print("  Expires: unknown (raw token; the next sync exchanges it)")
    console.print(f"  Status: {'[green]Valid[/green]' if valid else '[red]Expired or unverifiable[/red]'}")
    raise typer.Exit(0 if valid else 1)


def main():
    app()


if __name__ == "__main__":
    main()
