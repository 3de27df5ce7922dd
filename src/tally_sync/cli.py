"""
Tally Sync CLI - Command Line Interface.

Commands:
    run     Sync periodically until interrupted
    once    Run a single sync cycle
    status  Show persisted sync state
    reset   Forget sync state so tables bootstrap again
    tables  List supported tables
    config  Show or generate configuration
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from tally_sync import __version__
from tally_sync.config import Settings, load_settings
from tally_sync.core.engine import CycleStats, SyncEngine
from tally_sync.core.state import StateStore
from tally_sync.core.worker import SyncWorker
from tally_sync.tables import TABLES
from tally_sync.utils.display import (
    print_cycle_summary,
    print_error,
    print_info,
    print_state_summary,
    print_success,
    print_tables,
    print_warning,
)
from tally_sync.utils.logger import setup_logging


app = typer.Typer(
    name="tally-sync",
    help="Replicate Tally business records to a remote aggregation endpoint.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]tally-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Tally Sync - incremental record replication."""
    pass


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file (TOML or JSON).",
    exists=True,
    dir_okay=False,
)


# =============================================================================
# RUN Command
# =============================================================================
@app.command()
def run(
    config_file: Optional[Path] = ConfigOption,
    endpoint_url: Optional[str] = typer.Option(
        None,
        "--endpoint",
        "-e",
        help="Aggregation endpoint base URL (overrides config).",
    ),
    api_token: Optional[str] = typer.Option(
        None,
        "--api-token",
        envvar="TALLY_SYNC_ENDPOINT__API_TOKEN",
        help="Bearer token for the endpoint.",
    ),
    tables: Optional[list[str]] = typer.Option(
        None,
        "--table",
        help="Tables to sync (can be repeated).",
    ),
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Minutes between cycles (overrides config).",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Sync periodically until interrupted (Ctrl+C or SIGTERM).

    Example:
        tally-sync run --endpoint https://aggregator.example.com
    """
    settings = _prepare(
        config_file,
        quiet,
        endpoint_url=endpoint_url,
        api_token=api_token,
        tables=tables,
        interval=interval,
    )

    print_info(
        f"Syncing {len(settings.sync.tables)} tables every "
        f"{settings.sync.interval_minutes:g} minutes. Press Ctrl+C to stop."
    )
    asyncio.run(_serve(settings, quiet))
    print_success("Sync stopped")


async def _serve(settings: Settings, quiet: bool) -> None:
    """Run the worker until a stop signal arrives."""
    engine = SyncEngine.from_settings(settings)
    engine.store.mark_configured()
    worker = SyncWorker(
        engine,
        interval_seconds=settings.sync.interval_minutes * 60,
        shutdown_grace_seconds=settings.sync.shutdown_grace_seconds,
        on_cycle=None if quiet else print_cycle_summary,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: Ctrl+C cancels asyncio.run instead
            pass

    worker.start()
    try:
        await stop.wait()
        print_info("Stopping, waiting for the running cycle...")
    finally:
        await worker.shutdown()


# =============================================================================
# ONCE Command
# =============================================================================
@app.command()
def once(
    config_file: Optional[Path] = ConfigOption,
    endpoint_url: Optional[str] = typer.Option(
        None,
        "--endpoint",
        "-e",
        help="Aggregation endpoint base URL (overrides config).",
    ),
    api_token: Optional[str] = typer.Option(
        None,
        "--api-token",
        envvar="TALLY_SYNC_ENDPOINT__API_TOKEN",
        help="Bearer token for the endpoint.",
    ),
    tables: Optional[list[str]] = typer.Option(
        None,
        "--table",
        help="Tables to sync (can be repeated).",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Run a single sync cycle and exit.

    Exits with status 1 if the cycle was skipped or any table failed.
    """
    settings = _prepare(
        config_file,
        quiet,
        endpoint_url=endpoint_url,
        api_token=api_token,
        tables=tables,
    )

    stats = asyncio.run(_run_once(settings))

    if not quiet:
        console.print()
        print_cycle_summary(stats)

    if stats.errors:
        console.print()
        print_warning(f"{len(stats.errors)} tables failed:")
        for err in stats.errors[:10]:
            print_error(f"  • {err}")
        if len(stats.errors) > 10:
            print_info(f"  ... and {len(stats.errors) - 10} more")

    if not stats.success:
        raise typer.Exit(1)
    print_success("Sync cycle completed successfully!")


async def _run_once(settings: Settings) -> CycleStats:
    engine = SyncEngine.from_settings(settings)
    engine.store.mark_configured()
    try:
        return await engine.run_cycle()
    finally:
        await engine.close()


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    state_file: Optional[Path] = typer.Option(
        None,
        "--state-file",
        help="Path to state file (overrides config).",
    ),
) -> None:
    """Show persisted sync state per table."""
    path = state_file or _load(config_file).sync.state_file
    if not path.exists():
        print_info("No sync state found. Run a sync first.")
        raise typer.Exit(0)

    store = StateStore(path)
    store.load()
    print_state_summary(store.get_summary(), str(path))


# =============================================================================
# RESET Command
# =============================================================================
@app.command()
def reset(
    table: Optional[list[str]] = typer.Option(
        None,
        "--table",
        help="Table to reset (can be repeated). Omit to reset everything.",
    ),
    config_file: Optional[Path] = ConfigOption,
    state_file: Optional[Path] = typer.Option(
        None,
        "--state-file",
        help="Path to state file (overrides config).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """
    Forget sync state so tables bootstrap again on the next cycle.

    The next cycle resends every record in the lookback window.
    """
    path = state_file or _load(config_file).sync.state_file
    store = StateStore(path)
    store.load()

    target = ", ".join(table) if table else "ALL tables"
    if not yes and not typer.confirm(f"Reset sync state for {target}?"):
        raise typer.Abort()

    if not table:
        store.clear_state()
        print_success(f"Cleared sync state: {path}")
        return

    for name in table:
        if store.reset_table(name):
            print_success(f"Reset {name}")
        else:
            print_warning(f"No state for {name}")


# =============================================================================
# TABLES Command
# =============================================================================
@app.command()
def tables(
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List supported tables and whether they are enabled."""
    settings = _load(config_file)
    print_tables(TABLES.values(), settings.sync.tables)


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the default settings.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Manage configuration."""
    if init:
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = _load(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Source", settings.source.url)
        table.add_row("Company", settings.source.company or "[dim]open company[/dim]")
        table.add_row("Endpoint", settings.endpoint.base_url or "[dim]not set[/dim]")
        table.add_row(
            "API Token",
            "set" if settings.endpoint.api_token.get_secret_value() else "[dim]not set[/dim]",
        )
        table.add_row("Tables", ", ".join(settings.sync.tables))
        table.add_row("Interval", f"{settings.sync.interval_minutes:g} min")
        table.add_row("Chunk Size", f"{settings.sync.chunk_size} records")
        table.add_row("State File", str(settings.sync.state_file))

        console.print(table)
        for err in settings.validate_settings():
            print_warning(err)
        return

    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _load(config_file: Path | None) -> Settings:
    try:
        return load_settings(config_file)
    except (ValueError, OSError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def _prepare(config_file: Path | None, quiet: bool, **overrides: Any) -> Settings:
    """Build and validate settings, then set up logging."""
    settings = _build_settings(config_file, **overrides)

    errors = settings.validate_settings()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Use --help for configuration options.")
        raise typer.Exit(1)

    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )
    return settings


def _build_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Build settings from config file and overrides."""
    settings = _load(config_file)

    if overrides.get("endpoint_url"):
        settings.endpoint.base_url = overrides["endpoint_url"].rstrip("/")
    if overrides.get("api_token"):
        settings.endpoint.api_token = SecretStr(overrides["api_token"])
    if overrides.get("tables"):
        settings.sync.tables = list(overrides["tables"])
    if overrides.get("interval"):
        settings.sync.interval_minutes = overrides["interval"]

    return settings


if __name__ == "__main__":
    app()
