"""
Rich Terminal Display Components.

Console output for the command line:
- Per-cycle summary and per-table results
- Persisted state overview
- Supported table listing
- Status messages
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from tally_sync.core.engine import CycleStats
    from tally_sync.tables import TableSpec


console = Console()


def format_timestamp(value: str | None) -> str:
    """Format an ISO timestamp for display."""
    if not value:
        return "never"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def print_cycle_summary(stats: CycleStats) -> None:
    """Print a summary table after a sync cycle."""
    if stats.skipped_reason:
        print_warning(f"Cycle skipped: {stats.skipped_reason}")
        return

    results = Table(title="Sync Results", border_style="blue")
    results.add_column("Table", style="cyan")
    results.add_column("Mode")
    results.add_column("Fetched", justify="right")
    results.add_column("Sent", justify="right")
    results.add_column("Unchanged", justify="right")
    results.add_column("Chunks", justify="right")
    results.add_column("Status")

    for result in stats.results:
        if result.skipped:
            status = "[yellow]skipped[/yellow]"
        elif result.success:
            status = "[green]ok[/green]"
        else:
            status = f"[red]failed[/red] {result.error or ''}"
        results.add_row(
            result.table_name,
            result.sync_mode.value if result.sync_mode else "-",
            f"{result.records_fetched:,}",
            f"{result.records_sent:,}",
            f"{result.records_unchanged:,}",
            str(result.chunks_sent),
            status,
        )

    console.print(results)

    summary = Table(title="Cycle Summary", border_style="green" if stats.success else "red")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")

    summary.add_row("Duration", f"{stats.duration_seconds:.1f}s")
    summary.add_row("Tables", f"{stats.tables_succeeded}/{stats.tables_total}")
    summary.add_row("Failed", str(stats.tables_failed))
    summary.add_row("Skipped", str(stats.tables_skipped))
    summary.add_row("Records Fetched", f"{stats.records_fetched:,}")
    summary.add_row("Records Sent", f"{stats.records_sent:,}")

    console.print(summary)


def print_state_summary(summary: dict[str, Any], state_file: str) -> None:
    """Print the persisted sync state."""
    configured = "yes" if summary.get("is_configured") else "no"
    console.print(
        Panel(
            f"State file: {state_file}\n"
            f"Version: {summary.get('version')}  Configured: {configured}\n"
            f"Last config update: {format_timestamp(summary.get('last_config_update'))}",
            title="Sync State",
            border_style="blue",
        )
    )

    tables = summary.get("tables", {})
    if not tables:
        print_info("No table has been synced yet")
        return

    table = Table(border_style="blue")
    table.add_column("Table", style="cyan")
    table.add_column("Phase")
    table.add_column("Last Sync")
    table.add_column("Tracked", justify="right")
    table.add_column("Total Synced", justify="right")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Last Error", style="red")

    for name, info in tables.items():
        phase = info.get("phase", "")
        phase_style = "green" if phase == "steady" else "yellow"
        table.add_row(
            name,
            f"[{phase_style}]{phase}[/{phase_style}]",
            format_timestamp(info.get("last_sync")),
            f"{info.get('records_tracked', 0):,}",
            f"{info.get('total_synced', 0):,}",
            info.get("fingerprint", ""),
            info.get("last_error") or "",
        )

    console.print(table)


def print_tables(specs: Iterable[TableSpec], enabled: Iterable[str]) -> None:
    """Print the supported tables."""
    enabled_names = set(enabled)

    table = Table(title="Supported Tables", border_style="blue")
    table.add_column("Table", style="cyan")
    table.add_column("Collection")
    table.add_column("Element")
    table.add_column("Kind")
    table.add_column("Enabled", justify="center")

    for spec in specs:
        table.add_row(
            spec.name,
            spec.collection,
            spec.element,
            "transactional" if spec.transactional else "master",
            "[green]✓[/green]" if spec.name in enabled_names else "",
        )

    console.print(table)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
