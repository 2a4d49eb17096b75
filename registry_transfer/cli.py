"""Command Line Interface for Registry-Transfer.

This module provides a CLI using Typer for triggering transfer runs,
inspecting the effective configuration and loading host form exports
into the DuckDB record store.

Security Impact:
    - Configuration is validated before any resource is sent
    - Secrets are masked when the configuration is displayed
    - Exit codes let schedulers detect failed runs without parsing logs
"""

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from registry_transfer.adapters.records import DuckDBRecordStore
from registry_transfer.domain.models import FormLocation, RunReport, RunStatus
from registry_transfer.domain.ports import TransferError
from registry_transfer.infrastructure.logging_config import setup_logging
from registry_transfer.infrastructure.settings import APP_VERSION, Settings
from registry_transfer.main import run_transfer

# Initialize Typer app and Rich console
app = typer.Typer(
    name="registry-transfer",
    help="Registry-Transfer: registry data to the clinical-data exchange endpoint",
    add_completion=False
)
console = Console()


def print_report(report: RunReport) -> None:
    """Render per-type totals of a run as a table."""
    table = Table(title=f"Run {report.run_id}")
    table.add_column("Resource", style="bold")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Fetch errors", justify="right")

    for name, outcome in report.totals().items():
        if outcome.disabled:
            table.add_row(name, "[dim]disabled[/dim]", "", "", "")
            continue
        table.add_row(
            name,
            f"[green]{outcome.sent:,}[/green]",
            f"[red]{outcome.failed:,}[/red]" if outcome.failed else "0",
            f"{outcome.skipped:,}",
            f"[red]{outcome.fetch_errors:,}[/red]" if outcome.fetch_errors else "0",
        )

    console.print(table)
    console.print(f"[dim]Records processed:[/dim] {len(report.records):,}")


@app.command()
def run(
    resources: Optional[str] = typer.Option(None, "--resources", "-r", help="Comma-separated resource types (demo,dx,lab,enc,med,px,vitals,allergy or all)"),
    record: Optional[List[str]] = typer.Option(None, "--record", help="Only transfer this record id (repeatable)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file", exists=True, dir_okay=False),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit structured JSON logs"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Send unsent registry data to the exchange endpoint.

    Selecting px or vitals also sends encounters first. Exit code is 0 on
    success, 2 when no resource type was selected and 1 when the run aborted
    or any instance failed.

    Examples:
        registry-transfer run
        registry-transfer run --resources dx,lab
        registry-transfer run -r vitals --record 12 --json-logs
    """
    settings = Settings(config_file=str(config) if config else None)
    setup_logging(
        use_json=json_logs or settings.log_json,
        log_level="DEBUG" if verbose else settings.log_level
    )

    try:
        config_manager = settings.config_manager
    except (TransferError, ValueError, OSError) as e:
        console.print(f"[red]✗[/red] Invalid configuration: {str(e)}")
        raise typer.Exit(code=RunStatus.FAILURE.exit_code)

    report = run_transfer(
        selection=resources if resources is not None else settings.resources,
        record_ids=record or None,
        config_manager=config_manager
    )

    if report.status == RunStatus.NO_RESOURCES:
        console.print("[yellow]⚠[/yellow] No resource types selected")
        raise typer.Exit(code=report.status.exit_code)

    print_report(report)
    if report.error:
        console.print(f"\n[red]✗[/red] Run aborted: {report.error}")
    elif report.status == RunStatus.FAILURE:
        console.print("\n[yellow]⚠[/yellow] Run completed with failures; unsent instances will be retried next run")
    else:
        console.print("\n[green]✓[/green] Run completed successfully")
    raise typer.Exit(code=report.status.exit_code)


@app.command()
def info(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file", exists=True, dir_okay=False),
) -> None:
    """Display application information and the effective configuration (secrets masked)."""
    settings = Settings(config_file=str(config) if config else None)
    console.print(f"[bold blue]{settings.app_name}[/bold blue] v{APP_VERSION}\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Default resources:", settings.resources)
    info_table.add_row("Log level:", settings.log_level)
    info_table.add_row("Chunk size:", str(settings.chunk_size))
    console.print(info_table)

    try:
        described = settings.config_manager.describe()
    except (TransferError, ValueError, OSError) as e:
        console.print(f"[red]✗[/red] Invalid configuration: {str(e)}")
        raise typer.Exit(code=1)

    console.print(json.dumps(described, indent=2))


@app.command("import-csv")
def import_csv(
    input_file: Path = typer.Argument(..., help="CSV export of one form (record_id column required)", exists=True, dir_okay=False),
    form: str = typer.Option(..., "--form", "-f", help="Form name the rows belong to"),
    event: Optional[str] = typer.Option(None, "--event", "-e", help="Event name (longitudinal projects)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON configuration file", exists=True, dir_okay=False),
) -> None:
    """Load a form export into the DuckDB record store.

    Examples:
        registry-transfer import-csv exports/diagnosis.csv --form diagnosis
        registry-transfer import-csv exports/vitals.csv --form vitals --event baseline_arm_1
    """
    settings = Settings(config_file=str(config) if config else None)
    setup_logging(use_json=settings.log_json, log_level=settings.log_level)

    try:
        store_config = settings.store_config
        location = FormLocation(form=form, event=event)
    except (TransferError, ValueError, OSError) as e:
        console.print(f"[red]✗[/red] {str(e)}")
        raise typer.Exit(code=1)

    if store_config.db_type != "duckdb":
        console.print(f"[red]✗[/red] import-csv requires the duckdb store (configured: {store_config.db_type})")
        raise typer.Exit(code=1)

    store = DuckDBRecordStore(store_config=store_config)
    try:
        result = store.import_csv(str(input_file), location, chunk_size=settings.chunk_size)
    finally:
        store.close()

    if result.is_failure():
        console.print(f"[red]✗[/red] Import failed: {result.error}")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Imported {result.value:,} row(s) into {location} ({settings.get_db_path()})")


@app.callback(invoke_without_command=True)
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """Registry-Transfer: registry data to the clinical-data exchange endpoint."""
    if version:
        console.print(f"Registry-Transfer v{APP_VERSION}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
