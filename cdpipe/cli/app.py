"""Main Typer application: imports and registers all CLI commands.

Entry point: ``cdpipe`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cdpipe.cli.commands.demo import demo_cmd
from cdpipe.cli.commands.monitor_cmd import monitor_cmd
from cdpipe.cli.commands.validate import validate_cmd
from cdpipe.config import settings
from cdpipe.core.run_ledger import ExecutionLedger
from cdpipe.monitor.projection import MonitorProjection
from cdpipe.monitor.renderer import status_label

app = typer.Typer(
    name="cdpipe",
    help="cdpipe: self-mutating continuous-deployment pipeline orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def configure(
    log_level: str = typer.Option(
        settings.log_level, "--log-level", help="Logging level (DEBUG, INFO, ...)."
    ),
) -> None:
    """Install the Rich log handler for every subcommand."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


# Register subcommands
app.command(name="validate", help="Validate a pipeline definition file.")(validate_cmd)
app.command(name="demo", help="Run the standard pipeline against in-memory collaborators.")(demo_cmd)
app.command(name="monitor", help="Show the monitor for an execution.")(monitor_cmd)


@app.command(name="runs", help="List recorded executions, most recent first.")
def runs_cmd(
    ledger_db: Path = typer.Option(
        settings.ledger_path, "--ledger", "-l", help="Path to the ledger database."
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of runs to show."),
) -> None:
    """List executions recorded in the ledger."""
    console = Console()
    if not ledger_db.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {ledger_db}")
        raise typer.Exit(code=1)

    ledger = ExecutionLedger(ledger_db)
    projection = MonitorProjection(ledger)
    run_ids = ledger.get_all_run_ids()
    if not run_ids:
        console.print("[dim]No executions recorded.[/dim]")
        return

    table = Table(title="Executions")
    table.add_column("Run", style="cyan")
    table.add_column("Pipeline")
    table.add_column("Revision")
    table.add_column("Status", justify="center")
    table.add_column("Stages", justify="right")

    for run_id in run_ids[:limit]:
        snapshot = projection.snapshot(run_id)
        table.add_row(
            run_id,
            snapshot.pipeline_name,
            snapshot.revision,
            status_label(snapshot.status),
            f"{snapshot.completed_count}/{snapshot.total_stages}",
        )
    console.print(table)
    if len(run_ids) > limit:
        console.print(f"[dim]... and {len(run_ids) - limit} more[/dim]")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
