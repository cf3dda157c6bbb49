"""``cdpipe monitor RUN_ID``: show the monitor for an execution.

Displays the state of every action, artifact counts and hash chain
status.  Supports continuous live mode and chain verification.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from cdpipe.config import settings
from cdpipe.core.run_ledger import ExecutionLedger, LedgerIntegrityError
from cdpipe.monitor.projection import MonitorProjection
from cdpipe.monitor.renderer import MonitorRenderer

console = Console()


def monitor_cmd(
    run_id: str = typer.Argument(..., help="The execution run ID to monitor."),
    live: bool = typer.Option(
        False, "--live", "-L", help="Refresh until the execution ends (Ctrl+C to exit)."
    ),
    verify_chain: bool = typer.Option(
        False, "--verify-chain", "-V", help="Verify the hash chain before displaying."
    ),
    refresh_hz: float = typer.Option(
        2.0, "--refresh", "-r", help="Refresh rate in Hz for live mode."
    ),
    ledger_db: Path = typer.Option(
        settings.ledger_path, "--ledger", "-l", help="Path to the ledger database."
    ),
) -> None:
    """Show the monitor for an execution.

    The monitor is a pure read-only projection over the ledger.
    """
    if not ledger_db.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {ledger_db}")
        console.print("[dim]Run an execution first, e.g. with: cdpipe demo[/dim]")
        raise typer.Exit(code=1)

    ledger = ExecutionLedger(ledger_db)
    projection = MonitorProjection(ledger)
    renderer = MonitorRenderer(console=console)

    if not ledger.get_run_entries(run_id):
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        all_runs = ledger.get_all_run_ids()
        if all_runs:
            console.print("\n[bold]Available runs:[/bold]")
            for rid in all_runs[:10]:
                console.print(f"  [cyan]{rid}[/cyan]")
            if len(all_runs) > 10:
                console.print(f"  [dim]... and {len(all_runs) - 10} more[/dim]")
        raise typer.Exit(code=1)

    if verify_chain:
        console.print("[bold cyan]Verifying hash chain...[/bold cyan]")
        try:
            valid = ledger.verify_chain(run_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            valid = False
        renderer.print_chain_verification(run_id, valid)
        console.print()

    if live:
        renderer.render_live(run_id, projection, refresh_hz=refresh_hz)
    else:
        renderer.print_snapshot(projection.snapshot(run_id))
