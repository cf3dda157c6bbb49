"""Rich terminal renderer for the execution monitor.

Turns ``MonitorSnapshot`` into Rich renderables for terminal display,
with color-coded action states and optional continuous ``Rich.Live`` mode.

Color scheme
------------
- green     : SUCCEEDED
- cyan      : SKIPPED
- red       : FAILED
- yellow    : RUNNING
- magenta   : CANCELLED
- dim       : PENDING
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cdpipe.models.actions import ActionState
from cdpipe.models.execution import ExecutionStatus

if TYPE_CHECKING:
    from cdpipe.core.pipeline_graph import PipelineGraph
    from cdpipe.monitor.projection import MonitorProjection, MonitorSnapshot


_STATE_LABELS: dict[ActionState, str] = {
    ActionState.SUCCEEDED: "[green]SUCCEEDED[/green]",
    ActionState.SKIPPED: "[cyan]SKIPPED[/cyan]",
    ActionState.FAILED: "[bold red]FAILED[/bold red]",
    ActionState.RUNNING: "[yellow]RUNNING[/yellow]",
    ActionState.CANCELLED: "[magenta]CANCELLED[/magenta]",
    ActionState.PENDING: "[dim]PENDING[/dim]",
}

_STATUS_LABELS: dict[ExecutionStatus, str] = {
    ExecutionStatus.SUCCEEDED: "[bold green]SUCCEEDED[/bold green]",
    ExecutionStatus.FAILED: "[bold red]FAILED[/bold red]",
    ExecutionStatus.RESTARTED: "[bold cyan]RESTARTED[/bold cyan]",
    ExecutionStatus.ABORTED: "[bold magenta]ABORTED[/bold magenta]",
    ExecutionStatus.RUNNING: "[bold yellow]RUNNING[/bold yellow]",
    ExecutionStatus.NOT_STARTED: "[dim]NOT STARTED[/dim]",
}


def status_label(status: ExecutionStatus) -> str:
    return _STATUS_LABELS.get(status, status.value)


class MonitorRenderer:
    """Renders monitor snapshots and pipeline graphs as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single snapshot render
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: MonitorSnapshot) -> Panel:
        """Render a snapshot as a Panel containing the action table."""
        table = self._build_action_table(snapshot)

        summary_parts: list[str] = [
            f"[bold]Run:[/bold] {snapshot.run_id}",
            f"[bold]Revision:[/bold] {snapshot.revision or '-'}",
            f"[bold]Status:[/bold] {status_label(snapshot.status)}",
            f"[bold]Stages:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
            f"[bold]Artifacts:[/bold] {snapshot.artifact_count}",
        ]
        chain_status = (
            "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")
        renderables = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]

        if snapshot.failure:
            renderables.append(
                Text(
                    f"{snapshot.failure.get('error', 'error')} in "
                    f"{snapshot.failure.get('action_id') or '?'}: "
                    f"{snapshot.failure.get('message', '')}",
                    style="red",
                )
            )

        return Panel(
            Group(*renderables),
            title=f"[bold]cdpipe monitor: {snapshot.pipeline_name or snapshot.run_id}[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def _build_action_table(self, snapshot: MonitorSnapshot) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Stage", min_width=14)
        table.add_column("Action", min_width=22)
        table.add_column("Kind", style="dim")
        table.add_column("State", justify="center", min_width=12)
        table.add_column("Details", min_width=20)

        for stage in snapshot.stages:
            for i, action in enumerate(stage.actions):
                details: list[str] = []
                if action.error:
                    details.append(f"[red]{action.error}[/red]")
                if action.artifacts:
                    details.append(f"-> {', '.join(action.artifacts)}")
                if action.updated_at:
                    details.append(f"[dim]{action.updated_at.strftime('%H:%M:%S')}[/dim]")
                table.add_row(
                    stage.name if i == 0 else "",
                    action.action_id.partition("/")[2],
                    action.kind or "-",
                    _STATE_LABELS.get(action.state, action.state.value),
                    " | ".join(details) if details else "[dim]-[/dim]",
                )
        return table

    # ------------------------------------------------------------------
    # Pipeline structure
    # ------------------------------------------------------------------

    def render_graph(self, graph: PipelineGraph) -> Table:
        """Tabulate stages, dense tiers and artifact flow of a pipeline."""
        table = Table(
            title=f"Pipeline {graph.definition.name}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("#", style="dim", justify="right")
        table.add_column("Stage")
        table.add_column("Tier", justify="right")
        table.add_column("Action")
        table.add_column("Kind", style="dim")
        table.add_column("Inputs")
        table.add_column("Output")

        for stage in graph.stages:
            for action in stage.actions:
                d = action.definition
                table.add_row(
                    str(stage.index),
                    stage.name,
                    f"{action.tier} [dim](run order {d.run_order})[/dim]",
                    d.name,
                    d.kind.value,
                    ", ".join(d.inputs) or "-",
                    d.output or "-",
                )
        return table

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        run_id: str,
        projection: MonitorProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Continuously render an execution until it is terminal or Ctrl+C."""
        interval = 1.0 / max(refresh_hz, 0.1)

        with Live(console=self.console, refresh_per_second=refresh_hz) as live:
            try:
                while True:
                    snapshot = projection.snapshot(run_id)
                    live.update(self.render_snapshot(snapshot))
                    if snapshot.status not in (
                        ExecutionStatus.RUNNING, ExecutionStatus.NOT_STARTED
                    ):
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(run_id)))

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_snapshot(self, snapshot: MonitorSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
