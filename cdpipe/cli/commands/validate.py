"""``cdpipe validate DEFINITION``: structural checks for a pipeline file.

Loads the JSON definition, builds its pipeline graph and prints the
stages with their dense tiers.  Exits non-zero on any violation.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console

from cdpipe.core.errors import PipelineDefinitionError
from cdpipe.core.pipeline_graph import PipelineGraph
from cdpipe.models.pipeline import load_definition
from cdpipe.monitor.renderer import MonitorRenderer

console = Console()


def validate_cmd(
    definition_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="Pipeline definition (JSON).",
    ),
) -> None:
    """Validate a pipeline definition and show its tiers."""
    try:
        definition = load_definition(definition_file)
        graph = PipelineGraph(definition)
    except ValidationError as exc:
        console.print(f"[bold red]Invalid definition:[/bold red] {definition_file}")
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"])
            console.print(f"  [red]{loc or '<root>'}[/red]: {err['msg']}")
        raise typer.Exit(code=1)
    except PipelineDefinitionError as exc:
        console.print(f"[bold red]Invalid pipeline:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(MonitorRenderer(console=console).render_graph(graph))
    console.print(
        f"[green]Pipeline {definition.name} is valid[/green] "
        f"[dim]({definition.definition_hash})[/dim]"
    )
