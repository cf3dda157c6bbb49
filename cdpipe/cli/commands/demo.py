"""``cdpipe demo``: run the standard pipeline against in-memory collaborators.

Pushes one revision of a sample service, lets the poller pick it up and
shows the monitor for every execution it caused.  ``--fail-stack`` makes
one stack fail to deploy; ``--mutate`` pushes a revision whose pipeline
definition differs from the deployed one, so the first execution ends
RESTARTED and a second one runs under the updated definition.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from cdpipe.blueprints import sample_source_files, standard_pipeline
from cdpipe.config import Settings
from cdpipe.core.orchestrator import Orchestrator
from cdpipe.models.execution import ExecutionStatus
from cdpipe.monitor.projection import MonitorProjection
from cdpipe.monitor.renderer import MonitorRenderer
from cdpipe.providers import Collaborators
from cdpipe.providers.memory import (
    InMemoryBuilder,
    InMemoryCommandRunner,
    InMemorySourceProvider,
    InMemoryStackDeployer,
)

console = Console()


def _integration_check(commands: list[str], files: dict[str, bytes], env: dict[str, str]) -> int:
    return 0 if env.get("API_GW_URL", "").startswith("https://") else 7


def demo_cmd(
    revision: str = typer.Option("r1", "--revision", help="Revision id to push."),
    fail_stack: str = typer.Option(
        None, "--fail-stack", help="Make this stack's deployment fail (e.g. DDBStack)."
    ),
    mutate: bool = typer.Option(
        False, "--mutate", help="Push a revision that changes the pipeline definition."
    ),
    artifact_dir: Path = typer.Option(
        Path(".cdpipe/artifacts"), "--artifacts", help="Artifact store directory."
    ),
    ledger_db: Path = typer.Option(
        Path(".cdpipe/demo-ledger.db"),
        "--ledger",
        help="Ledger database (uses a demo-specific default).",
    ),
) -> None:
    """Run the demo pipeline and show the monitor for each execution."""
    config = Settings(ledger_path=ledger_db, artifact_store_path=artifact_dir)
    definition = standard_pipeline()

    source = InMemorySourceProvider()
    deployer = InMemoryStackDeployer()
    if fail_stack:
        deployer.fail_stacks.add(fail_stack)
    collaborators = Collaborators(
        source=source,
        builder=InMemoryBuilder(),
        deployer=deployer,
        runner=InMemoryCommandRunner(_integration_check),
    )
    orchestrator = Orchestrator(definition, collaborators, config=config)

    pushed = definition
    if mutate:
        pushed = standard_pipeline(
            integration_commands=["set -e", "curl --fail $API_GW_URL"]
        )
    source.push(revision, sample_source_files(pushed))

    console.print()
    console.print(
        Panel(
            f"[bold]cdpipe demo[/bold]\n\n"
            f"Pipeline [cyan]{definition.name}[/cyan], revision [cyan]{revision}[/cyan]"
            + (f"\nFailing stack: [red]{fail_stack}[/red]" if fail_stack else "")
            + ("\nPushed definition differs from the deployed one" if mutate else ""),
            border_style="cyan",
            padding=(1, 2),
        )
    )

    results = orchestrator.poll_once()

    projection = MonitorProjection(orchestrator.ledger)
    renderer = MonitorRenderer(console=console)
    for result in results:
        renderer.print_snapshot(projection.snapshot(result.run_id))

    console.print(f"[dim]Ledger: {config.ledger_path}[/dim]")
    if not results or results[-1].status != ExecutionStatus.SUCCEEDED:
        raise typer.Exit(code=1)
