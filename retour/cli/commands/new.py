"""``retour new`` — create a new pipeline run.

Creates the run, moves it from upload to the first pending phase, and
prints the run_id.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.panel import Panel

from retour.cli.commands.common import console, database_option, open_orchestrator


def new_cmd(
    owner: str = typer.Option(
        ...,
        "--owner",
        "-o",
        help="Owner of the run; learned user rules are kept per owner.",
    ),
    run_id: str = typer.Option(
        None,
        "--run-id",
        help="Explicit run id.  Reusing an existing id returns that run.",
    ),
    db: Path = database_option(),
) -> None:
    """Create a new pipeline run and print its ID."""
    orchestrator = open_orchestrator(db)
    run = orchestrator.start_run(owner, run_id)

    console.print()
    console.print(
        Panel(
            "\n".join([
                "[bold green]Pipeline run ready.[/bold green]",
                "",
                f"[bold]Run ID:[/bold]   {run.run_id}",
                f"[bold]Owner:[/bold]    {run.owner_id}",
                f"[bold]Phase:[/bold]    {run.phase.value}",
                f"[bold]Database:[/bold] {orchestrator.config.database_path}",
            ]),
            title="[bold]retour[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()

    # Print the run_id plainly for scripting
    console.print(f"[bold]{run.run_id}[/bold]")
