"""``retour status RUN_ID`` and ``retour jobs RUN_ID``.

Both are read-only: they build a fresh snapshot from the stores and
render it.
"""

from __future__ import annotations

from pathlib import Path

import typer

from retour.cli.commands.common import console, database_option, open_orchestrator
from retour.core.orchestrator import Orchestrator
from retour.core.run_store import RunNotFoundError
from retour.monitor.projection import RunProjection, RunSnapshot
from retour.monitor.renderer import MonitorRenderer


def _snapshot(orchestrator: Orchestrator, run_id: str) -> RunSnapshot:
    projection = RunProjection(orchestrator.runs, orchestrator.jobs, orchestrator.rules)
    try:
        return projection.snapshot(run_id)
    except RunNotFoundError:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        runs = orchestrator.runs.list_runs()
        if runs:
            console.print("\n[bold]Available runs:[/bold]")
            for run in runs[:10]:
                console.print(f"  [cyan]{run.run_id}[/cyan]  {run.phase.value}")
            if len(runs) > 10:
                console.print(f"  [dim]... and {len(runs) - 10} more[/dim]")
        raise typer.Exit(code=1)


def status_cmd(
    run_id: str = typer.Argument(..., help="The run ID to show."),
    db: Path = database_option(),
) -> None:
    """Show the phase, step progress and jobs of a run."""
    orchestrator = open_orchestrator(db)
    snapshot = _snapshot(orchestrator, run_id)
    MonitorRenderer(console=console).print_snapshot(snapshot)


def jobs_cmd(
    run_id: str = typer.Argument(..., help="The run ID whose jobs to list."),
    blocked: bool = typer.Option(
        False, "--blocked", "-b", help="Only jobs awaiting a human decision."
    ),
    db: Path = database_option(),
) -> None:
    """List the jobs of a run."""
    orchestrator = open_orchestrator(db)
    snapshot = _snapshot(orchestrator, run_id)
    jobs = snapshot.blocked_jobs if blocked else snapshot.jobs
    if not jobs:
        console.print("[dim]No jobs.[/dim]")
        return
    console.print(MonitorRenderer(console=console).render_jobs(jobs))
