"""``retour transition RUN_ID TRIGGER`` — apply one phase trigger.

The caller states the phase it believes the run is at; a run that has
moved on is reported as stale rather than silently advanced.  Also
hosts ``pause`` and ``resume``.
"""

from __future__ import annotations

from pathlib import Path

import typer

from retour.cli.commands.common import console, database_option, fail, open_orchestrator
from retour.core.phase_machine import IllegalTransitionError, StalePhaseError
from retour.core.run_store import RunNotFoundError
from retour.models.phases import Phase, PhaseTrigger


def transition_cmd(
    run_id: str = typer.Argument(..., help="The run ID."),
    trigger: PhaseTrigger = typer.Argument(..., help="Trigger to apply."),
    expected: Phase = typer.Option(
        None,
        "--expected",
        "-e",
        help="Phase the run is expected to be at.  Defaults to its current phase.",
    ),
    db: Path = database_option(),
) -> None:
    """Apply a trigger to a run's phase state machine."""
    orchestrator = open_orchestrator(db)
    try:
        if expected is None:
            expected = orchestrator.machine.current(run_id).phase
        run = orchestrator.request_transition(run_id, trigger, expected)
    except RunNotFoundError:
        fail(f"Run not found: {run_id}")
    except (IllegalTransitionError, StalePhaseError) as exc:
        fail(f"Transition refused: {exc}")
    available = ", ".join(t.value for t in orchestrator.machine.available_triggers(run_id))
    console.print(
        f"[green]{run_id}[/green] is at [bold]{run.phase.value}[/bold] (step {run.step})"
    )
    console.print(f"[dim]Available triggers: {available or 'none'}[/dim]")


def pause_cmd(
    run_id: str = typer.Argument(..., help="The run ID."),
    db: Path = database_option(),
) -> None:
    """Pause a run; no new jobs are dispatched until it is resumed."""
    try:
        run = open_orchestrator(db).pause(run_id)
    except RunNotFoundError:
        fail(f"Run not found: {run_id}")
    console.print(f"[yellow]Paused[/yellow] {run.run_id} at {run.phase.value}")


def resume_cmd(
    run_id: str = typer.Argument(..., help="The run ID."),
    db: Path = database_option(),
) -> None:
    """Resume a paused run."""
    try:
        run = open_orchestrator(db).resume(run_id)
    except RunNotFoundError:
        fail(f"Run not found: {run_id}")
    console.print(f"[green]Resumed[/green] {run.run_id} at {run.phase.value}")
