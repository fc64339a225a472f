"""``retour approve JOB_ID`` / ``retour reject JOB_ID`` — resolve a blocked job.

Each decision is written to the audit log and fed back into the
confidence of the rules the last verdict triggered. An approval also
finishes the step the job belonged to, so the run can continue.
"""

from __future__ import annotations

from pathlib import Path

import typer

from retour.cli.commands.common import console, database_option, fail, open_orchestrator
from retour.core.job_ledger import InvalidResolutionError, JobNotFoundError
from retour.models.jobs import HumanDecision


def _decide(
    job_id: str,
    decision: HumanDecision,
    actor: str,
    notes: str,
    artifact_id: str | None,
    db: Path | None,
) -> None:
    orchestrator = open_orchestrator(db)
    try:
        job = orchestrator.record_override(job_id, decision, actor, notes, artifact_id)
    except JobNotFoundError:
        fail(f"Job not found: {job_id}")
    except InvalidResolutionError as exc:
        fail(f"Decision refused: {exc}")
    style = "green" if decision == HumanDecision.APPROVE else "red"
    console.print(f"[{style}]{decision.value}[/{style}] {job.job_id} by {actor}")


def approve_cmd(
    job_id: str = typer.Argument(..., help="The blocked job."),
    actor: str = typer.Option(..., "--actor", help="Who is approving."),
    notes: str = typer.Option("", "--notes", help="Free-form notes for the audit log."),
    artifact_id: str = typer.Option(None, "--artifact", help="Artifact being accepted."),
    db: Path = database_option(),
) -> None:
    """Approve a blocked job's output despite its failures."""
    _decide(job_id, HumanDecision.APPROVE, actor, notes, artifact_id, db)


def reject_cmd(
    job_id: str = typer.Argument(..., help="The blocked job."),
    actor: str = typer.Option(..., "--actor", help="Who is rejecting."),
    notes: str = typer.Option("", "--notes", help="Free-form notes for the audit log."),
    db: Path = database_option(),
) -> None:
    """Reject a blocked job's output."""
    _decide(job_id, HumanDecision.REJECT, actor, notes, None, db)
