"""Main Typer application — imports and registers all CLI commands.

Entry point: ``retour`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import typer

from retour.cli.commands.decide import approve_cmd, reject_cmd
from retour.cli.commands.new import new_cmd
from retour.cli.commands.rules import (
    decay_cmd,
    lock_cmd,
    mute_cmd,
    promote_law_cmd,
    promotions_cmd,
    reset_profile_cmd,
    rules_cmd,
)
from retour.cli.commands.status import jobs_cmd, status_cmd
from retour.cli.commands.transition import pause_cmd, resume_cmd, transition_cmd
from retour.config import RetourSettings
from retour.logging_setup import configure_logging

app = typer.Typer(
    name="retour",
    help="retour: phase-gated pipeline orchestration with validation and learned rules.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _configure() -> None:
    configure_logging(RetourSettings())


# Runs and phases
app.command(name="new", help="Create a new pipeline run.")(new_cmd)
app.command(name="status", help="Show the state of a run.")(status_cmd)
app.command(name="transition", help="Apply a phase trigger to a run.")(transition_cmd)
app.command(name="pause", help="Pause a run.")(pause_cmd)
app.command(name="resume", help="Resume a paused run.")(resume_cmd)

# Jobs and human decisions
app.command(name="jobs", help="List the jobs of a run.")(jobs_cmd)
app.command(name="approve", help="Approve a blocked job.")(approve_cmd)
app.command(name="reject", help="Reject a blocked job.")(reject_cmd)

# Learned rules
app.command(name="rules", help="List learned policy rules.")(rules_cmd)
app.command(name="promotions", help="Show the promotion and audit log.")(promotions_cmd)
app.command(name="decay", help="Run the idle-time decay sweep.")(decay_cmd)
app.command(name="promote-law", help="Promote a guard rule to law.")(promote_law_cmd)
app.command(name="mute", help="Mute or unmute a rule.")(mute_cmd)
app.command(name="lock", help="Lock or unlock a rule against decay.")(lock_cmd)
app.command(name="reset-profile", help="Disable an owner's learned user rules.")(reset_profile_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
