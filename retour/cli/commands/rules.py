"""Learned-rule commands: ``rules``, ``promotions``, ``decay``,
``promote-law``, ``mute``/``unmute``, ``lock``/``unlock`` and
``reset-profile``.
"""

from __future__ import annotations

from pathlib import Path

import typer

from retour.cli.commands.common import console, database_option, fail, open_orchestrator
from retour.learning.escalation import PromotionNotAllowedError
from retour.learning.rule_store import RuleNotFoundError
from retour.models.policy import PromotionType, RuleScope, RuleStatus
from retour.monitor.renderer import MonitorRenderer


def rules_cmd(
    owner: str = typer.Option(None, "--owner", "-o", help="Filter by owner."),
    run_id: str = typer.Option(None, "--run", "-r", help="Filter by run (run scope)."),
    scope: RuleScope = typer.Option(None, "--scope", "-s", help="Filter by scope."),
    step: int = typer.Option(None, "--step", help="Filter by step."),
    include_disabled: bool = typer.Option(
        False, "--all", "-a", help="Include disabled rules."
    ),
    db: Path = database_option(),
) -> None:
    """List learned policy rules."""
    orchestrator = open_orchestrator(db)
    rules = orchestrator.rules.list_rules(
        owner_id=owner,
        scope=scope,
        run_id=run_id,
        step_id=step,
        status=None if include_disabled else RuleStatus.ACTIVE,
    )
    if not rules:
        console.print("[dim]No rules.[/dim]")
        return
    console.print(MonitorRenderer(console=console).render_rules(rules))


def promotions_cmd(
    owner: str = typer.Option(None, "--owner", "-o", help="Filter by owner."),
    rule_id: str = typer.Option(None, "--rule", help="Filter by rule."),
    job_id: str = typer.Option(None, "--job", help="Filter by job."),
    entry_type: PromotionType = typer.Option(None, "--type", "-t", help="Filter by entry type."),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries to show."),
    db: Path = database_option(),
) -> None:
    """Show the promotion and audit log."""
    orchestrator = open_orchestrator(db)
    entries = orchestrator.rules.get_promotion_log(
        owner_id=owner, rule_id=rule_id, job_id=job_id, entry_type=entry_type, limit=limit
    )
    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return
    console.print(MonitorRenderer(console=console).render_promotions(entries))


def decay_cmd(db: Path = database_option()) -> None:
    """Apply idle-time decay to every active rule."""
    changed = open_orchestrator(db).learning.sweep()
    console.print(f"Decay sweep changed [bold]{changed}[/bold] rule(s).")


def promote_law_cmd(
    rule_id: str = typer.Argument(..., help="The guard rule to promote."),
    actor: str = typer.Option(..., "--actor", help="Who is promoting the rule."),
    reason: str = typer.Option(..., "--reason", help="Why the rule becomes law."),
    db: Path = database_option(),
) -> None:
    """Promote a confident guard rule to law."""
    learning = open_orchestrator(db).learning
    try:
        rule = learning.promote_to_law(rule_id, actor, reason)
    except RuleNotFoundError:
        fail(f"Rule not found: {rule_id}")
    except PromotionNotAllowedError as exc:
        fail(f"Promotion refused: {exc}")
    console.print(f"[bold red]LAW[/bold red] {rule.rule_id}: {rule.rule_text}")


def _set_flag(rule_id: str, field: str, value: bool, actor: str, db: Path | None) -> None:
    learning = open_orchestrator(db).learning
    setter = learning.set_muted if field == "muted" else learning.set_locked
    try:
        rule = setter(rule_id, value, actor)
    except RuleNotFoundError:
        fail(f"Rule not found: {rule_id}")
    console.print(f"{rule.rule_id}: {field}={getattr(rule, field)}")


def mute_cmd(
    rule_id: str = typer.Argument(..., help="The rule to mute."),
    actor: str = typer.Option("cli", "--actor", help="Who is muting the rule."),
    unmute: bool = typer.Option(False, "--off", help="Unmute instead."),
    db: Path = database_option(),
) -> None:
    """Mute a rule so it is neither injected nor evaluated."""
    _set_flag(rule_id, "muted", not unmute, actor, db)


def lock_cmd(
    rule_id: str = typer.Argument(..., help="The rule to lock."),
    actor: str = typer.Option("cli", "--actor", help="Who is locking the rule."),
    unlock: bool = typer.Option(False, "--off", help="Unlock instead."),
    db: Path = database_option(),
) -> None:
    """Lock a rule so decay no longer touches it."""
    _set_flag(rule_id, "locked", not unlock, actor, db)


def reset_profile_cmd(
    owner: str = typer.Argument(..., help="Owner whose user rules are disabled."),
    actor: str = typer.Option(..., "--actor", help="Who is resetting the profile."),
    db: Path = database_option(),
) -> None:
    """Disable every learned user-scope rule of one owner."""
    count = open_orchestrator(db).learning.reset_profile(owner, actor)
    console.print(f"Disabled [bold]{count}[/bold] rule(s) for {owner}.")
