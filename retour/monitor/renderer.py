"""Rich terminal renderer for run snapshots, rules and the audit trail.

Color scheme
------------
- green     : done / completed / proceed
- yellow    : current step / running / retry
- dim       : not started / pending
- bold red  : blocked / failed / block_for_human
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from retour.models.jobs import JobStatus
from retour.models.policy import PolicyRule, PromotionLogEntry, StrengthStage
from retour.models.verdicts import NextStep
from retour.monitor.projection import JobSummary, RunSnapshot, StepState

_STEP_STYLES: dict[StepState, str] = {
    StepState.DONE: "[green]DONE[/green]",
    StepState.CURRENT: "[bold yellow]CURRENT[/bold yellow]",
    StepState.NOT_STARTED: "[dim]NOT STARTED[/dim]",
}

_JOB_STYLES: dict[JobStatus, str] = {
    JobStatus.PENDING: "dim",
    JobStatus.RUNNING: "yellow",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.BLOCKED: "bold red",
}

_NEXT_STEP_STYLES: dict[NextStep, str] = {
    NextStep.PROCEED: "green",
    NextStep.RETRY: "yellow",
    NextStep.BLOCK_FOR_HUMAN: "bold red",
}

_STAGE_STYLES: dict[StrengthStage, str] = {
    StrengthStage.NUDGE: "dim",
    StrengthStage.CHECK: "cyan",
    StrengthStage.GUARD: "yellow",
    StrengthStage.LAW: "bold red",
}


class MonitorRenderer:
    """Renders snapshots and rule listings as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Run snapshot
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: RunSnapshot) -> Panel:
        steps = Table(show_header=True, header_style="bold cyan", expand=True)
        steps.add_column("#", style="dim", width=3, justify="right")
        steps.add_column("Step", min_width=18)
        steps.add_column("State", min_width=12, justify="center")
        steps.add_column("Phase", min_width=20)
        steps.add_column("Output", width=7, justify="center")
        for s in snapshot.steps:
            steps.add_row(
                str(s.step_id),
                s.display_name,
                _STEP_STYLES[s.state],
                s.phase.value if s.phase else "[dim]-[/dim]",
                "[green]yes[/green]" if s.has_output else "[dim]-[/dim]",
            )

        parts: list[object] = [steps]
        if snapshot.jobs:
            parts.extend([Text(""), self.render_jobs(snapshot.jobs)])

        summary = [
            f"[bold]Run:[/bold] {snapshot.run_id}",
            f"[bold]Owner:[/bold] {snapshot.owner_id}",
            f"[bold]Progress:[/bold] {snapshot.completed_count}/{len(snapshot.steps)}",
            f"[bold]Rules:[/bold] {snapshot.active_rule_count}",
        ]
        if snapshot.paused:
            summary.append("[bold yellow]PAUSED[/bold yellow]")
        if snapshot.latest_next_step is not None:
            style = _NEXT_STEP_STYLES[snapshot.latest_next_step]
            summary.append(
                f"[bold]Last verdict:[/bold] [{style}]{snapshot.latest_next_step.value}[/{style}]"
                f" ({snapshot.latest_failure_count} failure(s))"
            )
        if snapshot.blocked_jobs:
            summary.append(
                f"[bold red]Awaiting decision: {len(snapshot.blocked_jobs)}[/bold red]"
            )
        parts.extend([Text(""), Text.from_markup("  |  ".join(summary))])
        if snapshot.last_error:
            parts.append(Text(snapshot.last_error.splitlines()[0], style="red"))

        return Panel(
            Group(*parts),
            title="[bold]retour run monitor[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def render_jobs(self, jobs: list[JobSummary]) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Job", min_width=14)
        table.add_column("Step", width=5, justify="right")
        table.add_column("Service", min_width=12)
        table.add_column("Status", min_width=10)
        table.add_column("Attempts", width=9, justify="right")
        table.add_column("Details")
        for job in jobs:
            style = _JOB_STYLES[job.status]
            if job.resolution:
                details = f"resolved: {job.resolution}"
            elif job.last_error:
                details = job.last_error.splitlines()[0]
            else:
                details = "[dim]-[/dim]"
            table.add_row(
                job.job_id[:16],
                str(job.step_id),
                job.service,
                f"[{style}]{job.status.value}[/{style}]",
                f"{job.attempts}/{job.max_attempts}",
                details,
            )
        return table

    def print_snapshot(self, snapshot: RunSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    # ------------------------------------------------------------------
    # Rules and audit log
    # ------------------------------------------------------------------

    def render_rules(self, rules: list[PolicyRule]) -> Table:
        table = Table(title="Policy rules", show_header=True, header_style="bold cyan")
        table.add_column("Rule", min_width=14)
        table.add_column("Scope")
        table.add_column("Step", justify="right")
        table.add_column("Category")
        table.add_column("Stage")
        table.add_column("Health", justify="right")
        table.add_column("Conf.", justify="right")
        table.add_column("Viol.", justify="right")
        table.add_column("Flags")
        table.add_column("Text")
        for rule in rules:
            style = _STAGE_STYLES[rule.strength_stage]
            flags = ",".join(
                name for name, on in (("muted", rule.muted), ("locked", rule.locked)) if on
            )
            table.add_row(
                rule.rule_id[:14],
                rule.scope.value,
                str(rule.step_id),
                rule.category,
                f"[{style}]{rule.strength_stage.value}[/{style}]",
                str(rule.health),
                f"{rule.confidence_score:.2f}",
                str(rule.violation_count),
                flags or ("disabled" if rule.status.value == "disabled" else ""),
                rule.rule_text[:60],
            )
        return table

    def render_promotions(self, entries: list[PromotionLogEntry]) -> Table:
        table = Table(title="Promotion log", show_header=True, header_style="bold cyan")
        table.add_column("When")
        table.add_column("Type")
        table.add_column("Subject")
        table.add_column("Change")
        table.add_column("Actor")
        table.add_column("Reason")
        for entry in entries:
            change = f"{entry.from_value or '-'} -> {entry.to_value or '-'}"
            table.add_row(
                entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                entry.entry_type.value,
                (entry.rule_id or entry.job_id or entry.owner_id or "-")[:16],
                change,
                entry.actor,
                entry.trigger_reason[:60],
            )
        return table
