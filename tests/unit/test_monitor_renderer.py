"""Unit tests for the MonitorRenderer."""

from __future__ import annotations

from datetime import datetime, timezone

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from retour.models.jobs import JobStatus
from retour.models.policy import PromotionLogEntry, PromotionType, StrengthStage
from retour.models.verdicts import NextStep
from retour.monitor.projection import JobSummary, RunSnapshot, StepState, StepStatus
from retour.monitor.renderer import (
    _JOB_STYLES,
    _NEXT_STEP_STYLES,
    _STAGE_STYLES,
    _STEP_STYLES,
    MonitorRenderer,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_snapshot(**overrides) -> RunSnapshot:
    fields = {
        "run_id": "rt-test-001",
        "owner_id": "owner-a",
        "phase": "top_down_3d_running",
        "step": 1,
        "steps": [
            StepStatus(step_id=0, display_name="Space analysis", state=StepState.DONE),
            StepStatus(
                step_id=1,
                display_name="Top-down 3D",
                state=StepState.CURRENT,
                phase="top_down_3d_running",
            ),
            StepStatus(step_id=2, display_name="Style", state=StepState.NOT_STARTED),
        ],
        "last_updated": datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return RunSnapshot(**fields)


def _render(renderable) -> str:
    console = Console(file=None, color_system=None, width=200)
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


# ---------------------------------------------------------------------------
# Test: Style mappings
# ---------------------------------------------------------------------------


class TestStyleMappings:
    def test_every_value_has_a_style(self):
        assert set(_STEP_STYLES) == set(StepState)
        assert set(_JOB_STYLES) == set(JobStatus)
        assert set(_NEXT_STEP_STYLES) == set(NextStep)
        assert set(_STAGE_STYLES) == set(StrengthStage)


# ---------------------------------------------------------------------------
# Test: Run snapshot
# ---------------------------------------------------------------------------


class TestRenderSnapshot:
    def test_returns_panel(self):
        assert isinstance(MonitorRenderer().render_snapshot(_make_snapshot()), Panel)

    def test_shows_run_and_progress(self):
        output = _render(MonitorRenderer().render_snapshot(_make_snapshot()))
        assert "rt-test-001" in output
        assert "1/3" in output
        assert "top_down_3d_running" in output
        assert "2026-03-02 09:30:00 UTC" in output

    def test_shows_blocked_jobs_and_error(self):
        snapshot = _make_snapshot(
            jobs=[
                JobSummary(
                    job_id="job-1",
                    step_id=1,
                    service="generation",
                    status=JobStatus.BLOCKED,
                    attempts=3,
                    max_attempts=3,
                    last_error="Retry budget exhausted after 3 attempt(s)\n  - (high) ...",
                )
            ],
            latest_next_step=NextStep.RETRY,
            latest_failure_count=2,
            last_error="Retry budget exhausted after 3 attempt(s)",
            paused=True,
        )
        output = _render(MonitorRenderer().render_snapshot(snapshot))
        assert "Awaiting decision: 1" in output
        assert "3/3" in output
        assert "PAUSED" in output
        assert "retry" in output
        assert "Retry budget exhausted" in output

    def test_print_snapshot(self):
        console = Console(file=None, color_system=None, width=200)
        renderer = MonitorRenderer(console=console)
        with console.capture() as capture:
            renderer.print_snapshot(_make_snapshot())
        assert "retour run monitor" in capture.get()


# ---------------------------------------------------------------------------
# Test: Rules and promotion log
# ---------------------------------------------------------------------------


class TestRenderRules:
    def test_rules_table(self, make_rule):
        rules = [
            make_rule(strength_stage=StrengthStage.GUARD, violation_count=6),
            make_rule(rule_text="no floating lamps", muted=True),
        ]
        table = MonitorRenderer().render_rules(rules)
        assert isinstance(table, Table)
        assert table.row_count == 2
        output = _render(table)
        assert "guard" in output
        assert "muted" in output

    def test_promotions_table(self):
        entries = [
            PromotionLogEntry(
                entry_type=PromotionType.ESCALATION,
                rule_id="rule-1",
                from_value="nudge",
                to_value="check",
                trigger_reason="violation",
            )
        ]
        output = _render(MonitorRenderer().render_promotions(entries))
        assert "escalation" in output
        assert "nudge -> check" in output
