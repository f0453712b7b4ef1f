"""
Tests for the Markdown audit report.
"""

import math

from conftest import T0
from model_rollout.rollout.models import (
    ReasonCode,
    RolloutPhase,
    RolloutRun,
    Verdict,
    VerdictOutcome,
)
from model_rollout.rollout.report import generate_audit_report
from model_rollout.rollout.state_machine import RolloutStateMachine


def _rolled_back_run(plan):
    machine = RolloutStateMachine()
    run = RolloutRun.create(plan, T0)
    machine.begin(run, T0)
    machine.confirm_split(run, machine.pending_split(run), T0)
    machine.enter_holding(run, T0.replace(minute=1))
    verdict = Verdict(
        outcome=VerdictOutcome.FAIL,
        reason=ReasonCode.ERROR_RATE_DELTA,
        step_index=0,
        evaluated_at=T0.replace(minute=1),
        deltas={"error_rate": 0.03},
        sample_counts={"error_rate": 10},
        breaches=("error_rate_delta",),
    )
    machine.apply_verdict(run, verdict, verdict.evaluated_at)
    machine.confirm_split(run, machine.pending_split(run), T0.replace(minute=2))
    return run


class TestAuditReport:
    """Tests for generate_audit_report."""

    def test_header(self, plan):
        """The header identifies the run and its plan."""
        run = RolloutRun.create(plan, T0)
        report = generate_audit_report(run, generated_at=T0)
        assert report.startswith("# Model Rollout Audit Report")
        assert f"**Run ID**: {run.run_id}" in report
        assert "**Plan ID**: plan-test" in report
        assert "**Candidate**: model-v2" in report
        assert "**Outcome**: in progress" in report
        assert f"**Generated**: {T0.isoformat()}" in report

    def test_plan_table(self, plan):
        """Every step is listed with its weights."""
        report = generate_audit_report(RolloutRun.create(plan, T0), generated_at=T0)
        assert "| 0 (current) | 10 | 90 | 60 | 5 |" in report
        assert "| 2 | 100 | 0 | 60 | 5 |" in report
        assert "  - error_rate: 0.02" in report

    def test_empty_history(self, plan):
        """Runs without verdicts say so."""
        report = generate_audit_report(RolloutRun.create(plan, T0), generated_at=T0)
        assert "_No verdicts recorded._" in report
        assert "_No transitions recorded._" in report

    def test_rolled_back_run(self, plan):
        """Verdicts and transitions of a rollback are traced."""
        run = _rolled_back_run(plan)
        report = generate_audit_report(run, generated_at=T0)
        assert run.phase == RolloutPhase.ROLLED_BACK
        assert "**Outcome**: rolled_back" in report
        assert "**Failure Reason**: error_rate_delta" in report
        assert "| fail | error_rate_delta | error_rate=0.03 | error_rate=10 |" in report
        assert "| holding | rolling_back | error_rate_delta |" in report
        assert "(current)" not in report

    def test_infinite_delta(self, plan):
        """Infinite relative deltas render as inf."""
        run = RolloutRun.create(plan, T0)
        run.history.append(
            Verdict(
                outcome=VerdictOutcome.FAIL,
                reason=ReasonCode.ERROR_RATE_DELTA,
                step_index=0,
                evaluated_at=T0,
                deltas={"error_rate": math.inf},
            )
        )
        assert "error_rate=inf" in generate_audit_report(run, generated_at=T0)

    def test_abort_reason(self, plan):
        """Abort reasons are shown."""
        run = RolloutRun.create(plan, T0)
        run.abort_reason = "bad canary"
        assert "**Abort Reason**: bad canary" in generate_audit_report(run, generated_at=T0)
