"""
Audit report for rollout runs.

Renders a run's plan, verdict history and phase transitions as Markdown so
every promotion or rollback decision can be traced after the fact.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from model_rollout.rollout.models import RolloutRun


def _fmt(value: float) -> str:
    if math.isinf(value):
        return "inf"
    return f"{value:.4g}"


def generate_audit_report(run: RolloutRun, generated_at: datetime | None = None) -> str:
    """
    Generate an audit report for a run.

    Args:
        run: Run to report on
        generated_at: Report timestamp (defaults to now)

    Returns:
        Markdown formatted audit report
    """
    plan = run.plan
    generated_at = generated_at or datetime.now(timezone.utc)
    lines = [
        "# Model Rollout Audit Report",
        "",
        f"**Run ID**: {run.run_id}",
        f"**Plan ID**: {plan.plan_id}",
        f"**Candidate**: {plan.candidate_version}",
        f"**Baseline**: {plan.baseline_version}",
        f"**Segment**: {plan.segment}",
        f"**Generated**: {generated_at.isoformat()}",
        f"**Started**: {run.started_at.isoformat()}",
        f"**Phase**: {run.phase.value}",
        f"**Outcome**: {run.outcome.value if run.outcome else 'in progress'}",
    ]
    if run.failure_reason:
        lines.append(f"**Failure Reason**: {run.failure_reason}")
    if run.abort_reason:
        lines.append(f"**Abort Reason**: {run.abort_reason}")
    if run.last_error:
        lines.append(f"**Last Error**: {run.last_error}")

    lines.extend(["", "## Plan", ""])
    lines.append("| Step | Candidate % | Baseline % | Min Observation (s) | Min Samples |")
    lines.append("|------|-------------|------------|---------------------|-------------|")
    for i, step in enumerate(plan.steps):
        marker = " (current)" if i == run.step_index and not run.is_terminal else ""
        lines.append(
            f"| {i}{marker} | {step.candidate_weight} | {step.baseline_weight} | "
            f"{step.min_observation_seconds:g} | {step.min_samples} |"
        )

    lines.extend(["", "**Thresholds**:"])
    for metric, limit in plan.thresholds.configured().items():
        lines.append(f"  - {metric.value}: {limit:g}")
    lines.append(f"  - error_rate_delta_mode: {plan.thresholds.error_rate_delta_mode.value}")
    lines.append(f"  - max_total_duration_seconds: {plan.max_total_duration_seconds:g}")

    lines.extend(["", "## Verdict History", ""])
    if run.history:
        lines.append("| Time | Step | Outcome | Reason | Deltas | Samples |")
        lines.append("|------|------|---------|--------|--------|---------|")
        for verdict in run.history:
            deltas = ", ".join(f"{k}={_fmt(v)}" for k, v in verdict.deltas.items()) or "-"
            counts = ", ".join(f"{k}={v}" for k, v in verdict.sample_counts.items()) or "-"
            lines.append(
                f"| {verdict.evaluated_at.isoformat()[:19]} | {verdict.step_index} | "
                f"{verdict.outcome.value} | {verdict.reason.value} | {deltas} | {counts} |"
            )
    else:
        lines.append("_No verdicts recorded._")

    lines.extend(["", "## Phase Transitions", ""])
    if run.transitions:
        lines.append("| Time | Step | From | To | Reason |")
        lines.append("|------|------|------|----|--------|")
        for t in run.transitions:
            lines.append(
                f"| {t.at.isoformat()[:19]} | {t.step_index} | {t.from_phase.value} | "
                f"{t.to_phase.value} | {t.reason} |"
            )
    else:
        lines.append("_No transitions recorded._")

    lines.extend(["", "---", ""])
    return "\n".join(lines)
