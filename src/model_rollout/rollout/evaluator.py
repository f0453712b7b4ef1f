"""
Health Evaluator for Candidate Models.

Turns a batch of metric samples for one observation window into a
PASS/FAIL/INCONCLUSIVE verdict. The evaluation is a pure function of its
inputs: it performs no I/O and never reads the clock, so the same window
always produces the same verdict.

Decision rules:
- INCONCLUSIVE when the window is shorter than the step's observation
  minimum, or when any gated metric has fewer samples than the step's
  sample minimum. Insufficient evidence is never turned into a decision.
- FAIL when any gated metric's delta reaches its threshold. A delta exactly
  at the threshold is a breach, and so is any non-finite delta (NaN or
  infinite values from unmeasurable samples).
- PASS otherwise.

Example:
    >>> evaluator = HealthEvaluator()
    >>> verdict = evaluator.evaluate(plan, 1, samples, window_start, window_end)
    >>> verdict.outcome
    <VerdictOutcome.FAIL: 'fail'>
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from model_rollout.config.schema import DeltaMode, MetricName, RolloutPlan
from model_rollout.rollout.models import (
    BREACH_REASONS,
    MetricSample,
    ReasonCode,
    Verdict,
    VerdictOutcome,
)


def compute_delta(
    metric: MetricName,
    baseline: float,
    candidate: float,
    error_rate_mode: DeltaMode = DeltaMode.ABSOLUTE,
) -> float:
    """
    Compute the candidate-minus-baseline delta for a metric.

    Error rate may be compared relatively; a zero baseline with any positive
    candidate error rate is an infinite relative delta.
    """
    if metric == MetricName.ERROR_RATE and error_rate_mode == DeltaMode.RELATIVE:
        if baseline == 0:
            return math.inf if candidate > 0 else 0.0
        return (candidate - baseline) / baseline
    return candidate - baseline


class HealthEvaluator:
    """Stateless evaluator of observation windows."""

    def evaluate(
        self,
        plan: RolloutPlan,
        step_index: int,
        samples: Iterable[MetricSample],
        window_start: datetime,
        window_end: datetime,
    ) -> Verdict:
        """
        Evaluate the samples of one observation window.

        Args:
            plan: Active rollout plan (provides thresholds)
            step_index: Index of the step being observed
            samples: Samples reported by the metrics gateway
            window_start: When the step's traffic split was confirmed
            window_end: Evaluation time

        Returns:
            Verdict for the window
        """
        step = plan.steps[step_index]
        limits = plan.thresholds.configured()

        grouped: dict[MetricName, list[MetricSample]] = defaultdict(list)
        for sample in samples:
            if window_start <= sample.timestamp <= window_end:
                grouped[sample.metric].append(sample)

        counts = {metric.value: len(grouped[metric]) for metric in limits}

        elapsed = (window_end - window_start).total_seconds()
        if elapsed < step.min_observation_seconds:
            return self._verdict(
                VerdictOutcome.INCONCLUSIVE,
                ReasonCode.WINDOW_TOO_SHORT,
                step_index,
                window_end,
                sample_counts=counts,
            )

        if any(count < step.min_samples for count in counts.values()):
            return self._verdict(
                VerdictOutcome.INCONCLUSIVE,
                ReasonCode.INSUFFICIENT_SAMPLES,
                step_index,
                window_end,
                sample_counts=counts,
            )

        deltas: dict[str, float] = {}
        breaches: list[MetricName] = []
        for metric, limit in limits.items():
            window = grouped[metric]
            baseline = sum(s.baseline_value for s in window) / len(window)
            candidate = sum(s.candidate_value for s in window) / len(window)
            delta = compute_delta(
                metric, baseline, candidate, plan.thresholds.error_rate_delta_mode
            )
            deltas[metric.value] = delta
            if not math.isfinite(delta) or delta >= limit:
                breaches.append(metric)

        if breaches:
            return self._verdict(
                VerdictOutcome.FAIL,
                BREACH_REASONS[breaches[0]],
                step_index,
                window_end,
                deltas=deltas,
                sample_counts=counts,
                breaches=tuple(BREACH_REASONS[m].value for m in breaches),
            )

        return self._verdict(
            VerdictOutcome.PASS,
            ReasonCode.WITHIN_THRESHOLDS,
            step_index,
            window_end,
            deltas=deltas,
            sample_counts=counts,
        )

    @staticmethod
    def unavailable(step_index: int, at: datetime) -> Verdict:
        """Verdict recorded when the metrics gateway could not be reached."""
        return Verdict(
            outcome=VerdictOutcome.INCONCLUSIVE,
            reason=ReasonCode.METRICS_UNAVAILABLE,
            step_index=step_index,
            evaluated_at=at,
        )

    @staticmethod
    def _verdict(
        outcome: VerdictOutcome,
        reason: ReasonCode,
        step_index: int,
        at: datetime,
        deltas: dict[str, float] | None = None,
        sample_counts: dict[str, int] | None = None,
        breaches: tuple[str, ...] = (),
    ) -> Verdict:
        return Verdict(
            outcome=outcome,
            reason=reason,
            step_index=step_index,
            evaluated_at=at,
            deltas=deltas or {},
            sample_counts=sample_counts or {},
            breaches=breaches,
        )
