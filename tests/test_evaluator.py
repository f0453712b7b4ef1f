"""
Tests for the health evaluator.

Tests verdict rules: insufficient evidence, threshold breaches at and
above the limit, relative deltas and window filtering.
"""

import math
from datetime import timedelta

import pytest

from conftest import T0, make_samples
from model_rollout.config.schema import DeltaMode, MetricName, RolloutPlan
from model_rollout.rollout.evaluator import HealthEvaluator, compute_delta
from model_rollout.rollout.models import ReasonCode, VerdictOutcome


@pytest.fixture
def evaluator():
    """Create evaluator."""
    return HealthEvaluator()


@pytest.fixture
def window_end():
    """End of a 60 second window starting at T0."""
    return T0 + timedelta(seconds=60)


def _plan(plan_data, **thresholds):
    plan_data["thresholds"] = thresholds
    return RolloutPlan.model_validate(plan_data)


# =============================================================================
# compute_delta
# =============================================================================


class TestComputeDelta:
    """Tests for compute_delta."""

    def test_absolute(self):
        """Absolute delta is candidate minus baseline."""
        assert compute_delta(MetricName.ERROR_RATE, 0.01, 0.03) == pytest.approx(0.02)

    def test_negative_when_candidate_better(self):
        """Improvements produce negative deltas."""
        assert compute_delta(MetricName.LATENCY_P99, 120.0, 100.0) == -20.0

    def test_relative_error_rate(self):
        """Relative error-rate delta is scaled by the baseline."""
        delta = compute_delta(MetricName.ERROR_RATE, 0.02, 0.03, DeltaMode.RELATIVE)
        assert delta == pytest.approx(0.5)

    def test_relative_zero_baseline(self):
        """A zero baseline with errors is an infinite relative delta."""
        assert compute_delta(MetricName.ERROR_RATE, 0.0, 0.01, DeltaMode.RELATIVE) == math.inf
        assert compute_delta(MetricName.ERROR_RATE, 0.0, 0.0, DeltaMode.RELATIVE) == 0.0

    def test_relative_mode_only_affects_error_rate(self):
        """Latency stays absolute in relative mode."""
        assert compute_delta(MetricName.LATENCY_P99, 100.0, 150.0, DeltaMode.RELATIVE) == 50.0


# =============================================================================
# Verdicts
# =============================================================================


class TestEvaluate:
    """Tests for HealthEvaluator.evaluate."""

    def test_breach_above_threshold_fails(self, evaluator, plan, window_end):
        """Baseline 0.01 vs candidate 0.04 breaches a 0.02 limit."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.04, count=10)
        verdict = evaluator.evaluate(plan, 1, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.FAIL
        assert verdict.reason == ReasonCode.ERROR_RATE_DELTA
        assert verdict.step_index == 1
        assert verdict.deltas["error_rate"] == pytest.approx(0.03)
        assert verdict.breaches == ("error_rate_delta",)

    def test_within_threshold_passes(self, evaluator, plan, window_end):
        """Deltas below the limit pass."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.015, count=10)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.PASS
        assert verdict.reason == ReasonCode.WITHIN_THRESHOLDS
        assert verdict.sample_counts == {"error_rate": 10}

    def test_delta_equal_to_threshold_fails(self, evaluator, plan_data, window_end):
        """A delta exactly at the limit is a breach."""
        plan = _plan(plan_data, max_latency_p99_delta_ms=50.0)
        samples = make_samples(MetricName.LATENCY_P99, 100.0, 150.0, count=10)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.FAIL
        assert verdict.reason == ReasonCode.LATENCY_P99_DELTA

    def test_nan_candidate_fails(self, evaluator, plan):
        """NaN candidate values are a breach, never a pass."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, float("nan"), count=20)
        verdict = evaluator.evaluate(plan, 0, samples, T0, T0 + timedelta(seconds=3600))
        assert verdict.outcome == VerdictOutcome.FAIL
        assert verdict.reason == ReasonCode.ERROR_RATE_DELTA
        assert math.isnan(verdict.deltas["error_rate"])

    def test_infinite_baseline_fails(self, evaluator, plan_data, window_end):
        """An infinite baseline gives a non-finite delta and fails."""
        plan = _plan(plan_data, max_drift_score=0.1)
        samples = make_samples(MetricName.DRIFT_SCORE, float("inf"), 0.05, count=10)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.FAIL
        assert verdict.reason == ReasonCode.DRIFT_SCORE

    def test_insufficient_samples(self, evaluator, plan, window_end):
        """Fewer samples than the minimum is inconclusive, even with a breach."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.5, count=4)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.INCONCLUSIVE
        assert verdict.reason == ReasonCode.INSUFFICIENT_SAMPLES
        assert verdict.sample_counts == {"error_rate": 4}

    def test_no_samples(self, evaluator, plan, window_end):
        """An empty batch is inconclusive."""
        verdict = evaluator.evaluate(plan, 0, [], T0, window_end)
        assert verdict.outcome == VerdictOutcome.INCONCLUSIVE
        assert verdict.reason == ReasonCode.INSUFFICIENT_SAMPLES

    def test_window_too_short(self, evaluator, plan):
        """A window shorter than the step minimum is inconclusive."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.5, count=10)
        verdict = evaluator.evaluate(plan, 0, samples, T0, T0 + timedelta(seconds=30))
        assert verdict.outcome == VerdictOutcome.INCONCLUSIVE
        assert verdict.reason == ReasonCode.WINDOW_TOO_SHORT

    def test_samples_outside_window_ignored(self, evaluator, plan, window_end):
        """Only samples within the window count."""
        early = make_samples(MetricName.ERROR_RATE, 0.01, 0.5, count=10, start=T0 - timedelta(hours=1))
        inside = make_samples(MetricName.ERROR_RATE, 0.01, 0.01, count=5)
        verdict = evaluator.evaluate(plan, 0, early + inside, T0, window_end)
        assert verdict.outcome == VerdictOutcome.PASS
        assert verdict.sample_counts == {"error_rate": 5}

    def test_unconfigured_metrics_ignored(self, evaluator, plan, window_end):
        """Metrics without a threshold are not evaluated."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.01, count=10)
        samples += make_samples(MetricName.LATENCY_P99, 100.0, 900.0, count=10)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.PASS
        assert "latency_p99" not in verdict.deltas

    def test_every_gated_metric_needs_samples(self, evaluator, plan_data, window_end):
        """One under-sampled metric makes the verdict inconclusive."""
        plan = _plan(plan_data, max_error_rate_delta=0.02, max_drift_score=0.3)
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.01, count=10)
        samples += make_samples(MetricName.DRIFT_SCORE, 0.0, 0.1, count=2)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.INCONCLUSIVE
        assert verdict.sample_counts == {"error_rate": 10, "drift_score": 2}

    def test_multiple_breaches(self, evaluator, plan_data, window_end):
        """Every breached metric is reported; the first gives the reason."""
        plan = _plan(plan_data, max_error_rate_delta=0.02, max_drift_score=0.3)
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.1, count=10)
        samples += make_samples(MetricName.DRIFT_SCORE, 0.0, 0.5, count=10)
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.outcome == VerdictOutcome.FAIL
        assert verdict.reason == ReasonCode.ERROR_RATE_DELTA
        assert verdict.breaches == ("error_rate_delta", "drift_score")

    def test_relative_mode(self, evaluator, plan_data, window_end):
        """Relative thresholds compare the scaled delta."""
        plan = _plan(plan_data, max_error_rate_delta=0.5, error_rate_delta_mode="relative")
        samples = make_samples(MetricName.ERROR_RATE, 0.02, 0.025, count=10)
        assert evaluator.evaluate(plan, 0, samples, T0, window_end).outcome == VerdictOutcome.PASS
        samples = make_samples(MetricName.ERROR_RATE, 0.02, 0.04, count=10)
        assert evaluator.evaluate(plan, 0, samples, T0, window_end).outcome == VerdictOutcome.FAIL

    def test_uses_window_means(self, evaluator, plan, window_end):
        """Deltas compare window means."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.0, count=5)
        samples += make_samples(MetricName.ERROR_RATE, 0.01, 0.04, count=5, start=T0 + timedelta(seconds=10))
        verdict = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert verdict.deltas["error_rate"] == pytest.approx(0.01)
        assert verdict.outcome == VerdictOutcome.PASS

    def test_deterministic(self, evaluator, plan, window_end):
        """The same window always gives the same verdict."""
        samples = make_samples(MetricName.ERROR_RATE, 0.01, 0.025, count=10)
        first = evaluator.evaluate(plan, 0, samples, T0, window_end)
        second = evaluator.evaluate(plan, 0, samples, T0, window_end)
        assert first == second
        assert first.evaluated_at == window_end

    def test_unavailable(self, evaluator):
        """Gateway outages produce an inconclusive verdict."""
        verdict = evaluator.unavailable(2, T0)
        assert verdict.outcome == VerdictOutcome.INCONCLUSIVE
        assert verdict.reason == ReasonCode.METRICS_UNAVAILABLE
        assert verdict.step_index == 2
