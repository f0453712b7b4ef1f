"""
Tests for the rollout run data model.
"""

import pytest

from conftest import T0
from model_rollout.rollout.models import (
    ReasonCode,
    RolloutPhase,
    RolloutRun,
    TrafficSplit,
    Verdict,
    VerdictOutcome,
)
from model_rollout.rollout.state_machine import RolloutStateMachine


class TestRolloutPhase:
    """Tests for RolloutPhase."""

    @pytest.mark.parametrize(
        "phase,terminal",
        [
            (RolloutPhase.PENDING, False),
            (RolloutPhase.ADVANCING, False),
            (RolloutPhase.HOLDING, False),
            (RolloutPhase.ROLLING_BACK, False),
            (RolloutPhase.ROLLED_BACK, True),
            (RolloutPhase.COMPLETED, True),
        ],
    )
    def test_is_terminal(self, phase, terminal):
        """Only COMPLETED and ROLLED_BACK end a run."""
        assert phase.is_terminal is terminal


class TestTrafficSplit:
    """Tests for TrafficSplit."""

    def test_non_integer_weight(self):
        """Weights must be integers."""
        with pytest.raises(ValueError):
            TrafficSplit("model-v1", "model-v2", 50.0, 50)

    def test_to_dict(self):
        """to_dict carries versions and weights."""
        split = TrafficSplit("model-v1", "model-v2", 75, 25)
        assert split.to_dict() == {
            "baseline_version": "model-v1",
            "candidate_version": "model-v2",
            "baseline_pct": 75,
            "candidate_pct": 25,
        }


class TestRolloutRun:
    """Tests for RolloutRun."""

    def test_create(self, plan):
        """New runs start PENDING at step 0."""
        run = RolloutRun.create(plan, T0)
        assert run.run_id.startswith("run-20240101000000-")
        assert run.phase == RolloutPhase.PENDING
        assert run.step_index == 0
        assert run.current_step_weight == 10
        assert run.last_verdict is None
        assert run.candidate_version == "model-v2"

    def test_serialization_preserves_history(self, plan):
        """A run with verdicts and transitions survives serialization."""
        machine = RolloutStateMachine()
        run = RolloutRun.create(plan, T0)
        machine.begin(run, T0)
        machine.confirm_split(run, machine.pending_split(run), T0)
        machine.enter_holding(run, T0.replace(minute=1))
        machine.apply_verdict(
            run,
            Verdict(
                outcome=VerdictOutcome.INCONCLUSIVE,
                reason=ReasonCode.INSUFFICIENT_SAMPLES,
                step_index=0,
                evaluated_at=T0.replace(minute=1),
                sample_counts={"error_rate": 2},
            ),
            T0.replace(minute=1),
        )

        restored = RolloutRun.from_dict(run.to_dict())
        assert restored == run
        assert restored.last_verdict.sample_counts == {"error_rate": 2}

    def test_snapshot_is_independent(self, plan):
        """Snapshots do not alias the live run."""
        run = RolloutRun.create(plan, T0)
        snapshot = run.snapshot()
        run.history.append(
            Verdict(
                outcome=VerdictOutcome.PASS,
                reason=ReasonCode.WITHIN_THRESHOLDS,
                step_index=0,
                evaluated_at=T0,
            )
        )
        assert snapshot.history == []
