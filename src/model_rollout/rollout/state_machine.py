"""
Rollout State Machine.

Owns the lifecycle of a rollout run:

    PENDING -> ADVANCING -> HOLDING -> {ADVANCING | ROLLING_BACK | COMPLETED}
    ROLLING_BACK -> ROLLED_BACK

PENDING and ADVANCING may also move straight to ROLLING_BACK on abort,
timeout or loss of the traffic router. COMPLETED and ROLLED_BACK are
terminal.

The machine is deterministic: every method takes the current time as an
argument, mutates the run it is given and returns the recorded
PhaseTransition. It never performs I/O; the controller persists each
transition and then applies the traffic split the machine reports through
``pending_split``.

Example:
    >>> machine = RolloutStateMachine()
    >>> machine.begin(run, now)
    >>> split = machine.pending_split(run)   # 95/5 for a plan starting at 5%
    >>> machine.confirm_split(run, split, now)
"""

from __future__ import annotations

import logging
from datetime import datetime

from model_rollout.rollout.errors import InvalidStateError
from model_rollout.rollout.models import (
    PhaseTransition,
    ReasonCode,
    RolloutPhase,
    RolloutRun,
    TrafficSplit,
    Verdict,
    VerdictOutcome,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[RolloutPhase, frozenset[RolloutPhase]] = {
    RolloutPhase.PENDING: frozenset({RolloutPhase.ADVANCING, RolloutPhase.ROLLING_BACK}),
    RolloutPhase.ADVANCING: frozenset({RolloutPhase.HOLDING, RolloutPhase.ROLLING_BACK}),
    RolloutPhase.HOLDING: frozenset(
        {RolloutPhase.ADVANCING, RolloutPhase.ROLLING_BACK, RolloutPhase.COMPLETED}
    ),
    RolloutPhase.ROLLING_BACK: frozenset({RolloutPhase.ROLLED_BACK}),
    RolloutPhase.ROLLED_BACK: frozenset(),
    RolloutPhase.COMPLETED: frozenset(),
}


class RolloutStateMachine:
    """Deterministic transition rules for rollout runs."""

    def begin(self, run: RolloutRun, now: datetime) -> PhaseTransition:
        """Activate a pending run at its first step."""
        if run.phase != RolloutPhase.PENDING:
            raise InvalidStateError(f"Run {run.run_id} already started ({run.phase.value})")
        run.step_index = 0
        return self._transition(run, RolloutPhase.ADVANCING, now, "activated")

    def pending_split(self, run: RolloutRun) -> TrafficSplit | None:
        """
        Traffic split that must be applied before the run can make progress.

        Returns None when the router has already confirmed the split the
        current phase requires.
        """
        plan = run.plan
        if run.phase == RolloutPhase.ROLLING_BACK:
            return TrafficSplit(plan.baseline_version, plan.candidate_version, 100, 0)
        if run.phase == RolloutPhase.ADVANCING and run.step_started_at is None:
            step = plan.steps[run.step_index]
            return TrafficSplit(
                plan.baseline_version,
                plan.candidate_version,
                step.baseline_weight,
                step.candidate_weight,
            )
        return None

    def confirm_split(
        self, run: RolloutRun, split: TrafficSplit, now: datetime
    ) -> PhaseTransition | None:
        """
        Record the router's confirmation of ``split``.

        Confirming the current step's split starts its observation window;
        confirming the baseline split of a rollback finishes the run.
        """
        if split != self.pending_split(run):
            raise InvalidStateError(
                f"Run {run.run_id} is not waiting for split "
                f"{split.baseline_pct}/{split.candidate_pct}"
            )
        run.applied_candidate_weight = split.candidate_pct
        run.last_error = None

        if run.phase == RolloutPhase.ROLLING_BACK:
            run.outcome = RolloutPhase.ROLLED_BACK
            return self._transition(
                run, RolloutPhase.ROLLED_BACK, now, run.failure_reason or ""
            )

        run.step_started_at = now
        logger.info(
            f"Run {run.run_id}: step {run.step_index} confirmed at "
            f"{split.candidate_pct}% candidate traffic"
        )
        return None

    def ready_for_evaluation(self, run: RolloutRun, now: datetime) -> bool:
        """Whether the current step's minimum observation window has elapsed."""
        if run.phase != RolloutPhase.ADVANCING or run.step_started_at is None:
            return False
        elapsed = (now - run.step_started_at).total_seconds()
        return elapsed >= run.plan.steps[run.step_index].min_observation_seconds

    def enter_holding(self, run: RolloutRun, now: datetime) -> PhaseTransition:
        """Open the current step for evaluation."""
        if not self.ready_for_evaluation(run, now):
            raise InvalidStateError(f"Run {run.run_id} observation window not satisfied")
        return self._transition(run, RolloutPhase.HOLDING, now, "observation window satisfied")

    def apply_verdict(
        self, run: RolloutRun, verdict: Verdict, now: datetime
    ) -> PhaseTransition | None:
        """
        Append a verdict to the run's history and act on it.

        Returns:
            The transition taken, or None when the run keeps holding
        """
        if run.phase != RolloutPhase.HOLDING:
            raise InvalidStateError(
                f"Run {run.run_id} cannot accept verdicts in phase {run.phase.value}"
            )
        if verdict.step_index != run.step_index:
            raise InvalidStateError(
                f"Verdict for step {verdict.step_index} does not match "
                f"current step {run.step_index}"
            )

        run.history.append(verdict)
        run.last_evaluated_at = now

        if verdict.outcome == VerdictOutcome.INCONCLUSIVE:
            logger.debug(f"Run {run.run_id}: inconclusive ({verdict.reason.value}), holding")
            return None

        if verdict.outcome == VerdictOutcome.FAIL:
            return self.begin_rollback(run, verdict.reason.value, now)

        if run.plan.is_last_step(run.step_index):
            run.outcome = RolloutPhase.COMPLETED
            return self._transition(run, RolloutPhase.COMPLETED, now, verdict.reason.value)

        run.step_index += 1
        run.step_started_at = None
        return self._transition(
            run, RolloutPhase.ADVANCING, now, f"advance to step {run.step_index}"
        )

    def check_timeout(self, run: RolloutRun, now: datetime) -> PhaseTransition | None:
        """Force a rollback when the run has outlived its plan's duration budget."""
        if run.is_terminal or run.phase == RolloutPhase.ROLLING_BACK:
            return None
        elapsed = (now - run.started_at).total_seconds()
        if elapsed <= run.plan.max_total_duration_seconds:
            return None
        logger.warning(
            f"Run {run.run_id}: exceeded max duration "
            f"({elapsed:.0f}s > {run.plan.max_total_duration_seconds:.0f}s)"
        )
        return self.begin_rollback(run, ReasonCode.TIMEOUT.value, now)

    def begin_rollback(self, run: RolloutRun, reason: str, now: datetime) -> PhaseTransition:
        """Move a non-terminal run to ROLLING_BACK."""
        if run.phase == RolloutPhase.ROLLING_BACK or run.is_terminal:
            raise InvalidStateError(
                f"Run {run.run_id} cannot roll back from phase {run.phase.value}"
            )
        run.failure_reason = reason
        logger.warning(f"Run {run.run_id}: rolling back at step {run.step_index} ({reason})")
        return self._transition(run, RolloutPhase.ROLLING_BACK, now, reason)

    def _transition(
        self, run: RolloutRun, target: RolloutPhase, now: datetime, reason: str
    ) -> PhaseTransition:
        if target not in ALLOWED_TRANSITIONS[run.phase]:
            raise InvalidStateError(
                f"Illegal transition {run.phase.value} -> {target.value} for run {run.run_id}"
            )
        transition = PhaseTransition(
            from_phase=run.phase,
            to_phase=target,
            step_index=run.step_index,
            at=now,
            reason=reason,
        )
        run.phase = target
        run.phase_entered_at = now
        run.transitions.append(transition)
        logger.info(
            f"Run {run.run_id}: {transition.from_phase.value} -> {target.value} "
            f"(step {run.step_index}{', ' + reason if reason else ''})"
        )
        return transition
