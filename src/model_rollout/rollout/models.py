"""
Rollout Run Data Model.

Defines the records the controller owns and persists:
- MetricSample: one (baseline, candidate) observation for a metric
- Verdict: the evaluator's decision for a step's observation window
- PhaseTransition: audit record of a phase change
- RolloutRun: mutable state of one rollout, serialized with to_dict/from_dict
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from model_rollout.config.schema import MetricName, RolloutPlan


class RolloutPhase(str, Enum):
    """Lifecycle phases of a rollout run."""

    PENDING = "pending"
    ADVANCING = "advancing"
    HOLDING = "holding"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        """Whether the phase ends the run."""
        return self in (RolloutPhase.COMPLETED, RolloutPhase.ROLLED_BACK)


class VerdictOutcome(str, Enum):
    """Outcome of a health evaluation."""

    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class ReasonCode(str, Enum):
    """Reason codes carried by verdicts and rollbacks."""

    WITHIN_THRESHOLDS = "within_thresholds"
    INSUFFICIENT_SAMPLES = "insufficient_samples"
    WINDOW_TOO_SHORT = "window_too_short"
    METRICS_UNAVAILABLE = "metrics_unavailable"
    ERROR_RATE_DELTA = "error_rate_delta"
    LATENCY_P99_DELTA = "latency_p99_delta"
    DRIFT_SCORE = "drift_score"
    TIMEOUT = "timeout"
    ROUTER_UNAVAILABLE = "router_unavailable"
    ABORTED = "aborted"


BREACH_REASONS = {
    MetricName.ERROR_RATE: ReasonCode.ERROR_RATE_DELTA,
    MetricName.LATENCY_P99: ReasonCode.LATENCY_P99_DELTA,
    MetricName.DRIFT_SCORE: ReasonCode.DRIFT_SCORE,
}


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class TrafficSplit:
    """Weight command for the traffic router."""

    baseline_version: str
    candidate_version: str
    baseline_pct: int
    candidate_pct: int

    def __post_init__(self) -> None:
        for pct in (self.baseline_pct, self.candidate_pct):
            if not isinstance(pct, int) or not 0 <= pct <= 100:
                raise ValueError(f"weights must be integers in [0, 100], got {pct!r}")
        if self.baseline_pct + self.candidate_pct != 100:
            raise ValueError(
                f"weights must sum to 100, got {self.baseline_pct}/{self.candidate_pct}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "baseline_version": self.baseline_version,
            "candidate_version": self.candidate_version,
            "baseline_pct": self.baseline_pct,
            "candidate_pct": self.candidate_pct,
        }


@dataclass(frozen=True)
class MetricSample:
    """A (baseline, candidate) observation of one metric."""

    timestamp: datetime
    metric: MetricName
    baseline_value: float
    candidate_value: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricSample":
        """Create from dictionary."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metric=MetricName(data["metric"]),
            baseline_value=float(data["baseline_value"]),
            candidate_value=float(data["candidate_value"]),
        )


@dataclass(frozen=True)
class Verdict:
    """Immutable result of evaluating one observation window."""

    outcome: VerdictOutcome
    reason: ReasonCode
    step_index: int
    evaluated_at: datetime
    deltas: dict[str, float] = field(default_factory=dict)
    sample_counts: dict[str, int] = field(default_factory=dict)
    breaches: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "outcome": self.outcome.value,
            "reason": self.reason.value,
            "step_index": self.step_index,
            "evaluated_at": self.evaluated_at.isoformat(),
            "deltas": dict(self.deltas),
            "sample_counts": dict(self.sample_counts),
            "breaches": list(self.breaches),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Verdict":
        """Create from dictionary."""
        return cls(
            outcome=VerdictOutcome(data["outcome"]),
            reason=ReasonCode(data["reason"]),
            step_index=data["step_index"],
            evaluated_at=datetime.fromisoformat(data["evaluated_at"]),
            deltas=data.get("deltas", {}),
            sample_counts=data.get("sample_counts", {}),
            breaches=tuple(data.get("breaches", ())),
        )


@dataclass(frozen=True)
class PhaseTransition:
    """Audit record of one phase change."""

    from_phase: RolloutPhase
    to_phase: RolloutPhase
    step_index: int
    at: datetime
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "step_index": self.step_index,
            "at": self.at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseTransition":
        """Create from dictionary."""
        return cls(
            from_phase=RolloutPhase(data["from_phase"]),
            to_phase=RolloutPhase(data["to_phase"]),
            step_index=data["step_index"],
            at=datetime.fromisoformat(data["at"]),
            reason=data.get("reason", ""),
        )


@dataclass
class RolloutRun:
    """
    Mutable state of one rollout.

    Owned by its tick loop while the per-run lock is held. ``version`` is the
    optimistic-concurrency counter maintained by the run store.
    """

    run_id: str
    plan: RolloutPlan
    phase: RolloutPhase
    started_at: datetime
    phase_entered_at: datetime
    step_index: int = 0
    step_started_at: datetime | None = None
    last_evaluated_at: datetime | None = None
    applied_candidate_weight: int | None = None
    history: list[Verdict] = field(default_factory=list)
    transitions: list[PhaseTransition] = field(default_factory=list)
    outcome: RolloutPhase | None = None
    failure_reason: str | None = None
    abort_requested: bool = False
    abort_reason: str | None = None
    last_error: str | None = None
    version: int = 0

    @classmethod
    def create(cls, plan: RolloutPlan, now: datetime) -> "RolloutRun":
        """Create a PENDING run for an activated plan."""
        return cls(
            run_id=f"run-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}",
            plan=plan,
            phase=RolloutPhase.PENDING,
            started_at=now,
            phase_entered_at=now,
        )

    @property
    def candidate_version(self) -> str:
        return self.plan.candidate_version

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def current_step_weight(self) -> int:
        return self.plan.steps[self.step_index].candidate_weight

    @property
    def last_verdict(self) -> Verdict | None:
        return self.history[-1] if self.history else None

    def snapshot(self) -> "RolloutRun":
        """Return an independent copy for read-only callers."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "plan": self.plan.model_dump(mode="json"),
            "phase": self.phase.value,
            "started_at": self.started_at.isoformat(),
            "phase_entered_at": self.phase_entered_at.isoformat(),
            "step_index": self.step_index,
            "step_started_at": _format_time(self.step_started_at),
            "last_evaluated_at": _format_time(self.last_evaluated_at),
            "applied_candidate_weight": self.applied_candidate_weight,
            "history": [v.to_dict() for v in self.history],
            "transitions": [t.to_dict() for t in self.transitions],
            "outcome": self.outcome.value if self.outcome else None,
            "failure_reason": self.failure_reason,
            "abort_requested": self.abort_requested,
            "abort_reason": self.abort_reason,
            "last_error": self.last_error,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RolloutRun":
        """Create from dictionary."""
        outcome = data.get("outcome")
        return cls(
            run_id=data["run_id"],
            plan=RolloutPlan.model_validate(data["plan"]),
            phase=RolloutPhase(data["phase"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            phase_entered_at=datetime.fromisoformat(data["phase_entered_at"]),
            step_index=data.get("step_index", 0),
            step_started_at=_parse_time(data.get("step_started_at")),
            last_evaluated_at=_parse_time(data.get("last_evaluated_at")),
            applied_candidate_weight=data.get("applied_candidate_weight"),
            history=[Verdict.from_dict(v) for v in data.get("history", [])],
            transitions=[PhaseTransition.from_dict(t) for t in data.get("transitions", [])],
            outcome=RolloutPhase(outcome) if outcome else None,
            failure_reason=data.get("failure_reason"),
            abort_requested=data.get("abort_requested", False),
            abort_reason=data.get("abort_reason"),
            last_error=data.get("last_error"),
            version=data.get("version", 0),
        )
