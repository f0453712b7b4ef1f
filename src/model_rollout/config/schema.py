"""
Pydantic Schema for Rollout Plans and Controller Settings.

Provides type-safe, immutable rollout plans with validation that rejects
malformed plans before a run is ever created, plus the settings model that
configures the controller process.

Usage:
    from model_rollout.config import RolloutPlan, load_plan_config

    plan = load_plan_config("plan.yaml")
    print([step.candidate_weight for step in plan.steps])
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_MIN_OBSERVATION_SECONDS = 300.0
DEFAULT_MIN_SAMPLES = 5


# =============================================================================
# Enums
# =============================================================================


class MetricName(str, Enum):
    """Closed set of metrics the health evaluator understands."""

    ERROR_RATE = "error_rate"
    LATENCY_P99 = "latency_p99"
    DRIFT_SCORE = "drift_score"


class DeltaMode(str, Enum):
    """How the candidate/baseline delta of a rate metric is computed."""

    ABSOLUTE = "absolute"
    RELATIVE = "relative"


class RolloutStrategy(str, Enum):
    """Plan templates offered by the generator."""

    CANARY = "canary"
    BLUE_GREEN = "blue-green"


# =============================================================================
# Plan Configuration
# =============================================================================


class TrafficStep(BaseModel):
    """One traffic-weight target of a rollout plan."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    candidate_weight: int = Field(
        ...,
        description="Percentage of traffic routed to the candidate",
        ge=0,
        le=100,
    )
    baseline_weight: int = Field(
        ...,
        description="Percentage of traffic routed to the baseline",
        ge=0,
        le=100,
    )
    min_observation_seconds: float = Field(
        default=DEFAULT_MIN_OBSERVATION_SECONDS,
        description="Minimum observation window before the step may be evaluated",
        ge=0.0,
    )
    min_samples: int = Field(
        default=DEFAULT_MIN_SAMPLES,
        description="Minimum samples per metric before a verdict is possible",
        ge=1,
    )

    @model_validator(mode="before")
    @classmethod
    def fill_baseline_weight(cls, data: Any) -> Any:
        """Accept a bare candidate percentage and derive the baseline share."""
        if isinstance(data, int) and not isinstance(data, bool):
            data = {"candidate_weight": data}
        if isinstance(data, dict) and "baseline_weight" not in data:
            candidate = data.get("candidate_weight")
            if isinstance(candidate, int) and not isinstance(candidate, bool):
                data = {**data, "baseline_weight": 100 - candidate}
        return data

    @model_validator(mode="after")
    def validate_weights(self) -> "TrafficStep":
        """Weights of a step must split the whole traffic."""
        if self.candidate_weight + self.baseline_weight != 100:
            raise ValueError(
                f"weights must sum to 100, got candidate={self.candidate_weight} "
                f"baseline={self.baseline_weight}"
            )
        return self


class HealthThresholds(BaseModel):
    """Failure thresholds; a metric without a threshold is not evaluated."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_error_rate_delta: float | None = Field(
        default=None,
        description="Maximum tolerated error-rate delta (candidate - baseline)",
        gt=0.0,
    )
    max_latency_p99_delta_ms: float | None = Field(
        default=None,
        description="Maximum tolerated p99 latency delta in milliseconds",
        gt=0.0,
    )
    max_drift_score: float | None = Field(
        default=None,
        description="Maximum tolerated drift score of the candidate",
        gt=0.0,
    )
    error_rate_delta_mode: DeltaMode = Field(
        default=DeltaMode.ABSOLUTE,
        description="Absolute or relative error-rate delta",
    )

    @model_validator(mode="after")
    def validate_any_threshold(self) -> "HealthThresholds":
        """At least one metric must be gated."""
        if not self.configured():
            raise ValueError("at least one threshold must be configured")
        return self

    def configured(self) -> dict[MetricName, float]:
        """Return configured thresholds keyed by metric, in evaluation order."""
        limits = {
            MetricName.ERROR_RATE: self.max_error_rate_delta,
            MetricName.LATENCY_P99: self.max_latency_p99_delta_ms,
            MetricName.DRIFT_SCORE: self.max_drift_score,
        }
        return {metric: limit for metric, limit in limits.items() if limit is not None}


class RolloutPlan(BaseModel):
    """Immutable description of how a candidate is promoted."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    plan_id: str = Field(
        default_factory=lambda: f"plan-{uuid.uuid4().hex[:12]}",
        description="Plan identifier",
        min_length=1,
    )
    candidate_version: str = Field(
        ...,
        description="Model version being promoted",
        min_length=1,
    )
    baseline_version: str = Field(
        ...,
        description="Currently serving model version",
        min_length=1,
    )
    segment: str = Field(
        default="default",
        description="Traffic segment the metrics gateway reports on",
        min_length=1,
    )
    steps: tuple[TrafficStep, ...] = Field(
        ...,
        description="Ordered traffic-weight steps, ending at 100% candidate",
    )
    default_min_observation_seconds: float = Field(
        default=DEFAULT_MIN_OBSERVATION_SECONDS,
        description="Observation window for steps that do not set their own",
        ge=0.0,
    )
    default_min_samples: int = Field(
        default=DEFAULT_MIN_SAMPLES,
        description="Sample minimum for steps that do not set their own",
        ge=1,
    )
    thresholds: HealthThresholds = Field(
        ...,
        description="Failure thresholds",
    )
    max_total_duration_seconds: float = Field(
        default=6 * 3600.0,
        description="Rollouts older than this are rolled back",
        gt=0.0,
    )

    @model_validator(mode="before")
    @classmethod
    def expand_steps(cls, data: Any) -> Any:
        """Apply plan-level defaults to steps written as bare percentages."""
        if not isinstance(data, dict) or not isinstance(data.get("steps"), (list, tuple)):
            return data

        defaults = {
            "min_observation_seconds": data.get(
                "default_min_observation_seconds", DEFAULT_MIN_OBSERVATION_SECONDS
            ),
            "min_samples": data.get("default_min_samples", DEFAULT_MIN_SAMPLES),
        }
        steps = []
        for step in data["steps"]:
            if isinstance(step, int) and not isinstance(step, bool):
                step = {"candidate_weight": step}
            if isinstance(step, dict):
                step = {**defaults, **step}
            steps.append(step)
        return {**data, "steps": steps}

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: tuple[TrafficStep, ...]) -> tuple[TrafficStep, ...]:
        """Steps must be non-empty, strictly increasing and end at 100%."""
        if not v:
            raise ValueError("step list must not be empty")
        weights = [step.candidate_weight for step in v]
        for previous, current in zip(weights, weights[1:]):
            if current <= previous:
                raise ValueError(f"steps must be strictly increasing, got {weights}")
        if weights[-1] != 100:
            raise ValueError(f"last step must route 100% to the candidate, got {weights[-1]}")
        return v

    @model_validator(mode="after")
    def validate_plan(self) -> "RolloutPlan":
        """Cross-field plan checks."""
        if self.candidate_version == self.baseline_version:
            raise ValueError("candidate_version must differ from baseline_version")
        minimum = sum(step.min_observation_seconds for step in self.steps)
        if minimum > self.max_total_duration_seconds:
            raise ValueError(
                f"max_total_duration_seconds ({self.max_total_duration_seconds}) is shorter "
                f"than the summed observation windows ({minimum})"
            )
        return self

    @property
    def num_steps(self) -> int:
        """Number of traffic steps."""
        return len(self.steps)

    def is_last_step(self, index: int) -> bool:
        """Whether ``index`` is the final step."""
        return index == len(self.steps) - 1


# =============================================================================
# Controller Settings
# =============================================================================


class RetrySettings(BaseModel):
    """Bounded retry policy shared by the adapters and the store."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=20)
    initial_delay_seconds: float = Field(default=0.5, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0)
    jitter: bool = Field(default=True, description="Add +/-25% jitter to delays")


class GatewaySettings(BaseModel):
    """HTTP metrics gateway endpoint."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(..., description="Base URL of the metrics gateway", min_length=1)
    api_key: str | None = Field(default=None, description="Bearer token")
    verify_ssl: bool = Field(default=True)


class RouterSettings(BaseModel):
    """HTTP traffic router endpoint."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(..., description="Base URL of the traffic router", min_length=1)
    api_key: str | None = Field(default=None, description="Bearer token")
    verify_ssl: bool = Field(default=True)


class ControllerSettings(BaseModel):
    """Settings for a controller process."""

    model_config = ConfigDict(extra="forbid")

    tick_interval_seconds: float = Field(
        default=30.0,
        description="Interval between ticks of a run",
        gt=0.0,
    )
    adapter_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout of a single gateway or router call",
        gt=0.0,
    )
    store_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout of a single persistence call",
        gt=0.0,
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    state_dir: str = Field(
        default="./rollout_state",
        description="Directory holding persisted runs",
    )
    metrics_gateway: GatewaySettings | None = Field(default=None)
    traffic_router: RouterSettings | None = Field(default=None)
    log_level: str = Field(
        default="INFO",
        description="Logging level",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
