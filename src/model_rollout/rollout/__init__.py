"""
Rollout Module.

Core of the controller:
- Health evaluation of observation windows
- Rollout state machine and run data model
- Run store with optimistic concurrency
- The controller driving runs to completion or rollback
"""

from model_rollout.rollout.controller import AbortAck, RolloutController, request_abort
from model_rollout.rollout.errors import (
    AdapterError,
    ConfigError,
    ConflictError,
    InvalidStateError,
    PersistenceError,
    RolloutError,
    RunNotFoundError,
    StaleWriteError,
)
from model_rollout.rollout.evaluator import HealthEvaluator, compute_delta
from model_rollout.rollout.models import (
    MetricSample,
    PhaseTransition,
    ReasonCode,
    RolloutPhase,
    RolloutRun,
    TrafficSplit,
    Verdict,
    VerdictOutcome,
)
from model_rollout.rollout.report import generate_audit_report
from model_rollout.rollout.retry import RetryPolicy
from model_rollout.rollout.state_machine import RolloutStateMachine
from model_rollout.rollout.store import InMemoryRunStore, JsonFileRunStore, RunStore

__all__ = [
    # Controller
    "AbortAck",
    "RolloutController",
    "request_abort",
    # Errors
    "AdapterError",
    "ConfigError",
    "ConflictError",
    "InvalidStateError",
    "PersistenceError",
    "RolloutError",
    "RunNotFoundError",
    "StaleWriteError",
    # Evaluation
    "HealthEvaluator",
    "compute_delta",
    # Models
    "MetricSample",
    "PhaseTransition",
    "ReasonCode",
    "RolloutPhase",
    "RolloutRun",
    "TrafficSplit",
    "Verdict",
    "VerdictOutcome",
    # Machinery
    "RetryPolicy",
    "RolloutStateMachine",
    "generate_audit_report",
    # Persistence
    "InMemoryRunStore",
    "JsonFileRunStore",
    "RunStore",
]
