"""
Model Rollout Controller - Progressive Delivery for ML Models

This package promotes a candidate model from staging to production traffic
in weighted steps:
- Health evaluation of candidate vs. baseline (error rate, p99 latency, drift)
- Deterministic rollout state machine with automatic rollback
- Crash-safe controller persisting every transition before its side effect
- REST API, CLI and Prometheus metrics
"""

__version__ = "1.0.0"

from model_rollout.config import RolloutPlan
from model_rollout.rollout import RolloutController, RolloutPhase

__all__ = ["RolloutPlan", "RolloutController", "RolloutPhase"]
