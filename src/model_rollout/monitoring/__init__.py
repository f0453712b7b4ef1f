"""
Monitoring Module for Model Rollouts.

Prometheus metrics export for rollout transitions, verdicts, adapter
failures and per-run traffic weights.
"""

from model_rollout.monitoring.prometheus import RolloutMetricsExporter

__all__ = [
    "RolloutMetricsExporter",
]
