"""
YAML Configuration System for the Model Rollout Controller.

This package provides Pydantic-based YAML configuration for:
- Rollout plans (traffic steps, observation windows, health thresholds)
- Controller settings (tick interval, timeouts, retry budget, endpoints)
"""

from model_rollout.config.loader import (
    ConfigError,
    ConfigLoader,
    load_controller_settings,
    load_plan_config,
    validate_config,
)
from model_rollout.config.schema import (
    ControllerSettings,
    DeltaMode,
    GatewaySettings,
    HealthThresholds,
    MetricName,
    RetrySettings,
    RolloutPlan,
    RolloutStrategy,
    RouterSettings,
    TrafficStep,
)

__all__ = [
    # Schema - Enums
    "DeltaMode",
    "MetricName",
    "RolloutStrategy",
    # Schema - Models
    "ControllerSettings",
    "GatewaySettings",
    "HealthThresholds",
    "RetrySettings",
    "RolloutPlan",
    "RouterSettings",
    "TrafficStep",
    # Loader
    "ConfigError",
    "ConfigLoader",
    "load_controller_settings",
    "load_plan_config",
    "validate_config",
]
