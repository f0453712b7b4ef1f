"""
YAML Configuration Loader.

Provides utilities for loading, validating, and generating rollout plans and
controller settings with Pydantic models for type safety.

Usage:
    from model_rollout.config import load_plan_config

    plan = load_plan_config("plan.yaml")
    print(f"Promoting {plan.candidate_version} in {plan.num_steps} steps")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import ValidationError

from model_rollout.config.schema import (
    ControllerSettings,
    RolloutPlan,
    RolloutStrategy,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ConfigLoader:
    """
    YAML Configuration Loader with validation.

    Provides methods for loading and validating plan and settings files
    with helpful error messages and template generation.
    """

    def __init__(self, config_dir: str | Path | None = None) -> None:
        """
        Initialize the config loader.

        Args:
            config_dir: Default directory for configuration files
        """
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()

    def load_yaml(self, path: str | Path) -> dict[str, Any]:
        """
        Load raw YAML file.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary with parsed YAML content

        Raises:
            ConfigError: If file not found or YAML parsing fails
        """
        file_path = self._resolve_path(path)

        if not file_path.exists():
            raise ConfigError(
                f"Configuration file not found: {file_path}",
                {"path": str(file_path)},
            )

        try:
            with open(file_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Failed to parse YAML file: {e}",
                {"path": str(file_path), "error": str(e)},
            ) from e

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigError(
                f"YAML file must contain a dictionary, got {type(data).__name__}",
                {"path": str(file_path)},
            )

        logger.debug(f"Loaded YAML from {file_path}")
        return data

    def load_plan(self, path: str | Path) -> RolloutPlan:
        """
        Load and validate a rollout plan.

        Raises:
            ConfigError: If validation fails
        """
        data = self.load_yaml(path)
        return self._validate_model(RolloutPlan, data, path)

    def load_settings(self, path: str | Path | None = None) -> ControllerSettings:
        """
        Load and validate controller settings.

        A missing path yields the default settings.

        Raises:
            ConfigError: If validation fails
        """
        if path is None:
            return ControllerSettings()
        data = self.load_yaml(path)
        return self._validate_model(ControllerSettings, data, path)

    def _resolve_path(self, path: str | Path) -> Path:
        """Resolve path relative to config_dir if not absolute."""
        p = Path(path)
        if p.is_absolute():
            return p
        return self.config_dir / p

    def _validate_model(
        self,
        model_class: type[T],
        data: dict[str, Any],
        path: str | Path,
    ) -> T:
        """
        Validate data against Pydantic model.

        Raises:
            ConfigError: If validation fails
        """
        try:
            return model_class.model_validate(data)  # type: ignore[attr-defined]
        except ValidationError as e:
            raise ConfigError(
                f"Configuration validation failed for {path}:\n{format_validation_errors(e)}",
                {"path": str(path), "errors": e.errors(include_url=False, include_context=False)},
            ) from e

    @staticmethod
    def save_yaml(config: Any, path: str | Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            config: Pydantic model or dictionary to save
            path: Output file path
        """
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        if hasattr(config, "model_dump"):
            data = config.model_dump(mode="json")
        else:
            data = config

        with open(file_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved configuration to {file_path}")

    @staticmethod
    def generate_plan_template(strategy: RolloutStrategy = RolloutStrategy.CANARY) -> str:
        """Generate a rollout plan template for the given strategy."""
        if strategy == RolloutStrategy.BLUE_GREEN:
            steps = """steps:
  # Blue-green: candidate deployed dark, then switched in one move
  - candidate_weight: 0
    min_observation_seconds: 600
    min_samples: 10
  - candidate_weight: 100
    min_observation_seconds: 900
    min_samples: 10"""
        else:
            steps = """steps:
  - 5
  - 25
  - 50
  # Steps may override the plan defaults
  - candidate_weight: 100
    min_observation_seconds: 900
    min_samples: 10"""

        return f"""# Rollout Plan Template ({strategy.value})
# Model Rollout Controller

candidate_version: "classifier-v2.1.0"
baseline_version: "classifier-v2.0.3"
segment: "default"

default_min_observation_seconds: 300
default_min_samples: 5
max_total_duration_seconds: 21600

{steps}

thresholds:
  max_error_rate_delta: 0.01
  max_latency_p99_delta_ms: 50
  max_drift_score: 0.25
  error_rate_delta_mode: "absolute"
"""

    @staticmethod
    def generate_settings_template() -> str:
        """Generate controller settings template."""
        return """# Controller Settings Template
# Model Rollout Controller

tick_interval_seconds: 30
adapter_timeout_seconds: 5
store_timeout_seconds: 5
state_dir: "./rollout_state"
log_level: "INFO"

retry:
  max_attempts: 3
  initial_delay_seconds: 0.5
  backoff_multiplier: 2.0
  max_delay_seconds: 5.0
  jitter: true

metrics_gateway:
  url: "http://metrics-gateway.internal:8080"
  verify_ssl: true

traffic_router:
  url: "http://traffic-router.internal:8080"
  verify_ssl: true
"""


# =============================================================================
# Convenience Functions
# =============================================================================


def format_validation_errors(error: ValidationError) -> str:
    """Render pydantic errors as indented ``loc: msg`` lines."""
    lines = []
    for item in error.errors():
        loc = " -> ".join(str(x) for x in item["loc"]) or "plan"
        lines.append(f"  {loc}: {item['msg']}")
    return "\n".join(lines)


def load_plan_config(path: str | Path) -> RolloutPlan:
    """
    Load rollout plan from YAML file.

    Raises:
        ConfigError: If loading or validation fails
    """
    loader = ConfigLoader()
    return loader.load_plan(path)


def load_controller_settings(path: str | Path | None = None) -> ControllerSettings:
    """
    Load controller settings from YAML file.

    Raises:
        ConfigError: If loading or validation fails
    """
    loader = ConfigLoader()
    return loader.load_settings(path)


def validate_config(data: dict[str, Any], config_type: str = "plan") -> Any:
    """
    Validate configuration dictionary.

    Args:
        data: Configuration dictionary
        config_type: Type of configuration ("plan" or "settings")

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If validation fails
        ValueError: If config_type is invalid
    """
    config_classes = {
        "plan": RolloutPlan,
        "settings": ControllerSettings,
    }

    if config_type not in config_classes:
        raise ValueError(f"Invalid config_type: {config_type}")

    model_class = config_classes[config_type]

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Validation failed:\n{format_validation_errors(e)}",
            {"errors": e.errors(include_url=False, include_context=False)},
        ) from e
